from contextlib import contextmanager
from threading import Lock
from typing import Iterator
from weakref import WeakValueDictionary


class SubjectLocks:
    """One mutex per scheduling subject.

    Writers for the same subject hold its lock across the whole
    read -> decide -> write sequence; different subjects never wait on
    each other. Entries are weak: a subject's lock lives only while some
    caller holds or waits on it, so the registry does not grow with every
    subject ever seen.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: "WeakValueDictionary[str, Lock]" = WeakValueDictionary()

    def _lock_for(self, subject_id: str) -> Lock:
        with self._guard:
            lock = self._locks.get(subject_id)
            if lock is None:
                lock = Lock()
                self._locks[subject_id] = lock
            return lock

    @contextmanager
    def hold(self, subject_id: str) -> Iterator[None]:
        # The local reference keeps the entry alive until release.
        lock = self._lock_for(subject_id)
        with lock:
            yield

import gc
import os
import sys
import threading

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from timeswap.services.subject_locks import SubjectLocks


def test_same_subject_shares_one_lock_while_in_use():
    locks = SubjectLocks()
    with locks.hold("provider_1"):
        first = locks._lock_for("provider_1")
        assert locks._lock_for("provider_1") is first
        assert first.locked()


def test_idle_subjects_are_dropped_from_the_registry():
    locks = SubjectLocks()
    for index in range(100):
        with locks.hold(f"subject_{index}"):
            pass
    gc.collect()

    assert len(locks._locks) == 0


def test_writer_waits_for_the_same_subject_only():
    locks = SubjectLocks()
    other_done = threading.Event()
    same_done = threading.Event()

    def other_subject():
        with locks.hold("provider_2"):
            other_done.set()

    def same_subject():
        with locks.hold("provider_1"):
            same_done.set()

    with locks.hold("provider_1"):
        other = threading.Thread(target=other_subject)
        same = threading.Thread(target=same_subject)
        other.start()
        same.start()
        assert other_done.wait(timeout=5)
        assert not same_done.wait(timeout=0.2)

    same.join(timeout=5)
    other.join(timeout=5)
    assert same_done.is_set()

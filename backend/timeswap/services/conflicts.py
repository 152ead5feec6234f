import logging
from typing import Iterable, List

from timeswap.models import CommittedInterval, ConflictResult, Interval
from timeswap.services import intervals

logger = logging.getLogger(__name__)


OCCUPYING_STATUSES = frozenset({"pending", "confirmed", "accepted", "active"})


def is_occupying(committed: CommittedInterval) -> bool:
    return committed.status in OCCUPYING_STATUSES


class ConflictDetector:
    """Deterministic overlap check over a snapshot of committed intervals.

    Only intervals of the same subject whose status is occupying take part.
    The caller owns fetching the snapshot and serializing the decision with
    the write that follows it.
    """

    def check(
        self,
        subject_id: str,
        proposed: Interval,
        committed: Iterable[CommittedInterval],
        ignore_ids: Iterable[str] = (),
    ) -> ConflictResult:
        intervals.require_valid(proposed)
        ignored = set(ignore_ids)
        conflicting: List[str] = []
        for item in committed:
            if item.subject_id != subject_id or item.id in ignored:
                continue
            if not is_occupying(item):
                continue
            if intervals.overlaps(proposed, item.interval):
                conflicting.append(item.id)
        if conflicting:
            logger.debug("Interval %s-%s conflicts for %s: %s", proposed.start, proposed.end, subject_id, conflicting)
        return ConflictResult(conflict=bool(conflicting), conflicting_ids=conflicting)

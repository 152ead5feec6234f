import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Iterable, List, Optional
from uuid import uuid4

from timeswap.models import NotificationRecord

logger = logging.getLogger(__name__)


class NotificationStore:
    def __init__(self):
        self._lock = Lock()
        self._notifications: List[NotificationRecord] = []

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        related_id: Optional[str] = None,
        related_type: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            related_id=related_id,
            related_type=related_type,
        )
        with self._lock:
            self._notifications.insert(0, record)
        return record

    def notify_parties(
        self,
        recipients: Iterable[str],
        actor_user_id: Optional[str],
        title: str,
        body: str,
        category: str,
        related_id: str,
        related_type: str,
    ) -> None:
        """Fan out one notification per recipient, skipping the actor.

        Runs after the triggering change has committed. A failure is logged
        and dropped; it must never reach the caller of the transition.
        """
        try:
            for user_id in sorted(set(recipients)):
                if not user_id or user_id == actor_user_id:
                    continue
                self.create(
                    user_id=user_id,
                    title=title,
                    body=body,
                    category=category,
                    related_id=related_id,
                    related_type=related_type,
                )
        except Exception:
            logger.exception("Notification delivery failed for %s %s", related_type, related_id)

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[:100]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None


notification_store = NotificationStore()

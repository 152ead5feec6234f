"""Exchange state machine.

Statuses and actions are closed enums and every legal move is listed in
``TRANSITIONS``; anything missing from the table is a state conflict.
Completion is not in the table: it fires from the AND-join of both
parties' confirmation flags inside :meth:`ExchangeLifecycle.confirm`.

All methods are pure. They take the current :class:`Exchange` and return
an updated copy, leaving persistence and serialization to the caller.
"""

from enum import Enum
from typing import Dict, Iterable, Literal, Optional, Tuple

from timeswap.errors import (
    ExchangeConflictError,
    ExchangeForbiddenError,
    ExchangeStateConflictError,
    ExchangeValidationError,
)
from timeswap.models import CommittedInterval, Exchange, ExchangeStatus
from timeswap.services.conflicts import ConflictDetector


class ExchangeAction(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    START = "start"
    CANCEL = "cancel"


Role = Literal["requestor", "provider"]

TERMINAL_STATUSES = frozenset({ExchangeStatus.DECLINED, ExchangeStatus.CANCELLED, ExchangeStatus.COMPLETED})
CONFIRMABLE_STATUSES = frozenset({ExchangeStatus.ACCEPTED, ExchangeStatus.ACTIVE})

# (current status, action) -> (next status, roles allowed to perform it)
TRANSITIONS: Dict[Tuple[ExchangeStatus, ExchangeAction], Tuple[ExchangeStatus, frozenset]] = {
    (ExchangeStatus.REQUESTED, ExchangeAction.ACCEPT): (ExchangeStatus.ACCEPTED, frozenset({"provider"})),
    (ExchangeStatus.REQUESTED, ExchangeAction.DECLINE): (ExchangeStatus.DECLINED, frozenset({"provider"})),
    (ExchangeStatus.REQUESTED, ExchangeAction.CANCEL): (ExchangeStatus.CANCELLED, frozenset({"requestor"})),
    (ExchangeStatus.ACCEPTED, ExchangeAction.CANCEL): (ExchangeStatus.CANCELLED, frozenset({"requestor", "provider"})),
    (ExchangeStatus.ACCEPTED, ExchangeAction.START): (ExchangeStatus.ACTIVE, frozenset({"provider"})),
}

# Roles that may ever perform an action, checked before the state lookup.
ACTION_ROLES: Dict[ExchangeAction, frozenset] = {
    ExchangeAction.ACCEPT: frozenset({"provider"}),
    ExchangeAction.DECLINE: frozenset({"provider"}),
    ExchangeAction.START: frozenset({"provider"}),
    ExchangeAction.CANCEL: frozenset({"requestor", "provider"}),
}


def is_terminal(status: ExchangeStatus) -> bool:
    return status in TERMINAL_STATUSES


def party_role(exchange: Exchange, actor_user_id: str) -> Role:
    if not actor_user_id:
        raise ExchangeValidationError("actor_user_id is required")
    if actor_user_id == exchange.provider_id:
        return "provider"
    if actor_user_id == exchange.requestor_id:
        return "requestor"
    raise ExchangeForbiddenError("Actor is not a party to this exchange")


class ExchangeLifecycle:
    def __init__(self, detector: Optional[ConflictDetector] = None) -> None:
        self.detector = detector or ConflictDetector()

    def _apply(self, exchange: Exchange, actor_user_id: str, action: ExchangeAction) -> Exchange:
        role = party_role(exchange, actor_user_id)
        if role not in ACTION_ROLES[action]:
            raise ExchangeForbiddenError(f"Only the {' or '.join(sorted(ACTION_ROLES[action]))} can {action.value} this exchange")
        if is_terminal(exchange.status):
            raise ExchangeStateConflictError(f"Exchange is already {exchange.status.value}")
        transition = TRANSITIONS.get((exchange.status, action))
        if transition is None:
            raise ExchangeStateConflictError(f"Cannot {action.value} an exchange that is {exchange.status.value}")
        next_status, allowed_roles = transition
        if role not in allowed_roles:
            raise ExchangeForbiddenError(
                f"Only the {' or '.join(sorted(allowed_roles))} can {action.value} a {exchange.status.value} exchange"
            )
        return exchange.model_copy(update={"status": next_status})

    def accept(self, exchange: Exchange, actor_user_id: str, committed: Iterable[CommittedInterval]) -> Exchange:
        updated = self._apply(exchange, actor_user_id, ExchangeAction.ACCEPT)
        result = self.detector.check(exchange.provider_id, exchange.interval, committed, ignore_ids=(exchange.id,))
        if result.conflict:
            raise ExchangeConflictError(
                "Requested interval overlaps a committed interval",
                conflicting_ids=tuple(result.conflicting_ids),
            )
        return updated

    def decline(self, exchange: Exchange, actor_user_id: str) -> Exchange:
        return self._apply(exchange, actor_user_id, ExchangeAction.DECLINE)

    def start(self, exchange: Exchange, actor_user_id: str) -> Exchange:
        return self._apply(exchange, actor_user_id, ExchangeAction.START)

    def cancel(self, exchange: Exchange, actor_user_id: str) -> Exchange:
        return self._apply(exchange, actor_user_id, ExchangeAction.CANCEL)

    def confirm(self, exchange: Exchange, actor_user_id: str) -> Tuple[Exchange, bool]:
        """Set the actor's completion flag.

        Returns the exchange and whether anything changed. Status moves to
        completed only when this call sets the second of the two flags.
        Confirming again, or confirming a completed exchange, is a no-op.
        """
        role = party_role(exchange, actor_user_id)
        if exchange.status == ExchangeStatus.COMPLETED:
            return exchange, False
        if is_terminal(exchange.status):
            raise ExchangeStateConflictError(f"Exchange is already {exchange.status.value}")
        if exchange.status not in CONFIRMABLE_STATUSES:
            raise ExchangeStateConflictError("Exchange must be accepted before completion can be confirmed")

        flag = "requestor_confirmed" if role == "requestor" else "provider_confirmed"
        if getattr(exchange, flag):
            return exchange, False
        update: Dict[str, object] = {flag: True}
        other_flag = "provider_confirmed" if role == "requestor" else "requestor_confirmed"
        if getattr(exchange, other_flag):
            update["status"] = ExchangeStatus.COMPLETED
        return exchange.model_copy(update=update), True

import os
import sys
from datetime import datetime

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from timeswap.errors import (
    ExchangeConflictError,
    ExchangeForbiddenError,
    ExchangeStateConflictError,
    ExchangeValidationError,
)
from timeswap.models import CommittedInterval, Exchange, ExchangeStatus, Interval
from timeswap.services.lifecycle import ExchangeLifecycle, is_terminal, party_role

REQUESTOR = "user_a"
PROVIDER = "user_b"


def _exchange(status: ExchangeStatus = ExchangeStatus.REQUESTED, **overrides) -> Exchange:
    values = dict(
        id="ex_1",
        requestor_id=REQUESTOR,
        provider_id=PROVIDER,
        title="Guitar lesson",
        interval=Interval(start=datetime(2026, 6, 15, 10), end=datetime(2026, 6, 15, 11)),
        duration_minutes=60,
        status=status,
    )
    values.update(overrides)
    return Exchange(**values)


def test_happy_path_to_completion():
    lifecycle = ExchangeLifecycle()
    exchange = lifecycle.accept(_exchange(), PROVIDER, committed=[])
    assert exchange.status == ExchangeStatus.ACCEPTED

    exchange = lifecycle.start(exchange, PROVIDER)
    assert exchange.status == ExchangeStatus.ACTIVE

    exchange, changed = lifecycle.confirm(exchange, REQUESTOR)
    assert changed
    assert exchange.requestor_confirmed and not exchange.provider_confirmed
    assert exchange.status == ExchangeStatus.ACTIVE

    exchange, changed = lifecycle.confirm(exchange, PROVIDER)
    assert changed
    assert exchange.status == ExchangeStatus.COMPLETED


def test_completion_from_accepted_without_start():
    lifecycle = ExchangeLifecycle()
    exchange = _exchange(ExchangeStatus.ACCEPTED)
    exchange, _ = lifecycle.confirm(exchange, PROVIDER)
    exchange, _ = lifecycle.confirm(exchange, REQUESTOR)
    assert exchange.status == ExchangeStatus.COMPLETED


def test_repeat_confirmation_is_a_no_op():
    lifecycle = ExchangeLifecycle()
    exchange, _ = lifecycle.confirm(_exchange(ExchangeStatus.ACCEPTED), REQUESTOR)

    again, changed = lifecycle.confirm(exchange, REQUESTOR)

    assert not changed
    assert again == exchange
    assert again.status == ExchangeStatus.ACCEPTED


def test_confirming_a_completed_exchange_is_a_no_op():
    completed = _exchange(ExchangeStatus.COMPLETED, requestor_confirmed=True, provider_confirmed=True)

    result, changed = ExchangeLifecycle().confirm(completed, PROVIDER)

    assert not changed
    assert result.status == ExchangeStatus.COMPLETED


def test_confirmation_requires_acceptance_first():
    with pytest.raises(ExchangeStateConflictError):
        ExchangeLifecycle().confirm(_exchange(), REQUESTOR)


@pytest.mark.parametrize("status", [ExchangeStatus.DECLINED, ExchangeStatus.CANCELLED])
def test_confirming_a_dead_exchange_is_a_state_conflict(status):
    with pytest.raises(ExchangeStateConflictError):
        ExchangeLifecycle().confirm(_exchange(status), REQUESTOR)


def test_only_the_provider_may_accept_decline_or_start():
    lifecycle = ExchangeLifecycle()
    with pytest.raises(ExchangeForbiddenError):
        lifecycle.accept(_exchange(), REQUESTOR, committed=[])
    with pytest.raises(ExchangeForbiddenError):
        lifecycle.decline(_exchange(), REQUESTOR)
    with pytest.raises(ExchangeForbiddenError):
        lifecycle.start(_exchange(ExchangeStatus.ACCEPTED), REQUESTOR)


def test_only_the_requestor_may_withdraw_a_request():
    lifecycle = ExchangeLifecycle()
    with pytest.raises(ExchangeForbiddenError):
        lifecycle.cancel(_exchange(), PROVIDER)
    assert lifecycle.cancel(_exchange(), REQUESTOR).status == ExchangeStatus.CANCELLED


def test_either_party_may_cancel_an_accepted_exchange():
    lifecycle = ExchangeLifecycle()
    accepted = _exchange(ExchangeStatus.ACCEPTED, requestor_confirmed=True)

    for actor in (REQUESTOR, PROVIDER):
        cancelled = lifecycle.cancel(accepted, actor)
        assert cancelled.status == ExchangeStatus.CANCELLED
        assert cancelled.requestor_confirmed


def test_non_party_is_forbidden_everywhere():
    lifecycle = ExchangeLifecycle()
    with pytest.raises(ExchangeForbiddenError):
        lifecycle.accept(_exchange(), "stranger", committed=[])
    with pytest.raises(ExchangeForbiddenError):
        lifecycle.cancel(_exchange(), "stranger")
    with pytest.raises(ExchangeForbiddenError):
        lifecycle.confirm(_exchange(ExchangeStatus.ACCEPTED), "stranger")


def test_missing_actor_is_a_validation_error():
    with pytest.raises(ExchangeValidationError):
        party_role(_exchange(), "")


@pytest.mark.parametrize("status", [ExchangeStatus.DECLINED, ExchangeStatus.CANCELLED, ExchangeStatus.COMPLETED])
def test_terminal_exchanges_are_immutable(status):
    lifecycle = ExchangeLifecycle()
    exchange = _exchange(status)
    assert is_terminal(status)
    with pytest.raises(ExchangeStateConflictError):
        lifecycle.accept(exchange, PROVIDER, committed=[])
    with pytest.raises(ExchangeStateConflictError):
        lifecycle.decline(exchange, PROVIDER)
    with pytest.raises(ExchangeStateConflictError):
        lifecycle.start(exchange, PROVIDER)
    with pytest.raises(ExchangeStateConflictError):
        lifecycle.cancel(exchange, REQUESTOR)


def test_transitions_missing_from_the_table_are_state_conflicts():
    lifecycle = ExchangeLifecycle()
    with pytest.raises(ExchangeStateConflictError):
        lifecycle.start(_exchange(), PROVIDER)
    with pytest.raises(ExchangeStateConflictError):
        lifecycle.accept(_exchange(ExchangeStatus.ACCEPTED), PROVIDER, committed=[])
    with pytest.raises(ExchangeStateConflictError):
        lifecycle.cancel(_exchange(ExchangeStatus.ACTIVE), REQUESTOR)


def test_accept_rejects_overlap_with_committed_interval():
    lifecycle = ExchangeLifecycle()
    committed = [
        CommittedInterval(
            id="ex_other",
            kind="exchange",
            subject_id=PROVIDER,
            interval=Interval(start=datetime(2026, 6, 15, 10, 30), end=datetime(2026, 6, 15, 12)),
            status="accepted",
        ),
        CommittedInterval(
            id="ex_1",
            kind="exchange",
            subject_id=PROVIDER,
            interval=Interval(start=datetime(2026, 6, 15, 10), end=datetime(2026, 6, 15, 11)),
            status="accepted",
        ),
    ]

    with pytest.raises(ExchangeConflictError) as excinfo:
        lifecycle.accept(_exchange(), PROVIDER, committed)

    assert excinfo.value.conflicting_ids == ("ex_other",)


def test_lifecycle_methods_do_not_mutate_their_input():
    original = _exchange()
    ExchangeLifecycle().accept(original, PROVIDER, committed=[])
    assert original.status == ExchangeStatus.REQUESTED

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Header, Query

from timeswap.auth import assert_actor_authorized
from timeswap.errors import ExchangeError
from timeswap.models import (
    AvailabilityCheck,
    BlockedPeriod,
    BlockedPeriodCreate,
    BlockedPeriodUpdate,
    CommittedInterval,
    ConflictCheckRequest,
    ConflictResult,
    DateOverride,
    DateOverrideUpsert,
    DayAvailability,
    Interval,
    WeeklyRule,
    WeeklyRuleCreate,
    WeeklyRuleUpdate,
)
from timeswap.routers.http_errors import raise_http_error
from timeswap.services.exchange_store import exchange_store

router = APIRouter(prefix="/availability", tags=["availability"])


@router.get("/{subject_id}/slots", response_model=list[DayAvailability])
def resolve_availability(
    subject_id: str,
    date_from: date = Query(...),
    date_to: date = Query(...),
):
    try:
        return exchange_store.resolve_availability(subject_id=subject_id, date_from=date_from, date_to=date_to)
    except ExchangeError as exc:
        raise_http_error(exc)


@router.get("/{subject_id}/check", response_model=AvailabilityCheck)
def check_availability(
    subject_id: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
):
    try:
        return exchange_store.check_availability(subject_id=subject_id, interval=Interval(start=start, end=end))
    except ExchangeError as exc:
        raise_http_error(exc)


@router.post("/{subject_id}/conflicts", response_model=ConflictResult)
def check_conflict(subject_id: str, request: ConflictCheckRequest):
    try:
        return exchange_store.check_conflict(subject_id=subject_id, interval=request.interval)
    except ExchangeError as exc:
        raise_http_error(exc)


@router.get("/{subject_id}/committed", response_model=list[CommittedInterval])
def list_committed_intervals(subject_id: str, include_released: bool = Query(default=False)):
    return exchange_store.list_committed_intervals(subject_id=subject_id, include_released=include_released)


@router.get("/{subject_id}/weekly", response_model=list[WeeklyRule])
def list_weekly_rules(subject_id: str):
    return exchange_store.list_weekly_rules(subject_id)


@router.post("/{subject_id}/weekly", response_model=WeeklyRule)
def add_weekly_rule(
    subject_id: str,
    request: WeeklyRuleCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return exchange_store.add_weekly_rule(subject_id=subject_id, request=request)
    except ExchangeError as exc:
        raise_http_error(exc)


@router.patch("/{subject_id}/weekly/{rule_id}", response_model=WeeklyRule)
def update_weekly_rule(
    subject_id: str,
    rule_id: str,
    request: WeeklyRuleUpdate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return exchange_store.update_weekly_rule(subject_id=subject_id, rule_id=rule_id, request=request)
    except ExchangeError as exc:
        raise_http_error(exc)


@router.delete("/{subject_id}/weekly/{rule_id}")
def delete_weekly_rule(
    subject_id: str,
    rule_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        exchange_store.delete_weekly_rule(subject_id=subject_id, rule_id=rule_id, actor_user_id=actor_user_id)
        return {"status": "deleted", "rule_id": rule_id}
    except ExchangeError as exc:
        raise_http_error(exc)


@router.get("/{subject_id}/overrides", response_model=list[DateOverride])
def list_date_overrides(
    subject_id: str,
    date_from: Optional[date] = Query(default=None),
    date_to: Optional[date] = Query(default=None),
):
    return exchange_store.list_date_overrides(subject_id=subject_id, date_from=date_from, date_to=date_to)


@router.put("/{subject_id}/overrides", response_model=DateOverride)
def set_date_override(
    subject_id: str,
    request: DateOverrideUpsert,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return exchange_store.set_date_override(subject_id=subject_id, request=request)
    except ExchangeError as exc:
        raise_http_error(exc)


@router.delete("/{subject_id}/overrides/{override_date}")
def delete_date_override(
    subject_id: str,
    override_date: date,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        exchange_store.delete_date_override(subject_id=subject_id, override_date=override_date, actor_user_id=actor_user_id)
        return {"status": "deleted", "date": override_date.isoformat()}
    except ExchangeError as exc:
        raise_http_error(exc)


@router.get("/{subject_id}/blocks", response_model=list[BlockedPeriod])
def list_blocked_periods(subject_id: str):
    return exchange_store.list_blocked_periods(subject_id)


@router.post("/{subject_id}/blocks", response_model=BlockedPeriod)
def add_blocked_period(
    subject_id: str,
    request: BlockedPeriodCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return exchange_store.add_blocked_period(subject_id=subject_id, request=request)
    except ExchangeError as exc:
        raise_http_error(exc)


@router.patch("/{subject_id}/blocks/{block_id}", response_model=BlockedPeriod)
def update_blocked_period(
    subject_id: str,
    block_id: str,
    request: BlockedPeriodUpdate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return exchange_store.update_blocked_period(subject_id=subject_id, block_id=block_id, request=request)
    except ExchangeError as exc:
        raise_http_error(exc)


@router.delete("/{subject_id}/blocks/{block_id}")
def delete_blocked_period(
    subject_id: str,
    block_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        exchange_store.delete_blocked_period(subject_id=subject_id, block_id=block_id, actor_user_id=actor_user_id)
        return {"status": "deleted", "block_id": block_id}
    except ExchangeError as exc:
        raise_http_error(exc)

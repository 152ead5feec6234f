from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Header, Query

from timeswap.auth import assert_actor_authorized
from timeswap.errors import ExchangeError
from timeswap.models import (
    Dispute,
    DisputeCreateRequest,
    Exchange,
    ExchangeActorRequest,
    ExchangeDecisionRequest,
    ExchangeHistoryEntry,
    ExchangeRequestCreate,
)
from timeswap.routers.http_errors import raise_http_error
from timeswap.services.exchange_store import exchange_store
from timeswap.services.notification_store import notification_store

router = APIRouter(prefix="/exchanges", tags=["exchanges"])


def _notify_counterparty(
    background_tasks: BackgroundTasks,
    exchange: Exchange,
    actor_user_id: str,
    title: str,
    body: str,
) -> None:
    background_tasks.add_task(
        notification_store.notify_parties,
        recipients=[exchange.requestor_id, exchange.provider_id],
        actor_user_id=actor_user_id,
        title=title,
        body=body,
        category="exchange",
        related_id=exchange.id,
        related_type="exchange",
    )


@router.post("", response_model=Exchange, status_code=201)
def request_exchange(
    request: ExchangeRequestCreate,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.requestor_id, authorization=authorization)
    try:
        exchange = exchange_store.request_exchange(request)
    except ExchangeError as exc:
        raise_http_error(exc)
    _notify_counterparty(
        background_tasks,
        exchange,
        request.requestor_id,
        title="New exchange request",
        body=f"{exchange.requestor_id} requested \"{exchange.title}\" on {exchange.interval.start:%Y-%m-%d %H:%M}",
    )
    return exchange


@router.get("", response_model=list[Exchange])
def list_exchanges(
    user_id: Optional[str] = Query(default=None),
    role: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
):
    try:
        return exchange_store.list_exchanges(user_id=user_id, role=role, status=status)
    except ExchangeError as exc:
        raise_http_error(exc)


@router.get("/{exchange_id}", response_model=Exchange)
def get_exchange(
    exchange_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return exchange_store.get_exchange(exchange_id, actor_user_id=user_id)
    except ExchangeError as exc:
        raise_http_error(exc)


@router.get("/{exchange_id}/history", response_model=list[ExchangeHistoryEntry])
def exchange_history(
    exchange_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return exchange_store.list_exchange_history(exchange_id, actor_user_id=user_id)
    except ExchangeError as exc:
        raise_http_error(exc)


@router.post("/{exchange_id}/respond", response_model=Exchange)
def respond_to_exchange(
    exchange_id: str,
    request: ExchangeDecisionRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        exchange = exchange_store.respond_to_exchange(exchange_id, request.actor_user_id, request.decision)
    except ExchangeError as exc:
        raise_http_error(exc)
    verb = "accepted" if request.decision == "accept" else "declined"
    _notify_counterparty(
        background_tasks,
        exchange,
        request.actor_user_id,
        title=f"Exchange request {verb}",
        body=f"Your exchange request \"{exchange.title}\" was {verb}.",
    )
    return exchange


@router.post("/{exchange_id}/start", response_model=Exchange)
def start_exchange(
    exchange_id: str,
    request: ExchangeActorRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        exchange = exchange_store.start_exchange(exchange_id, request.actor_user_id)
    except ExchangeError as exc:
        raise_http_error(exc)
    _notify_counterparty(
        background_tasks,
        exchange,
        request.actor_user_id,
        title="Exchange started",
        body=f"\"{exchange.title}\" is now active.",
    )
    return exchange


@router.post("/{exchange_id}/cancel", response_model=Exchange)
def cancel_exchange(
    exchange_id: str,
    request: ExchangeActorRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        exchange = exchange_store.cancel_exchange(exchange_id, request.actor_user_id, note=request.note)
    except ExchangeError as exc:
        raise_http_error(exc)
    _notify_counterparty(
        background_tasks,
        exchange,
        request.actor_user_id,
        title="Exchange cancelled",
        body=f"\"{exchange.title}\" was cancelled by {request.actor_user_id}.",
    )
    return exchange


@router.post("/{exchange_id}/confirm", response_model=Exchange)
def confirm_completion(
    exchange_id: str,
    request: ExchangeActorRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        exchange, changed = exchange_store.confirm_completion(exchange_id, request.actor_user_id)
    except ExchangeError as exc:
        raise_http_error(exc)
    if not changed:
        return exchange
    if exchange.status.value == "completed":
        title, body = "Exchange completed", f"Both parties confirmed \"{exchange.title}\". Leave a review of your experience."
    else:
        title, body = "Completion confirmed", f"{request.actor_user_id} confirmed completion of \"{exchange.title}\"."
    _notify_counterparty(background_tasks, exchange, request.actor_user_id, title=title, body=body)
    return exchange


@router.post("/{exchange_id}/disputes", response_model=Dispute, status_code=201)
def file_dispute(
    exchange_id: str,
    request: DisputeCreateRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.reporter_id, authorization=authorization)
    try:
        dispute = exchange_store.file_dispute(exchange_id, request)
    except ExchangeError as exc:
        raise_http_error(exc)
    background_tasks.add_task(
        notification_store.notify_parties,
        recipients=sorted(exchange_store.admin_user_ids or ()),
        actor_user_id=request.reporter_id,
        title="New disputed exchange",
        body="A new exchange dispute has been reported and requires admin review.",
        category="dispute",
        related_id=dispute.id,
        related_type="dispute",
    )
    return dispute

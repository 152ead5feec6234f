from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Header, Query

from timeswap.auth import assert_actor_authorized
from timeswap.errors import ExchangeError
from timeswap.models import Dispute, DisputeResolveRequest
from timeswap.routers.http_errors import raise_http_error
from timeswap.services.exchange_store import exchange_store
from timeswap.services.notification_store import notification_store

router = APIRouter(prefix="/admin/disputes", tags=["disputes"])


@router.get("", response_model=list[Dispute])
def list_disputes(
    user_id: str = Query(...),
    status: Optional[str] = Query(default=None),
    exchange_id: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return exchange_store.list_disputes(actor_user_id=user_id, status=status, exchange_id=exchange_id)
    except ExchangeError as exc:
        raise_http_error(exc)


@router.get("/{dispute_id}", response_model=Dispute)
def get_dispute(
    dispute_id: str,
    user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    try:
        return exchange_store.get_dispute(dispute_id, actor_user_id=user_id)
    except ExchangeError as exc:
        raise_http_error(exc)


@router.post("/{dispute_id}/resolve", response_model=Dispute)
def resolve_dispute(
    dispute_id: str,
    request: DisputeResolveRequest,
    background_tasks: BackgroundTasks,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.admin_user_id, authorization=authorization)
    try:
        dispute = exchange_store.resolve_dispute(dispute_id, request)
    except ExchangeError as exc:
        raise_http_error(exc)
    background_tasks.add_task(
        notification_store.notify_parties,
        recipients=[dispute.reporter_id],
        actor_user_id=request.admin_user_id,
        title="Dispute resolution",
        body=f"Your reported dispute for exchange {dispute.exchange_id} has been resolved.",
        category="dispute",
        related_id=dispute.id,
        related_type="dispute",
    )
    return dispute

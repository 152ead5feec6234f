from fastapi import APIRouter, Depends, HTTPException

from timeswap.auth import DEMO_PASSWORD, create_access_token, require_authenticated_user
from timeswap.models import AuthLoginRequest, AuthLoginResponse, AuthMeResponse
from timeswap.services.exchange_store import exchange_store

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest):
    user_id = payload.user_id.strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    if payload.password != DEMO_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token, expires_at = create_access_token(user_id=user_id)
    return AuthLoginResponse(access_token=token, user_id=user_id, expires_at=expires_at)


@router.get("/me", response_model=AuthMeResponse)
def me(user_id: str = Depends(require_authenticated_user)):
    return AuthMeResponse(user_id=user_id, is_admin=exchange_store.disputes.is_admin(user_id))

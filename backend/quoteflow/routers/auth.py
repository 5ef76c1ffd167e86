from fastapi import APIRouter, Depends, HTTPException

from quoteflow.auth import DEMO_PASSWORD, TokenClaims, create_access_token, require_authenticated_user
from quoteflow.models import AuthLoginRequest, AuthLoginResponse, AuthMeResponse
from quoteflow.services.directory_store import directory_store
from quoteflow.services.errors import NotFoundError

router = APIRouter(prefix="/auth", tags=["auth"])

INVALID_CREDENTIALS = {"kind": "unauthenticated", "message": "Invalid credentials"}


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest):
    user_id = payload.user_id.strip()
    if not user_id:
        raise HTTPException(status_code=400, detail={"kind": "invalid_input", "message": "user_id is required"})
    if payload.password != DEMO_PASSWORD:
        raise HTTPException(status_code=401, detail=INVALID_CREDENTIALS)
    try:
        user = directory_store.resolve_user(user_id)
    except NotFoundError:
        raise HTTPException(status_code=401, detail=INVALID_CREDENTIALS)
    token, expires_at = create_access_token(user.id, user.role)
    return AuthLoginResponse(access_token=token, user_id=user.id, role=user.role, expires_at=expires_at)


@router.get("/me", response_model=AuthMeResponse)
def me(claims: TokenClaims = Depends(require_authenticated_user)):
    return AuthMeResponse(user_id=claims.user_id, role=claims.role)

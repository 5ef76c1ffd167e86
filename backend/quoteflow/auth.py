import base64
import hashlib
import hmac
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException, status

from quoteflow.services.directory_store import directory_store
from quoteflow.services.errors import NotFoundError
from quoteflow.services.state_machine import Caller

logger = logging.getLogger(__name__)


def _read_positive_int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r; using %d", name, raw, default)
        return default
    return value if value > 0 else default


TOKEN_TTL_HOURS = _read_positive_int_env("AUTH_TOKEN_TTL_HOURS", 24)
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "false").lower() in {"1", "true", "yes"}
DEMO_PASSWORD = os.getenv("AUTH_DEMO_PASSWORD", "quoteflow-demo")
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")

UNKNOWN_ROLE = "unknown"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    role: str
    expires_at: int


def _encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _signature(payload: bytes) -> bytes:
    return hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()


def create_access_token(user_id: str, role: str) -> tuple[str, str]:
    """Issue ``<payload>.<signature>`` where the payload is ``user_id|role|expiry``."""
    expires = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = "|".join([user_id, role, str(int(expires.timestamp()))]).encode("utf-8")
    return f"{_encode(payload)}.{_encode(_signature(payload))}", expires.isoformat()


def verify_access_token(token: str) -> Optional[TokenClaims]:
    try:
        payload_part, signature_part = token.split(".", 1)
        payload = _decode(payload_part)
        signature = _decode(signature_part)
    except ValueError:
        return None
    if not hmac.compare_digest(signature, _signature(payload)):
        return None
    try:
        user_id, role, expiry = payload.decode("utf-8").split("|")
        claims = TokenClaims(user_id=user_id, role=role, expires_at=int(expiry))
    except (UnicodeDecodeError, ValueError):
        return None
    if claims.expires_at < datetime.now(timezone.utc).timestamp():
        return None
    return claims


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    scheme, _, credentials = (authorization or "").partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credentials.strip() or None


def resolve_request_claims(authorization: Optional[str]) -> Optional[TokenClaims]:
    token = parse_bearer_token(authorization)
    return verify_access_token(token) if token else None


def require_authenticated_user(authorization: Optional[str] = Header(default=None)) -> TokenClaims:
    claims = resolve_request_claims(authorization)
    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"kind": "unauthenticated", "message": "Invalid or missing bearer token"},
        )
    return claims


def assert_actor_authorized(
    actor_user_id: str,
    authorization: Optional[str] = Header(default=None),
) -> Optional[TokenClaims]:
    """Check that the bearer token, when present, speaks for ``actor_user_id``.

    Anonymous calls pass unless ``AUTH_REQUIRED`` is set.
    """
    claims = resolve_request_claims(authorization)
    if claims is None:
        if AUTH_REQUIRED:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={"kind": "unauthenticated", "message": "Authentication required"},
            )
        return None
    if claims.user_id != actor_user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"kind": "unauthorized", "message": "Token user does not match actor user"},
        )
    return claims


def current_caller(actor_user_id: str, authorization: Optional[str] = None) -> Caller:
    """Resolve the capability handed to lifecycle calls.

    A signed token supplies the role directly. Anonymous callers are looked
    up in the directory; unknown users still get a caller (with an
    ``unknown`` role) so the lifecycle, not the transport, decides how to
    reject them.
    """
    claims = assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    if claims is not None:
        return Caller(user_id=claims.user_id, role=claims.role)
    try:
        user = directory_store.resolve_user(actor_user_id)
    except NotFoundError:
        return Caller(user_id=actor_user_id, role=UNKNOWN_ROLE)
    return Caller(user_id=user.id, role=user.role)

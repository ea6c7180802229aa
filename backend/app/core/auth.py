"""Bearer-token authentication for receipt owners and reviewers.

Tokens are Supabase-issued JWTs, verified with the shared HS256 secret or
the project's ES256 JWKS. Only two roles exist: ``USER`` owns receipts and
``ADMIN`` reviews everyone's.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

import jwt
from fastapi import Depends, Header
from jwt import PyJWKClient

from app.core.config import Settings, get_settings
from app.core.errors import Forbidden, ReceiptError, Unauthenticated

logger = logging.getLogger(__name__)

USER = "USER"
ADMIN = "ADMIN"
ALLOWED_ROLES = {USER, ADMIN}

JWKS_CACHE_SECONDS = 3600

_jwks_clients: dict[str, PyJWKClient] = {}
_jwks_lock = threading.Lock()


@dataclass
class CurrentUser:
    id: str
    role: str
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN

    def owns(self, owner_id) -> bool:
        return owner_id is not None and str(owner_id) == str(self.id)


def _jwks_client(settings: Settings) -> Optional[PyJWKClient]:
    base = (settings.supabase_url or "").rstrip("/")
    if not base:
        return None
    url = f"{base}/auth/v1/.well-known/jwks.json"
    with _jwks_lock:
        client = _jwks_clients.get(url)
        if client is None:
            client = PyJWKClient(url, cache_keys=True, lifespan=JWKS_CACHE_SECONDS)
            _jwks_clients[url] = client
    return client


def _decode_kwargs(settings: Settings) -> dict[str, Any]:
    audience = (settings.supabase_jwt_audience or "").strip()
    if audience:
        return {"audience": audience, "options": {"verify_aud": True}}
    return {"options": {"verify_aud": False}}


def _verify_hs256(token: str, settings: Settings) -> Optional[dict]:
    if not settings.supabase_jwt_secret:
        return None
    try:
        return jwt.decode(token, settings.supabase_jwt_secret, algorithms=["HS256"], **_decode_kwargs(settings))
    except jwt.InvalidTokenError:
        return None


def _verify_es256(token: str, settings: Settings) -> Optional[dict]:
    client = _jwks_client(settings)
    if client is None:
        return None
    try:
        key = client.get_signing_key_from_jwt(token).key
        return jwt.decode(token, key, algorithms=["ES256"], **_decode_kwargs(settings))
    except (jwt.InvalidTokenError, jwt.PyJWKClientError) as exc:
        logger.debug("ES256 verification failed: %s", exc)
        return None


def _verifiers(alg: str) -> list[Callable[[str, Settings], Optional[dict]]]:
    # Try the scheme the header names first; JWKS is a network call.
    if alg == "ES256":
        return [_verify_es256, _verify_hs256]
    return [_verify_hs256, _verify_es256]


def _role_from_claims(claims: dict) -> Optional[str]:
    # app_metadata is server-managed; user_metadata is user-editable and never trusted.
    raw = (claims.get("app_metadata") or {}).get("role")
    if raw is None:
        return USER
    role = str(raw).strip().upper()
    return role if role in ALLOWED_ROLES else None


def get_current_user(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> CurrentUser:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthenticated("Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()

    settings = get_settings()
    if not settings.supabase_jwt_secret and not settings.supabase_url:
        raise ReceiptError("Token verification is not configured (SUPABASE_JWT_SECRET or SUPABASE_URL)")

    try:
        alg = jwt.get_unverified_header(token).get("alg", "")
    except jwt.DecodeError:
        raise Unauthenticated("Invalid token")

    claims = None
    for verify in _verifiers(alg):
        claims = verify(token, settings)
        if claims is not None:
            break
    if claims is None or not claims.get("sub"):
        raise Unauthenticated("Invalid token")

    role = _role_from_claims(claims)
    if role is None:
        raise Forbidden("Unsupported role")
    return CurrentUser(id=claims["sub"], role=role, email=claims.get("email"))


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise Forbidden("Admin access required")
    return user

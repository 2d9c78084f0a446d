"""OIDC bearer-token authentication.

The identity provider issues RS256 JWTs; keys come from its JWKS endpoint
(cached, refreshed once on an unknown kid or a bad signature). The token
subject is mapped to a local users row that carries the marketplace role.

Provides:
- verify_token(): validate a JWT and return its subject
- get_current_user(): FastAPI dependency resolving CurrentUser{id, role}
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Any

import jwt
import requests
from fastapi import Depends, HTTPException, Request

from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import safe_log_context

logger = get_logger(__name__)

_jwks_cache: dict[str, Any] | None = None
_jwks_cache_time: float = 0
_jwks_cache_lock = threading.Lock()
_JWKS_CACHE_TTL = 600  # seconds

_INVALID = "Invalid token"


@dataclass
class CurrentUser:
    """Authenticated caller."""

    id: int
    external_subject: str
    email: str | None
    role: str

    @property
    def is_staff(self) -> bool:
        return self.role in ("staff", "admin")

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def _get_settings() -> dict[str, Any]:
    raw_parties = os.environ.get("OIDC_AUTHORIZED_PARTIES", "")
    parties = [p.strip() for p in raw_parties.split(",") if p.strip()] or None
    return {
        "issuer": os.environ.get("OIDC_ISSUER"),
        "audience": os.environ.get("OIDC_AUDIENCE"),
        "jwks_url": os.environ.get("OIDC_JWKS_URL"),
        "authorized_parties": parties,
    }


def _fetch_jwks(jwks_url: str) -> dict[str, Any]:
    resp = requests.get(jwks_url, timeout=10)
    resp.raise_for_status()
    return resp.json()


def _get_jwks(jwks_url: str, force_refresh: bool = False) -> dict[str, Any]:
    global _jwks_cache, _jwks_cache_time

    with _jwks_cache_lock:
        now = time.time()
        fresh = _jwks_cache is not None and (now - _jwks_cache_time) < _JWKS_CACHE_TTL
        if fresh and not force_refresh:
            return _jwks_cache

        try:
            _jwks_cache = _fetch_jwks(jwks_url)
        except requests.RequestException:
            logger.warning(
                "jwks fetch failed",
                extra={"extra_fields": safe_log_context(reason="jwks_unavailable")},
            )
            raise HTTPException(status_code=503, detail="Auth temporarily unavailable")
        _jwks_cache_time = now
        return _jwks_cache


def _find_key(jwks: dict[str, Any], kid: str) -> dict[str, Any] | None:
    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key
    return None


def _decode(token: str, jwk_data: dict[str, Any], issuer: str, audience: str) -> dict[str, Any]:
    try:
        public_key = jwt.algorithms.RSAAlgorithm.from_jwk(jwk_data)
    except (ValueError, TypeError, KeyError):
        raise HTTPException(status_code=401, detail=_INVALID)

    return jwt.decode(
        token,
        public_key,
        algorithms=["RS256"],
        issuer=issuer,
        audience=audience,
        options={"require": ["exp", "iss", "aud", "sub"]},
    )


def verify_token(token: str) -> str:
    """Verify a JWT and return its subject claim.

    Raises:
        HTTPException: 401 for any invalid/expired token or missing OIDC
            configuration, 503 when the JWKS endpoint is unreachable.
    """
    settings = _get_settings()
    issuer = settings["issuer"]
    audience = settings["audience"]
    jwks_url = settings["jwks_url"]

    if not issuer or not audience or not jwks_url:
        raise HTTPException(status_code=401, detail="OIDC not configured")

    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except jwt.exceptions.DecodeError:
        raise HTTPException(status_code=401, detail=_INVALID)
    if not kid:
        raise HTTPException(status_code=401, detail=_INVALID)

    key_data = _find_key(_get_jwks(jwks_url), kid)
    if key_data is None:
        key_data = _find_key(_get_jwks(jwks_url, force_refresh=True), kid)
    if key_data is None:
        raise HTTPException(status_code=401, detail=_INVALID)

    try:
        payload = _decode(token, key_data, issuer, audience)
    except jwt.InvalidSignatureError:
        # key may have rotated under the same kid
        key_data = _find_key(_get_jwks(jwks_url, force_refresh=True), kid)
        if key_data is None:
            raise HTTPException(status_code=401, detail=_INVALID)
        try:
            payload = _decode(token, key_data, issuer, audience)
        except jwt.InvalidTokenError:
            raise HTTPException(status_code=401, detail=_INVALID)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail=_INVALID)

    parties = settings["authorized_parties"]
    if parties and "azp" in payload and payload["azp"] not in parties:
        raise HTTPException(status_code=401, detail=_INVALID)

    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail=_INVALID)
    return sub


def _extract_bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    return parts[1]


def _get_user_from_db(external_subject: str) -> CurrentUser | None:
    from rainbowpay.infra.db import txn

    with txn() as cur:
        cur.execute(
            "SELECT id, external_subject, email, role FROM users WHERE external_subject = %s",
            (external_subject,),
        )
        row = cur.fetchone()
    if row is None:
        return None
    return CurrentUser(id=int(row[0]), external_subject=row[1], email=row[2], role=row[3])


def get_current_user(request: Request) -> CurrentUser:
    """FastAPI dependency: the authenticated caller.

    Raises:
        HTTPException: 401 if the token is missing/invalid, 403 if the
            subject has no local user.
    """
    sub = verify_token(_extract_bearer_token(request))
    user = _get_user_from_db(sub)
    if user is None:
        raise HTTPException(status_code=403, detail="User not found")
    return user


CurrentUserDep = Depends(get_current_user)

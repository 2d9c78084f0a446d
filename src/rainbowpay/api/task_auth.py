"""Authentication for worker task endpoints.

Tasks arrive from Cloud Tasks with a Google-signed OIDC token. In local
development (TASKS_OIDC_AUDIENCE == "rainbowpay-tasks-local") the
X-Internal-Task-Secret header is accepted instead.
"""

from __future__ import annotations

import base64
import json
import os

from fastapi import Request
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import safe_log_context

logger = get_logger(__name__)

_LOCAL_DEV_AUDIENCE = "rainbowpay-tasks-local"


def _unverified_claim(token: str, claim: str) -> str | None:
    """Read one claim without verification, for failure diagnostics only."""
    try:
        segment = token.split(".")[1]
        segment += "=" * (-len(segment) % 4)
        value = json.loads(base64.urlsafe_b64decode(segment)).get(claim)
    except (IndexError, ValueError, AttributeError):
        return None
    return str(value) if value is not None else None


def extract_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header[len("Bearer "):]


def verify_task_oidc(token: str) -> bool:
    """Verify a Cloud Tasks OIDC token.

    Fails closed when TASKS_OIDC_AUDIENCE is unset. When
    TASKS_OIDC_SERVICE_ACCOUNT is set the token email must match it.
    """
    if not token:
        return False

    audience = os.environ.get("TASKS_OIDC_AUDIENCE")
    if not audience:
        logger.error(
            "TASKS_OIDC_AUDIENCE not configured; rejecting task",
            extra={"extra_fields": safe_log_context(reason="missing_audience_env")},
        )
        return False

    try:
        claims = id_token.verify_oauth2_token(token, google_requests.Request(), audience=audience)
    except ValueError as e:
        logger.warning(
            "task OIDC verification failed",
            extra={
                "extra_fields": safe_log_context(
                    error=str(e),
                    expected_audience=audience,
                    received_audience=_unverified_claim(token, "aud"),
                )
            },
        )
        return False

    expected_email = os.environ.get("TASKS_OIDC_SERVICE_ACCOUNT")
    if expected_email and claims.get("email", "") != expected_email:
        logger.warning(
            "task OIDC service account mismatch",
            extra={"extra_fields": safe_log_context(reason="service_account_mismatch")},
        )
        return False
    return True


def verify_task_auth(request: Request) -> bool:
    """True if the request carries valid task credentials."""
    if os.environ.get("TASKS_OIDC_AUDIENCE", "") == _LOCAL_DEV_AUDIENCE:
        internal_secret = os.environ.get("INTERNAL_TASK_SECRET", "")
        request_secret = request.headers.get("X-Internal-Task-Secret", "")
        if internal_secret and request_secret == internal_secret:
            return True

    token = extract_bearer_token(request)
    if not token:
        logger.warning(
            "task auth failed: missing bearer token",
            extra={"extra_fields": safe_log_context(reason="missing_bearer_token")},
        )
        return False
    return verify_task_oidc(token)

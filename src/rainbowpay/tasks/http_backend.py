"""HTTP backend for tasks: direct POST to the target service.

Used locally and in staging where services share a network.
"""

import os
from datetime import datetime

import requests
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.id_token import fetch_id_token

from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import safe_log_context

logger = get_logger(__name__)

HTTP_TIMEOUT = int(os.environ.get("TASKS_HTTP_TIMEOUT", "30"))

# Must match task_auth.LOCAL_DEV_AUDIENCE
_LOCAL_DEV_AUDIENCE = "rainbowpay-tasks-local"


def _fetch_oidc_token(audience: str) -> str | None:
    """Fetch a Google-signed ID token for the target audience.

    Needs the GCP metadata server or application default credentials.
    """
    try:
        return fetch_id_token(GoogleRequest(), audience)
    except Exception as e:
        logger.error(
            "failed to fetch OIDC ID token",
            extra={"extra_fields": safe_log_context(audience=audience, error=str(e))},
        )
        return None


def enqueue_http(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
    base_url: str | None = None,
) -> bool:
    """POST the task to ``{base_url}{url_path}``.

    Args:
        task_id: Task identifier, forwarded as X-Task-Id.
        url_path: Target endpoint path.
        payload: PII-free task body.
        correlation_id: Optional correlation ID for tracing.
        schedule_time: Unsupported here; the task is dropped with a warning.
        base_url: Target root. Defaults to WORKER_BASE_URL.

    Returns:
        True on a 2xx response, False otherwise.
    """
    if schedule_time is not None:
        logger.warning(
            "HTTP backend does not support scheduled tasks",
            extra={"extra_fields": safe_log_context(task_id=task_id)},
        )
        return True

    target = base_url or os.environ.get("WORKER_BASE_URL", "http://worker:8000")
    url = f"{target.rstrip('/')}{url_path}"
    headers = {
        "Content-Type": "application/json",
        "X-Correlation-ID": correlation_id or "",
        "X-Task-Id": task_id,
    }

    if os.environ.get("TASKS_OIDC_AUDIENCE", "") == _LOCAL_DEV_AUDIENCE:
        internal_secret = os.environ.get("INTERNAL_TASK_SECRET", "")
        if internal_secret:
            headers["X-Internal-Task-Secret"] = internal_secret
    else:
        token = _fetch_oidc_token(target)
        if not token:
            logger.error(
                "HTTP task enqueue aborted: OIDC token unavailable",
                extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
            )
            return False
        headers["Authorization"] = f"Bearer {token}"

    try:
        response = requests.post(url, json=payload, headers=headers, timeout=HTTP_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.error(
            "HTTP task enqueue failed",
            extra={
                "extra_fields": safe_log_context(
                    task_id=task_id, url_path=url_path, error=str(e)
                )
            },
        )
        return False

    logger.info(
        "HTTP task enqueued",
        extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
    )
    return True

"""Cloud Tasks backend for GCP deployments."""
import json
import os
from datetime import datetime

from google.api_core.exceptions import AlreadyExists
from google.cloud import tasks_v2
from google.protobuf import timestamp_pb2

from rainbowpay.observability.logging import get_logger
from rainbowpay.observability.redaction import safe_log_context

logger = get_logger(__name__)


def task_name_for(parent: str, task_id: str) -> str:
    """Cloud Tasks name derived from task_id so duplicates collide."""
    safe_task_id = task_id.replace(":", "-").replace("/", "-")
    return f"{parent}/tasks/{safe_task_id}"


def enqueue_cloud_task(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
    schedule_time: datetime | None = None,
    base_url: str | None = None,
) -> bool:
    """Create a Cloud Tasks HTTP task.

    Args:
        task_id: Unique task identifier (also the dedupe key).
        url_path: Target endpoint path.
        payload: PII-free task body.
        correlation_id: Optional correlation ID for tracing.
        schedule_time: Optional future execution time.
        base_url: Target root. Defaults to WORKER_BASE_URL.

    Returns:
        True if created or already present.

    Raises:
        RuntimeError: If required env vars are not set.
    """
    project = os.environ.get("GOOGLE_CLOUD_PROJECT") or os.environ.get("GCP_PROJECT_ID")
    location = os.environ.get("GCP_LOCATION", "asia-southeast1")
    queue = os.environ.get("GCP_TASKS_QUEUE", "rainbowpay-default")
    target = base_url or os.environ.get("WORKER_BASE_URL")
    oidc_service_account = os.environ.get("TASKS_OIDC_SERVICE_ACCOUNT")
    # worker tasks are verified against TASKS_OIDC_AUDIENCE; other services by their URL
    audience = target if base_url else os.environ.get("TASKS_OIDC_AUDIENCE")

    if not project:
        raise RuntimeError("GOOGLE_CLOUD_PROJECT or GCP_PROJECT_ID required")
    if not target:
        raise RuntimeError("WORKER_BASE_URL required for Cloud Tasks")
    if not oidc_service_account:
        raise RuntimeError("TASKS_OIDC_SERVICE_ACCOUNT required for Cloud Tasks")
    if not audience:
        raise RuntimeError("TASKS_OIDC_AUDIENCE required for Cloud Tasks")

    client = tasks_v2.CloudTasksClient()
    parent = client.queue_path(project, location, queue)

    headers = {"Content-Type": "application/json"}
    if correlation_id:
        headers["X-Correlation-ID"] = correlation_id

    task = {
        "name": task_name_for(parent, task_id),
        "http_request": {
            "http_method": tasks_v2.HttpMethod.POST,
            "url": f"{target.rstrip('/')}{url_path}",
            "headers": headers,
            "body": json.dumps(payload).encode(),
            "oidc_token": {
                "service_account_email": oidc_service_account,
                "audience": audience,
            },
        },
    }

    if schedule_time:
        timestamp = timestamp_pb2.Timestamp()
        timestamp.FromDatetime(schedule_time)
        task["schedule_time"] = timestamp

    try:
        response = client.create_task(parent=parent, task=task)
    except AlreadyExists:
        logger.info(
            "cloud task already exists (dedupe)",
            extra={
                "extra_fields": safe_log_context(
                    task_id=task_id, correlationId=correlation_id
                )
            },
        )
        return True

    logger.info(
        "cloud task enqueued",
        extra={
            "extra_fields": safe_log_context(
                task_name=response.name,
                url_path=url_path,
                correlationId=correlation_id,
            )
        },
    )
    return True

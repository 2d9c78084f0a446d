"""Tasks client with idempotent enqueue.

Backends, selected via TASKS_BACKEND:
- inline (default): records the task without delivering it (dev/tests)
- http: POSTs the task to its target service
- cloud_tasks: creates a Google Cloud Tasks HTTP task
"""

import os
from datetime import datetime


class TasksClient:
    """Enqueue HTTP tasks, deduplicated by task_id within this process.

    Cloud Tasks additionally dedupes by task name across processes.
    """

    def __init__(self, backend: str | None = None) -> None:
        self._seen_ids: set[str] = set()
        self._recorded: list[dict] = []
        self._backend = backend or os.environ.get("TASKS_BACKEND", "inline")

    def enqueue_http(
        self,
        task_id: str,
        url_path: str,
        payload: dict,
        correlation_id: str | None = None,
        schedule_time: datetime | None = None,
        base_url: str | None = None,
    ) -> bool:
        """Enqueue a task delivered as an HTTP POST.

        Args:
            task_id: Unique identifier for idempotency.
            url_path: Target endpoint path (e.g. "/notifications/payment-events").
            payload: Task body (ids and enums only, no PII).
            correlation_id: Optional correlation ID for tracing.
            schedule_time: Optional future execution time.
            base_url: Target service root. Defaults to WORKER_BASE_URL.

        Returns:
            True if the task was accepted, False if task_id was already seen
            or the backend refused it.

        Raises:
            ValueError: If TASKS_BACKEND is unknown.
        """
        if task_id in self._seen_ids:
            return False

        self._seen_ids.add(task_id)

        if self._backend == "inline":
            self._recorded.append({
                "task_id": task_id,
                "url_path": url_path,
                "payload": payload,
                "correlation_id": correlation_id,
                "schedule_time": schedule_time,
                "base_url": base_url,
            })
            return True

        if self._backend == "http":
            from rainbowpay.tasks.http_backend import enqueue_http
            return enqueue_http(
                task_id, url_path, payload, correlation_id, schedule_time, base_url
            )

        if self._backend == "cloud_tasks":
            from rainbowpay.tasks.cloud_tasks_backend import enqueue_cloud_task
            return enqueue_cloud_task(
                task_id, url_path, payload, correlation_id, schedule_time, base_url
            )

        raise ValueError(f"Unknown TASKS_BACKEND: {self._backend}")

    def was_enqueued(self, task_id: str) -> bool:
        return task_id in self._seen_ids

    def get_recorded_tasks(self) -> list[dict]:
        """Tasks captured by the inline backend."""
        return list(self._recorded)

    def clear(self) -> None:
        self._seen_ids.clear()
        self._recorded.clear()

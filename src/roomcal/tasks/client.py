"""Tasks client with idempotent enqueue.

Backends selectable via TASKS_BACKEND env var:
- inline (default): registers the task without executing it (dev/tests)
- http: sends tasks to the worker via HTTP POST
"""

import os
from datetime import datetime


class TasksClient:
    """Tasks client with idempotent enqueue by task_id.

    Tracks task_ids to ensure idempotency (same task_id = no-op).
    """

    def __init__(self, backend: str | None = None) -> None:
        self._enqueued_ids: set[str] = set()
        self._registered: list[dict] = []
        self._backend = backend or os.environ.get("TASKS_BACKEND", "inline")

    def enqueue_http(
        self,
        task_id: str,
        url_path: str,
        payload: dict,
        correlation_id: str | None = None,
        schedule_time: datetime | None = None,
    ) -> bool:
        """Enqueue task for HTTP-based execution on the worker.

        Args:
            task_id: Unique identifier for idempotency.
            url_path: Worker endpoint path (e.g., "/tasks/notifications/send").
            payload: Task data (must not contain email addresses).
            correlation_id: Optional correlation ID for tracing.
            schedule_time: Optional future execution time.

        Returns:
            True if task was enqueued (new task_id).
            False if no-op (task_id already seen) or the HTTP send failed.

        Raises:
            ValueError: If TASKS_BACKEND is unknown.
        """
        if task_id in self._enqueued_ids:
            return False

        if self._backend == "inline":
            self._enqueued_ids.add(task_id)
            self._registered.append({
                "task_id": task_id,
                "url_path": url_path,
                "payload": payload,
                "correlation_id": correlation_id,
                "schedule_time": schedule_time,
            })
            return True

        elif self._backend == "http":
            from roomcal.tasks.http_backend import enqueue_http

            ok = enqueue_http(task_id, url_path, payload, correlation_id, schedule_time)
            if ok:
                self._enqueued_ids.add(task_id)
            return ok

        else:
            raise ValueError(f"Unknown TASKS_BACKEND: {self._backend}")

    def was_enqueued(self, task_id: str) -> bool:
        return task_id in self._enqueued_ids

    def get_registered_tasks(self) -> list[dict]:
        """Tasks registered by the inline backend (useful for testing)."""
        return list(self._registered)

    def clear(self) -> None:
        """Clear enqueued task_ids and registered tasks (useful for testing)."""
        self._enqueued_ids.clear()
        self._registered.clear()

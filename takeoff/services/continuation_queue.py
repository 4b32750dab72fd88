"""
Service helpers for enqueuing takeoff job continuations.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol


class ContinuationQueueClient(Protocol):
    def enqueue_continuation(
        self, payload: Dict[str, Any], *, delay_seconds: float = 0.0
    ) -> str: ...


class ContinuationQueueService:
    """Queue continuation requests for the external driver (worker or Lambda)."""

    def __init__(self, queue_client: ContinuationQueueClient) -> None:
        self._queue = queue_client

    def enqueue(
        self,
        *,
        job_id: str,
        max_batches: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        attempt: int = 1,
        busy_retries: int = 0,
        delay_seconds: float = 0.0,
    ) -> str:
        """Push a continuation message and return its queue id.

        ``delay_seconds`` hides the message from consumers for that long.
        """
        return self._queue.enqueue_continuation(
            self._build_message_payload(
                job_id=job_id,
                max_batches=max_batches,
                timeout_ms=timeout_ms,
                attempt=attempt,
                busy_retries=busy_retries,
            ),
            delay_seconds=delay_seconds,
        )

    @staticmethod
    def _build_message_payload(
        *,
        job_id: str,
        max_batches: Optional[int],
        timeout_ms: Optional[int],
        attempt: int,
        busy_retries: int,
    ) -> Dict[str, Any]:
        return {
            "job_id": job_id,
            "max_batches": max_batches,
            "timeout_ms": timeout_ms,
            "attempt": attempt,
            "busy_retries": busy_retries,
            "requested_at": datetime.now(tz=timezone.utc).isoformat(),
        }


__all__ = ["ContinuationQueueClient", "ContinuationQueueService"]

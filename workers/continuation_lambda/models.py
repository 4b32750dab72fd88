"""
Data models shared across the continuation worker package.
"""

from __future__ import annotations

from typing import Optional, TypedDict


class ContinuationPayload(TypedDict, total=False):
    """Message delivered via SQS or the local SQLite queue."""

    job_id: str
    max_batches: Optional[int]
    timeout_ms: Optional[int]
    attempt: int
    busy_retries: int
    requested_at: str


__all__ = ["ContinuationPayload"]

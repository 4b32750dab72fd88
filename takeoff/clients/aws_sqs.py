"""
Amazon SQS client wrapper for queueing job continuations.
"""

from __future__ import annotations

import json
from typing import Any, Dict

import boto3

from takeoff.core.config import AWSSettings


class SQSClient:
    """Send continuation messages to the worker queue."""

    def __init__(self, settings: AWSSettings) -> None:
        if not settings.continuation_queue_url:
            raise ValueError("CONTINUATION_QUEUE_URL is required for the sqs backend")
        self._settings = settings
        self._client = boto3.client("sqs", region_name=settings.region_name)

    def enqueue_continuation(self, payload: Dict[str, Any], *, delay_seconds: float = 0.0) -> str:
        # SQS caps per-message delay at 15 minutes.
        response = self._client.send_message(
            QueueUrl=self._settings.continuation_queue_url,
            MessageBody=json.dumps(payload),
            DelaySeconds=min(max(int(delay_seconds), 0), 900),
        )
        return response["MessageId"]


__all__ = ["SQSClient"]

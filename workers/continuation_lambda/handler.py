"""
AWS Lambda entrypoint for processing takeoff job continuations.
"""

from __future__ import annotations

import asyncio
import json
import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional

from takeoff.core.config import get_settings
from takeoff.core.logging import configure_logging
from takeoff.dependencies.clients import (
    get_continuation_queue_service,
    get_takeoff_job_service,
)
from takeoff.services.continuation_queue import ContinuationQueueService
from takeoff.services.takeoff_jobs import TakeoffJobService
from workers.continuation_lambda.driver import drive_continuation
from workers.continuation_lambda.models import ContinuationPayload

logger = logging.getLogger(__name__)


@lru_cache()
def _bootstrap() -> Dict[str, Any]:
    """Initialize shared singletons for the Lambda runtime."""
    settings = get_settings()
    configure_logging(settings.log_level)
    return {
        "jobs": get_takeoff_job_service(),
        "queue": get_continuation_queue_service(),
    }


async def process_payload(payload: ContinuationPayload) -> None:
    services = _bootstrap()
    jobs: TakeoffJobService = services["jobs"]
    queue: ContinuationQueueService = services["queue"]
    await drive_continuation(payload, jobs=jobs, queue=queue)


def _parse_record(record: Dict[str, Any]) -> Optional[ContinuationPayload]:
    body = record.get("body")
    if body is None:
        logger.error("Skipping record without body: %s", record.get("messageId"))
        return None
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        logger.error("Skipping record with malformed body: %s", record.get("messageId"))
        return None
    if not isinstance(payload, dict) or not payload.get("job_id"):
        logger.error("Skipping continuation without job_id: %s", record.get("messageId"))
        return None
    return payload


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    AWS Lambda handler invoked by SQS.

    Records run one after another. Malformed records are dropped; a record whose
    continuation raises is reported in ``batchItemFailures`` so SQS redelivers
    only that message (the event source mapping must enable
    ``ReportBatchItemFailures``).
    """
    records: List[Dict[str, Any]] = event.get("Records", [])
    if not records:
        logger.warning("No records found in event payload.")
        return {"statusCode": 200, "processed": 0, "batchItemFailures": []}

    work: List[tuple[Optional[str], ContinuationPayload]] = []
    for record in records:
        payload = _parse_record(record)
        if payload is not None:
            work.append((record.get("messageId"), payload))
    failures: List[Dict[str, str]] = []

    async def _process_all() -> None:
        for message_id, payload in work:
            try:
                await process_payload(payload)
            except Exception:
                if not message_id:
                    raise
                logger.exception(
                    "Continuation failed; leaving message for redelivery",
                    extra={"job_id": payload.get("job_id")},
                )
                failures.append({"itemIdentifier": message_id})

    if work:
        asyncio.run(_process_all())

    return {
        "statusCode": 200,
        "processed": len(work) - len(failures),
        "batchItemFailures": failures,
    }


__all__ = ["lambda_handler", "process_payload"]

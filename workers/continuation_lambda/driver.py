"""
One continuation step shared by the Lambda handler and the local worker.
"""

from __future__ import annotations

import logging
from typing import Optional

from takeoff.services.continuation_queue import ContinuationQueueService
from takeoff.services.takeoff_jobs import (
    ContinuationOutcome,
    JobBusyError,
    JobNotFoundError,
    TakeoffJobService,
)
from workers.continuation_lambda.models import ContinuationPayload

logger = logging.getLogger(__name__)

BUSY_REQUEUE_DELAY_SECONDS = 60
MAX_BUSY_REQUEUES = 5


async def drive_continuation(
    payload: ContinuationPayload,
    *,
    jobs: TakeoffJobService,
    queue: ContinuationQueueService,
) -> Optional[ContinuationOutcome]:
    """Advance a job once and queue the next step while batches remain.

    Messages for unknown jobs are dropped. When another continuation holds the
    job lease the message is queued again after ``BUSY_REQUEUE_DELAY_SECONDS``,
    up to ``MAX_BUSY_REQUEUES`` times, so a job whose lease holder died resumes
    once the lease expires.
    """
    job_id = payload["job_id"]
    attempt = int(payload.get("attempt") or 1)
    logger.info("Continuing takeoff job (step %d)", attempt, extra={"job_id": job_id})
    try:
        outcome = await jobs.continue_job(
            job_id,
            max_batches=payload.get("max_batches"),
            timeout_ms=payload.get("timeout_ms"),
        )
    except JobNotFoundError:
        logger.error("Dropping continuation for unknown job", extra={"job_id": job_id})
        return None
    except JobBusyError:
        busy_retries = int(payload.get("busy_retries") or 0)
        if busy_retries >= MAX_BUSY_REQUEUES:
            logger.warning(
                "Job lease still held after %d requeues; dropping message",
                busy_retries,
                extra={"job_id": job_id},
            )
            return None
        logger.info(
            "Job lease held elsewhere; retrying in %ds", BUSY_REQUEUE_DELAY_SECONDS, extra={"job_id": job_id}
        )
        queue.enqueue(
            job_id=job_id,
            max_batches=payload.get("max_batches"),
            timeout_ms=payload.get("timeout_ms"),
            attempt=attempt,
            busy_retries=busy_retries + 1,
            delay_seconds=BUSY_REQUEUE_DELAY_SECONDS,
        )
        return None

    if outcome.remaining > 0:
        queue.enqueue(
            job_id=job_id,
            max_batches=payload.get("max_batches"),
            timeout_ms=payload.get("timeout_ms"),
            attempt=attempt + 1,
        )
    logger.info(
        "Continuation finished: %s (%d%%)",
        outcome.message,
        outcome.progress_percent,
        extra={"job_id": job_id},
    )
    return outcome


__all__ = ["BUSY_REQUEUE_DELAY_SECONDS", "MAX_BUSY_REQUEUES", "drive_continuation"]

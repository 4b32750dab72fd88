"""Local worker that drives queued job continuations from SQLite."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from takeoff.clients.local_queue import SQLiteQueueClient
from takeoff.core.config import get_settings
from takeoff.core.logging import configure_logging
from takeoff.dependencies.clients import get_takeoff_job_service
from takeoff.services.continuation_queue import ContinuationQueueService
from takeoff.services.takeoff_jobs import TakeoffJobService
from workers.continuation_lambda.driver import drive_continuation
from workers.continuation_lambda.models import ContinuationPayload

logger = logging.getLogger(__name__)


class ContinuationQueueWorker:
    """Poll the SQLite queue and advance takeoff jobs one continuation at a time."""

    def __init__(
        self,
        queue_client: SQLiteQueueClient,
        jobs: TakeoffJobService,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self._queue_client = queue_client
        self._queue = ContinuationQueueService(queue_client)
        self._jobs = jobs
        self._poll_interval = poll_interval_seconds

    async def run_forever(self) -> None:
        while True:
            if not await self.run_once():
                await asyncio.sleep(self._poll_interval)

    async def run_once(self) -> bool:
        """Handle one queued message; returns False when the queue was empty."""
        payload = self._dequeue()
        if payload is None:
            return False
        try:
            await drive_continuation(payload, jobs=self._jobs, queue=self._queue)
        except Exception:
            logger.exception(
                "Failed processing continuation", extra={"job_id": payload.get("job_id")}
            )
        return True

    def _dequeue(self) -> Optional[ContinuationPayload]:
        message = self._queue_client.dequeue_continuation()
        if message is None or not message.get("job_id"):
            return None
        return message


async def main(poll_interval_seconds: float = 1.0) -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    worker = ContinuationQueueWorker(
        queue_client=SQLiteQueueClient(settings.database_path),
        jobs=get_takeoff_job_service(),
        poll_interval_seconds=poll_interval_seconds,
    )
    await worker.run_forever()


if __name__ == "__main__":  # pragma: no cover - manual execution path
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Continuation worker stopped")

"""
Batched takeoff jobs.

A job splits a page range into fixed-size batches. Each continuation call
processes a bounded number of batches within a soft deadline, so a long job is
driven by repeated calls (HTTP, the local worker or the Lambda handler) until
nothing remains, after which the per-batch payloads are merged.

Records live in the shared key/value store:

* ``takeoff_job#<id>`` / ``meta``: the job, carrying a continuation lease and a
  ``version`` used for optimistic writes;
* ``takeoff_job#<id>`` / ``batch#NNNN``: one record per batch;
* ``user#<uid>`` / ``takeoff_job#<id>``: the per-user job index.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from takeoff.clients.page_images import PageImageSource
from takeoff.clients.sqlite_store import RecordStore, VersionConflictError
from takeoff.core.config import OrchestratorSettings
from takeoff.services.analysis_records import mean_confidence
from takeoff.services.documents import DocumentRepository
from takeoff.services.job_admission import JobValidationError, user_jobs_key
from takeoff.services.plan_analysis import AnalysisRun, PlanAnalysisController
from takeoff.services.prompts import ANALYSIS_MODES, ProjectContext, build_user_prompt
from takeoff.services.result_merge import merge_items, merge_quality


logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed")
_OPEN_BATCH_STATUSES = ("pending", "processing")


class DuplicateJobError(Exception):
    """Raised when a job id is already taken."""


class JobNotFoundError(Exception):
    """Raised when a job id (or its merged result) does not exist."""


class JobBusyError(Exception):
    """Raised when another continuation currently holds the job lease."""


class MergeError(Exception):
    """Raised when batch results cannot be merged yet or at all."""


def job_key(job_id: str) -> str:
    return f"takeoff_job#{job_id}"


def batch_sort_key(batch_index: int) -> str:
    return f"batch#{batch_index:04d}"


def _utcnow_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


@dataclass(slots=True)
class JobSpec:
    """Validated input for :meth:`TakeoffJobService.create_job`."""

    job_id: str
    document_id: str
    document_reference: str
    user_id: Optional[str] = None
    mode: str = "both"
    model_policy: Dict[str, Any] = field(default_factory=dict)
    batch_config: Dict[str, Any] = field(default_factory=dict)
    page_start: Optional[int] = None
    page_end: Optional[int] = None


@dataclass(frozen=True, slots=True)
class BatchProgress:
    processed: int
    remaining: int


@dataclass(frozen=True, slots=True)
class ContinuationOutcome:
    processed: int
    remaining: int
    status: str
    progress_percent: int
    message: str


class TakeoffJobService:
    """Create, advance, merge and report batched takeoff jobs."""

    def __init__(
        self,
        store: RecordStore,
        page_source: PageImageSource,
        controller: PlanAnalysisController,
        settings: OrchestratorSettings,
        *,
        documents: DocumentRepository | None = None,
        clock: Callable[[], float] = time.monotonic,
        wallclock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._pages = page_source
        self._controller = controller
        self._settings = settings
        self._documents = documents
        self._clock = clock
        self._wallclock = wallclock
        self._sleep = sleep

    # ------------------------------------------------------------------ create

    async def create_job(self, spec: JobSpec) -> Dict[str, Any]:
        """Validate ``spec``, plan its batches and persist the job as ``queued``."""
        for name in ("job_id", "document_id", "document_reference"):
            if not str(getattr(spec, name) or "").strip():
                raise JobValidationError(f"{name} is required")
        if (spec.page_start is None) != (spec.page_end is None):
            raise JobValidationError("page_range requires both start and end")
        if spec.page_start is not None and spec.page_end is not None:
            if spec.page_start < 1:
                raise JobValidationError("page_range.start must be >= 1")
            if spec.page_end < spec.page_start:
                raise JobValidationError("page_range.end must be >= page_range.start")
        if spec.mode not in ANALYSIS_MODES:
            raise JobValidationError(f"mode must be one of: {', '.join(ANALYSIS_MODES)}")

        if self._store.get_item(partition_key=job_key(spec.job_id), sort_key="meta") is not None:
            raise DuplicateJobError(f"Job {spec.job_id} already exists")

        document: Dict[str, Any] = {}
        if self._documents is not None:
            document = self._documents.get(spec.document_id)
        # Service callers carry no user; the job belongs to the document owner.
        user_id = spec.user_id or document.get("user_id")

        if spec.page_start is not None and spec.page_end is not None:
            page_start, page_end = spec.page_start, spec.page_end
        else:
            page_start, page_end = 1, await self._pages.count_pages(spec.document_reference)
        total_pages = max(0, page_end - page_start + 1)
        if total_pages == 0:
            raise JobValidationError("Document has no pages to analyze")

        batch_size = int(spec.batch_config.get("batch_size") or self._settings.batch_size)
        if batch_size < 1:
            raise JobValidationError("batch_config.batch_size must be >= 1")
        max_retries = int(spec.batch_config.get("max_retries") or self._settings.batch_max_retries)
        if max_retries < 1:
            raise JobValidationError("batch_config.max_retries must be >= 1")
        total_batches = math.ceil(total_pages / batch_size)

        now_iso = _utcnow_iso()
        job: Dict[str, Any] = {
            "pk": job_key(spec.job_id),
            "sk": "meta",
            "job_id": spec.job_id,
            "document_id": spec.document_id,
            "document_reference": spec.document_reference,
            "user_id": user_id,
            "mode": spec.mode,
            "model_policy": spec.model_policy,
            "batch_config": {**spec.batch_config, "batch_size": batch_size, "max_retries": max_retries},
            "project_name": document.get("project_name") or document.get("plan_title"),
            "plan_title": document.get("plan_title"),
            "job_type": document.get("job_type") or "residential",
            "page_start": page_start,
            "page_end": page_end,
            "status": "queued",
            "total_pages": total_pages,
            "total_batches": total_batches,
            "processed_batches": 0,
            "completed_batches": 0,
            "progress_percent": 0,
            "errors": [],
            "final_result": None,
            "summary": None,
            "confidence": None,
            "merged_at": None,
            "lease_owner": None,
            "lease_expires_at": None,
            "version": 1,
            "created_at": now_iso,
            "updated_at": now_iso,
        }

        over_ceiling = total_pages > self._settings.max_pages
        if over_ceiling:
            message = (
                f"Job covers {total_pages} pages; the maximum is {self._settings.max_pages}"
            )
            job["status"] = "failed"
            job["errors"] = [{"batch_index": None, "error": message, "at": now_iso}]

        try:
            self._store.put_item(job, expected_version=0)
        except VersionConflictError as exc:
            raise DuplicateJobError(f"Job {spec.job_id} already exists") from exc
        if user_id:
            self._store.put_item(
                {
                    "pk": user_jobs_key(user_id),
                    "sk": job_key(spec.job_id),
                    "job_pk": job_key(spec.job_id),
                    "created_at": now_iso,
                }
            )
        if over_ceiling:
            logger.warning("Rejected oversized job", extra={"job_id": spec.job_id})
            raise JobValidationError(job["errors"][0]["error"])

        for index in range(total_batches):
            start = page_start + index * batch_size
            self._store.put_item(
                {
                    "pk": job_key(spec.job_id),
                    "sk": batch_sort_key(index),
                    "job_id": spec.job_id,
                    "batch_index": index,
                    "page_start": start,
                    "page_end": min(page_end, start + batch_size - 1),
                    "status": "pending",
                    "result": None,
                    "metrics": None,
                    "error": None,
                    "updated_at": now_iso,
                }
            )
        logger.info(
            "Created takeoff job with %d pages in %d batches",
            total_pages,
            total_batches,
            extra={"job_id": spec.job_id},
        )
        return job

    # ---------------------------------------------------------------- continue

    async def process_batches(
        self,
        job_id: str,
        *,
        max_batches: Optional[int] = None,
        timeout_ms: Optional[int] = None,
    ) -> BatchProgress:
        """Process up to ``max_batches`` open batches in page order under the job lease."""
        max_batches = max_batches or self._settings.default_max_batches
        timeout_ms = timeout_ms or self._settings.default_timeout_ms

        job = self.load_job(job_id)
        if job["status"] in TERMINAL_STATUSES:
            return BatchProgress(processed=0, remaining=self._open_batch_count(job_id))

        lease_owner = uuid4().hex
        job = self._acquire_lease(job, lease_owner, timeout_ms)
        processed = 0
        new_errors: List[Dict[str, Any]] = []
        try:
            open_batches = [
                batch for batch in self._load_batches(job_id)
                if batch["status"] in _OPEN_BATCH_STATUSES
            ]
            started = self._clock()
            for batch in open_batches[:max_batches]:
                elapsed_ms = (self._clock() - started) * 1000
                if elapsed_ms >= timeout_ms:
                    logger.info(
                        "Soft deadline reached after %d batches", processed, extra={"job_id": job_id}
                    )
                    break
                if batch["status"] == "processing":
                    logger.warning(
                        "Reclaiming batch %d left in processing",
                        batch["batch_index"],
                        extra={"job_id": job_id},
                    )
                error = await self._run_batch(job, batch)
                if error is not None:
                    new_errors.append(error)
                processed += 1
        finally:
            job = self._release_lease(job_id, lease_owner, new_errors)

        remaining = job["total_batches"] - job["processed_batches"]
        return BatchProgress(processed=processed, remaining=remaining)

    async def continue_job(
        self,
        job_id: str,
        *,
        max_batches: Optional[int] = None,
        timeout_ms: Optional[int] = None,
    ) -> ContinuationOutcome:
        progress = await self.process_batches(job_id, max_batches=max_batches, timeout_ms=timeout_ms)
        merge_failed = False
        if progress.remaining == 0:
            job = self.load_job(job_id)
            if job.get("final_result") is None and job["completed_batches"] > 0:
                try:
                    await self.merge_job_results(job_id)
                except MergeError:
                    merge_failed = True
                    logger.exception("Merge failed", extra={"job_id": job_id})

        job = self.load_job(job_id)
        if progress.remaining > 0:
            message = (
                f"Processed {progress.processed} batches; {progress.remaining} remaining. "
                "Call continue again to resume."
            )
        elif job["status"] == "failed":
            message = "All batches failed; no results to merge."
        elif merge_failed or job.get("final_result") is None:
            message = "All batches processed but merging failed; retry the merge."
        else:
            message = "All batches processed and results merged."
        return ContinuationOutcome(
            processed=progress.processed,
            remaining=progress.remaining,
            status=job["status"],
            progress_percent=job["progress_percent"],
            message=message,
        )

    # ------------------------------------------------------------------- merge

    async def merge_job_results(self, job_id: str) -> Dict[str, Any]:
        """Merge completed batch payloads into ``final_result``; safe to retry."""
        job = self.load_job(job_id)
        batches = self._load_batches(job_id)
        open_count = sum(1 for batch in batches if batch["status"] in _OPEN_BATCH_STATUSES)
        if open_count:
            raise MergeError(f"{open_count} batches are still waiting to be processed")
        completed = [
            batch for batch in batches
            if batch["status"] == "completed" and isinstance(batch.get("result"), dict)
        ]
        if not completed:
            raise MergeError("No completed batches to merge")

        try:
            items = merge_items(batch["result"].get("items") or [] for batch in completed)
            quality_analysis = merge_quality(
                [batch["result"].get("quality_analysis") for batch in completed],
                batch_count=len(completed),
                total_batches=job["total_batches"],
                page_start=job["page_start"],
                page_end=job["page_end"],
            )
        except (TypeError, ValueError, AttributeError) as exc:
            raise MergeError(f"Batch results could not be merged: {exc}") from exc

        final_result = {"items": items, "quality_analysis": quality_analysis}
        confidence = mean_confidence(items)
        job.update(
            {
                "final_result": final_result,
                "summary": {
                    "total_items": len(items),
                    "batches_merged": len(completed),
                    "batches_failed": len(batches) - len(completed),
                    "risk_flags": len(quality_analysis["risk_flags"]),
                    "pages_covered": f"{job['page_start']}-{job['page_end']}",
                },
                "confidence": confidence,
                "merged_at": _utcnow_iso(),
            }
        )
        self._write_job(job)
        logger.info("Merged %d items from %d batches", len(items), len(completed), extra={"job_id": job_id})
        return final_result

    # ----------------------------------------------------------------- queries

    def load_job(self, job_id: str) -> Dict[str, Any]:
        job = self._store.get_item(partition_key=job_key(job_id), sort_key="meta")
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        job = self.load_job(job_id)
        batches = self._load_batches(job_id)
        remaining = sum(1 for batch in batches if batch["status"] in _OPEN_BATCH_STATUSES)
        snapshot = {
            key: value for key, value in job.items()
            if key not in ("pk", "sk", "final_result", "lease_owner", "lease_expires_at")
        }
        snapshot["remaining_batches"] = remaining
        snapshot["is_partial"] = job["status"] == "running" and remaining > 0
        snapshot["has_result"] = job.get("final_result") is not None
        snapshot["batches"] = [
            {
                "batch_index": batch["batch_index"],
                "page_start": batch["page_start"],
                "page_end": batch["page_end"],
                "status": batch["status"],
                "items": (batch.get("metrics") or {}).get("items"),
                "error": batch.get("error"),
            }
            for batch in batches
        ]
        return snapshot

    def get_job_result(self, job_id: str) -> Dict[str, Any]:
        job = self.load_job(job_id)
        if job.get("final_result") is None:
            raise JobNotFoundError(f"Job {job_id} has no merged result yet")
        return job["final_result"]

    # ---------------------------------------------------------------- internal

    async def _run_batch(self, job: Dict[str, Any], batch: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        job_id = job["job_id"]
        batch.update({"status": "processing", "updated_at": _utcnow_iso()})
        self._store.put_item(batch)
        max_retries = int(
            (job.get("batch_config") or {}).get("max_retries") or self._settings.batch_max_retries
        )
        attempt = 1
        while True:
            try:
                run = await self._analyze_batch(job, batch)
                break
            except Exception as exc:
                if attempt >= max_retries:
                    logger.exception(
                        "Batch %d failed after %d attempts",
                        batch["batch_index"],
                        attempt,
                        extra={"job_id": job_id},
                    )
                    now_iso = _utcnow_iso()
                    batch.update({"status": "failed", "error": str(exc), "updated_at": now_iso})
                    self._store.put_item(batch)
                    return {
                        "batch_index": batch["batch_index"],
                        "pages": f"{batch['page_start']}-{batch['page_end']}",
                        "error": str(exc),
                        "at": now_iso,
                    }
                delay = min(
                    self._settings.batch_retry_base_seconds * 2 ** (attempt - 1),
                    self._settings.batch_retry_max_seconds,
                )
                logger.warning(
                    "Batch %d attempt %d/%d failed: %s; retrying in %.1fs",
                    batch["batch_index"],
                    attempt,
                    max_retries,
                    exc,
                    delay,
                    extra={"job_id": job_id},
                )
                await self._sleep(delay)
                attempt += 1

        batch.update(
            {
                "status": "completed",
                "result": run.payload(),
                "metrics": {
                    "provider": run.provider,
                    "attempts": run.attempts,
                    "batch_attempt": attempt,
                    "repaired": run.repaired,
                    "items": len(run.items),
                    "reason": run.reason,
                    "notes": run.notes,
                },
                "error": None,
                "updated_at": _utcnow_iso(),
            }
        )
        self._store.put_item(batch)
        logger.info(
            "Batch %d completed with %d items",
            batch["batch_index"],
            len(run.items),
            extra={"job_id": job_id},
        )
        return None

    async def _analyze_batch(self, job: Dict[str, Any], batch: Dict[str, Any]) -> AnalysisRun:
        """Load the batch pages and run the controller under the job's mode and model policy."""
        pages = await self._pages.load_pages(
            job["document_reference"], batch["page_start"], batch["page_end"]
        )
        context = ProjectContext(
            project_name=job.get("project_name"),
            plan_title=job.get("plan_title"),
            job_type=job.get("job_type") or "residential",
        )
        policy = job.get("model_policy") or {}
        models = [name for name in (policy.get("primary"), *(policy.get("fallbacks") or [])) if name]
        return await self._controller.run(
            images=[page.data_url for page in pages],
            user_prompt=build_user_prompt(
                len(pages),
                context,
                page_start=batch["page_start"],
                page_end=batch["page_end"],
            ),
            mode=job.get("mode") or "both",
            models=models or None,
            max_tokens=policy.get("max_tokens"),
            temperature=policy.get("temperature"),
        )

    def _acquire_lease(self, job: Dict[str, Any], owner: str, timeout_ms: int) -> Dict[str, Any]:
        now = self._wallclock()
        holder = job.get("lease_owner")
        expires_at = job.get("lease_expires_at") or 0
        if holder and expires_at > now:
            raise JobBusyError(f"Job {job['job_id']} is being processed by another continuation")
        job = dict(job)
        job["lease_owner"] = owner
        job["lease_expires_at"] = now + timeout_ms / 1000 + self._settings.lease_grace_seconds
        if job["status"] == "queued":
            job["status"] = "running"
        self._write_job(job)
        return job

    def _release_lease(
        self, job_id: str, owner: str, new_errors: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        job = self.load_job(job_id)
        batches = self._load_batches(job_id)
        completed = sum(1 for batch in batches if batch["status"] == "completed")
        processed = sum(1 for batch in batches if batch["status"] == "failed") + completed
        total = job["total_batches"]
        job["processed_batches"] = processed
        job["completed_batches"] = completed
        job["progress_percent"] = min(100, round(processed * 100 / total)) if total else 100
        job["errors"] = [*(job.get("errors") or []), *new_errors]
        if processed >= total and job["status"] not in TERMINAL_STATUSES:
            job["status"] = "completed" if completed else "failed"
        if job.get("lease_owner") == owner:
            job["lease_owner"] = None
            job["lease_expires_at"] = None
        self._write_job(job)
        return job

    def _write_job(self, job: Dict[str, Any]) -> None:
        expected = int(job.get("version") or 0)
        job["version"] = expected + 1
        job["updated_at"] = _utcnow_iso()
        try:
            self._store.put_item(job, expected_version=expected)
        except VersionConflictError as exc:
            job["version"] = expected
            raise JobBusyError(f"Job {job['job_id']} was modified concurrently") from exc

    def _load_batches(self, job_id: str) -> List[Dict[str, Any]]:
        batches = self._store.list_items_with_prefix(
            partition_key=job_key(job_id), sort_key_prefix="batch#"
        )
        return sorted(batches, key=lambda batch: batch["batch_index"])

    def _open_batch_count(self, job_id: str) -> int:
        return sum(
            1 for batch in self._load_batches(job_id) if batch["status"] in _OPEN_BATCH_STATUSES
        )


__all__ = [
    "BatchProgress",
    "ContinuationOutcome",
    "DuplicateJobError",
    "JobBusyError",
    "JobNotFoundError",
    "JobSpec",
    "MergeError",
    "TakeoffJobService",
    "job_key",
]

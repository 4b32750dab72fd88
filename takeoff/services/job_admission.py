"""
Admission policy for batched takeoff jobs: who may start or drive a job, how
many jobs a caller may have in flight and how many pages a job may cover.

The concurrency check reads the caller's job index and then inserts; two
simultaneous requests from one caller can both pass it.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from takeoff.clients.sqlite_store import RecordStore
from takeoff.core.config import OrchestratorSettings
from takeoff.services.caller_auth import AuthorizationError, CallerIdentity


logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("queued", "running")


class JobValidationError(Exception):
    """Raised when a job request is malformed or exceeds the page ceiling."""


class RateLimitError(Exception):
    """Raised when a caller already has the maximum number of active jobs."""


def user_jobs_key(user_id: str) -> str:
    return f"user#{user_id}"


class JobAdmissionPolicy:
    def __init__(self, store: RecordStore, settings: OrchestratorSettings) -> None:
        self._store = store
        self._settings = settings

    def check_create(self, caller: CallerIdentity, *, page_end: Optional[int] = None) -> None:
        self._require_privilege(caller)
        if page_end is not None and page_end > self._settings.max_pages:
            raise JobValidationError(
                f"page_range.end {page_end} exceeds the maximum of {self._settings.max_pages} pages"
            )
        if caller.is_service or caller.user_id is None:
            return
        active = self.active_job_count(caller.user_id)
        if active >= self._settings.max_concurrent_jobs:
            logger.info("Rejecting job for user %s with %d active jobs", caller.user_id, active)
            raise RateLimitError(
                f"At most {self._settings.max_concurrent_jobs} takeoff jobs may run at once"
            )

    def check_access(self, caller: CallerIdentity, job: Mapping[str, Any]) -> None:
        """Callers may drive or read a job when privileged or when they own it."""
        if self._settings.admin_only:
            self._require_privilege(caller)
        elif not caller.is_privileged and not caller.owns(job):
            raise AuthorizationError("Job belongs to another user.", status_code=403)

    def active_job_count(self, user_id: str) -> int:
        entries = self._store.list_items_with_prefix(
            partition_key=user_jobs_key(user_id), sort_key_prefix="takeoff_job#"
        )
        count = 0
        for entry in entries:
            job = self._store.get_item(partition_key=entry["job_pk"], sort_key="meta")
            if job is not None and job.get("status") in ACTIVE_STATUSES:
                count += 1
        return count

    def _require_privilege(self, caller: CallerIdentity) -> None:
        if self._settings.admin_only and not caller.is_privileged:
            raise AuthorizationError("Admin access required.", status_code=403)


__all__ = [
    "ACTIVE_STATUSES",
    "JobAdmissionPolicy",
    "JobValidationError",
    "RateLimitError",
    "user_jobs_key",
]

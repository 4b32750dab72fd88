"""
FastAPI routes for batched takeoff jobs and single-shot plan analysis.
"""

from __future__ import annotations

import logging
import math
from http import HTTPStatus
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, HTTPException

from takeoff.clients.vision_llm import ProviderExhaustionError
from takeoff.dependencies import (
    get_analysis_controller,
    get_authenticator,
    get_continuation_queue_service,
    get_document_repository,
    get_job_admission_policy,
    get_orchestrator_settings,
    get_takeoff_job_service,
)
from takeoff.schemas import (
    AnalysisPayload,
    ContinueJobRequest,
    ContinueJobResponse,
    DocumentRegistration,
    SingleAnalysisMeta,
    SingleAnalysisRequest,
    SingleAnalysisResponse,
    TakeoffJobCreated,
    TakeoffJobRequest,
    TakeoffJobStatus,
)
from takeoff.services import (
    AuthorizationError,
    CallerIdentity,
    DocumentNotFoundError,
    DocumentOwnershipError,
    DuplicateJobError,
    JobBusyError,
    JobNotFoundError,
    JobSpec,
    JobValidationError,
    MergeError,
    RateLimitError,
)

router = APIRouter()
logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: dict[type[Exception], HTTPStatus] = {
    JobValidationError: HTTPStatus.BAD_REQUEST,
    DuplicateJobError: HTTPStatus.CONFLICT,
    JobBusyError: HTTPStatus.CONFLICT,
    MergeError: HTTPStatus.CONFLICT,
    JobNotFoundError: HTTPStatus.NOT_FOUND,
    DocumentNotFoundError: HTTPStatus.NOT_FOUND,
    DocumentOwnershipError: HTTPStatus.FORBIDDEN,
    RateLimitError: HTTPStatus.TOO_MANY_REQUESTS,
    ProviderExhaustionError: HTTPStatus.SERVICE_UNAVAILABLE,
}

_DOMAIN_ERRORS = (*_STATUS_BY_ERROR, AuthorizationError)


def _to_http(exc: Exception) -> HTTPException:
    if isinstance(exc, AuthorizationError):
        return HTTPException(status_code=exc.status_code, detail=str(exc))
    for error_type, status in _STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=status, detail=str(exc))
    return HTTPException(status_code=HTTPStatus.INTERNAL_SERVER_ERROR, detail=str(exc))


def get_caller(
    authenticator: Annotated[Any, Depends(get_authenticator)],
    authorization: Annotated[str | None, Header()] = None,
) -> CallerIdentity:
    """Authenticate the request from its ``Authorization`` header."""
    try:
        return authenticator.authenticate(authorization)
    except AuthorizationError as exc:
        raise _to_http(exc) from exc


CallerDependency = Annotated[CallerIdentity, Depends(get_caller)]


@router.get("/health", status_code=HTTPStatus.OK)
async def healthcheck() -> dict:
    """Simple health endpoint for monitoring."""
    return {"status": "ok"}


@router.post("/documents", status_code=HTTPStatus.CREATED)
async def register_document(
    payload: DocumentRegistration,
    caller: CallerDependency,
    documents: Annotated[Any, Depends(get_document_repository)],
) -> dict:
    """Register or update a plan document.

    Users register documents for themselves and may only update their own.
    Service and admin callers may name the owner through ``owner_id``; the
    service key may update any document, keeping its owner unless one is named.
    """
    owner = caller.user_id
    if payload.owner_id is not None and payload.owner_id != caller.user_id:
        if not caller.is_privileged:
            raise HTTPException(
                status_code=HTTPStatus.FORBIDDEN,
                detail="Only privileged callers may register documents for other users",
            )
        owner = payload.owner_id
    try:
        record = documents.register(
            document_id=payload.document_id,
            reference=payload.reference,
            user_id=owner,
            project_name=payload.project_name,
            plan_title=payload.plan_title,
            job_type=payload.job_type,
            reassign=caller.is_service or (caller.is_admin and payload.owner_id is not None),
        )
    except DocumentOwnershipError as exc:
        raise _to_http(exc) from exc
    return {"document_id": record["document_id"], "status": "registered"}


@router.post(
    "/takeoff/jobs",
    status_code=HTTPStatus.ACCEPTED,
    response_model=TakeoffJobCreated,
)
async def create_takeoff_job(
    payload: TakeoffJobRequest,
    caller: CallerDependency,
    admission: Annotated[Any, Depends(get_job_admission_policy)],
    jobs: Annotated[Any, Depends(get_takeoff_job_service)],
    queue: Annotated[Any, Depends(get_continuation_queue_service)],
    orchestrator: Annotated[Any, Depends(get_orchestrator_settings)],
) -> TakeoffJobCreated:
    """Plan a batched takeoff job and queue its first continuation."""
    page_range = payload.page_range
    try:
        admission.check_create(caller, page_end=page_range.end if page_range else None)
        job = await jobs.create_job(
            JobSpec(
                job_id=payload.job_id,
                document_id=payload.document_id,
                document_reference=payload.document_reference,
                user_id=caller.user_id,
                mode=payload.mode,
                model_policy=payload.model_policy.model_dump(exclude_none=True),
                batch_config=payload.batch_config.model_dump(exclude_none=True),
                page_start=page_range.start if page_range else None,
                page_end=page_range.end if page_range else None,
            )
        )
    except _DOMAIN_ERRORS as exc:
        raise _to_http(exc) from exc

    try:
        queue.enqueue(job_id=job["job_id"])
    except Exception:
        # The job can still be driven through the continue endpoint.
        logger.exception("Failed to enqueue continuation", extra={"job_id": job["job_id"]})

    minutes_per_batch = orchestrator.minutes_per_batch
    return TakeoffJobCreated(
        job_id=job["job_id"],
        status=job["status"],
        total_batches=job["total_batches"],
        total_pages=job["total_pages"],
        estimated_minutes=math.ceil(job["total_batches"] * minutes_per_batch),
    )


def _authorized_job(jobs: Any, admission: Any, caller: CallerIdentity, job_id: str) -> dict:
    try:
        job = jobs.load_job(job_id)
        admission.check_access(caller, job)
    except _DOMAIN_ERRORS as exc:
        raise _to_http(exc) from exc
    return job


@router.post(
    "/takeoff/jobs/{job_id}/continue",
    status_code=HTTPStatus.OK,
    response_model=ContinueJobResponse,
)
async def continue_takeoff_job(
    job_id: str,
    caller: CallerDependency,
    admission: Annotated[Any, Depends(get_job_admission_policy)],
    jobs: Annotated[Any, Depends(get_takeoff_job_service)],
    payload: ContinueJobRequest | None = None,
) -> ContinueJobResponse:
    """Process the next batches of a job within the requested time budget."""
    payload = payload or ContinueJobRequest()
    _authorized_job(jobs, admission, caller, job_id)
    try:
        outcome = await jobs.continue_job(
            job_id, max_batches=payload.max_batches, timeout_ms=payload.timeout_ms
        )
    except _DOMAIN_ERRORS as exc:
        raise _to_http(exc) from exc
    return ContinueJobResponse(
        processed=outcome.processed,
        remaining=outcome.remaining,
        status=outcome.status,
        progress_percent=outcome.progress_percent,
        message=outcome.message,
    )


@router.get(
    "/takeoff/jobs/{job_id}",
    status_code=HTTPStatus.OK,
    response_model=TakeoffJobStatus,
)
async def get_takeoff_job(
    job_id: str,
    caller: CallerDependency,
    admission: Annotated[Any, Depends(get_job_admission_policy)],
    jobs: Annotated[Any, Depends(get_takeoff_job_service)],
) -> TakeoffJobStatus:
    _authorized_job(jobs, admission, caller, job_id)
    return TakeoffJobStatus(**jobs.get_job_status(job_id))


@router.get(
    "/takeoff/jobs/{job_id}/result",
    status_code=HTTPStatus.OK,
    response_model=AnalysisPayload,
)
async def get_takeoff_job_result(
    job_id: str,
    caller: CallerDependency,
    admission: Annotated[Any, Depends(get_job_admission_policy)],
    jobs: Annotated[Any, Depends(get_takeoff_job_service)],
) -> AnalysisPayload:
    _authorized_job(jobs, admission, caller, job_id)
    try:
        result = jobs.get_job_result(job_id)
    except JobNotFoundError as exc:
        raise _to_http(exc) from exc
    return AnalysisPayload(**result)


@router.post(
    "/takeoff/jobs/{job_id}/merge",
    status_code=HTTPStatus.OK,
    response_model=AnalysisPayload,
)
async def merge_takeoff_job(
    job_id: str,
    caller: CallerDependency,
    admission: Annotated[Any, Depends(get_job_admission_policy)],
    jobs: Annotated[Any, Depends(get_takeoff_job_service)],
) -> AnalysisPayload:
    """Retry the merge of batch results without reprocessing any batch."""
    _authorized_job(jobs, admission, caller, job_id)
    try:
        result = await jobs.merge_job_results(job_id)
    except _DOMAIN_ERRORS as exc:
        raise _to_http(exc) from exc
    return AnalysisPayload(**result)


@router.post(
    "/analysis/single",
    status_code=HTTPStatus.OK,
    response_model=SingleAnalysisResponse,
)
async def analyze_single(
    payload: SingleAnalysisRequest,
    caller: CallerDependency,
    documents: Annotated[Any, Depends(get_document_repository)],
    controller: Annotated[Any, Depends(get_analysis_controller)],
) -> SingleAnalysisResponse:
    """Analyze up to five page images of a document in one request."""
    try:
        document = documents.get(payload.document_id)
    except DocumentNotFoundError as exc:
        raise _to_http(exc) from exc
    if not (caller.is_privileged or caller.owns(document)):
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail="Document not found")

    try:
        analysis = await controller.analyze_document(
            document_id=payload.document_id,
            images=payload.page_images,
            user_id=caller.user_id,
        )
    except ProviderExhaustionError as exc:
        raise _to_http(exc) from exc
    except Exception as exc:
        raise HTTPException(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            detail=f"Analysis failed: {exc}",
        ) from exc

    run = analysis.run
    return SingleAnalysisResponse(
        items=analysis.items,
        quality_analysis=run.quality_analysis,
        meta=SingleAnalysisMeta(
            provider=run.provider,
            attempts=run.attempts,
            repaired=run.repaired,
            notes=run.notes,
            reason=run.reason,
            items_count=len(analysis.items),
            quality_analysis_keys=list(run.quality_analysis.keys()),
            analysis_id=analysis.analysis_id,
            issues_id=analysis.issues_id,
        ),
    )


__all__ = ["router"]

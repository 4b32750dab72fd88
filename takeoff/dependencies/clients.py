"""
Factory functions to provide shared clients and services as FastAPI dependencies.

The continuation worker and the Lambda handler build their services through
the same factories.
"""

from functools import lru_cache

from takeoff.clients import (
    DynamoDBClient,
    GeminiVisionClient,
    PageImageSource,
    SQLiteQueueClient,
    SQLiteStore,
    SQSClient,
)
from takeoff.clients.sqlite_store import RecordStore
from takeoff.core.config import get_settings
from takeoff.services import (
    AnalysisRecorder,
    Authenticator,
    CallerTokenEncoder,
    ContinuationQueueService,
    DocumentRepository,
    JobAdmissionPolicy,
    PlanAnalysisController,
    TakeoffJobService,
)
from takeoff.services.continuation_queue import ContinuationQueueClient


@lru_cache()
def _settings():
    """Internal helper to cache settings for client factories."""
    return get_settings()


@lru_cache()
def get_record_store() -> RecordStore:
    """Provide the shared record store for the configured backend."""
    settings = _settings()
    if settings.storage_backend == "dynamodb":
        return DynamoDBClient(settings.aws)
    return SQLiteStore(settings.database_path)


@lru_cache()
def get_queue_client() -> ContinuationQueueClient:
    """Provide the continuation queue for the configured backend."""
    settings = _settings()
    if settings.queue_backend == "sqs":
        return SQSClient(settings.aws)
    return SQLiteQueueClient(settings.database_path)


@lru_cache()
def get_vision_client() -> GeminiVisionClient:
    """Provide Gemini vision client instance."""
    settings = _settings()
    return GeminiVisionClient(settings.gemini)


@lru_cache()
def get_page_source() -> PageImageSource:
    return PageImageSource()


@lru_cache()
def get_caller_token_encoder() -> CallerTokenEncoder:
    settings = _settings()
    return CallerTokenEncoder(settings.security.caller_token_secret)


def get_authenticator() -> Authenticator:
    settings = _settings()
    return Authenticator(
        service_role_key=settings.security.service_role_key,
        encoder=get_caller_token_encoder(),
        store=get_record_store(),
    )


def get_document_repository() -> DocumentRepository:
    return DocumentRepository(get_record_store())


def get_analysis_controller() -> PlanAnalysisController:
    """Build the threshold-driven analysis controller with persistence."""
    settings = _settings()
    documents = get_document_repository()
    return PlanAnalysisController(
        get_vision_client(),
        settings.analysis,
        documents=documents,
        recorder=AnalysisRecorder(
            get_record_store(),
            documents,
            default_confidence=settings.analysis.default_confidence,
        ),
    )


def get_job_admission_policy() -> JobAdmissionPolicy:
    settings = _settings()
    return JobAdmissionPolicy(get_record_store(), settings.orchestrator)


def get_takeoff_job_service() -> TakeoffJobService:
    """Build the batch job orchestrator."""
    settings = _settings()
    return TakeoffJobService(
        get_record_store(),
        get_page_source(),
        get_analysis_controller(),
        settings.orchestrator,
        documents=get_document_repository(),
    )


def get_continuation_queue_service() -> ContinuationQueueService:
    return ContinuationQueueService(get_queue_client())


__all__ = [
    "get_analysis_controller",
    "get_authenticator",
    "get_caller_token_encoder",
    "get_continuation_queue_service",
    "get_document_repository",
    "get_job_admission_policy",
    "get_page_source",
    "get_queue_client",
    "get_record_store",
    "get_takeoff_job_service",
    "get_vision_client",
]

"""Service layer exports."""

from .analysis_records import AnalysisRecorder, PersistenceError
from .caller_auth import Authenticator, AuthorizationError, CallerIdentity, CallerTokenEncoder
from .continuation_queue import ContinuationQueueService
from .documents import DocumentNotFoundError, DocumentOwnershipError, DocumentRepository
from .job_admission import JobAdmissionPolicy, JobValidationError, RateLimitError
from .json_repair import ExtractionResult, extract_analysis_payload
from .plan_analysis import AnalysisRun, AttemptContext, PlanAnalysisController
from .takeoff_jobs import (
    DuplicateJobError,
    JobBusyError,
    JobNotFoundError,
    JobSpec,
    MergeError,
    TakeoffJobService,
)

__all__ = [
    "AnalysisRecorder",
    "AnalysisRun",
    "AttemptContext",
    "Authenticator",
    "AuthorizationError",
    "CallerIdentity",
    "CallerTokenEncoder",
    "ContinuationQueueService",
    "DocumentNotFoundError",
    "DocumentOwnershipError",
    "DocumentRepository",
    "DuplicateJobError",
    "ExtractionResult",
    "JobAdmissionPolicy",
    "JobBusyError",
    "JobNotFoundError",
    "JobSpec",
    "JobValidationError",
    "MergeError",
    "PersistenceError",
    "PlanAnalysisController",
    "RateLimitError",
    "TakeoffJobService",
    "extract_analysis_payload",
]

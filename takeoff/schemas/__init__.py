"""Public schema exports."""

from .takeoff import (
    AnalysisPayload,
    BatchConfig,
    BatchSnapshot,
    ContinueJobRequest,
    ContinueJobResponse,
    DocumentRegistration,
    ModelPolicy,
    PageRange,
    SingleAnalysisMeta,
    SingleAnalysisRequest,
    SingleAnalysisResponse,
    TakeoffJobCreated,
    TakeoffJobRequest,
    TakeoffJobStatus,
)

__all__ = [
    "AnalysisPayload",
    "BatchConfig",
    "BatchSnapshot",
    "ContinueJobRequest",
    "ContinueJobResponse",
    "DocumentRegistration",
    "ModelPolicy",
    "PageRange",
    "SingleAnalysisMeta",
    "SingleAnalysisRequest",
    "SingleAnalysisResponse",
    "TakeoffJobCreated",
    "TakeoffJobRequest",
    "TakeoffJobStatus",
]

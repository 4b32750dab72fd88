"""
Pydantic models for takeoff jobs and single-shot plan analysis.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class PageRange(BaseModel):
    """Inclusive, 1-based page range of a document."""

    start: int = Field(..., ge=1, description="First page to analyze.")
    end: int = Field(..., ge=1, description="Last page to analyze.")

    @model_validator(mode="after")
    def _check_order(self) -> "PageRange":
        if self.end < self.start:
            raise ValueError("page_range.end must be >= page_range.start")
        return self


class BatchConfig(BaseModel):
    batch_size: Optional[int] = Field(
        None, ge=1, description="Pages per batch; the service default applies when omitted."
    )
    max_retries: Optional[int] = Field(
        None, ge=1, le=10, description="Attempts per batch before it is marked failed."
    )


class ModelPolicy(BaseModel):
    """Per-job model selection and generation settings."""

    primary: Optional[str] = Field(None, description="Model tried first for every batch.")
    fallbacks: List[str] = Field(
        default_factory=list, description="Models tried after the primary, before the service defaults."
    )
    max_tokens: Optional[int] = Field(None, ge=256, description="Initial output token budget.")
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)


class TakeoffJobRequest(BaseModel):
    """Start a batched takeoff job for a stored document."""

    job_id: str = Field(..., min_length=1, description="Caller-chosen unique job identifier.")
    document_id: str = Field(..., min_length=1)
    document_reference: str = Field(
        ...,
        min_length=1,
        description="Where page images live: a local directory or a manifest URL.",
    )
    mode: Literal["takeoff", "quality_analysis", "both"] = Field(
        "both", description="Whether batches extract items, review plan quality or both."
    )
    model_policy: ModelPolicy = Field(default_factory=ModelPolicy)
    batch_config: BatchConfig = Field(default_factory=BatchConfig)
    page_range: Optional[PageRange] = Field(
        None, description="Restrict the job to a page range; defaults to every page."
    )


class TakeoffJobCreated(BaseModel):
    job_id: str
    status: str
    total_batches: int
    total_pages: int
    estimated_minutes: int = Field(
        ..., description="Rough duration estimate based on the number of batches."
    )


class ContinueJobRequest(BaseModel):
    max_batches: int = Field(3, ge=1, le=50)
    timeout_ms: int = Field(10000, ge=1)


class ContinueJobResponse(BaseModel):
    processed: int
    remaining: int
    status: str
    progress_percent: int
    message: str


class BatchSnapshot(BaseModel):
    batch_index: int
    page_start: int
    page_end: int
    status: Literal["pending", "processing", "completed", "failed"]
    items: Optional[int] = None
    error: Optional[str] = None


class TakeoffJobStatus(BaseModel):
    """Read-only view of a job and its batches."""

    job_id: str
    document_id: str
    user_id: Optional[str] = None
    mode: str
    model_policy: Dict[str, Any] = Field(default_factory=dict)
    batch_config: Dict[str, Any] = Field(default_factory=dict)
    status: Literal["queued", "running", "completed", "failed"]
    page_start: int
    page_end: int
    total_pages: int
    total_batches: int
    processed_batches: int
    completed_batches: int
    remaining_batches: int
    progress_percent: int = Field(..., ge=0, le=100)
    is_partial: bool
    has_result: bool
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    summary: Optional[Dict[str, Any]] = None
    confidence: Optional[float] = None
    merged_at: Optional[str] = None
    created_at: str
    updated_at: str
    batches: List[BatchSnapshot] = Field(default_factory=list)


class AnalysisPayload(BaseModel):
    items: List[Any] = Field(default_factory=list)
    quality_analysis: Dict[str, Any] = Field(default_factory=dict)


class SingleAnalysisRequest(BaseModel):
    """Analyze a handful of page images of a stored document in one call."""

    document_id: str = Field(..., min_length=1)
    page_images: List[str] = Field(
        ..., min_length=1, description="Base64 data URLs of the pages to analyze."
    )


class SingleAnalysisMeta(BaseModel):
    provider: str
    attempts: int
    repaired: bool
    notes: Optional[str] = None
    reason: Optional[str] = None
    items_count: int
    quality_analysis_keys: List[str] = Field(default_factory=list)
    analysis_id: Optional[str] = None
    issues_id: Optional[str] = None


class SingleAnalysisResponse(AnalysisPayload):
    meta: SingleAnalysisMeta


class DocumentRegistration(BaseModel):
    """Register a plan document so jobs and analyses can reference it."""

    document_id: str = Field(..., min_length=1)
    reference: str = Field(..., min_length=1)
    project_name: Optional[str] = None
    plan_title: Optional[str] = None
    job_type: Literal["residential", "commercial"] = "residential"
    owner_id: Optional[str] = Field(
        None, description="Owning user; only service and admin callers may set it."
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

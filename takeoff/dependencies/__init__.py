"""Expose dependency helpers for FastAPI routers."""

from .clients import (
    get_analysis_controller,
    get_authenticator,
    get_caller_token_encoder,
    get_continuation_queue_service,
    get_document_repository,
    get_job_admission_policy,
    get_page_source,
    get_queue_client,
    get_record_store,
    get_takeoff_job_service,
    get_vision_client,
)
from .config import SettingsDependency, get_app_settings, get_orchestrator_settings

__all__ = [
    "SettingsDependency",
    "get_analysis_controller",
    "get_app_settings",
    "get_authenticator",
    "get_caller_token_encoder",
    "get_continuation_queue_service",
    "get_document_repository",
    "get_job_admission_policy",
    "get_orchestrator_settings",
    "get_page_source",
    "get_queue_client",
    "get_record_store",
    "get_takeoff_job_service",
    "get_vision_client",
]

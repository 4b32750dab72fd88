"""
FastAPI dependencies exposing configuration groups to the takeoff routes.
"""

from fastapi import Depends

from takeoff.core.config import AppSettings, OrchestratorSettings, get_settings


def get_app_settings() -> AppSettings:
    """Root settings; overridable in tests through ``dependency_overrides``."""
    return get_settings()


def get_orchestrator_settings(
    settings: AppSettings = Depends(get_app_settings),
) -> OrchestratorSettings:
    return settings.orchestrator


SettingsDependency = Depends(get_app_settings)

__all__ = ["SettingsDependency", "get_app_settings", "get_orchestrator_settings"]

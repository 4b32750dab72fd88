"""
Persist the outcome of a single-shot plan analysis.

The takeoff record keeps the items and a summary; the quality record keeps the
risk flags reshaped into issues, bucketed by severity. Storage failures are
logged and reported as missing ids, never raised to the caller.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from takeoff.clients.sqlite_store import RecordStore
from takeoff.services.documents import DocumentRepository, document_key


logger = logging.getLogger(__name__)

SEVERITIES = ("critical", "warning", "info")


class PersistenceError(Exception):
    """Raised when an analysis record cannot be written; logged, never propagated."""


@dataclass(slots=True)
class RecordedAnalysis:
    items: List[Dict[str, Any]]
    analysis_id: Optional[str]
    issues_id: Optional[str]


def assign_item_ids(
    items: List[Any], *, now_ms: Callable[[], int] | None = None
) -> List[Dict[str, Any]]:
    """Copy items, giving each one without an ``id`` a synthetic ``item-<ms>-<index>``.

    Items that are not objects (a bare ``"Door"``) are kept as ``{"value": item}``.
    """
    stamp = (now_ms or (lambda: int(time.time() * 1000)))()
    identified: List[Dict[str, Any]] = []
    for index, item in enumerate(items):
        record = dict(item) if isinstance(item, dict) else {"value": item}
        record["id"] = record.get("id") or f"item-{stamp}-{index}"
        identified.append(record)
    return identified


def mean_confidence(items: List[Any], default: float = 0.8) -> float:
    if not items:
        return 0.0
    total = 0.0
    for item in items:
        value = item.get("confidence") if isinstance(item, dict) else None
        total += value if isinstance(value, (int, float)) and value else default
    return total / len(items)


def risk_flags_to_issues(
    quality_analysis: Dict[str, Any], default_confidence: float = 0.8
) -> List[Dict[str, Any]]:
    issues: List[Dict[str, Any]] = []
    for flag in quality_analysis.get("risk_flags") or []:
        if not isinstance(flag, dict):
            continue
        bounding_box = flag.get("bounding_box")
        issues.append(
            {
                "severity": flag.get("severity") or "info",
                "category": flag.get("category") or "general",
                "description": flag.get("description") or flag.get("impact") or "",
                "location": flag.get("location") or "",
                "impact": flag.get("impact") or "",
                "recommendation": flag.get("recommendation") or "",
                "page_number": bounding_box.get("page") if isinstance(bounding_box, dict) else None,
                "bounding_box": bounding_box,
                "confidence": flag.get("confidence") or default_confidence,
            }
        )
    return issues


def bucket_issues(issues: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    return {
        severity: [issue for issue in issues if issue["severity"] == severity]
        for severity in SEVERITIES
    }


class AnalysisRecorder:
    """Write analysis and issues records and flip the document status flags."""

    def __init__(
        self,
        store: RecordStore,
        documents: DocumentRepository,
        *,
        default_confidence: float = 0.8,
    ) -> None:
        self._store = store
        self._documents = documents
        self._default_confidence = default_confidence

    def record(
        self,
        *,
        document_id: str,
        user_id: Optional[str],
        items: List[Any],
        quality_analysis: Dict[str, Any],
        provider: str,
        job_type: str = "residential",
        processing_time_ms: int = 0,
    ) -> RecordedAnalysis:
        items_with_ids = assign_item_ids(items)
        analysis_id = self._save_takeoff(
            document_id=document_id,
            user_id=user_id,
            items=items_with_ids,
            quality_analysis=quality_analysis,
            provider=provider,
            job_type=job_type,
            processing_time_ms=processing_time_ms,
        )
        issues_id = self._save_quality(
            document_id=document_id,
            user_id=user_id,
            has_items=bool(items_with_ids),
            quality_analysis=quality_analysis,
            provider=provider,
            job_type=job_type,
            processing_time_ms=processing_time_ms,
        )
        return RecordedAnalysis(items=items_with_ids, analysis_id=analysis_id, issues_id=issues_id)

    def mark_failed(self, document_id: str) -> None:
        try:
            self._documents.update_flags(document_id, takeoff_analysis_status="failed")
        except Exception:
            logger.exception("Failed to mark document %s as failed", document_id)

    def _persist(self, record: Dict[str, Any], document_id: str, **flags: Any) -> None:
        try:
            self._store.put_item(record)
            self._documents.update_flags(document_id, **flags)
        except Exception as exc:
            raise PersistenceError(f"Could not write {record['sk']}: {exc}") from exc

    def _save_takeoff(
        self,
        *,
        document_id: str,
        user_id: Optional[str],
        items: List[Dict[str, Any]],
        quality_analysis: Dict[str, Any],
        provider: str,
        job_type: str,
        processing_time_ms: int,
    ) -> Optional[str]:
        analysis_id = uuid4().hex
        confidence = mean_confidence(items, self._default_confidence)
        record = {
            "pk": document_key(document_id),
            "sk": f"analysis#{analysis_id}",
            "analysis_id": analysis_id,
            "document_id": document_id,
            "user_id": user_id,
            "items": items,
            "summary": {
                "total_items": len(items),
                "confidence": confidence,
                "consensus_count": 1,
                "model_agreements": [provider],
                "quality_analysis": quality_analysis,
            },
            "ai_model": f"single-{provider}",
            "confidence_scores": {"consensus": confidence, "model_count": 1},
            "processing_time_ms": processing_time_ms,
            "job_type": job_type,
            "created_at": datetime.now(tz=timezone.utc).isoformat(),
        }
        try:
            self._persist(
                record,
                document_id,
                takeoff_analysis_status="completed",
                has_takeoff_analysis=True,
            )
        except PersistenceError:
            logger.exception("Error saving takeoff analysis for document %s", document_id)
            return None
        return analysis_id

    def _save_quality(
        self,
        *,
        document_id: str,
        user_id: Optional[str],
        has_items: bool,
        quality_analysis: Dict[str, Any],
        provider: str,
        job_type: str,
        processing_time_ms: int,
    ) -> Optional[str]:
        issues_id = uuid4().hex
        issues = risk_flags_to_issues(quality_analysis, self._default_confidence)
        completeness = quality_analysis.get("completeness") or {}
        overall_score = completeness.get("overall_score") or (
            self._default_confidence if has_items else 0.5
        )
        record = {
            "pk": document_key(document_id),
            "sk": f"issues#{issues_id}",
            "issues_id": issues_id,
            "document_id": document_id,
            "user_id": user_id,
            "overall_score": overall_score,
            "issues": issues,
            "recommendations": [issue["recommendation"] for issue in issues if issue["recommendation"]],
            "missing_details": completeness.get("missing_details") or [],
            "findings_by_severity": bucket_issues(issues),
            "ai_model": f"single-{provider}",
            "processing_time_ms": processing_time_ms,
            "job_type": job_type,
            "created_at": datetime.now(tz=timezone.utc).isoformat(),
        }
        try:
            self._persist(
                record,
                document_id,
                quality_analysis_status="completed",
                has_quality_analysis=True,
            )
        except PersistenceError:
            logger.exception("Error saving quality analysis for document %s", document_id)
            return None
        return issues_id


__all__ = [
    "AnalysisRecorder",
    "PersistenceError",
    "RecordedAnalysis",
    "assign_item_ids",
    "bucket_issues",
    "mean_confidence",
    "risk_flags_to_issues",
]

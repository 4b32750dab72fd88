"""
Plan document records: the metadata a takeoff or single-shot analysis needs.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from takeoff.clients.sqlite_store import RecordStore


class DocumentNotFoundError(Exception):
    """Raised when a document id has no stored record."""


class DocumentOwnershipError(Exception):
    """Raised when re-registering a document that belongs to another user."""


def document_key(document_id: str) -> str:
    return f"document#{document_id}"


class DocumentRepository:
    """Read and update plan document records."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    def register(
        self,
        *,
        document_id: str,
        reference: str,
        user_id: Optional[str] = None,
        project_name: Optional[str] = None,
        plan_title: Optional[str] = None,
        job_type: str = "residential",
        reassign: bool = False,
    ) -> Dict[str, Any]:
        """Create a document record, or update one the caller already owns.

        Registering an existing document under a different ``user_id`` raises
        :class:`DocumentOwnershipError` unless ``reassign`` is set; with
        ``reassign`` and no ``user_id`` the current owner is kept. Analysis
        status flags survive re-registration.
        """
        now_iso = datetime.now(tz=timezone.utc).isoformat()
        existing = self._store.get_item(partition_key=document_key(document_id), sort_key="meta")
        owner = user_id
        if existing is not None:
            current_owner = existing.get("user_id")
            if current_owner != user_id:
                if not reassign:
                    raise DocumentOwnershipError(
                        f"Document {document_id} belongs to another user"
                    )
                owner = user_id or current_owner
        item: Dict[str, Any] = {
            "takeoff_analysis_status": "pending",
            "has_takeoff_analysis": False,
            "quality_analysis_status": "pending",
            "has_quality_analysis": False,
            "created_at": now_iso,
            **(existing or {}),
            "pk": document_key(document_id),
            "sk": "meta",
            "document_id": document_id,
            "reference": reference,
            "user_id": owner,
            "project_name": project_name,
            "plan_title": plan_title,
            "job_type": job_type,
            "updated_at": now_iso,
        }
        self._store.put_item(item)
        return item

    def get(self, document_id: str) -> Dict[str, Any]:
        item = self._store.get_item(partition_key=document_key(document_id), sort_key="meta")
        if item is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")
        return item

    def update_flags(self, document_id: str, **flags: Any) -> Dict[str, Any]:
        item = self.get(document_id)
        item.update(flags)
        item["updated_at"] = datetime.now(tz=timezone.utc).isoformat()
        self._store.put_item(item)
        return item


__all__ = [
    "DocumentNotFoundError",
    "DocumentOwnershipError",
    "DocumentRepository",
    "document_key",
]

"""Combine per-batch analysis payloads into one job-level payload."""

from __future__ import annotations

import json
import math
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from takeoff.services.json_repair import QUALITY_KEYS, normalize_quality_analysis


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _item_page(item: Dict[str, Any]) -> Any:
    box = item.get("bounding_box")
    if isinstance(box, dict) and box.get("page") is not None:
        return box.get("page")
    return item.get("page")


def item_identity(item: Dict[str, Any]) -> str:
    """Items on the same page with the same box and name are one item."""
    box = item.get("bounding_box")
    name = item.get("name")
    page = _item_page(item)
    if isinstance(box, dict) and name and page is not None:
        return _canonical(["item", page, box, name])
    return _canonical(item)


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return math.inf
    return float(value)


def _position(item: Any) -> Tuple[float, float]:
    if not isinstance(item, dict):
        return math.inf, math.inf
    box = item.get("bounding_box")
    y = box.get("y") if isinstance(box, dict) else None
    return _number(_item_page(item)), _number(y)


def merge_items(batches: Iterable[Sequence[Any]]) -> List[Any]:
    """Dedupe items across batches; items that are not objects compare by value."""
    seen: set[str] = set()
    merged: List[Any] = []
    for items in batches:
        for item in items:
            key = item_identity(item) if isinstance(item, dict) else _canonical(item)
            if key in seen:
                continue
            seen.add(key)
            merged.append(item)
    # sorted() is stable, so batch order breaks ties.
    return sorted(merged, key=_position)


def _ordered_union(values: Iterable[Any]) -> List[Any]:
    seen: set[str] = set()
    result: List[Any] = []
    for value in values:
        key = _canonical(value)
        if key in seen:
            continue
        seen.add(key)
        result.append(value)
    return result


def _list_of(section: Any, key: str) -> List[Any]:
    if isinstance(section, dict) and isinstance(section.get(key), list):
        return section[key]
    return []


def _risk_flag_key(flag: Any) -> str:
    if not isinstance(flag, dict):
        return _canonical(flag)
    return _canonical(
        [flag.get("severity"), flag.get("category"), flag.get("description"), flag.get("location")]
    )


def merge_quality(
    analyses: Sequence[Dict[str, Any]],
    *,
    batch_count: int,
    total_batches: int,
    page_start: int,
    page_end: int,
) -> Dict[str, Any]:
    normalized = [normalize_quality_analysis(analysis) for analysis in analyses]
    completeness = [qa["completeness"] for qa in normalized]
    consistency = [qa["consistency"] for qa in normalized]

    notes = _ordered_union(
        section.get("notes") for section in completeness
        if isinstance(section, dict) and section.get("notes")
    )

    flags: List[Any] = []
    flag_keys: set[str] = set()
    for qa in normalized:
        for flag in qa["risk_flags"] if isinstance(qa["risk_flags"], list) else []:
            key = _risk_flag_key(flag)
            if key in flag_keys:
                continue
            flag_keys.add(key)
            flags.append(flag)

    methods = _ordered_union(
        qa["audit_trail"].get("method") for qa in normalized
        if isinstance(qa["audit_trail"], dict) and qa["audit_trail"].get("method")
    )
    merged: Dict[str, Any] = {
        "completeness": {
            "missing_disciplines": _ordered_union(
                value for section in completeness for value in _list_of(section, "missing_disciplines")
            ),
            "missing_sheets": _ordered_union(
                value for section in completeness for value in _list_of(section, "missing_sheets")
            ),
            "notes": "; ".join(notes),
        },
        "consistency": {
            key: _ordered_union(value for section in consistency for value in _list_of(section, key))
            for key in ("conflicts", "unit_mismatches", "scale_issues")
        },
        "risk_flags": flags,
        "audit_trail": {
            "chunks_covered": f"{batch_count} of {total_batches} batches",
            "pages_covered": f"{page_start}-{page_end}",
            "method": "; ".join([f"Merged from {batch_count} batch analyses", *methods]),
        },
    }

    # Model-specific extra sections: lists are unioned, anything else keeps the first value.
    for qa in normalized:
        for key, value in qa.items():
            if key in QUALITY_KEYS:
                continue
            if key not in merged:
                merged[key] = list(value) if isinstance(value, list) else value
            elif isinstance(merged[key], list) and isinstance(value, list):
                merged[key] = _ordered_union([*merged[key], *value])
    return merged


__all__ = ["item_identity", "merge_items", "merge_quality"]

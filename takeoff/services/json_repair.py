"""
Repair and extraction of analysis payloads from unreliable model output.

Vision models wrap JSON in prose or code fences, truncate it mid-stream, or
emit near-JSON (trailing commas, single quotes, missing separators). The
helpers here turn any string into an ``ExtractionResult`` without raising:
stages run from cheapest to most invasive and stop at the first one that yields
an ``items`` array.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

QUALITY_KEYS: tuple[str, ...] = (
    "completeness",
    "consistency",
    "risk_flags",
    "audit_trail",
)

_ZERO_WIDTH = re.compile("[\u200b\u200c\u200d\u2060\ufeff]")
_FENCE_OPEN = re.compile(r"^```[ \t]*(?:json)?[ \t]*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"```$")
_DANGLING_KEY = re.compile(r',?\s*"(?:[^"\\]|\\.)*"\s*:$')
_OPENERS = {"{": "}", "[": "]"}
_CLOSERS = {"}": "{", "]": "["}


@dataclass(slots=True)
class ExtractionResult:
    """Best-effort structured payload recovered from raw model text."""

    items: List[Any]
    quality_analysis: Dict[str, Any]
    repaired: bool
    notes: Optional[str] = None

    def payload(self) -> Dict[str, Any]:
        return {"items": self.items, "quality_analysis": self.quality_analysis}


def fallback_quality_analysis(
    notes: str = "Quality analysis not extractable from response",
    method: str = "Response parsing failed - minimal structure returned",
) -> Dict[str, Any]:
    """Return a well-formed quality analysis carrying explanatory notes."""
    return {
        "completeness": {
            "missing_disciplines": [],
            "missing_sheets": [],
            "notes": notes,
        },
        "consistency": {"conflicts": [], "unit_mismatches": [], "scale_issues": []},
        "risk_flags": [],
        "audit_trail": {"chunks_covered": "", "pages_covered": "", "method": method},
    }


def _empty_section(key: str) -> Any:
    return fallback_quality_analysis(notes="", method="")[key]


def normalize_quality_analysis(value: Any) -> Dict[str, Any]:
    """Guarantee the four top-level quality keys without touching present ones."""
    if not isinstance(value, dict):
        return fallback_quality_analysis()
    normalized = dict(value)
    for key in QUALITY_KEYS:
        if key not in normalized:
            normalized[key] = _empty_section(key)
    return normalized


def extract_analysis_payload(raw: Any) -> ExtractionResult:
    """Recover ``items`` and ``quality_analysis`` from arbitrary model output."""
    text = "" if raw is None else raw if isinstance(raw, str) else str(raw)
    notes: List[str] = []

    cleaned = _clean(text)
    parsed = _load_payload(cleaned)
    if parsed is not None:
        return _from_parsed(parsed, repaired=False, notes=notes)
    notes.append("Direct JSON parse failed")

    candidate = _strip_prose(cleaned)
    parsed = _load_payload(candidate)
    if parsed is not None:
        notes.append("Required prose removal")
        return _from_parsed(parsed, repaired=True, notes=notes)
    notes.append("Parse after prose removal failed")

    for label, repair in _REPAIRS:
        candidate = repair(candidate)
        parsed = _load_payload(candidate)
        if parsed is not None:
            notes.append(f"Applied JSON repairs ({label})")
            return _from_parsed(parsed, repaired=True, notes=notes)
    notes.append("Parse after repairs failed")

    depths = _depth_map(candidate)
    items = _extract_items(candidate, depths)
    quality_analysis = _extract_quality_analysis(candidate, depths)
    if items or quality_analysis is not None:
        notes.append("Used partial extraction")
        if quality_analysis is None:
            notes.append("quality_analysis not found")
            quality_analysis = fallback_quality_analysis(
                notes="Quality analysis structure not found in response",
                method="JSON structure not parseable",
            )
        logger.debug("Partial extraction recovered %d items", len(items))
        return ExtractionResult(
            items=items,
            quality_analysis=quality_analysis,
            repaired=True,
            notes="; ".join(notes),
        )

    notes.append("All extraction methods failed - returning empty structure")
    logger.debug("Extraction failed for %d characters of model output", len(text))
    return ExtractionResult(
        items=[],
        quality_analysis=fallback_quality_analysis(),
        repaired=True,
        notes="; ".join(notes),
    )


def _from_parsed(
    parsed: Dict[str, Any], *, repaired: bool, notes: List[str]
) -> ExtractionResult:
    if "quality_analysis" not in parsed:
        notes.append("quality_analysis missing; fallback structure used")
    return ExtractionResult(
        items=parsed["items"],
        quality_analysis=normalize_quality_analysis(parsed.get("quality_analysis")),
        repaired=repaired,
        notes="; ".join(notes) if notes else None,
    )


def _load_payload(text: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(text)
    except (ValueError, RecursionError):
        return None
    if isinstance(parsed, dict) and isinstance(parsed.get("items"), list):
        return parsed
    return None


def _clean(text: str) -> str:
    cleaned = _ZERO_WIDTH.sub("", text).strip()
    cleaned = _FENCE_OPEN.sub("", cleaned, count=1)
    cleaned = _FENCE_CLOSE.sub("", cleaned, count=1)
    return cleaned.strip()


def _strip_prose(text: str) -> str:
    first = text.find("{")
    last = text.rfind("}")
    if first == -1:
        return text
    if _balanced_span(text, first) is None:
        # Truncated output: keep everything after the opening brace.
        return text[first:]
    if last <= first:
        return text
    return text[first : last + 1]


def _next_significant(text: str, start: int, skip: str = "") -> Optional[int]:
    for index in range(start, len(text)):
        char = text[index]
        if char.isspace() or char in skip:
            continue
        return index
    return None


def _remove_trailing_commas(text: str) -> str:
    out: List[str] = []
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            out.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == ",":
            following = _next_significant(text, index + 1, skip=",")
            if following is not None and text[following] in "}]":
                continue
        out.append(char)
    return "".join(out)


def _insert_missing_commas(text: str) -> str:
    out: List[str] = []
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        out.append(char)
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "}]":
            following = _next_significant(text, index + 1)
            if following is not None and text[following] in '{["':
                out.append(",")
    return "".join(out)


def _normalize_single_quotes(text: str) -> str:
    out: List[str] = []
    last_significant = ""
    in_string = False
    escaped = False
    index = 0
    while index < len(text):
        char = text[index]
        if in_string:
            out.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
                last_significant = char
            index += 1
            continue
        if char == "'":
            closing = text.find("'", index + 1)
            if closing == -1:
                out.append(text[index:])
                break
            content = text[index + 1 : closing]
            following = _next_significant(text, closing + 1)
            next_char = text[following] if following is not None else ""
            convertible = (
                last_significant in ("{", "[", ",", ":")
                and next_char in ("", ":", ",", "}", "]")
                and '"' not in content
                and "\\" not in content
            )
            if convertible:
                out.append(f'"{content}"')
                last_significant = '"'
            else:
                out.append(text[index : closing + 1])
                last_significant = "'"
            index = closing + 1
            continue
        if char == '"':
            in_string = True
        out.append(char)
        if not char.isspace():
            last_significant = char
        index += 1
    return "".join(out)


def _rebalance_brackets(text: str) -> str:
    out: List[str] = []
    stack: List[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            out.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
            out.append(char)
        elif char in _OPENERS:
            stack.append(char)
            out.append(char)
        elif char in _CLOSERS:
            opener = _CLOSERS[char]
            if opener not in stack:
                continue
            while stack[-1] != opener:
                out.append(_OPENERS[stack.pop()])
            stack.pop()
            out.append(char)
        else:
            out.append(char)

    if in_string:
        if escaped:
            out.pop()
        out.append('"')
        body = "".join(out)
    else:
        body = _trim_dangling_tail("".join(out))
    return body + "".join(_OPENERS[opener] for opener in reversed(stack))


def _trim_dangling_tail(text: str) -> str:
    body = text.rstrip()
    while True:
        if body.endswith(","):
            body = body[:-1].rstrip()
        elif body.endswith(":"):
            trimmed = _DANGLING_KEY.sub("", body)
            body = (trimmed if trimmed != body else body[:-1]).rstrip()
        else:
            return body


def _rebalance_and_tidy(text: str) -> str:
    return _remove_trailing_commas(_rebalance_brackets(text))


_REPAIRS: tuple[Tuple[str, Callable[[str], str]], ...] = (
    ("trailing commas", _remove_trailing_commas),
    ("missing commas", _insert_missing_commas),
    ("single quotes", _normalize_single_quotes),
    ("bracket balance", _rebalance_and_tidy),
)


def _local_repair(fragment: str) -> str:
    return _normalize_single_quotes(
        _insert_missing_commas(_remove_trailing_commas(fragment))
    )


def _parse_fragment(fragment: str) -> Any:
    for candidate in (fragment, _local_repair(fragment)):
        try:
            return json.loads(candidate)
        except (ValueError, RecursionError):
            continue
    return None


def _depth_map(text: str) -> List[int]:
    """Nesting depth before each character; -1 marks string contents."""
    depths = [0] * len(text)
    depth = 0
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            depths[index] = -1
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        depths[index] = depth
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            depth += 1
        elif char in _CLOSERS:
            depth = max(0, depth - 1)
    return depths


def _locate_key(text: str, depths: List[int], key: str, opener: str) -> Optional[int]:
    """Index of ``opener`` after the shallowest structural occurrence of ``key``."""
    pattern = re.compile(r'"%s"\s*:\s*%s' % (re.escape(key), re.escape(opener)))
    best: Optional[Tuple[int, int]] = None
    for match in pattern.finditer(text):
        depth = depths[match.start()]
        if depth < 0:
            continue
        if best is None or depth < best[0]:
            best = (depth, match.end() - 1)
    return best[1] if best else None


def _balanced_span(text: str, start: int) -> Optional[str]:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            depth += 1
        elif char in _CLOSERS:
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def _array_objects(text: str, start: int) -> List[str]:
    """Top-level object literals of the array whose ``[`` sits at ``start``."""
    fragments: List[str] = []
    depth = 0
    object_start: Optional[int] = None
    in_string = False
    escaped = False
    for index in range(start + 1, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            if depth == 0 and char == "{":
                object_start = index
            depth += 1
        elif char in _CLOSERS:
            if depth == 0:
                break
            depth -= 1
            if depth == 0 and char == "}" and object_start is not None:
                fragments.append(text[object_start : index + 1])
                object_start = None
    return fragments


def _extract_objects(text: str, start: int) -> List[Dict[str, Any]]:
    objects: List[Dict[str, Any]] = []
    for fragment in _array_objects(text, start):
        parsed = _parse_fragment(fragment)
        if isinstance(parsed, dict):
            objects.append(parsed)
        else:
            logger.debug("Dropping unparseable object: %s", fragment[:80])
    return objects


def _extract_items(text: str, depths: List[int]) -> List[Dict[str, Any]]:
    start = _locate_key(text, depths, "items", "[")
    if start is None:
        return []
    return _extract_objects(text, start)


def _extract_quality_analysis(text: str, depths: List[int]) -> Optional[Dict[str, Any]]:
    start = _locate_key(text, depths, "quality_analysis", "{")
    if start is not None:
        span = _balanced_span(text, start)
        parsed = _parse_fragment(span) if span is not None else None
        if isinstance(parsed, dict):
            return normalize_quality_analysis(parsed)

    sections: Dict[str, Any] = {}
    for key in ("completeness", "consistency", "audit_trail"):
        position = _locate_key(text, depths, key, "{")
        if position is None:
            continue
        span = _balanced_span(text, position)
        parsed = _parse_fragment(span) if span is not None else None
        if isinstance(parsed, dict):
            sections[key] = parsed
    position = _locate_key(text, depths, "risk_flags", "[")
    if position is not None:
        sections["risk_flags"] = _extract_objects(text, position)

    if not sections:
        return None
    return normalize_quality_analysis(
        {key: sections[key] for key in QUALITY_KEYS if key in sections}
    )


__all__ = [
    "ExtractionResult",
    "QUALITY_KEYS",
    "extract_analysis_payload",
    "fallback_quality_analysis",
    "normalize_quality_analysis",
]

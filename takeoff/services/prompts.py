"""Prompt builders for takeoff and quality analysis of plan sheets."""

from __future__ import annotations

from dataclasses import dataclass
from textwrap import dedent
from typing import Optional


_SYSTEM_PROMPT = dedent(
    """
    You are an expert construction estimator. Extract takeoff items and perform
    a quality analysis of the construction plan pages you are given.

    Return ONLY a JSON object with exactly two top-level keys:
    {"items": [...], "quality_analysis": {...}}
    No markdown, no code fences, no commentary outside the JSON object.

    Each item uses these field names:
    - name: string
    - description: string
    - category: "structural" | "exterior" | "interior" | "mep" | "finishes" | "other"
    - subcategory: string
    - quantity: number
    - unit: "LF" | "SF" | "CF" | "CY" | "EA" | "SQ" | "LS"
    - unit_cost: number
    - cost_code: string (for example "06-10-00")
    - cost_code_description: string (optional)
    - location: string (include sheet or page references when possible)
    - dimensions: string ("Dimension not visible" when unreadable)
    - notes: string (optional)
    - confidence: number between 0 and 1
    - bounding_box: {"x": 0-1, "y": 0-1, "page": number, "width": 0-1, "height": 0-1}

    quality_analysis uses this structure:
    {
      "completeness": {"missing_disciplines": [string], "missing_sheets": [number], "notes": string},
      "consistency": {"conflicts": [string], "unit_mismatches": [string], "scale_issues": [string]},
      "risk_flags": [{
        "severity": "critical" | "warning" | "info",
        "category": string,
        "description": string,
        "location": string,
        "impact": string,
        "recommendation": string,
        "confidence": number,
        "bounding_box": {"x": number, "y": number, "page": number, "width": number, "height": number}
      }],
      "audit_trail": {"chunks_covered": string, "pages_covered": string, "method": string}
    }

    Rules:
    1. Prefer more items over fewer; a single page should yield 5-15 items or more.
    2. Include uncertain items with confidence below 0.6 rather than omitting them.
    3. Avoid double counting the same element.
    4. Keep units and scales explicit.
    5. Always return both the items array and the quality_analysis object, even when empty.
    6. Document assumptions in quality_analysis.audit_trail.method.
    """
).strip()


_EXAMPLE_ITEM = dedent(
    """
    {
      "name": "Interior Wall Framing",
      "description": "Metal stud framing for interior walls",
      "category": "structural",
      "subcategory": "wall framing",
      "quantity": 300,
      "unit": "LF",
      "unit_cost": 4.5,
      "cost_code": "06-10-00",
      "cost_code_description": "Rough Carpentry",
      "location": "Interior partitions, sheet A-101",
      "dimensions": "Dimension not visible",
      "confidence": 0.85,
      "bounding_box": {"x": 0.15, "y": 0.25, "page": 2, "width": 0.3, "height": 0.2}
    }
    """
).strip()


@dataclass(frozen=True, slots=True)
class ProjectContext:
    """Descriptive metadata injected into the user prompt."""

    project_name: Optional[str] = None
    plan_title: Optional[str] = None
    job_type: str = "residential"


ANALYSIS_MODES = ("takeoff", "quality_analysis", "both")

_MODE_FOCUS = {
    "takeoff": (
        "FOCUS: takeoff. Spend the answer on a complete item list; keep quality_analysis "
        "brief but present."
    ),
    "quality_analysis": (
        "FOCUS: quality analysis. Spend the answer on completeness, consistency and risk "
        "flags; list only the items needed to support them."
    ),
}


def build_system_prompt(mode: str = "both") -> str:
    """System prompt for ``mode``: ``takeoff``, ``quality_analysis`` or ``both``."""
    if mode not in ANALYSIS_MODES:
        raise ValueError(f"Unknown analysis mode: {mode}")
    focus = _MODE_FOCUS.get(mode)
    return f"{_SYSTEM_PROMPT}\n\n{focus}" if focus else _SYSTEM_PROMPT


def build_user_prompt(
    image_count: int,
    context: ProjectContext | None = None,
    *,
    page_start: int | None = None,
    page_end: int | None = None,
) -> str:
    """Describe the page set and restate the extraction checklist."""
    context = context or ProjectContext()
    plural = "s" if image_count != 1 else ""
    lines = [
        f"PROJECT: {context.project_name or 'Unknown'}",
        f"PLAN: {context.plan_title or 'Unknown'}",
        f"TYPE: {context.job_type}",
        "",
        f"Analyze {image_count} page{plural} of construction plans.",
    ]
    if page_start is not None and page_end is not None:
        lines.append(
            f"These images are pages {page_start} through {page_end} of a larger set; "
            "use those page numbers in bounding_box.page and audit_trail.pages_covered."
        )
    lines.extend(
        [
            "",
            "EXTRACT COMPREHENSIVE TAKEOFF ITEMS:",
            "- Go through every visible element on every page",
            "- Calculate quantities from visible dimensions",
            "- Assign cost codes and realistic unit costs",
            "- Provide a bounding box for each item",
            "",
            "PERFORM QUALITY ANALYSIS:",
            "- Identify missing dimensions, sheets, or disciplines",
            "- Check for conflicts, unit mismatches, and scale issues",
            "- Flag safety, code compliance, and quality risks",
            "- Record which pages were analyzed",
            "",
            "EXAMPLE ITEM:",
            _EXAMPLE_ITEM,
            "",
            'Return ONLY: { "items": [...], "quality_analysis": {...} }',
        ]
    )
    return "\n".join(lines)


def build_reinforcement_clause(items_found: int, threshold: int) -> str:
    """Clause appended to the user prompt after a too-sparse attempt."""
    return dedent(
        f"""

        IMPORTANT: You returned {items_found} items, but at least {threshold} items are required.
        Extract MORE comprehensively:
        - Look at EVERY element on EVERY page
        - Include ALL materials, fixtures, components, and systems
        - Do not skip small items; include everything
        - Count ALL doors, windows, outlets, and fixtures
        - Measure ALL areas, lengths, and volumes
        - Cover ALL categories: structural, exterior, interior, mep, finishes, other
        """
    ).rstrip()


__all__ = [
    "ANALYSIS_MODES",
    "ProjectContext",
    "build_reinforcement_clause",
    "build_system_prompt",
    "build_user_prompt",
]

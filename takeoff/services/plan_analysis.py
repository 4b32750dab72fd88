"""
Threshold-driven plan analysis.

A single analysis run is a small LangGraph state machine::

    invoke_model -> evaluate -> reinforce -> invoke_model ...

``invoke_model`` calls the vision model and runs the repair engine on its
answer, ``evaluate`` compares the item count with the threshold and keeps the
best attempt so far, and ``reinforce`` builds the next :class:`AttemptContext`
with a stronger prompt and a larger token budget.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, TypedDict

from langgraph.graph import END, START, StateGraph

from takeoff.clients.vision_llm import ProviderExhaustionError, VisionResponse
from takeoff.core.config import AnalysisSettings
from takeoff.services.analysis_records import AnalysisRecorder, RecordedAnalysis
from takeoff.services.documents import DocumentRepository
from takeoff.services.json_repair import ExtractionResult, extract_analysis_payload
from takeoff.services.prompts import (
    ProjectContext,
    build_reinforcement_clause,
    build_system_prompt,
    build_user_prompt,
)


logger = logging.getLogger(__name__)

BELOW_THRESHOLD_NOTE = "Attempted {attempts} times, best result below threshold"


class VisionLLM(Protocol):
    """Vision model collaborator, implemented by ``GeminiVisionClient``."""

    async def analyze(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        images: Sequence[str],
        max_tokens: int,
        timeout_ms: int,
        temperature: float,
        models: Sequence[str] | None = None,
    ) -> VisionResponse:
        ...


@dataclass(frozen=True, slots=True)
class AttemptContext:
    attempt: int
    prompt: str
    max_tokens: int
    provider: Optional[str] = None
    item_count: Optional[int] = None


@dataclass(frozen=True, slots=True)
class _Candidate:
    extraction: ExtractionResult
    provider: str
    attempt: int

    @property
    def item_count(self) -> int:
        return len(self.extraction.items)


@dataclass(slots=True)
class AnalysisRun:
    """Outcome of one controller loop."""

    items: List[Any]
    quality_analysis: Dict[str, Any]
    provider: str
    attempts: int
    repaired: bool
    threshold: int
    notes: Optional[str] = None
    reason: Optional[str] = None
    history: List[AttemptContext] = field(default_factory=list)

    @property
    def met_threshold(self) -> bool:
        return len(self.items) >= self.threshold

    def payload(self) -> Dict[str, Any]:
        return {"items": self.items, "quality_analysis": self.quality_analysis}


@dataclass(slots=True)
class DocumentAnalysis:
    run: AnalysisRun
    items: List[Any]
    analysis_id: Optional[str]
    issues_id: Optional[str]


class _LoopState(TypedDict, total=False):
    images: List[str]
    system_prompt: str
    models: List[str]
    temperature: float
    max_tokens_ceiling: int
    threshold: int
    context: AttemptContext
    history: List[AttemptContext]
    last: Optional[_Candidate]
    best: Optional[_Candidate]
    route: str
    result: Optional[AnalysisRun]


def _is_better(candidate: _Candidate, best: Optional[_Candidate]) -> bool:
    """A candidate replaces the best one only with strictly more items."""
    return best is None or candidate.item_count > best.item_count


def _join_notes(*parts: Optional[str]) -> Optional[str]:
    kept = [part for part in parts if part]
    return "; ".join(kept) if kept else None


class PlanAnalysisController:
    """Run the retry loop and, for single-shot requests, persist the outcome."""

    def __init__(
        self,
        llm: VisionLLM,
        settings: AnalysisSettings,
        *,
        documents: DocumentRepository | None = None,
        recorder: AnalysisRecorder | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._llm = llm
        self._settings = settings
        self._documents = documents
        self._recorder = recorder
        self._sleep = sleep
        self._graph = self._build_graph()

    def minimum_items(self, image_count: int, mode: str = "both") -> int:
        """Item threshold for a call; quality-only analysis accepts any item count."""
        if mode == "quality_analysis":
            return 0
        return max(self._settings.min_items_floor, self._settings.items_per_image * image_count)

    async def run(
        self,
        *,
        images: Sequence[str],
        user_prompt: str,
        system_prompt: str | None = None,
        mode: str = "both",
        models: Sequence[str] | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AnalysisRun:
        """Analyze ``images`` until the item threshold is met or attempts run out.

        ``models``, ``max_tokens`` and ``temperature`` override the configured
        model order, initial token budget and sampling temperature for this run.
        Raises :class:`ProviderExhaustionError` when the model never answered.
        """
        initial_tokens = max_tokens or self._settings.initial_max_tokens
        context = AttemptContext(attempt=1, prompt=user_prompt, max_tokens=initial_tokens)
        state: _LoopState = {
            "images": list(images),
            "system_prompt": system_prompt or build_system_prompt(mode),
            "models": list(models or []),
            "temperature": self._settings.temperature if temperature is None else temperature,
            "max_tokens_ceiling": max(self._settings.max_tokens_ceiling, initial_tokens),
            "threshold": self.minimum_items(len(images), mode),
            "context": context,
            "history": [],
            "last": None,
            "best": None,
            "route": "",
            "result": None,
        }
        final_state = await self._graph.ainvoke(state)
        result = final_state.get("result")
        if result is None:  # pragma: no cover - graph always sets a result or raises
            raise RuntimeError("Analysis loop finished without a result")
        return result

    async def analyze_document(
        self,
        *,
        document_id: str,
        images: Sequence[str],
        user_id: Optional[str] = None,
    ) -> DocumentAnalysis:
        """Single-shot analysis of up to ``max_images_per_call`` pages of a stored document."""
        if self._documents is None or self._recorder is None:
            raise RuntimeError("analyze_document requires a document repository and recorder")
        document = self._documents.get(document_id)

        limit = self._settings.max_images_per_call
        if len(images) > limit:
            logger.warning(
                "Limiting analysis of document %s to %d images (provided %d)",
                document_id,
                limit,
                len(images),
            )
            images = list(images)[:limit]

        context = ProjectContext(
            project_name=document.get("project_name") or document.get("plan_title"),
            plan_title=document.get("plan_title"),
            job_type=document.get("job_type") or "residential",
        )
        started = time.monotonic()
        try:
            run = await self.run(
                images=images,
                user_prompt=build_user_prompt(len(images), context),
            )
        except Exception:
            logger.exception("Single analysis failed for document %s", document_id)
            self._recorder.mark_failed(document_id)
            raise

        try:
            recorded = self._recorder.record(
                document_id=document_id,
                user_id=user_id or document.get("user_id"),
                items=run.items,
                quality_analysis=run.quality_analysis,
                provider=run.provider,
                job_type=context.job_type,
                processing_time_ms=int((time.monotonic() - started) * 1000),
            )
        except Exception:
            # The extraction succeeded; only the stored copy is missing.
            logger.exception("Could not persist analysis for document %s", document_id)
            recorded = RecordedAnalysis(items=list(run.items), analysis_id=None, issues_id=None)
        return DocumentAnalysis(
            run=run,
            items=recorded.items,
            analysis_id=recorded.analysis_id,
            issues_id=recorded.issues_id,
        )

    def _build_graph(self) -> Any:
        graph = StateGraph(_LoopState)

        async def invoke_model_node(state: _LoopState) -> Dict[str, Any]:
            return await self._invoke_model(state)

        async def evaluate_node(state: _LoopState) -> Dict[str, Any]:
            return self._evaluate(state)

        async def reinforce_node(state: _LoopState) -> Dict[str, Any]:
            return self._reinforce(state)

        graph.add_node("invoke_model", invoke_model_node)
        graph.add_node("evaluate", evaluate_node)
        graph.add_node("reinforce", reinforce_node)

        graph.add_edge(START, "invoke_model")
        graph.add_conditional_edges(
            "invoke_model",
            lambda state: state["route"],
            {"evaluate": "evaluate", "retry": "invoke_model", "done": END},
        )
        graph.add_conditional_edges(
            "evaluate",
            lambda state: state["route"],
            {"reinforce": "reinforce", "done": END},
        )
        graph.add_edge("reinforce", "invoke_model")
        return graph.compile()

    async def _invoke_model(self, state: _LoopState) -> Dict[str, Any]:
        context = state["context"]
        max_attempts = self._settings.max_attempts
        logger.info("Analysis attempt %d/%d", context.attempt, max_attempts)
        try:
            response = await self._llm.analyze(
                system_prompt=state["system_prompt"],
                user_prompt=context.prompt,
                images=state["images"],
                max_tokens=context.max_tokens,
                timeout_ms=self._settings.timeout_ms,
                temperature=state["temperature"],
                models=state["models"] or None,
            )
        except ProviderExhaustionError as exc:
            history = [*state["history"], context]
            logger.warning("Attempt %d failed: %s", context.attempt, exc)
            if context.attempt < max_attempts:
                await self._sleep(self._settings.provider_backoff_seconds)
                return {
                    "history": history,
                    "context": replace(context, attempt=context.attempt + 1),
                    "route": "retry",
                }
            best = state.get("best")
            if best is None:
                raise
            reason = (
                f"LLM providers failed on attempt {context.attempt}; returning best result "
                f"with {best.item_count} items (threshold: {state['threshold']})."
            )
            return {
                "history": history,
                "route": "done",
                "result": self._build_run(best, state, history, reason=reason),
            }

        extraction = extract_analysis_payload(response.content)
        logger.info(
            "Extracted %d items from %s (repaired: %s)",
            len(extraction.items),
            response.provider,
            extraction.repaired,
        )
        completed = replace(context, provider=response.provider, item_count=len(extraction.items))
        return {
            "context": completed,
            "history": [*state["history"], completed],
            "last": _Candidate(extraction=extraction, provider=response.provider, attempt=context.attempt),
            "route": "evaluate",
        }

    def _evaluate(self, state: _LoopState) -> Dict[str, Any]:
        candidate = state["last"]
        assert candidate is not None
        threshold = state["threshold"]
        if candidate.item_count >= threshold:
            return {"route": "done", "result": self._build_run(candidate, state, state["history"])}

        best = state.get("best")
        if _is_better(candidate, best):
            best = candidate
        context = state["context"]
        if context.attempt < self._settings.max_attempts:
            logger.info(
                "Only %d items (threshold: %d), retrying", candidate.item_count, threshold
            )
            return {"best": best, "route": "reinforce"}

        reason = (
            f"Only {best.item_count} items extracted after {context.attempt} attempts "
            f"(threshold: {threshold}). May need manual review or additional pages."
        )
        logger.warning(
            "Returning best result with %d items (below threshold %d)", best.item_count, threshold
        )
        return {
            "best": best,
            "route": "done",
            "result": self._build_run(best, state, state["history"], reason=reason),
        }

    def _reinforce(self, state: _LoopState) -> Dict[str, Any]:
        context = state["context"]
        clause = build_reinforcement_clause(context.item_count or 0, state["threshold"])
        grown = int(context.max_tokens * self._settings.token_growth_factor)
        next_context = AttemptContext(
            attempt=context.attempt + 1,
            prompt=context.prompt + clause,
            max_tokens=min(state["max_tokens_ceiling"], grown),
        )
        return {"context": next_context, "last": None}

    def _build_run(
        self,
        candidate: _Candidate,
        state: _LoopState,
        history: List[AttemptContext],
        *,
        reason: Optional[str] = None,
    ) -> AnalysisRun:
        attempts = state["context"].attempt
        notes = candidate.extraction.notes
        if reason is not None:
            notes = _join_notes(notes, BELOW_THRESHOLD_NOTE.format(attempts=attempts))
        return AnalysisRun(
            items=candidate.extraction.items,
            quality_analysis=candidate.extraction.quality_analysis,
            provider=candidate.provider,
            attempts=attempts,
            repaired=candidate.extraction.repaired,
            threshold=state["threshold"],
            notes=notes,
            reason=reason,
            history=list(history),
        )


__all__ = [
    "AnalysisRun",
    "AttemptContext",
    "DocumentAnalysis",
    "PlanAnalysisController",
    "VisionLLM",
]

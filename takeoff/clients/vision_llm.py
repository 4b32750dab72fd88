"""Client wrapper for Gemini vision models with ordered fail-over."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence

import google.generativeai as genai
from google.api_core.exceptions import (
    DeadlineExceeded,
    GoogleAPICallError,
    NotFound,
    ResourceExhausted,
    ServiceUnavailable,
)

from takeoff.core.config import GeminiSettings


logger = logging.getLogger(__name__)

_DEGRADING_ERRORS = (ResourceExhausted, DeadlineExceeded, ServiceUnavailable)


class ProviderExhaustionError(RuntimeError):
    """Raised when every candidate model failed for a single request."""


@dataclass(frozen=True, slots=True)
class VisionResponse:
    content: str
    provider: str


ModelFactory = Callable[[str, str], Any]


def _default_model_factory(model_name: str, system_prompt: str) -> Any:
    return genai.GenerativeModel(model_name, system_instruction=system_prompt)


class GeminiVisionClient:
    """Send plan page images to Gemini, falling back across configured models.

    Models that hit rate limits, time out or report themselves unavailable are
    marked degraded and skipped until ``degradation_ttl_seconds`` has elapsed.
    When every candidate is degraded the full list is tried anyway.
    """

    def __init__(
        self,
        settings: GeminiSettings,
        *,
        model_factory: ModelFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._model_factory = model_factory or _default_model_factory
        self._clock = clock
        self._degraded_until: dict[str, float] = {}
        if model_factory is None:
            # Configure the global client once per process.
            genai.configure(api_key=settings.api_key)

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
        """Return the raw text answer of the first model that succeeds.

        ``models`` names preferred models tried ahead of the configured ones.
        """
        parts: list[Any] = [user_prompt]
        parts.extend(_image_part(image) for image in images)
        generation_config = {
            "max_output_tokens": max_tokens,
            "temperature": temperature,
        }
        request_options = {"timeout": max(timeout_ms, 1) / 1000}

        def _invoke() -> VisionResponse:
            return self._invoke_with_models(
                models=self.model_candidates(models),
                call=lambda model: model.generate_content(
                    parts,
                    generation_config=generation_config,
                    request_options=request_options,
                    safety_settings=[],
                ),
                system_prompt=system_prompt,
            )

        return await asyncio.to_thread(_invoke)

    def model_candidates(self, preferred: Sequence[str] | None = None) -> list[str]:
        """Preferred then configured models in priority order with degraded ones moved out."""
        ordered = _collect_candidates(
            self._settings.vision_model_name, self._settings.fallback_model_list
        )
        if preferred:
            ordered = _collect_candidates(None, [*preferred, *ordered])
        now = self._clock()
        healthy = [name for name in ordered if self._degraded_until.get(name, 0.0) <= now]
        return healthy or ordered

    def is_degraded(self, model_name: str) -> bool:
        return self._degraded_until.get(model_name, 0.0) > self._clock()

    def _mark_degraded(self, model_name: str) -> None:
        self._degraded_until[model_name] = (
            self._clock() + self._settings.degradation_ttl_seconds
        )

    def _invoke_with_models(
        self,
        *,
        models: Iterable[str],
        call: Callable[[Any], Any],
        system_prompt: str,
    ) -> VisionResponse:
        model_sequence = list(models)
        failures: list[str] = []
        for index, model_name in enumerate(model_sequence):
            generative_model = self._model_factory(model_name, system_prompt)
            try:
                response = call(generative_model)
                text = response.text or ""
            except NotFound:
                failures.append(f"{model_name}: not found")
                logger.warning(
                    "Gemini model '%s' not found (attempt %d/%d); trying fallback.",
                    model_name,
                    index + 1,
                    len(model_sequence),
                )
                continue
            except _DEGRADING_ERRORS as exc:
                self._mark_degraded(model_name)
                failures.append(f"{model_name}: {exc.message}")
                logger.warning(
                    "Gemini model '%s' degraded (attempt %d/%d): %s",
                    model_name,
                    index + 1,
                    len(model_sequence),
                    exc.message,
                )
                continue
            except GoogleAPICallError as exc:
                failures.append(f"{model_name}: {exc.message}")
                logger.warning("Gemini model '%s' failed: %s", model_name, exc.message)
                continue
            except ValueError as exc:
                # Raised by ``response.text`` when the candidate was blocked.
                failures.append(f"{model_name}: {exc}")
                logger.warning("Gemini model '%s' returned no text: %s", model_name, exc)
                continue

            if not text.strip():
                failures.append(f"{model_name}: empty response")
                logger.warning("Gemini model '%s' returned an empty response.", model_name)
                continue
            return VisionResponse(content=text, provider=model_name)

        detail = "; ".join(failures) or "no candidate models configured"
        raise ProviderExhaustionError(f"All LLM providers failed: {detail}")


def _collect_candidates(configured: str | None, fallbacks: Iterable[str]) -> list[str]:
    """Return distinct model names prioritizing the configured value."""
    seen: set[str] = set()
    candidates: list[str] = []
    for name in (configured, *fallbacks):
        if not name:
            continue
        cleaned = name.strip()
        if not cleaned or cleaned in seen:
            continue
        seen.add(cleaned)
        candidates.append(cleaned)
    return candidates


def _image_part(image: str) -> dict[str, Any]:
    """Convert a data URL or bare base64 string into an inline Gemini part."""
    mime_type = "image/png"
    encoded = image
    if image.startswith("data:"):
        header, _, encoded = image.partition(",")
        mime_type = header[len("data:") :].split(";", 1)[0] or mime_type
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Page image is not valid base64 data") from exc
    return {"mime_type": mime_type, "data": data}


__all__ = ["GeminiVisionClient", "ProviderExhaustionError", "VisionResponse"]

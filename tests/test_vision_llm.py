try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

from types import SimpleNamespace
from typing import Any, Dict, List

import pytest
from google.api_core.exceptions import InternalServerError, NotFound, ResourceExhausted

from takeoff.clients.vision_llm import GeminiVisionClient, ProviderExhaustionError
from takeoff.core.config import GeminiSettings

PNG_DATA_URL = "data:image/png;base64,aGVsbG8="


class FakeModel:
    def __init__(self, name: str, outcome: Any, calls: List[Dict[str, Any]]) -> None:
        self.name = name
        self._outcome = outcome
        self._calls = calls

    def generate_content(self, parts, **kwargs):
        self._calls.append({"model": self.name, "parts": parts, **kwargs})
        if isinstance(self._outcome, Exception):
            raise self._outcome
        return SimpleNamespace(text=self._outcome)


class FakeFactory:
    def __init__(self, outcomes: Dict[str, Any]) -> None:
        self.outcomes = outcomes
        self.calls: List[Dict[str, Any]] = []
        self.system_prompts: List[str] = []

    def __call__(self, model_name: str, system_prompt: str) -> FakeModel:
        self.system_prompts.append(system_prompt)
        return FakeModel(model_name, self.outcomes[model_name], self.calls)


class FrozenClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _settings() -> GeminiSettings:
    return GeminiSettings(
        api_key="test-key",
        vision_model_name="primary",
        fallback_models="secondary, tertiary",
        degradation_ttl_seconds=1800,
    )


async def _analyze(client: GeminiVisionClient):
    return await client.analyze(
        system_prompt="system",
        user_prompt="user",
        images=[PNG_DATA_URL],
        max_tokens=8192,
        timeout_ms=60000,
        temperature=0.2,
    )


@pytest.mark.asyncio
async def test_primary_model_answers_with_inline_image() -> None:
    factory = FakeFactory({"primary": '{"items": []}'})
    client = GeminiVisionClient(_settings(), model_factory=factory)

    response = await _analyze(client)

    assert response.content == '{"items": []}'
    assert response.provider == "primary"
    call = factory.calls[0]
    assert call["parts"][0] == "user"
    assert call["parts"][1] == {"mime_type": "image/png", "data": b"hello"}
    assert call["generation_config"] == {"max_output_tokens": 8192, "temperature": 0.2}
    assert call["request_options"] == {"timeout": 60.0}
    assert factory.system_prompts == ["system"]


@pytest.mark.asyncio
async def test_rate_limited_model_is_skipped_until_ttl_expires() -> None:
    clock = FrozenClock()
    factory = FakeFactory({"primary": ResourceExhausted("quota"), "secondary": "answer", "tertiary": "x"})
    client = GeminiVisionClient(_settings(), model_factory=factory, clock=clock)

    response = await _analyze(client)

    assert response.provider == "secondary"
    assert client.is_degraded("primary") is True
    assert client.model_candidates() == ["secondary", "tertiary"]

    clock.now += 1801
    assert client.is_degraded("primary") is False
    assert client.model_candidates()[0] == "primary"


@pytest.mark.asyncio
async def test_missing_model_and_empty_answers_fall_through() -> None:
    factory = FakeFactory({"primary": NotFound("gone"), "secondary": "   ", "tertiary": "final"})
    client = GeminiVisionClient(_settings(), model_factory=factory)

    response = await _analyze(client)

    assert response.provider == "tertiary"
    assert [call["model"] for call in factory.calls] == ["primary", "secondary", "tertiary"]
    assert client.is_degraded("primary") is False


@pytest.mark.asyncio
async def test_every_model_failing_raises_exhaustion() -> None:
    factory = FakeFactory(
        {
            "primary": ResourceExhausted("quota"),
            "secondary": InternalServerError("boom"),
            "tertiary": ValueError("blocked"),
        }
    )
    client = GeminiVisionClient(_settings(), model_factory=factory)

    with pytest.raises(ProviderExhaustionError) as excinfo:
        await _analyze(client)

    message = str(excinfo.value)
    assert message.startswith("All LLM providers failed")
    assert "primary" in message and "secondary" in message and "tertiary" in message


def test_all_degraded_models_are_still_tried() -> None:
    clock = FrozenClock()
    client = GeminiVisionClient(_settings(), model_factory=FakeFactory({}), clock=clock)
    for name in ("primary", "secondary", "tertiary"):
        client._mark_degraded(name)

    assert client.model_candidates() == ["primary", "secondary", "tertiary"]


@pytest.mark.asyncio
async def test_invalid_image_data_is_rejected() -> None:
    client = GeminiVisionClient(_settings(), model_factory=FakeFactory({"primary": "x"}))

    with pytest.raises(ValueError):
        await client.analyze(
            system_prompt="system",
            user_prompt="user",
            images=["data:image/png;base64,@@@"],
            max_tokens=10,
            timeout_ms=1000,
            temperature=0.0,
        )


@pytest.mark.asyncio
async def test_preferred_models_are_tried_before_configured_ones() -> None:
    factory = FakeFactory({"custom": NotFound("gone"), "secondary": "answer", "primary": "x"})
    client = GeminiVisionClient(_settings(), model_factory=factory)

    response = await client.analyze(
        system_prompt="system",
        user_prompt="user",
        images=[PNG_DATA_URL],
        max_tokens=4096,
        timeout_ms=60000,
        temperature=0.5,
        models=["custom", "secondary"],
    )

    assert response.provider == "secondary"
    assert [call["model"] for call in factory.calls] == ["custom", "secondary"]
    assert factory.calls[-1]["generation_config"] == {"max_output_tokens": 4096, "temperature": 0.5}
    assert client.model_candidates(["custom", "secondary"]) == [
        "custom",
        "secondary",
        "primary",
        "tertiary",
    ]

"""Outbound HTTP helpers for fetching plan manifests and page images."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryConfig:
    attempts: int = 3
    backoff_seconds: float = 1.0


def _should_retry(exc: httpx.HTTPError) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return True


async def request_with_retry(
    func: Callable[..., Awaitable[httpx.Response]],
    *args,
    retry_config: RetryConfig | None = None,
    **kwargs,
) -> httpx.Response:
    """Await ``func`` until it yields a 2xx response.

    Transport errors, 429 and 5xx are retried with linear backoff; any other
    status raises ``httpx.HTTPStatusError`` on the first attempt.
    """
    config = retry_config or RetryConfig()
    for attempt in range(1, max(config.attempts, 1) + 1):
        try:
            response = await func(*args, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPError as exc:
            if attempt >= config.attempts or not _should_retry(exc):
                raise
            logger.warning(
                "Retrying request after %s (attempt %s of %s)",
                type(exc).__name__,
                attempt,
                config.attempts,
            )
            await asyncio.sleep(config.backoff_seconds * attempt)
    raise RuntimeError("Request loop exited without a response")


__all__ = ["RetryConfig", "request_with_retry"]

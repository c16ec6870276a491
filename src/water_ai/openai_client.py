from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

import requests

from .settings import (
    OPENAI_API_KEY,
    OPENAI_BASE_URL,
    OPENAI_MAX_RETRIES,
    OPENAI_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

BASE_DELAY_MS = 100.0


class OpenAIError(RuntimeError):
    pass


class ProviderError(OpenAIError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitExhaustedError(OpenAIError):
    def __init__(self, retries: int, last_message: str) -> None:
        super().__init__(
            f"OpenAI rate limit exceeded after {retries} retries: {last_message}"
        )
        self.retries = retries
        self.last_message = last_message


def backoff_delay_ms(attempt: int, rng: Callable[[], float] = random.random) -> float:
    """Delay before retrying after the 0-indexed ``attempt``.

    Exponential base plus uniform jitter: attempt k lands in
    [100 * 2**k, 200 * 2**k) ms.
    """
    base = BASE_DELAY_MS * (2**attempt)
    return base + rng() * base


def _error_info(body: Any) -> tuple[str | None, str | None]:
    if not isinstance(body, dict):
        return None, None
    err = body.get("error")
    if not isinstance(err, dict):
        return None, None
    message = err.get("message")
    err_type = err.get("type")
    return (
        str(message) if message is not None else None,
        str(err_type) if err_type is not None else None,
    )


def is_rate_limited(status_code: int, body: Any) -> bool:
    if status_code == 429:
        return True
    message, err_type = _error_info(body)
    if err_type == "rate_limit_error":
        return True
    return bool(message) and "rate limit" in message.lower()


class OpenAIClient:
    """Posts JSON to the provider, retrying only on rate-limit responses.

    Calls share no state beyond the HTTP session, so one client can serve
    many jobs concurrently.
    """

    def __init__(
        self,
        api_key: str = OPENAI_API_KEY,
        base_url: str = OPENAI_BASE_URL,
        timeout: float = OPENAI_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._sleep = sleep
        self._rng = rng

    def _post(self, url: str, body: dict[str, Any]) -> requests.Response:
        return self._session.post(
            url,
            json=body,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
            timeout=self.timeout,
        )

    async def call(
        self,
        endpoint: str,
        body: dict[str, Any],
        max_retries: int = OPENAI_MAX_RETRIES,
    ) -> dict[str, Any]:
        if max_retries < 1:
            raise ValueError("max_retries must be >= 1")

        last_message = "Rate limit exceeded"

        for attempt in range(max_retries):
            try:
                resp = await asyncio.to_thread(self._post, endpoint, body)
            except requests.RequestException as e:
                if "rate limit" not in str(e).lower():
                    raise
                last_message = str(e)
            else:
                if resp.ok:
                    return resp.json()

                try:
                    data = resp.json()
                except ValueError:
                    data = None

                message, _ = _error_info(data)
                if not is_rate_limited(resp.status_code, data):
                    raise ProviderError(
                        message or f"OpenAI API call failed ({resp.status_code})",
                        status_code=resp.status_code,
                    )
                last_message = message or "Rate limit exceeded"

            if attempt + 1 >= max_retries:
                break

            delay_ms = backoff_delay_ms(attempt, self._rng)
            logger.warning(
                "rate limit hit (attempt %d/%d), retrying in %dms",
                attempt + 1,
                max_retries,
                round(delay_ms),
            )
            await self._sleep(delay_ms / 1000.0)

        raise RateLimitExhaustedError(max_retries, last_message)

    async def chat_completion(
        self, body: dict[str, Any], max_retries: int = OPENAI_MAX_RETRIES
    ) -> dict[str, Any]:
        return await self.call(f"{self.base_url}/chat/completions", body, max_retries)

    def close(self) -> None:
        self._session.close()


def message_content(data: dict[str, Any]) -> str:
    """First choice's message text from a chat completion response."""
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as e:
        raise ProviderError(f"Malformed chat completion response: {e!r}") from e
    return str(content or "").strip()

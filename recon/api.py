"""OpenRouter chat client used by the LLM collaborators.

Only two parts of the engine talk to a model: PDF table extraction and
column mapping suggestion. Both want a single JSON reply, so this client
exposes one call, :meth:`OpenRouterClient.chat`, with retry and backoff.

    async with OpenRouterClient() as client:
        response = await client.chat(model, messages, response_format={"type": "json_object"})
        text = response["message"]["content"]
"""

import asyncio
import json
import logging
import os
import random
from typing import Any

import httpx

OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
OPENROUTER_API_KEY_ENV = "OPENROUTER_API_KEY"
MAX_ERROR_DETAIL_CHARS = 500

log = logging.getLogger(__name__)


def has_openrouter_api_key() -> bool:
    return bool(os.environ.get(OPENROUTER_API_KEY_ENV))


def get_headers() -> dict[str, str]:
    """Get API request headers."""
    api_key = os.environ.get(OPENROUTER_API_KEY_ENV)
    if not api_key:
        raise ValueError(f"{OPENROUTER_API_KEY_ENV} environment variable is required")
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


def _error_detail(data: dict[str, Any], text: str) -> str:
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    return text[:MAX_ERROR_DETAIL_CHARS]


class OpenRouterClient:
    """Async client for OpenRouter chat completions.

    Must be used as an async context manager so the connection pool is
    closed. Network errors, invalid JSON bodies and non-2xx statuses are
    retried with exponential backoff plus jitter; 429 honours Retry-After;
    401/403/404 fail immediately.
    """

    no_retry_codes = frozenset({401, 403, 404})

    def __init__(
        self,
        timeout: float = 120.0,
        max_retries: int = 4,
        initial_backoff: float = 2.0,
        max_backoff: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "OpenRouterClient":
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(
                "OpenRouterClient must be used as async context manager: "
                "async with OpenRouterClient() as client: ..."
            )
        return self._client

    async def _sleep(self, attempt: int, wait: float, reason: str) -> None:
        log.warning("[Retry %d/%d] %s", attempt + 1, self.max_retries, reason)
        await asyncio.sleep(wait + random.uniform(0, 1))

    async def chat(
        self,
        model: str,
        messages: list[dict[str, Any]],
        response_format: dict[str, str] | None = None,
        temperature: float | None = None,
    ) -> dict[str, Any]:
        """Make one chat completion request.

        Returns ``{"message": <assistant message>, "usage": <token counts>}``.
        """
        client = self._get_client()
        payload: dict[str, Any] = {"model": model, "messages": messages}
        if response_format:
            payload["response_format"] = response_format
        if temperature is not None:
            payload["temperature"] = temperature

        backoff = self.initial_backoff
        for attempt in range(self.max_retries + 1):
            last = attempt >= self.max_retries
            try:
                response = await client.post(
                    OPENROUTER_API_URL, headers=get_headers(), json=payload
                )
            except (httpx.TimeoutException, httpx.RequestError) as e:
                if last:
                    raise RuntimeError(
                        f"API error after {self.max_retries} retries: {e}"
                    ) from e
                await self._sleep(attempt, backoff, f"Network error: {type(e).__name__}: {e}")
                backoff = min(backoff * 2, self.max_backoff)
                continue

            text = response.text
            try:
                data = json.loads(text) if text else {}
            except json.JSONDecodeError:
                if last:
                    raise RuntimeError(
                        f"Invalid JSON response (status {response.status_code}): "
                        f"{text[:MAX_ERROR_DETAIL_CHARS]}"
                    )
                await self._sleep(attempt, backoff, f"Invalid JSON (status {response.status_code})")
                backoff = min(backoff * 2, self.max_backoff)
                continue

            if response.status_code == 200:
                choice = (data.get("choices") or [{}])[0]
                return {"message": choice.get("message", {}), "usage": data.get("usage", {})}

            detail = _error_detail(data, text)
            if response.status_code in self.no_retry_codes or last:
                raise RuntimeError(
                    f"OpenRouter API error: {response.status_code} "
                    f"{response.reason_phrase}: {detail}"
                )

            wait = backoff
            if response.status_code == 429:
                try:
                    wait = float(response.headers.get("retry-after", backoff))
                except ValueError:
                    wait = backoff
            await self._sleep(attempt, wait, f"HTTP {response.status_code}: {detail}")
            backoff = min(backoff * 2, self.max_backoff)

        raise RuntimeError("unreachable")

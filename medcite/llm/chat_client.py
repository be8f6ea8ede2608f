"""
Chat Completions Client for MedCite

Async HTTP client for an OpenAI-compatible chat completions API with:
- Retry logic with exponential backoff
- Configurable timeout
- JSON-object response mode for structured extraction
- Per-request API key override
- Health check endpoint
"""

import asyncio
import json
import logging
import os
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# Defaults from environment
DEFAULT_BASE_URL = os.environ.get("LLM_BASE_URL", "https://api.openai.com/v1")
DEFAULT_MODEL = os.environ.get("EVIDENCE_LLM_MODEL", "gpt-4o-mini")
DEFAULT_TIMEOUT = float(os.environ.get("LLM_TIMEOUT_SECONDS", "30"))

# LLM generation parameters (low temperature: extraction and scoring must be repeatable)
DEFAULT_TEMPERATURE = float(os.environ.get("LLM_TEMPERATURE", "0.1"))
DEFAULT_MAX_TOKENS = int(os.environ.get("LLM_MAX_TOKENS", "800"))

# Retry configuration
MAX_RETRIES = int(os.environ.get("LLM_MAX_RETRIES", "2"))
RETRY_BACKOFF_BASE = float(os.environ.get("LLM_RETRY_BACKOFF_BASE", "1"))  # seconds


class LLMError(Exception):
    """Raised when the LLM call fails or returns an unusable body."""


class ChatClient:
    """Async client for chat completions with JSON output."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        max_retries: int = MAX_RETRIES,
        retry_backoff_base: float = RETRY_BACKOFF_BASE,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key if api_key is not None else os.environ.get("OPENAI_API_KEY")
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max(1, max_retries)
        self.retry_backoff_base = retry_backoff_base

    def _headers(self, api_key: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        key = api_key or self.api_key
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    async def complete(
        self,
        system: str,
        prompt: str,
        json_mode: bool = False,
        api_key: str | None = None,
    ) -> str:
        """
        Send a system + user message pair and return the assistant text.

        Retries up to max_retries times with exponential backoff.
        Raises LLMError once every attempt has failed.
        """
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout)
                ) as client:
                    response = await client.post(
                        f"{self.base_url}/chat/completions",
                        json=payload,
                        headers=self._headers(api_key),
                    )
                    response.raise_for_status()
                    data = response.json()
                    content = data["choices"][0]["message"]["content"]
                    if not content:
                        raise LLMError("No content in response")
                    return content

            except (httpx.ConnectTimeout, httpx.ReadTimeout) as e:
                last_error = e
                logger.warning(
                    "LLM timeout (attempt %d/%d): %s",
                    attempt + 1,
                    self.max_retries,
                    e,
                )
            except httpx.ConnectError as e:
                last_error = e
                logger.warning(
                    "LLM connection error (attempt %d/%d): %s",
                    attempt + 1,
                    self.max_retries,
                    e,
                )
            except httpx.HTTPStatusError as e:
                last_error = e
                logger.warning(
                    "LLM HTTP error %d (attempt %d/%d): %s",
                    e.response.status_code,
                    attempt + 1,
                    self.max_retries,
                    e,
                )
            except (KeyError, IndexError, TypeError, ValueError, LLMError) as e:
                last_error = e
                logger.warning(
                    "Malformed LLM response (attempt %d/%d): %s",
                    attempt + 1,
                    self.max_retries,
                    e,
                )
            except httpx.HTTPError as e:
                last_error = e
                logger.error(
                    "Unexpected LLM transport error (attempt %d/%d): %s",
                    attempt + 1,
                    self.max_retries,
                    e,
                )

            # Exponential backoff before retry (skip on last attempt)
            if attempt < self.max_retries - 1:
                wait = self.retry_backoff_base * (2**attempt)
                logger.info("Retrying in %.1fs...", wait)
                await asyncio.sleep(wait)

        raise LLMError(
            f"LLM request failed after {self.max_retries} attempts: {last_error}"
        )

    async def complete_json(
        self,
        system: str,
        prompt: str,
        api_key: str | None = None,
    ) -> dict[str, Any]:
        """Request a JSON object response and decode it."""
        raw = await self.complete(system, prompt, json_mode=True, api_key=api_key)
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise LLMError(f"LLM returned invalid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise LLMError("LLM returned JSON that is not an object")
        return parsed

    async def health_check(self) -> bool:
        """
        Check if the LLM endpoint is reachable.

        Returns True if the models listing responds with 200, False otherwise.
        """
        try:
            async with httpx.AsyncClient(timeout=httpx.Timeout(10)) as client:
                response = await client.get(
                    f"{self.base_url}/models", headers=self._headers(None)
                )
                return response.status_code == 200
        except Exception as e:
            logger.warning("LLM health check failed: %s", e)
            return False

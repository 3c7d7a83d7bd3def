"""
Text-generation collaborator.

Task bodies reach the language model only through ``ITextGenerator``.  The
shipped implementation talks to any OpenAI-compatible chat completions
endpoint over aiohttp and sits behind a circuit breaker, so a dead endpoint
fails fast instead of eating every task's sub-timeout.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from facet_core.exceptions import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    TextGenerationError,
)

logger = logging.getLogger(__name__)


class ITextGenerator(Protocol):
    """Opaque, possibly slow, possibly failing text generation."""

    async def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        max_tokens: int = 512,
        temperature: float = 0.7,
    ) -> str:
        """Return the generated text or raise."""
        ...


class HTTPTextGenerator:
    """Async HTTP client for an OpenAI-compatible ``/v1/chat/completions`` API."""

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker("text-generation", CircuitBreakerConfig())
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._session = aiohttp.ClientSession(
                base_url=self.base_url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        max_tokens: int = 512,
        temperature: float = 0.7,
    ) -> str:
        if not self.breaker.can_execute():
            self.breaker.record_rejection()
            raise CircuitOpenError(self.breaker.name)

        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        try:
            session = await self._get_session()
            async with session.post("/v1/chat/completions", json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise TextGenerationError(
                        f"Text generation failed: {resp.status} {body[:200]}", status=resp.status
                    )
                data = await resp.json()
        except TextGenerationError:
            self.breaker.record_failure()
            raise
        except aiohttp.ClientError as e:
            self.breaker.record_failure()
            raise TextGenerationError(f"Text generation request failed: {e}") from e

        text = _extract_text(data)
        if text is None:
            self.breaker.record_failure()
            raise TextGenerationError("Text generation response had no content")
        self.breaker.record_success()
        return text

    async def health_check(self) -> Dict[str, Any]:
        return self.breaker.get_status()


def _extract_text(data: Dict[str, Any]) -> Optional[str]:
    choices = data.get("choices") or []
    if not choices:
        return None
    message = choices[0].get("message") or {}
    content = message.get("content")
    if content is None:
        content = choices[0].get("text")
    return content

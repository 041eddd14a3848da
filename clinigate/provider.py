"""
AI Provider Client -- the only call in the pipeline that blocks on the network.

``AiProvider`` is the abstract contract: a single completion or a token
stream for ``{prompt, temperature, max_tokens, model}``.  ``OllamaProvider``
implements it against a local Ollama server over ``httpx.AsyncClient``.

Transport failures are re-raised as ``ProviderTimeoutError`` or
``ProviderUnavailableError`` so the error handler can classify them.
Closing a stream early (``aclose()`` or task cancellation) closes the HTTP
response and stops token consumption immediately.
"""

from __future__ import annotations

import abc
import asyncio
import json
import re
import time
from collections import deque
from typing import AsyncIterator, Iterable, Optional

import httpx
from pydantic import BaseModel

from clinigate.config import Settings
from clinigate.errors import ProviderTimeoutError, ProviderUnavailableError
from clinigate.logging_config import get_logger

logger = get_logger(__name__)


class Completion(BaseModel):
    text: str
    model: str
    latency_ms: int = 0
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


class AiProvider(abc.ABC):
    """Text-completion provider treated as an opaque external collaborator."""

    model: str

    @abc.abstractmethod
    async def complete(
        self,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        model: Optional[str] = None,
    ) -> Completion: ...

    @abc.abstractmethod
    def stream(
        self,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        model: Optional[str] = None,
    ) -> AsyncIterator[str]: ...

    async def is_available(self) -> bool:
        return True

    async def aclose(self) -> None:
        return None


class OllamaProvider(AiProvider):
    """Ollama ``/api/generate`` client.

    Args:
        base_url: Ollama server URL.
        model: Default model tag.
        timeout: Per-request timeout in seconds.
        client: Optional pre-built ``httpx.AsyncClient`` (tests pass one
            with a ``MockTransport``).
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "gemma3:4b",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.model = model
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings, model: Optional[str] = None) -> OllamaProvider:
        return cls(
            base_url=settings.provider_base_url,
            model=model or settings.provider_model,
            timeout=settings.provider_timeout_seconds,
        )

    def _payload(self, prompt: str, temperature: float, max_tokens: int, model: Optional[str], stream: bool) -> dict:
        return {
            "model": model or self.model,
            "prompt": prompt,
            "stream": stream,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
                "top_p": 0.9,
                "top_k": 40,
            },
        }

    async def complete(
        self,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        model: Optional[str] = None,
    ) -> Completion:
        payload = self._payload(prompt, temperature, max_tokens, model, stream=False)
        started = time.perf_counter()
        try:
            response = await self._client.post("/api/generate", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError("AI provider request timed out", {"model": payload["model"]}) from exc
        except httpx.HTTPStatusError as exc:
            raise ProviderUnavailableError(
                f"AI provider returned HTTP {exc.response.status_code}",
                {"model": payload["model"], "status_code": exc.response.status_code},
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailableError("AI provider is unreachable", {"model": payload["model"]}) from exc
        except json.JSONDecodeError as exc:
            raise ProviderUnavailableError("AI provider returned a malformed body", {"model": payload["model"]}) from exc

        latency_ms = int((time.perf_counter() - started) * 1000)
        logger.debug("provider_completed", model=payload["model"], latency_ms=latency_ms)
        return Completion(
            text=str(data.get("response", "")),
            model=str(data.get("model", payload["model"])),
            latency_ms=latency_ms,
            prompt_tokens=data.get("prompt_eval_count"),
            completion_tokens=data.get("eval_count"),
        )

    async def stream(
        self,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:
        payload = self._payload(prompt, temperature, max_tokens, model, stream=True)
        try:
            async with self._client.stream("POST", "/api/generate", json=payload) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    data = json.loads(line)
                    token = data.get("response", "")
                    if token:
                        yield token
                    if data.get("done"):
                        break
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError("AI provider stream timed out", {"model": payload["model"]}) from exc
        except httpx.HTTPStatusError as exc:
            raise ProviderUnavailableError(
                f"AI provider returned HTTP {exc.response.status_code}",
                {"model": payload["model"], "status_code": exc.response.status_code},
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailableError("AI provider is unreachable", {"model": payload["model"]}) from exc
        except json.JSONDecodeError as exc:
            raise ProviderUnavailableError("AI provider returned a malformed stream", {"model": payload["model"]}) from exc

    async def is_available(self) -> bool:
        try:
            response = await self._client.get("/api/tags")
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def aclose(self) -> None:
        await self._client.aclose()


class ScriptedProvider(AiProvider):
    """Replays canned responses in order, for offline demos and tests.

    Each script item is either response text or an exception instance to
    raise.  When the script runs out, ``default`` is returned.  Every call
    is recorded in ``calls``.
    """

    def __init__(
        self,
        responses: Iterable[str | BaseException] = (),
        model: str = "scripted",
        default: str = "The system classification should be followed.",
        delay_seconds: float = 0.0,
    ) -> None:
        self.model = model
        self.calls: list[dict] = []
        self.streams_closed = 0
        self._script = deque(responses)
        self._default = default
        self._delay = delay_seconds

    def _next(self, prompt: str, temperature: float, max_tokens: int, model: Optional[str], stream: bool) -> str:
        self.calls.append({
            "prompt": prompt,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "model": model or self.model,
            "stream": stream,
        })
        item = self._script.popleft() if self._script else self._default
        if isinstance(item, BaseException):
            raise item
        return item

    async def complete(
        self,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        model: Optional[str] = None,
    ) -> Completion:
        text = self._next(prompt, temperature, max_tokens, model, stream=False)
        if self._delay:
            await asyncio.sleep(self._delay)
        return Completion(text=text, model=model or self.model)

    async def stream(
        self,
        prompt: str,
        *,
        temperature: float,
        max_tokens: int,
        model: Optional[str] = None,
    ) -> AsyncIterator[str]:
        text = self._next(prompt, temperature, max_tokens, model, stream=True)
        try:
            for token in re.findall(r"\S+\s*", text):
                if self._delay:
                    await asyncio.sleep(self._delay)
                yield token
        finally:
            self.streams_closed += 1

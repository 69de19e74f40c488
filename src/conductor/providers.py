"""Model providers: turn an engine request into a lazy chunk feed.

A provider only has to implement ``stream(request)``, an async iterator of
StreamChunk. One call yields one feed; feeds are not restartable, so a retry
means calling ``stream`` again.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Iterable, Protocol

import httpx

from conductor.capabilities import CAPABILITY_NAMES
from conductor.config import ProviderConfig
from conductor.errors import AuthenticationError, ConfigurationError, ProviderError, ProviderStreamError
from conductor.stream_assembler import ChunkKind, StreamChunk, chunks_from_text

logger = logging.getLogger(__name__)

SCRIPT_SEPARATOR = "\n---\n"


@dataclass
class ProviderRequest:
    """What the orchestrator sends for one round."""

    messages: list[dict[str, str]]
    model: str = ""
    system: str | None = None
    temperature: float = 0.0
    metadata: dict = field(default_factory=dict)

    def chat_messages(self) -> list[dict[str, str]]:
        if self.system:
            return [{"role": "system", "content": self.system}, *self.messages]
        return list(self.messages)


class Provider(Protocol):
    name: str

    def stream(self, request: ProviderRequest) -> AsyncIterator[StreamChunk]: ...


class OpenAICompatibleProvider:
    """Streams /chat/completions from any OpenAI-compatible endpoint."""

    name = "openai"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        timeout: float = 60.0,
        temperature: float = 0.0,
        client: httpx.AsyncClient | None = None,
        capability_names: Iterable[str] = CAPABILITY_NAMES,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self._client = client
        self._names = frozenset(capability_names)

    @asynccontextmanager
    async def _client_ctx(self):
        if self._client is not None:
            yield self._client
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, request: ProviderRequest) -> dict:
        return {
            "model": request.model or self.model,
            "messages": request.chat_messages(),
            "temperature": request.temperature if request.temperature is not None else self.temperature,
            "stream": True,
        }

    async def _deltas(self, request: ProviderRequest) -> AsyncIterator[str]:
        url = f"{self.base_url}/chat/completions"
        async with self._client_ctx() as client:
            async with client.stream("POST", url, json=self._payload(request), headers=self._headers()) as response:
                status = response.status_code
                if status in (401, 403):
                    await response.aread()
                    raise AuthenticationError(f"Provider rejected credentials (status {status})")
                if status >= 400:
                    body = (await response.aread()).decode(errors="replace")[:500]
                    raise ProviderError(f"Provider request failed with status {status}", status_code=status, details=body)

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping malformed SSE line: {data[:80]}")
                        continue
                    if event.get("error"):
                        err = event["error"]
                        message = err.get("message") if isinstance(err, dict) else str(err)
                        raise ProviderStreamError(message or "provider stream error")
                    for choice in event.get("choices") or []:
                        content = (choice.get("delta") or {}).get("content")
                        if content:
                            yield content

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamChunk]:
        try:
            async for chunk in chunks_from_text(self._deltas(request), self._names):
                yield chunk
        except ProviderStreamError as e:
            yield StreamChunk(kind=ChunkKind.ERROR, content=str(e))


class ScriptedProvider:
    """Replays canned replies as text deltas, one reply per stream() call.

    A reply may be an exception instance, which is raised instead.
    """

    name = "scripted"

    def __init__(
        self,
        replies: Iterable[str | BaseException],
        chunk_size: int = 16,
        capability_names: Iterable[str] = CAPABILITY_NAMES,
    ):
        self._replies = list(replies)
        self.chunk_size = max(1, chunk_size)
        self._names = frozenset(capability_names)
        self.requests: list[ProviderRequest] = []

    @classmethod
    def from_file(cls, path: Path, **kwargs) -> ScriptedProvider:
        """Load replies from a JSON list or from text separated by ``---`` lines."""
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Script file not found: {path}")
        text = path.read_text()
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, list):
            replies = [str(r) for r in data]
        else:
            replies = [r.strip("\n") for r in text.split(SCRIPT_SEPARATOR)]
        return cls(replies, **kwargs)

    @property
    def remaining(self) -> int:
        return len(self._replies)

    def _split(self, reply: str) -> list[str]:
        return [reply[i:i + self.chunk_size] for i in range(0, len(reply), self.chunk_size)]

    async def stream(self, request: ProviderRequest) -> AsyncIterator[StreamChunk]:
        self.requests.append(request)
        if not self._replies:
            raise ProviderError("Scripted provider has no replies left")
        reply = self._replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        async for chunk in chunks_from_text(self._split(reply), self._names):
            yield chunk


def build_provider(config: ProviderConfig, script: Path | None = None) -> Provider:
    """Construct the provider named by ``config.kind``."""
    if script is not None or config.kind == "scripted":
        if script is None:
            raise ConfigurationError("The scripted provider needs a script file")
        return ScriptedProvider.from_file(script)
    if config.kind == "openai":
        if not config.base_url:
            raise ConfigurationError("provider.base_url is required")
        return OpenAICompatibleProvider(
            base_url=config.base_url,
            api_key=config.api_key,
            model=config.model,
            timeout=config.timeout_seconds,
            temperature=config.temperature,
        )
    raise ConfigurationError(f"Unknown provider kind: {config.kind}")

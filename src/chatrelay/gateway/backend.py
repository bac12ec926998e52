from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Protocol

import httpx

from .config import GatewayConfig
from .errors import BackendError, ErrorKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatChunk:
    text: str


class ChunkStream(Protocol):
    def __aiter__(self) -> AsyncIterator[ChatChunk]: ...

    async def aclose(self) -> None: ...


class ChatBackend(Protocol):
    async def complete_once(
        self, model: str, messages: list[dict[str, str]]
    ) -> dict[str, Any]: ...

    async def complete_stream(
        self, model: str, messages: list[dict[str, str]]
    ) -> ChunkStream: ...

    async def aclose(self) -> None: ...


def _message_content(obj: dict[str, Any]) -> str | None:
    message = obj.get("message")
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if content is None:
        return None
    return str(content)


class OllamaChunkStream:
    """Async iterator over the NDJSON lines of a streaming ``/api/chat`` reply."""

    def __init__(self, response: httpx.Response):
        self._response = response
        self._lines = response.aiter_lines()
        self._done = False

    def __aiter__(self) -> "OllamaChunkStream":
        return self

    async def __anext__(self) -> ChatChunk:
        if self._done:
            raise StopAsyncIteration
        while True:
            try:
                line = await self._lines.__anext__()
            except StopAsyncIteration:
                self._done = True
                raise
            except httpx.HTTPError as exc:
                self._done = True
                raise BackendError(
                    ErrorKind.INTERRUPTED, f"stream read failed: {exc}"
                ) from exc
            # Accept both SSE 'data: <json>' and plain JSONL lines
            raw = line[5:].strip() if line.startswith("data:") else line.strip()
            if not raw:
                continue
            try:
                obj = json.loads(raw)
            except json.JSONDecodeError as exc:
                self._done = True
                raise BackendError(
                    ErrorKind.MALFORMED, f"undecodable stream line: {raw[:200]!r}"
                ) from exc
            if not isinstance(obj, dict):
                self._done = True
                raise BackendError(
                    ErrorKind.MALFORMED, f"unexpected stream line: {raw[:200]!r}"
                )
            if obj.get("error"):
                self._done = True
                raise BackendError(ErrorKind.INTERRUPTED, str(obj["error"]))
            text = _message_content(obj) or ""
            if obj.get("done") is True:
                self._done = True
                if text:
                    return ChatChunk(text=text)
                raise StopAsyncIteration
            return ChatChunk(text=text)

    async def aclose(self) -> None:
        self._done = True
        await self._response.aclose()


class OllamaBackend:
    """Chat adapter for one Ollama daemon; one instance is one pool handle."""

    name = "ollama"

    def __init__(
        self,
        base_url: str,
        timeout_s: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout_s)

    @classmethod
    def from_config(cls, cfg: GatewayConfig) -> "OllamaBackend":
        return cls(cfg.ollama_base_url, timeout_s=cfg.backend_timeout_s)

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}/api/chat"

    @staticmethod
    def _payload(model: str, messages: list[dict[str, str]], stream: bool) -> dict:
        return {"model": model, "messages": messages, "stream": stream}

    async def complete_once(
        self, model: str, messages: list[dict[str, str]]
    ) -> dict[str, Any]:
        url = self.chat_url
        try:
            resp = await self.client.post(
                url, json=self._payload(model, messages, False)
            )
        except httpx.HTTPError as exc:
            raise BackendError(
                ErrorKind.UNAVAILABLE, f"POST {url} failed: {exc}"
            ) from exc
        if resp.status_code >= 400:
            raise BackendError(
                ErrorKind.REJECTED, f"HTTP {resp.status_code}: {resp.text[:200]}"
            )
        try:
            obj = resp.json()
        except ValueError as exc:
            raise BackendError(
                ErrorKind.MALFORMED, f"undecodable reply from {url}"
            ) from exc
        if not isinstance(obj, dict):
            raise BackendError(ErrorKind.MALFORMED, f"unexpected reply from {url}")
        if obj.get("error"):
            raise BackendError(ErrorKind.REJECTED, str(obj["error"]))
        return obj

    async def complete_stream(
        self, model: str, messages: list[dict[str, str]]
    ) -> OllamaChunkStream:
        url = self.chat_url
        request = self.client.build_request(
            "POST", url, json=self._payload(model, messages, True)
        )
        try:
            resp = await self.client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise BackendError(
                ErrorKind.UNAVAILABLE, f"POST {url} failed: {exc}"
            ) from exc
        if resp.status_code >= 400:
            try:
                body = await resp.aread()
            except httpx.HTTPError:
                body = b""
            finally:
                await resp.aclose()
            raise BackendError(
                ErrorKind.REJECTED,
                f"HTTP {resp.status_code}: {body.decode(errors='ignore')[:200]}",
            )
        return OllamaChunkStream(resp)

    async def aclose(self) -> None:
        await self.client.aclose()


class BackendPool:
    """Fixed set of backend handles, each checked out by one call at a time.

    A handle stays checked out for the whole backend call, including a full
    stream drain. With ``size=1`` every backend call is serialized.
    """

    def __init__(self, factory: Callable[[], ChatBackend], size: int = 1):
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.size = size
        self._handles = [factory() for _ in range(size)]
        self._idle: asyncio.Queue = asyncio.Queue()
        for handle in self._handles:
            self._idle.put_nowait(handle)

    @property
    def idle(self) -> int:
        return self._idle.qsize()

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[ChatBackend]:
        handle = await self._idle.get()
        try:
            yield handle
        finally:
            self._idle.put_nowait(handle)

    async def aclose(self) -> None:
        for handle in self._handles:
            try:
                await handle.aclose()
            except Exception:  # noqa: BLE001
                logger.exception("[backend] Failed to close backend handle")

"""Response relay: bridges one backend chat call onto one HTTP response.

Non-stream requests resolve to a single ``{"response": ...}`` body. Stream
requests are served by two decoupled tasks: a producer that pulls chunks
from the backend into a bounded queue, and the response body generator that
drains the queue in arrival order. The queue bound is the backpressure valve
between a fast backend and a slow client.

A session ends in exactly one of three ways: the chunk sequence is exhausted,
the backend fails (one error event is emitted), or the client goes away (the
producer is stopped before its next pull and the backend response closed).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional, Union

from .backend import BackendPool, ChatBackend
from .config import GatewayConfig
from .errors import BackendError, ErrorKind
from .logging_utils import JsonlLogger
from .metrics import MetricsAggregator, RelaySample
from .models import ChatRequest, ChatResponse
from .sse import OutboundEvent, content_event, error_event

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "No response"
NON_STREAM_ERROR_MESSAGE = "Error occurred while processing the chat."
STREAM_ERROR_MESSAGE = "Error occurred while streaming the chat."

DisconnectProbe = Callable[[], Awaitable[bool]]


@dataclass(frozen=True)
class Completed:
    text: str


@dataclass(frozen=True)
class Failed:
    kind: ErrorKind


RelayOutcome = Union[Completed, Failed]


def classify(exc: BaseException) -> ErrorKind:
    """Map any failure raised while relaying to an :class:`ErrorKind`."""

    if isinstance(exc, BackendError):
        return exc.kind
    return ErrorKind.INTERNAL


def client_error_message(stream: bool) -> str:
    # Backend detail never crosses to the client; only these two strings do.
    return STREAM_ERROR_MESSAGE if stream else NON_STREAM_ERROR_MESSAGE


def reply_text(reply: Any) -> str:
    """Assistant text of a one-shot reply, or the ``No response`` fallback."""

    message = reply.get("message") if isinstance(reply, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if content is None:
        return NO_RESPONSE_TEXT
    return str(content)


_END = object()


@dataclass
class _Session:
    request: ChatRequest
    stream: bool
    started_at: float = field(default_factory=time.time)
    first_chunk_at: float | None = None
    chunks: int = 0
    parts: list[str] = field(default_factory=list)
    outcome: Optional[RelayOutcome] = None
    disconnected: bool = False

    def observe(self, text: str) -> None:
        if self.first_chunk_at is None:
            self.first_chunk_at = time.time()
        self.chunks += 1
        self.parts.append(text)

    @property
    def outcome_label(self) -> str:
        if self.disconnected:
            return "disconnected"
        if isinstance(self.outcome, Failed):
            return "failed"
        return "completed"


class ResponseRelay:
    def __init__(
        self,
        pool: BackendPool,
        cfg: GatewayConfig,
        metrics: MetricsAggregator | None = None,
        request_log: JsonlLogger | None = None,
    ):
        self.pool = pool
        self.cfg = cfg
        self.metrics = metrics
        self.request_log = request_log
        self._tasks: set[asyncio.Task] = set()

    async def relay(
        self, request: ChatRequest, is_disconnected: DisconnectProbe | None = None
    ) -> dict[str, Any] | AsyncGenerator[bytes, None]:
        """Dispatch on ``request.stream_mode``.

        Returns the JSON body for non-stream requests, otherwise an async
        generator of SSE frames for the transport to drain. Backend failures
        never escape as exceptions in either mode.
        """

        if request.stream_mode:
            return self.stream(request, is_disconnected)
        return self.respond(await self.complete(request))

    @staticmethod
    def respond(outcome: RelayOutcome) -> dict[str, Any]:
        if isinstance(outcome, Completed):
            return ChatResponse(response=outcome.text).model_dump()
        return ChatResponse(response=client_error_message(stream=False)).model_dump()

    async def complete(self, request: ChatRequest) -> RelayOutcome:
        """Run one non-stream session and return its outcome."""

        session = _Session(request, stream=False)
        try:
            async with self.pool.acquire() as backend:
                if self.cfg.non_stream_strategy == "accumulate":
                    text = await self._accumulate(backend, request, session)
                else:
                    reply = await backend.complete_once(
                        request.model, request.messages()
                    )
                    text = reply_text(reply)
                    session.observe(text)
        except Exception as exc:  # noqa: BLE001
            session.outcome = self._failed(request, exc, stream=False)
        else:
            session.outcome = Completed(text)
        self._finish(session)
        return session.outcome

    async def _accumulate(
        self, backend: ChatBackend, request: ChatRequest, session: _Session
    ) -> str:
        # Partial text is discarded by the caller when this raises.
        chunks = await backend.complete_stream(request.model, request.messages())
        try:
            async for chunk in chunks:
                if chunk.text:
                    session.observe(chunk.text)
        finally:
            await chunks.aclose()
        return "".join(session.parts)

    async def stream(
        self, request: ChatRequest, is_disconnected: DisconnectProbe | None = None
    ) -> AsyncGenerator[bytes, None]:
        events = self.stream_events(request, is_disconnected)
        try:
            async for event in events:
                yield event.encode()
        finally:
            await events.aclose()

    async def stream_events(
        self, request: ChatRequest, is_disconnected: DisconnectProbe | None = None
    ) -> AsyncGenerator[OutboundEvent, None]:
        """Consumer side of a stream session.

        Leaving this generator early (``aclose`` or cancellation by the
        transport) is the consumer-gone signal: the producer is stopped and
        cancelled, which closes the backend response and frees its handle.
        """

        session = _Session(request, stream=True)
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.cfg.queue_capacity)
        stop = asyncio.Event()
        producer = self._spawn(self._produce(request, queue, stop, session))
        keepalive = self.cfg.keepalive_interval_s or None
        finished = False
        try:
            while True:
                try:
                    item = await asyncio.wait_for(queue.get(), keepalive)
                except asyncio.TimeoutError:
                    if is_disconnected is not None and await is_disconnected():
                        logger.info(
                            "[relay] Client gone during idle stream (model=%s)",
                            request.model,
                        )
                        break
                    yield OutboundEvent.keepalive()
                    continue
                if item is _END:
                    finished = True
                    break
                yield item
        finally:
            if not finished:
                session.disconnected = True
            stop.set()
            if not producer.done():
                producer.cancel()
            self._finish(session)

    async def _produce(
        self,
        request: ChatRequest,
        queue: asyncio.Queue,
        stop: asyncio.Event,
        session: _Session,
    ) -> None:
        wire_format = self.cfg.stream_wire_format
        failure = error_event(client_error_message(stream=True), wire_format)
        try:
            async with self.pool.acquire() as backend:
                if stop.is_set():
                    return
                try:
                    chunks = await backend.complete_stream(
                        request.model, request.messages()
                    )
                except Exception as exc:  # noqa: BLE001
                    session.outcome = self._failed(request, exc, stream=True)
                    await queue.put(failure)
                    return
                try:
                    async for chunk in chunks:
                        if chunk.text:
                            session.observe(chunk.text)
                            await queue.put(content_event(chunk.text, wire_format))
                        # Checked before every pull so a gone consumer costs
                        # at most the pull already in flight.
                        if stop.is_set():
                            break
                except Exception as exc:  # noqa: BLE001
                    session.outcome = self._failed(request, exc, stream=True)
                    await queue.put(failure)
                else:
                    session.outcome = Completed("".join(session.parts))
                finally:
                    await chunks.aclose()
        finally:
            if not stop.is_set():
                await queue.put(_END)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._reap)
        return task

    def _reap(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "[relay] Stream producer crashed",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @staticmethod
    def _failed(request: ChatRequest, exc: Exception, stream: bool) -> Failed:
        kind = classify(exc)
        if kind is ErrorKind.INTERNAL:
            logger.exception(
                "[relay] Unexpected failure relaying model=%s stream=%s",
                request.model,
                stream,
            )
        else:
            logger.warning(
                "[relay] Backend %s failure for model=%s stream=%s: %s",
                kind.value,
                request.model,
                stream,
                exc,
            )
        return Failed(kind)

    def _finish(self, session: _Session) -> None:
        now = time.time()
        label = session.outcome_label
        ttft_ms = (
            (session.first_chunk_at - session.started_at) * 1000
            if session.first_chunk_at is not None
            else None
        )
        duration_ms = (now - session.started_at) * 1000
        chars = sum(len(part) for part in session.parts)
        if self.metrics is not None:
            self.metrics.add(
                RelaySample(
                    ts=now,
                    model=session.request.model,
                    stream=session.stream,
                    outcome=label,
                    ttft_ms=ttft_ms,
                    chunks_out=session.chunks,
                    chars_out=chars,
                    duration_ms=duration_ms,
                )
            )
        if self.request_log is not None:
            record: dict[str, Any] = {
                "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(now)),
                "model": session.request.model,
                "stream": session.stream,
                "outcome": label,
                "chunks": session.chunks,
                "chars": chars,
                "duration_ms": round(duration_ms, 2),
            }
            if isinstance(session.outcome, Failed):
                record["error_kind"] = session.outcome.kind.value
            if self.cfg.log_prompts:
                record["prompt"] = session.request.prompt
            self.request_log.log(record)
        logger.info(
            "[relay] %s model=%s stream=%s chunks=%d duration_ms=%.0f",
            label,
            session.request.model,
            session.stream,
            session.chunks,
            duration_ms,
        )

"""Server-sent event framing for relayed chat output."""

from __future__ import annotations

import json
from dataclasses import dataclass

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


@dataclass(frozen=True)
class OutboundEvent:
    payload: str
    event: str | None = None
    comment: bool = False

    @classmethod
    def keepalive(cls) -> "OutboundEvent":
        return cls(payload="keep-alive", comment=True)

    def encode(self) -> bytes:
        if self.comment:
            return f": {self.payload}\n\n".encode()
        lines: list[str] = []
        if self.event:
            lines.append(f"event: {self.event}")
        # Multi-line payloads need one data field per line.
        for part in self.payload.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
            lines.append(f"data: {part}")
        return ("\n".join(lines) + "\n\n").encode()


def content_event(text: str, wire_format: str) -> OutboundEvent:
    if wire_format == "raw":
        return OutboundEvent(payload=text)
    return OutboundEvent(payload=json.dumps({"content": text}, ensure_ascii=False))


def error_event(message: str, wire_format: str) -> OutboundEvent:
    if wire_format == "raw":
        return OutboundEvent(payload=message, event="error")
    return OutboundEvent(
        payload=json.dumps({"error": message}, ensure_ascii=False), event="error"
    )

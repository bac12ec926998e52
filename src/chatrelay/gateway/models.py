from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    model: str = Field(..., min_length=1)
    prompt: str
    stream: Optional[bool] = None  # absent/null means stream

    class Config:
        frozen = True

    @property
    def stream_mode(self) -> bool:
        return True if self.stream is None else self.stream

    def messages(self) -> list[dict[str, str]]:
        return [{"role": "user", "content": self.prompt}]


class ChatResponse(BaseModel):
    response: str

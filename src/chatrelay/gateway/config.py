from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

WIRE_FORMATS = ("json", "raw")
NON_STREAM_STRATEGIES = ("once", "accumulate")


@dataclass
class GatewayConfig:
    host: str = "127.0.0.1"
    port: int = 3000
    ollama_base_url: str = "http://localhost:11434"
    backend_pool_size: int = 1
    backend_timeout_ms: int = 0  # 0 = wait indefinitely
    queue_capacity: int = 100
    keepalive_interval_s: float = 15.0
    stream_wire_format: str = "json"
    non_stream_strategy: str = "once"
    enable_metrics: bool = False
    log_path: str = "logs/chat_relay.jsonl"
    max_log_bytes: int = 25_000_000
    log_prompts: bool = False
    config_file_path: Optional[str] = None

    @property
    def backend_timeout_s(self) -> float | None:
        if self.backend_timeout_ms <= 0:
            return None
        return self.backend_timeout_ms / 1000

    @classmethod
    def load(cls) -> "GatewayConfig":
        from .config_loader import load_gateway_config

        return load_gateway_config()

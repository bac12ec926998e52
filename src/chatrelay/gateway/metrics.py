from __future__ import annotations

import time
from collections import deque, defaultdict
from dataclasses import dataclass
from typing import Deque, Dict


@dataclass
class RelaySample:
    ts: float
    model: str
    stream: bool
    outcome: str  # completed | failed | disconnected
    ttft_ms: float | None
    chunks_out: int
    chars_out: int
    duration_ms: float


class MetricsAggregator:
    def __init__(self, capacity: int = 500):
        self.capacity = capacity
        self.samples: Deque[RelaySample] = deque(maxlen=capacity)
        self.start_ts = time.time()
        self.outcome_counters: Dict[str, Dict[str, int]] = defaultdict(
            lambda: {"total_requests": 0, "streaming_requests": 0}
        )
        self.request_index = 0

    def add(self, sample: RelaySample):
        self.samples.append(sample)
        counters = self.outcome_counters[sample.outcome]
        counters["total_requests"] += 1
        if sample.stream:
            counters["streaming_requests"] += 1
        self.request_index += 1

    def summary(self) -> dict:
        if not self.samples:
            return {
                "uptime_seconds": time.time() - self.start_ts,
                "rolling": {"count": 0},
                "requests_by_outcome": self.outcome_counters,
                "schema_version": 1,
            }
        ttfts = [s.ttft_ms for s in self.samples if s.ttft_ms is not None]
        ttfts_sorted = sorted(ttfts)
        p95 = (
            ttfts_sorted[int(0.95 * (len(ttfts_sorted) - 1))] if ttfts_sorted else None
        )
        durations = [s.duration_ms for s in self.samples]
        return {
            "uptime_seconds": time.time() - self.start_ts,
            "rolling": {
                "count": len(self.samples),
                "avg_ttft_ms": (sum(ttfts) / len(ttfts)) if ttfts else None,
                "p95_ttft_ms": p95,
                "avg_duration_ms": sum(durations) / len(durations),
                "avg_chunks": sum(s.chunks_out for s in self.samples)
                / len(self.samples),
            },
            "requests_by_outcome": self.outcome_counters,
            "schema_version": 1,
        }

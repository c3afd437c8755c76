from __future__ import annotations

import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    # Capture third-party call latency and outcomes per channel type.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Plain in-process counters; exact values under concurrency are not critical.
    _counters[name] += value


def get_counter(name: str) -> int:
    return int(_counters.get(name, 0))


def external_call_summary(window_s: int = 300) -> dict[str, dict[str, float]]:
    # Summarize per-integration call volume and failure rate over the window.
    cutoff = time.time() - window_s
    summary: dict[str, dict[str, float]] = {}
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        entry = summary.setdefault(
            sample.integration, {"calls": 0.0, "failures": 0.0, "avg_latency_ms": 0.0}
        )
        entry["calls"] += 1
        if not sample.success:
            entry["failures"] += 1
        entry["avg_latency_ms"] += (sample.latency_ms - entry["avg_latency_ms"]) / entry["calls"]
    return summary


def reset_telemetry() -> None:
    # Allow tests to start from empty counters.
    _external_samples.clear()
    _counters.clear()

from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class RequestSample:
    ts: float
    path: str
    status_code: int
    latency_ms: float


@dataclass(frozen=True)
class FetchSample:
    ts: float
    source: str
    latency_ms: float
    success: bool


_request_samples: Deque[RequestSample] = deque(maxlen=20000)
_fetch_samples: Deque[FetchSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _request_samples.append(
        RequestSample(ts=time.time(), path=path, status_code=status_code, latency_ms=latency_ms)
    )


def record_fetch(*, source: str, latency_ms: float, success: bool) -> None:
    # Capture store fetch latency and outcomes per metric source.
    _fetch_samples.append(
        FetchSample(ts=time.time(), source=source, latency_ms=latency_ms, success=success)
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def _p95(values: list[float]) -> float:
    values.sort()
    return values[max(0, math.ceil(0.95 * len(values)) - 1)]


def request_p95_latency(window_s: int, *, path_prefix: str | None = None) -> float | None:
    cutoff = time.time() - window_s
    latencies = [
        sample.latency_ms
        for sample in _request_samples
        if sample.ts >= cutoff and (path_prefix is None or sample.path.startswith(path_prefix))
    ]
    return _p95(latencies) if latencies else None


def fetch_latency_by_source(window_s: int) -> dict[str, dict[str, float | int]]:
    # Aggregate fetch latency and failures per source in the window.
    cutoff = time.time() - window_s
    latencies: dict[str, list[float]] = defaultdict(list)
    failures: dict[str, int] = defaultdict(int)
    for sample in _fetch_samples:
        if sample.ts < cutoff:
            continue
        latencies[sample.source].append(sample.latency_ms)
        if not sample.success:
            failures[sample.source] += 1
    return {
        source: {"p95": _p95(values), "max": max(values), "failures": failures[source]}
        for source, values in latencies.items()
    }


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    # Clear in-process samples for deterministic tests.
    _request_samples.clear()
    _fetch_samples.clear()
    _counters.clear()

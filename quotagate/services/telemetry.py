from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass
import math
import time
from typing import Deque, Iterable


# Bounded ring buffers; old samples fall off regardless of the query window.
_MAX_REQUEST_SAMPLES = 20000
_MAX_EXTERNAL_SAMPLES = 5000


@dataclass(frozen=True)
class Sample:
    ts: float
    key: str
    latency_ms: float
    ok: bool


_requests: Deque[Sample] = deque(maxlen=_MAX_REQUEST_SAMPLES)
_external: Deque[Sample] = deque(maxlen=_MAX_EXTERNAL_SAMPLES)
_counters: Counter[str] = Counter()


def record_request(*, path: str, status_code: int, latency_ms: float) -> None:
    _requests.append(Sample(ts=time.time(), key=path, latency_ms=latency_ms, ok=status_code < 500))
    _counters[f"http.{status_code // 100}xx"] += 1


def record_external_call(*, integration: str, latency_ms: float, success: bool) -> None:
    _external.append(Sample(ts=time.time(), key=integration, latency_ms=latency_ms, ok=success))


def increment_counter(name: str, value: int = 1) -> None:
    # Admission, webhook and ledger-degradation outcomes.
    _counters[name] += value


def _within(samples: Iterable[Sample], window_s: int) -> list[Sample]:
    cutoff = time.time() - window_s
    return [sample for sample in samples if sample.ts >= cutoff]


def _p95(values: list[float]) -> float:
    ordered = sorted(values)
    return ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)]


def request_latency_p95(window_s: int) -> float | None:
    latencies = [sample.latency_ms for sample in _within(_requests, window_s)]
    return _p95(latencies) if latencies else None


def external_latency_by_integration(window_s: int) -> dict[str, dict[str, float | None]]:
    grouped: dict[str, list[Sample]] = {}
    for sample in _within(_external, window_s):
        grouped.setdefault(sample.key, []).append(sample)
    return {
        integration: {
            "calls": float(len(samples)),
            "p95": _p95([sample.latency_ms for sample in samples]),
            "max": max(sample.latency_ms for sample in samples),
            "failures": float(sum(1 for sample in samples if not sample.ok)),
        }
        for integration, samples in grouped.items()
    }


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_telemetry() -> None:
    _requests.clear()
    _external.clear()
    _counters.clear()

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
    # Capture boundary call latency and outcomes (cache, storage, queue, data sources).
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    _counters[name] += value


def get_counters() -> dict[str, int]:
    return dict(_counters)


def external_call_samples(integration: str | None = None) -> list[ExternalCallSample]:
    if integration is None:
        return list(_external_samples)
    return [sample for sample in _external_samples if sample.integration == integration]


def external_call_error_rate(integration: str, window_s: int) -> float | None:
    # Percentage of failed calls for one integration over the window.
    cutoff = time.time() - window_s
    samples = [
        sample
        for sample in _external_samples
        if sample.integration == integration and sample.ts >= cutoff
    ]
    if not samples:
        return None
    failures = sum(1 for sample in samples if not sample.success)
    return (failures / len(samples)) * 100.0


def reset_counters() -> None:
    # Tests reset global state between cases.
    _counters.clear()
    _external_samples.clear()

# symreg/infra/timings.py
from __future__ import annotations
import statistics
import time
from collections import deque
from typing import Deque, Dict, List

# bounded window per kind; the event loop is the only writer
WINDOW = 2048
_SAMPLES: Dict[str, Deque[float]] = {}
_COUNTS: Dict[str, int] = {}


def record_timing(kind: str, seconds: float) -> None:
    window = _SAMPLES.get(kind)
    if window is None:
        window = _SAMPLES[kind] = deque(maxlen=WINDOW)
    window.append(float(seconds))
    _COUNTS[kind] = _COUNTS.get(kind, 0) + 1


class timeit:
    """Record how long the block takes under ``kind``, failures included.

        async with timeit("gateway.create_order"):
            await gateway.create_order(...)
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, time.perf_counter() - self._t0)


def _summary(values: List[float]) -> Dict[str, float]:
    ordered = sorted(values)
    p95 = ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))]
    return {
        "mean": statistics.mean(ordered),
        "std": statistics.stdev(ordered) if len(ordered) > 1 else 0.0,
        "p95": p95,
        "max": ordered[-1],
    }


def aggregates() -> List[Dict[str, float]]:
    """One record per kind: total count ``n`` plus stats over the recent
    window, in seconds."""
    out = []
    for kind in sorted(_SAMPLES):
        window = list(_SAMPLES[kind])
        if not window:
            continue
        out.append({"kind": kind, "n": _COUNTS[kind], **_summary(window)})
    return out


def reset() -> None:
    _SAMPLES.clear()
    _COUNTS.clear()

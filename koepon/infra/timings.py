from __future__ import annotations
import time
from typing import Dict, List
import statistics

# one list per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, List[float]] = {}
# cap per kind so a long-running process keeps a rolling window
_MAX_SAMPLES = 10_000


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = []
        _TIMINGS[kind] = lst
    lst.append(float(value))
    if len(lst) > _MAX_SAMPLES:
        del lst[: len(lst) - _MAX_SAMPLES]


def count(kind: str) -> int:
    return len(_TIMINGS.get(kind, ()))


class timeit:
    """async usage:
        async with timeit("accounting.reserve"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


def _mean_std(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def snapshot() -> Dict[str, Dict[str, float]]:
    """Aggregates per kind: {"n", "mean", "std"} with durations in seconds."""
    out = {}
    for kind, vals in _TIMINGS.items():
        mean, std = _mean_std(vals)
        out[kind] = {"n": len(vals), "mean": mean, "std": std}
    return out


def reset() -> None:
    _TIMINGS.clear()

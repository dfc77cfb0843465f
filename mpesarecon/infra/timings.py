# mpesarecon/infra/timings.py
from __future__ import annotations
import logging
import math
import statistics
import time
from collections import defaultdict
from typing import DefaultDict, Dict, List

logger = logging.getLogger(__name__)

# seconds per stage; the event loop is the only writer
_SAMPLES: DefaultDict[str, List[float]] = defaultdict(list)


def record_timing(kind: str, seconds: float) -> None:
    _SAMPLES[kind].append(float(seconds))


class timeit:
    """async usage:
        async with timeit("reconcile.success"):
            await fn()

    The duration is recorded whether or not the body raises.
    """
    __slots__ = ("_kind", "_started")

    def __init__(self, kind: str):
        self._kind = kind
        self._started = 0.0

    async def __aenter__(self):
        self._started = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, time.perf_counter() - self._started)


def _p95(ordered: List[float]) -> float:
    # nearest-rank on an already sorted list
    return ordered[max(0, math.ceil(0.95 * len(ordered)) - 1)]


def _stage_stats(kind: str, samples: List[float]) -> Dict[str, float]:
    ordered = sorted(samples)
    std = statistics.stdev(ordered) if len(ordered) > 1 else 0.0
    return {
        "kind": kind,
        "n": len(ordered),
        "mean_ms": statistics.fmean(ordered) * 1000,
        "std_ms": std * 1000,
        "p95_ms": _p95(ordered) * 1000,
    }


def summary() -> List[Dict[str, float]]:
    return [
        _stage_stats(kind, samples)
        for kind, samples in sorted(_SAMPLES.items())
        if samples
    ]


def log_summary() -> None:
    for rec in summary():
        logger.info(
            "timing %s n=%d mean=%.2fms std=%.2fms p95=%.2fms",
            rec["kind"], rec["n"], rec["mean_ms"], rec["std_ms"],
            rec["p95_ms"],
        )


def reset() -> None:
    _SAMPLES.clear()

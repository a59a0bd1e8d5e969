"""
Per-frame latency metrics: live fps/latency and a timed benchmark window
summarized as median/p95.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from inference.utils import now_ms

logger = logging.getLogger(__name__)

BENCHMARK_WINDOW_MS = 30_000.0
FPS_RESET_MS = 1000.0


def percentile(values: Sequence[float], p: float) -> float:
    """
    Percentile with linear interpolation between order statistics.
    Returns 0 for an empty sequence.
    """
    if len(values) == 0:
        return 0.0
    return float(np.percentile(np.asarray(values, dtype=np.float64), p))


@dataclass(frozen=True)
class Sample:
    """Timestamps (ms) for one processed frame."""

    capture_ts: float
    inference_ts: float
    overlay_ts: float

    @property
    def inference_latency(self) -> float:
        return self.inference_ts - self.capture_ts

    @property
    def e2e_latency(self) -> float:
        return self.overlay_ts - self.capture_ts


@dataclass
class LiveStats:
    fps: float = 0.0
    e2e_latency_ms: float = 0.0
    inference_latency_ms: float = 0.0
    frames_seen: int = 0


@dataclass(frozen=True)
class BenchmarkSummary:
    duration_s: float
    frames_processed: int
    median_e2e_ms: float
    p95_e2e_ms: float
    median_inference_ms: float
    p95_inference_ms: float

    def to_export(self, mode: str) -> Dict[str, object]:
        return {"mode": mode, **asdict(self)}


class MetricsAggregator:
    """
    Turns Samples into live stats and, while a benchmark runs, into the
    latency sequences that `stop_benchmark()` summarizes.
    """

    def __init__(
        self,
        window_ms: float = BENCHMARK_WINDOW_MS,
        clock: Callable[[], float] = now_ms,
        on_benchmark_done: Optional[Callable[[BenchmarkSummary], None]] = None,
    ) -> None:
        self.window_ms = window_ms
        self._clock = clock
        self.on_benchmark_done = on_benchmark_done
        self._lock = threading.Lock()

        self.live = LiveStats()
        self._frame_count = 0
        self._last_reset = clock()

        self._e2e: List[float] = []
        self._inference: List[float] = []
        self._bench_start: Optional[float] = None
        self.summary: Optional[BenchmarkSummary] = None

    @property
    def is_benchmarking(self) -> bool:
        return self._bench_start is not None

    @property
    def frames_processed(self) -> int:
        return len(self._e2e)

    def record(self, sample: Sample) -> LiveStats:
        now = self._clock()
        e2e = sample.e2e_latency
        inference = sample.inference_latency

        finished = False
        with self._lock:
            self._frame_count += 1
            elapsed = now - self._last_reset
            if elapsed > FPS_RESET_MS:
                self.live.fps = self._frame_count / (elapsed / 1000.0)
                self._frame_count = 0
                self._last_reset = now
            self.live.e2e_latency_ms = e2e
            self.live.inference_latency_ms = inference
            self.live.frames_seen += 1

            if self._bench_start is not None:
                bench_elapsed = now - self._bench_start
                if bench_elapsed <= self.window_ms:
                    self._e2e.append(e2e)
                    self._inference.append(inference)
                finished = bench_elapsed >= self.window_ms

        if finished:
            self.stop_benchmark()
        return self.live

    def start_benchmark(self) -> None:
        with self._lock:
            self._e2e = []
            self._inference = []
            self._bench_start = self._clock()
            self.summary = None
        logger.info("benchmark started (%.0f ms window)", self.window_ms)

    def stop_benchmark(self) -> BenchmarkSummary:
        """Freeze the window and compute the summary. Safe to call when idle."""
        with self._lock:
            if self._bench_start is None and self.summary is not None:
                return self.summary
            start = self._bench_start
            elapsed_ms = (self._clock() - start) if start is not None else 0.0
            self._bench_start = None
            e2e = list(self._e2e)
            inference = list(self._inference)

        summary = BenchmarkSummary(
            frames_processed=len(e2e),
            median_e2e_ms=percentile(e2e, 50),
            p95_e2e_ms=percentile(e2e, 95),
            median_inference_ms=percentile(inference, 50),
            p95_inference_ms=percentile(inference, 95),
            duration_s=round(min(elapsed_ms, self.window_ms) / 1000.0, 3),
        )
        self.summary = summary
        logger.info(
            "benchmark finished: %d frames, e2e p50/p95 %.1f/%.1f ms, inference p50/p95 %.1f/%.1f ms",
            summary.frames_processed,
            summary.median_e2e_ms,
            summary.p95_e2e_ms,
            summary.median_inference_ms,
            summary.p95_inference_ms,
        )
        if self.on_benchmark_done is not None:
            self.on_benchmark_done(summary)
        return summary

    def export(self, mode: str) -> Dict[str, object]:
        """Benchmark export payload; stops a running benchmark first."""
        summary = self.stop_benchmark() if self.is_benchmarking or self.summary is None else self.summary
        return summary.to_export(mode)

"""
Frame scheduler: a single-capacity "latest frame" slot fed by a capture
loop and drained by a fixed-cadence dispatch loop, with at most one
inference in flight.

Frames that arrive while the slot is occupied are dropped, never queued, so
throughput is bounded by backend latency rather than capture rate.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from monitoring.metrics import MetricsAggregator, Sample
from session.timers import PeriodicTimer

from .backends import BackendSelector
from .frames import FrameSource, MediaFrame
from .utils import Detection, now_ms

logger = logging.getLogger(__name__)

DetectionsCallback = Callable[[MediaFrame, List[Detection]], None]


class FrameScheduler:
    def __init__(
        self,
        source: FrameSource,
        backends: BackendSelector,
        metrics: Optional[MetricsAggregator] = None,
        on_detections: Optional[DetectionsCallback] = None,
        dispatch_hz: float = 30.0,
        capture_hz: float = 60.0,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self.source = source
        self.backends = backends
        self.metrics = metrics
        self.on_detections = on_detections
        self.dispatch_hz = dispatch_hz
        self.capture_hz = capture_hz
        self._clock = clock

        self._slot: Optional[MediaFrame] = None
        self._busy = False
        self._disposed = False
        self._inflight: Optional[asyncio.Task] = None
        self._capture_timer = PeriodicTimer(1.0 / capture_hz, self._capture_tick, name="capture")
        self._dispatch_timer = PeriodicTimer(1.0 / dispatch_hz, self._dispatch_tick, name="dispatch")

        self.frames_dropped = 0
        self.inferences_started = 0
        self.inferences_completed = 0
        self.last_detections: List[Detection] = []

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def pending(self) -> bool:
        return self._slot is not None

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def inflight(self) -> Optional[asyncio.Task]:
        return self._inflight

    def start(self) -> None:
        if self._disposed:
            raise RuntimeError("scheduler already disposed")
        self._capture_timer.start()
        self._dispatch_timer.start()
        logger.info(
            "scheduler started: capture %.0f Hz, dispatch %.0f Hz, backend %s",
            self.capture_hz,
            self.dispatch_hz,
            self.backends.kind.value,
        )

    async def dispose(self) -> None:
        """
        Stop both loops and release the pending frame. An in-flight inference
        is left to finish; its result is discarded.
        """
        if self._disposed:
            return
        self._disposed = True
        await self._capture_timer.stop()
        await self._dispatch_timer.stop()
        frame, self._slot = self._slot, None
        if frame is not None:
            frame.release()
        logger.info(
            "scheduler disposed: %d started, %d completed, %d dropped",
            self.inferences_started,
            self.inferences_completed,
            self.frames_dropped,
        )

    async def _capture_tick(self) -> None:
        if self._disposed or not self.source.active:
            return
        if self._slot is not None:
            self.frames_dropped += 1
            return

        frame = await self.source.grab()
        if frame is None:
            return
        # state may have changed while grabbing
        if self._disposed or self._slot is not None:
            frame.release()
            self.frames_dropped += 1
            return
        self._slot = frame

    def _claim(self) -> Optional[MediaFrame]:
        """Take the slot's frame and mark busy, or return None. No awaits here."""
        if self._busy or self._slot is None:
            return None
        frame, self._slot = self._slot, None
        self._busy = True
        return frame

    def _dispatch_tick(self) -> None:
        if self._disposed:
            return
        frame = self._claim()
        if frame is None:
            return
        self.inferences_started += 1
        self._inflight = asyncio.get_running_loop().create_task(self._run_inference(frame))

    async def _run_inference(self, frame: MediaFrame) -> None:
        backend = self.backends.active
        capture_ts = frame.captured_at
        detections: List[Detection] = []
        try:
            detections = await backend.infer(frame)
        except Exception:
            # backends report their own failures; this guards the slot/busy pair
            logger.exception("backend %s raised", self.backends.kind.value)
        finally:
            inference_ts = self._clock()
            frame.release()
            self._busy = False
            self._inflight = None

        if self._disposed:
            return

        self.inferences_completed += 1
        self.last_detections = detections
        if self.on_detections is not None:
            try:
                self.on_detections(frame, detections)
            except Exception:
                logger.exception("detections consumer raised")
        overlay_ts = self._clock()
        if self.metrics is not None:
            self.metrics.record(Sample(capture_ts=capture_ts, inference_ts=inference_ts, overlay_ts=overlay_ts))

"""
SessionController: the single context object for one peer session.

It owns the negotiator, the inference backends, the frame scheduler and the
metrics, and tears all of them down in `dispose()`.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Set

from api.schemas import BenchmarkExport
from inference.backends import BackendKind, BackendSelector, LocalBackend, RemoteBackend
from inference.decoder import DetectionDecoder, load_label_names
from inference.errors import AssetUnavailableError, BackendError
from inference.frames import FrameSource, MediaFrame
from inference.scheduler import FrameScheduler
from inference.utils import Detection, now_ms
from monitoring.logger import JsonlLogger, write_json
from monitoring.metrics import BenchmarkSummary, MetricsAggregator
from rtc.errors import MediaAccessError
from rtc.media import LocalMedia, TrackFrameSource, open_camera
from rtc.negotiator import ConnectionNegotiator, LinkState, PeerLink, Role

from .config import AppConfig
from .events import EventBus
from .timers import CancellableTimer

logger = logging.getLogger(__name__)

DetectionsCallback = Callable[[MediaFrame, List[Detection]], None]


def build_backends(cfg: AppConfig, on_error: Optional[Callable[[BackendError], None]] = None) -> BackendSelector:
    names = load_label_names(cfg.labels_path) if cfg.labels_path else None
    decoder = DetectionDecoder(conf=cfg.conf, iou=cfg.iou, model_size=(cfg.imgsz, cfg.imgsz), names=names)
    local = LocalBackend(
        cfg.model,
        decoder=decoder,
        input_name=cfg.input_name,
        output_name=cfg.output_name,
        imgsz=cfg.imgsz,
        device=cfg.device,
        on_error=on_error,
    )
    remote = RemoteBackend(cfg.remote_url, timeout_s=cfg.remote_timeout_s, jpeg_quality=cfg.jpeg_quality, on_error=on_error)
    return BackendSelector({BackendKind.LOCAL: local, BackendKind.REMOTE: remote}, cfg.backend)


class SessionController:
    def __init__(
        self,
        cfg: AppConfig,
        role: Role | str,
        transport_factory: Optional[Callable[[Sequence[str]], Any]] = None,
        backends: Optional[BackendSelector] = None,
        on_detections: Optional[DetectionsCallback] = None,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self.cfg = cfg
        self.role = Role(role)
        self._clock = clock
        self.events = EventBus(JsonlLogger(cfg.event_log) if cfg.event_log else None)
        self.metrics = MetricsAggregator(window_ms=cfg.benchmark_ms, clock=clock)
        self.backends = backends or build_backends(cfg, on_error=self._on_backend_error)
        self.on_detections = on_detections
        self.negotiator = ConnectionNegotiator(
            self.role,
            ice_servers=cfg.ice_servers,
            gather_timeout_s=cfg.gather_timeout_s,
            transport_factory=transport_factory,
            events=self.events,
        )
        self.negotiator.on_remote_track(self._on_remote_track)
        self.negotiator.on_link_released(self._on_link_released)
        self.scheduler: Optional[FrameScheduler] = None
        self.local_media: Optional[LocalMedia] = None
        self._track_source: Optional[TrackFrameSource] = None
        self._benchmark_timer: Optional[CancellableTimer] = None
        self._background: Set[asyncio.Task] = set()
        self._disposed = False

    @property
    def state(self) -> LinkState:
        return self.negotiator.state

    @property
    def link_id(self) -> str:
        return self.negotiator.link_id

    def _on_backend_error(self, err: BackendError) -> None:
        kind = "asset-unavailable" if isinstance(err, AssetUnavailableError) else "backend-error"
        self.events.error(kind, str(err), self.link_id)

    # ---- media ----

    def start_camera(self, opener: Callable[..., LocalMedia] = open_camera) -> Optional[LocalMedia]:
        """Open the local camera; on failure the error is reported and the link proceeds without media."""
        try:
            media = opener(self.cfg.camera)
        except MediaAccessError as exc:
            self.events.error("media-access", str(exc), self.link_id)
            return None
        self.local_media = media
        self.negotiator.attach_local_media(media)
        return media

    # ---- negotiation ----

    async def create_offer(self) -> str:
        return await self.negotiator.create_offer()

    async def set_remote_offer(self, descriptor: str) -> None:
        await self.negotiator.set_remote_offer(descriptor)

    async def create_answer(self) -> str:
        return await self.negotiator.create_answer()

    async def set_remote_answer(self, descriptor: str) -> bool:
        return await self.negotiator.set_remote_answer(descriptor)

    # ---- detection pipeline ----

    def _on_remote_track(self, track: Any) -> None:
        if self.role != Role.VIEWER or self._disposed:
            return
        source = TrackFrameSource(track)
        old_source, self._track_source = self._track_source, source
        self.attach_source(source)
        if old_source is not None:
            self._spawn(old_source.close())

    async def _on_link_released(self, link: PeerLink) -> None:
        # frames from a released link must stop flowing before its transport closes
        source, self._track_source = self._track_source, None
        if source is None:
            return
        scheduler, self.scheduler = self.scheduler, None
        if scheduler is not None:
            await scheduler.dispose()
        await source.close()
        logger.info("pipeline for link %s stopped", link.link_id[:8])

    def attach_source(self, source: FrameSource) -> FrameScheduler:
        """Start a scheduler on `source`, replacing (and disposing) any previous one."""
        old, self.scheduler = self.scheduler, FrameScheduler(
            source,
            self.backends,
            metrics=self.metrics,
            on_detections=self._publish,
            dispatch_hz=self.cfg.dispatch_hz,
            capture_hz=self.cfg.capture_hz,
            clock=self._clock,
        )
        if old is not None:
            self._spawn(old.dispose())
        self.scheduler.start()
        return self.scheduler

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _publish(self, frame: MediaFrame, detections: List[Detection]) -> None:
        if self.on_detections is not None:
            self.on_detections(frame, detections)

    def select_backend(self, kind: BackendKind | str) -> BackendKind:
        return self.backends.select(kind)

    # ---- benchmark ----

    def start_benchmark(self) -> None:
        self.metrics.start_benchmark()
        if self._benchmark_timer is not None:
            self._benchmark_timer.cancel()
        self._benchmark_timer = CancellableTimer(self.cfg.benchmark_ms / 1000.0, self._benchmark_elapsed)
        self._benchmark_timer.start()

    def _benchmark_elapsed(self) -> None:
        if self.metrics.is_benchmarking:
            self.metrics.stop_benchmark()

    def stop_benchmark(self) -> BenchmarkSummary:
        if self._benchmark_timer is not None:
            self._benchmark_timer.cancel()
            self._benchmark_timer = None
        return self.metrics.stop_benchmark()

    def export_benchmark(self, path: str | Path = "metrics.json") -> Path:
        payload = BenchmarkExport(**self.metrics.export(self.backends.kind.value))
        out = write_json(payload.model_dump(), path)
        logger.info("benchmark exported to %s", out)
        return out

    # ---- teardown ----

    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if self._benchmark_timer is not None:
            self._benchmark_timer.cancel()
        if self.scheduler is not None:
            await self.scheduler.dispose()
        source, self._track_source = self._track_source, None
        if source is not None:
            await source.close()
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.negotiator.close()
        if self.local_media is not None:
            self.local_media.stop()
        for backend in self.backends.registered():
            if isinstance(backend, RemoteBackend):
                await backend.aclose()
        logger.info("session disposed")

"""
Media plumbing around aiortc tracks.

- CameraTrack: publishes frames from an OpenCV capture device
- LocalMedia: the set of tracks a peer publishes
- TrackFrameSource: adapts a received video track to the scheduler's FrameSource
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Tuple

import cv2
import numpy as np
from aiortc.mediastreams import MediaStreamError, MediaStreamTrack, VideoStreamTrack
from av import VideoFrame
from starlette.concurrency import run_in_threadpool

from inference.frames import MediaFrame
from inference.utils import now_ms

from .errors import MediaAccessError

logger = logging.getLogger(__name__)


class CameraTrack(VideoStreamTrack):
    """Video track backed by `cv2.VideoCapture`."""

    def __init__(self, capture: cv2.VideoCapture) -> None:
        super().__init__()
        self._capture = capture
        self.width = int(capture.get(cv2.CAP_PROP_FRAME_WIDTH)) or 640
        self.height = int(capture.get(cv2.CAP_PROP_FRAME_HEIGHT)) or 480

    def _read(self) -> Optional[np.ndarray]:
        ok, frame = self._capture.read()
        return frame if ok else None

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()
        frame = await run_in_threadpool(self._read)
        if frame is None:
            frame = np.zeros((self.height, self.width, 3), dtype=np.uint8)
        av_frame = VideoFrame.from_ndarray(frame, format="bgr24")
        av_frame.pts = pts
        av_frame.time_base = time_base
        return av_frame

    def stop(self) -> None:
        super().stop()
        self._capture.release()


@dataclass
class LocalMedia:
    tracks: List[MediaStreamTrack] = field(default_factory=list)

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()


def open_camera(source: str | int | Path = 0, width: int = 1280, height: int = 720) -> LocalMedia:
    """Open a capture device (index, path or URL). Raises MediaAccessError."""
    if isinstance(source, str) and source.isdigit():
        source = int(source)
    cap = cv2.VideoCapture(source if isinstance(source, int) else str(source))
    if not cap.isOpened():
        cap.release()
        raise MediaAccessError(f"Cannot open camera: {source}")
    cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
    logger.info("camera opened: %s", source)
    return LocalMedia(tracks=[CameraTrack(cap)])


class TrackFrameSource:
    """
    Drains a received video track in the background and keeps only the
    newest frame; `grab()` hands it out as a MediaFrame.
    """

    def __init__(self, track: MediaStreamTrack) -> None:
        self.track = track
        self._latest: Optional[Tuple[Any, float]] = None
        self._reader: Optional[asyncio.Task] = None
        self._ended = False
        self._closed = False
        self.received = 0
        self.overwritten = 0

    @property
    def active(self) -> bool:
        return not (self._ended or self._closed)

    def start(self) -> None:
        if self._reader is None and not self._closed:
            self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    async def _read_loop(self) -> None:
        while True:
            try:
                frame = await self.track.recv()
            except MediaStreamError:
                logger.info("remote track ended after %d frames", self.received)
                self._ended = True
                return
            self.received += 1
            if self._latest is not None:
                self.overwritten += 1
            self._latest = (frame, now_ms())

    async def grab(self) -> Optional[MediaFrame]:
        self.start()
        latest, self._latest = self._latest, None
        if latest is None:
            return None
        frame, received_at = latest
        pixels = frame.to_ndarray(format="bgr24")
        return MediaFrame.from_array(pixels, captured_at=received_at)

    async def close(self) -> None:
        self._closed = True
        self._latest = None
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

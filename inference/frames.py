"""
Frame handles and frame sources consumed by the scheduler.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional, Protocol

import numpy as np

from .utils import now_ms


_frame_ids = itertools.count(1)


@dataclass(eq=False)
class MediaFrame:
    """
    Exclusively-owned handle to one captured BGR image.

    Whoever consumes the frame must call `release()` exactly once.
    """

    pixels: Optional[np.ndarray]
    width: int
    height: int
    frame_id: int = field(default_factory=lambda: next(_frame_ids))
    captured_at: float = field(default_factory=now_ms)
    released: bool = False

    @classmethod
    def from_array(cls, pixels: np.ndarray, captured_at: Optional[float] = None) -> "MediaFrame":
        if pixels is None or pixels.ndim < 2 or pixels.size == 0:
            raise ValueError("Input frame is empty")
        h, w = pixels.shape[:2]
        if captured_at is None:
            return cls(pixels=pixels, width=int(w), height=int(h))
        return cls(pixels=pixels, width=int(w), height=int(h), captured_at=captured_at)

    def release(self) -> None:
        if self.released:
            raise RuntimeError(f"frame {self.frame_id} released twice")
        self.released = True
        self.pixels = None


class FrameSource(Protocol):
    @property
    def active(self) -> bool: ...

    async def grab(self) -> Optional[MediaFrame]: ...


class ArrayFrameSource:
    """
    Frame source backed by a callable or an iterable of BGR arrays.

    Becomes inactive once the iterable is exhausted or `close()` is called.
    """

    def __init__(
        self,
        frames: Callable[[], Optional[np.ndarray]] | Iterable[np.ndarray],
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self._clock = clock
        self._closed = False
        self._next: Callable[[], Optional[np.ndarray]]
        if callable(frames):
            self._next = frames
        else:
            it: Iterator[np.ndarray] = iter(frames)
            self._next = lambda: next(it, None)
        self.grabbed = 0

    @property
    def active(self) -> bool:
        return not self._closed

    def close(self) -> None:
        self._closed = True

    async def grab(self) -> Optional[MediaFrame]:
        if self._closed:
            return None
        pixels = self._next()
        if pixels is None:
            self._closed = True
            return None
        self.grabbed += 1
        return MediaFrame.from_array(pixels, captured_at=self._clock())

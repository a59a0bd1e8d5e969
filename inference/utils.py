"""
Utility helpers for detections, box math, and timing.

Boxes are handled as [x1, y1, x2, y2] rows so the same helpers serve the
local decoder, the remote client and the detection service.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import List

import numpy as np


@dataclass(frozen=True)
class Detection:
    """One detected object, coordinates normalized to the frame (0..1)."""

    label: str
    score: float
    xmin: float
    ymin: float
    xmax: float
    ymax: float
    backend: str = "local"

    @property
    def in_bounds(self) -> bool:
        return 0.0 <= self.xmin <= self.xmax <= 1.0 and 0.0 <= self.ymin <= self.ymax <= 1.0


def now_ms() -> float:
    """Monotonic clock in milliseconds."""
    return time.perf_counter() * 1000.0


def wall_ms() -> float:
    """Wall-clock time in milliseconds (comparable across hosts)."""
    return time.time() * 1000.0


def xywh_to_xyxy(xywh: np.ndarray) -> np.ndarray:
    """Convert (N,4) [cx, cy, w, h] -> [x1, y1, x2, y2]."""
    out = np.zeros_like(xywh, dtype=np.float32)
    out[:, 0] = xywh[:, 0] - xywh[:, 2] / 2
    out[:, 1] = xywh[:, 1] - xywh[:, 3] / 2
    out[:, 2] = xywh[:, 0] + xywh[:, 2] / 2
    out[:, 3] = xywh[:, 1] + xywh[:, 3] / 2
    return out


def iou_matrix(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Compute IoU matrix between two sets of boxes.
    a: (N,4) [x1,y1,x2,y2], b: (M,4)
    """
    if a.size == 0 or b.size == 0:
        return np.zeros((a.shape[0], b.shape[0]), dtype=np.float64)

    a = a.astype(np.float64)
    b = b.astype(np.float64)

    area_a = (a[:, 2] - a[:, 0]).clip(min=0) * (a[:, 3] - a[:, 1]).clip(min=0)
    area_b = (b[:, 2] - b[:, 0]).clip(min=0) * (b[:, 3] - b[:, 1]).clip(min=0)

    x1 = np.maximum(a[:, None, 0], b[None, :, 0])
    y1 = np.maximum(a[:, None, 1], b[None, :, 1])
    x2 = np.minimum(a[:, None, 2], b[None, :, 2])
    y2 = np.minimum(a[:, None, 3], b[None, :, 3])

    inter = (x2 - x1).clip(min=0) * (y2 - y1).clip(min=0)
    union = area_a[:, None] + area_b[None, :] - inter
    out = np.zeros_like(inter)
    np.divide(inter, union, out=out, where=union > 0)
    return out


def nms(boxes: np.ndarray, scores: np.ndarray, iou_thr: float = 0.5) -> List[int]:
    """
    Greedy class-agnostic NMS. Returns kept indices ordered by descending score.

    A remaining box is discarded when its IoU with the selected box is >= iou_thr.
    """
    if len(boxes) == 0:
        return []

    order = np.argsort(-scores.astype(np.float64), kind="stable")
    keep: List[int] = []
    while order.size > 0:
        i = int(order[0])
        keep.append(i)
        if order.size == 1:
            break

        ious = iou_matrix(boxes[i : i + 1], boxes[order[1:]])[0]
        remain = np.where(ious < iou_thr)[0]
        order = order[remain + 1]
    return keep

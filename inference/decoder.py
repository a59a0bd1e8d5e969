"""
YOLOv8-style output decoder: confidence thresholding + greedy NMS.

Input is the raw `[1, 84, 8400]` output tensor (4 box params + 80 class
scores per anchor, channel-major). Output is a list of `Detection` with
coordinates normalized to the source frame.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import yaml

from .utils import Detection, nms, xywh_to_xyxy

logger = logging.getLogger(__name__)

COCO_CLASSES: Tuple[str, ...] = (
    "person", "bicycle", "car", "motorcycle", "airplane", "bus", "train", "truck", "boat",
    "traffic light", "fire hydrant", "stop sign", "parking meter", "bench", "bird", "cat",
    "dog", "horse", "sheep", "cow", "elephant", "bear", "zebra", "giraffe", "backpack",
    "umbrella", "handbag", "tie", "suitcase", "frisbee", "skis", "snowboard", "sports ball",
    "kite", "baseball bat", "baseball glove", "skateboard", "surfboard", "tennis racket",
    "bottle", "wine glass", "cup", "fork", "knife", "spoon", "bowl", "banana", "apple",
    "sandwich", "orange", "broccoli", "carrot", "hot dog", "pizza", "donut", "cake", "chair",
    "couch", "potted plant", "bed", "dining table", "toilet", "tv", "laptop", "mouse",
    "remote", "keyboard", "cell phone", "microwave", "oven", "toaster", "sink",
    "refrigerator", "book", "clock", "vase", "scissors", "teddy bear", "hair drier",
    "toothbrush",
)

NUM_BOX_PARAMS = 4
NUM_ANCHORS = 8400


def load_label_names(path: str | Path) -> Dict[int, str]:
    """
    Load class names from a YAML file holding either a list or an
    index -> name mapping (optionally under a top-level `names` key).
    """
    data = yaml.safe_load(Path(path).read_text())
    if isinstance(data, dict) and "names" in data:
        data = data["names"]
    if isinstance(data, dict):
        return {int(k): str(v) for k, v in data.items()}
    if isinstance(data, list):
        return {i: str(n) for i, n in enumerate(data)}
    raise ValueError(f"Unsupported label file layout: {path}")


class DetectionDecoder:
    def __init__(
        self,
        conf: float = 0.7,
        iou: float = 0.5,
        model_size: Tuple[int, int] = (640, 640),
        names: Optional[Dict[int, str] | Sequence[str]] = None,
    ) -> None:
        self.conf = conf
        self.iou = iou
        self.model_h, self.model_w = model_size
        if names is None:
            names = COCO_CLASSES
        if not isinstance(names, dict):
            names = {i: str(n) for i, n in enumerate(names)}
        self.names: Dict[int, str] = names
        self.out_of_bounds = 0

    def _as_channels(self, output: np.ndarray) -> np.ndarray:
        preds = np.asarray(output, dtype=np.float32)
        if preds.ndim == 3:
            preds = preds[0]
        if preds.ndim == 1:
            if preds.size % NUM_ANCHORS != 0:
                raise ValueError(f"Flat output of size {preds.size} is not a multiple of {NUM_ANCHORS}")
            preds = preds.reshape(-1, NUM_ANCHORS)
        if preds.ndim != 2 or preds.shape[0] <= NUM_BOX_PARAMS:
            raise ValueError(f"Unexpected output shape: {np.shape(output)}")
        return preds

    def decode(self, output: np.ndarray, frame_width: int, frame_height: int) -> List[Detection]:
        """
        Decode one output tensor for a frame of the given size.

        Candidate boxes are rescaled once from model-input units into frame
        pixels and normalized once by the frame dimensions.
        """
        if frame_width <= 0 or frame_height <= 0:
            raise ValueError(f"Invalid frame size: {frame_width}x{frame_height}")

        preds = self._as_channels(output)
        boxes = preds[:NUM_BOX_PARAMS].T  # (N, 4) cx, cy, w, h
        scores_cls = preds[NUM_BOX_PARAMS:].T  # (N, C)

        cls_idx = np.argmax(scores_cls, axis=1)
        cls_scores = scores_cls[np.arange(scores_cls.shape[0]), cls_idx]

        mask = cls_scores > self.conf
        if not np.any(mask):
            return []

        xyxy = xywh_to_xyxy(boxes[mask]).astype(np.float64)
        cls_idx = cls_idx[mask]
        cls_scores = cls_scores[mask]

        # model units -> frame pixels -> normalized
        xyxy[:, [0, 2]] *= frame_width / self.model_w
        xyxy[:, [1, 3]] *= frame_height / self.model_h
        xyxy[:, [0, 2]] /= frame_width
        xyxy[:, [1, 3]] /= frame_height

        keep = nms(xyxy, cls_scores, iou_thr=self.iou)

        dets: List[Detection] = []
        for i in keep:
            dets.append(
                Detection(
                    label=self.names.get(int(cls_idx[i]), "unknown"),
                    score=float(cls_scores[i]),
                    xmin=float(xyxy[i, 0]),
                    ymin=float(xyxy[i, 1]),
                    xmax=float(xyxy[i, 2]),
                    ymax=float(xyxy[i, 3]),
                    backend="local",
                )
            )

        flagged = [d for d in dets if not d.in_bounds]
        if flagged:
            self.out_of_bounds += len(flagged)
            logger.warning(
                "%d of %d detections fall outside normalized frame bounds (e.g. %s)",
                len(flagged),
                len(dets),
                flagged[0],
            )
        return dets

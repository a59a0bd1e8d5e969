"""Shared Pydantic schemas for the detection service and benchmark export."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class DetectionItem(BaseModel):
    label: str
    score: float = Field(ge=0.0, le=1.0)
    xmin: float
    ymin: float
    xmax: float
    ymax: float


class DetectRequest(BaseModel):
    image: str  # data URI, e.g. "data:image/jpeg;base64,..."
    frame_id: str
    capture_ts: float
    recv_ts: float


class DetectResponse(BaseModel):
    frame_id: str
    capture_ts: float
    recv_ts: float
    inference_ts: float
    detections: List[DetectionItem]


class LiveMetrics(BaseModel):
    fps: float
    e2e_latency_ms: float
    inference_latency_ms: float
    frames_seen: int
    model_loaded: bool
    error: Optional[str] = None


class BenchmarkExport(BaseModel):
    mode: str
    duration_s: float
    frames_processed: int
    median_e2e_ms: float
    p95_e2e_ms: float
    median_inference_ms: float
    p95_inference_ms: float

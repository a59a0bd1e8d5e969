"""
FastAPI detection service, the server side of the remote inference backend.

Endpoints:
- GET /health  -> {"status": "ok", ...}
- POST /detect -> JSON {image (data URI), frame_id, capture_ts, recv_ts} -> detections + timestamps
- GET /metrics -> live fps/latency of this service
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Optional

import cv2
import numpy as np
from fastapi import FastAPI, HTTPException
from starlette.concurrency import run_in_threadpool

from api.schemas import DetectionItem, DetectRequest, DetectResponse, LiveMetrics
from inference.backends import LocalBackend
from inference.decoder import DetectionDecoder, load_label_names
from inference.errors import AssetUnavailableError
from inference.utils import now_ms, wall_ms
from monitoring.logger import JsonlLogger
from monitoring.metrics import MetricsAggregator, Sample
from session.config import AppConfig

logger = logging.getLogger(__name__)


def load_image_to_bgr(data: bytes) -> np.ndarray:
    arr = np.frombuffer(data, dtype=np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if img is None:
        raise ValueError("Cannot decode image bytes")
    return img


def decode_data_uri(image: str) -> bytes:
    """Accepts "data:<mime>;base64,<payload>" or a bare base64 payload."""
    payload = image.split(",", 1)[1] if image.startswith("data:") else image
    if not payload:
        raise ValueError("Empty image payload")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 image: {exc}") from exc


def _build_backend(cfg: AppConfig) -> LocalBackend:
    names = load_label_names(cfg.labels_path) if cfg.labels_path else None
    return LocalBackend(
        cfg.model,
        decoder=DetectionDecoder(conf=cfg.conf, iou=cfg.iou, model_size=(cfg.imgsz, cfg.imgsz), names=names),
        input_name=cfg.input_name,
        output_name=cfg.output_name,
        imgsz=cfg.imgsz,
        device=cfg.device,
    )


def create_app(cfg: Optional[AppConfig] = None, backend: Optional[LocalBackend] = None) -> FastAPI:
    cfg = cfg or AppConfig.from_env()
    app = FastAPI(title="peerlens detection service", version="1.0.0")
    app.state.cfg = cfg
    app.state.backend = backend or _build_backend(cfg)
    app.state.metrics = MetricsAggregator(window_ms=cfg.benchmark_ms)
    app.state.event_log = JsonlLogger(cfg.event_log) if cfg.event_log else None

    @app.on_event("startup")
    async def _startup() -> None:
        try:
            await app.state.backend.ensure_session()
        except AssetUnavailableError as exc:
            logger.error("model unavailable at startup: %s", exc)

    def _model_error() -> Optional[str]:
        err = app.state.backend.session_error
        return str(err) if err is not None else None

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "model_loaded": app.state.backend.ready,
            "model": cfg.model,
            "device": cfg.device,
            "imgsz": cfg.imgsz,
            "error": _model_error(),
        }

    @app.post("/detect", response_model=DetectResponse)
    async def detect(req: DetectRequest):
        t0 = now_ms()
        backend: LocalBackend = app.state.backend
        try:
            session = await backend.ensure_session()
        except AssetUnavailableError as exc:
            raise HTTPException(status_code=503, detail=str(exc))

        try:
            data = decode_data_uri(req.image)
            frame = await run_in_threadpool(load_image_to_bgr, data)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

        h, w = frame.shape[:2]
        try:
            detections = await run_in_threadpool(backend.run_session, session, frame, w, h)
        except Exception as exc:
            raise HTTPException(status_code=500, detail=f"inference failed: {exc}")
        t1 = now_ms()

        resp = DetectResponse(
            frame_id=req.frame_id,
            capture_ts=req.capture_ts,
            recv_ts=req.recv_ts,
            inference_ts=wall_ms(),
            detections=[
                DetectionItem(
                    label=d.label,
                    score=d.score,
                    xmin=d.xmin,
                    ymin=d.ymin,
                    xmax=d.xmax,
                    ymax=d.ymax,
                )
                for d in detections
            ],
        )
        app.state.metrics.record(Sample(capture_ts=t0, inference_ts=t1, overlay_ts=now_ms()))
        if app.state.event_log is not None:
            await run_in_threadpool(
                app.state.event_log.log,
                {
                    "event": "detect",
                    "frame_id": req.frame_id,
                    "latency_ms": t1 - t0,
                    "detections": len(detections),
                    "ts": wall_ms(),
                },
            )
        return resp

    @app.get("/metrics", response_model=LiveMetrics)
    def metrics():
        live = app.state.metrics.live
        return LiveMetrics(
            fps=live.fps,
            e2e_latency_ms=live.e2e_latency_ms,
            inference_latency_ms=live.inference_latency_ms,
            frames_seen=live.frames_seen,
            model_loaded=app.state.backend.ready,
            error=_model_error(),
        )

    return app


app = create_app()

# To run: uvicorn api.server:app --host 0.0.0.0 --port 8000

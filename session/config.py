"""
Runtime configuration: defaults, PEERLENS_* environment variables and an
optional YAML overlay.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Tuple

import yaml

from rtc.negotiator import DEFAULT_GATHER_TIMEOUT_S, DEFAULT_ICE_SERVERS

ENV_PREFIX = "PEERLENS_"


def _env(name: str) -> Optional[str]:
    return os.getenv(ENV_PREFIX + name)


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    raw = _env(name)
    return raw if raw is not None and raw != "" else default


def _env_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = _env(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class AppConfig:
    model: str = "models/yolov8n.onnx"
    input_name: str = "images"
    output_name: str = "output0"
    imgsz: int = 640
    device: str = "cpu"
    labels_path: str = ""
    conf: float = 0.7
    iou: float = 0.5
    backend: str = "local"
    remote_url: str = "http://127.0.0.1:8000/detect"
    remote_timeout_s: float = 10.0
    jpeg_quality: int = 80
    dispatch_hz: float = 30.0
    capture_hz: float = 60.0
    ice_servers: Tuple[str, ...] = DEFAULT_ICE_SERVERS
    gather_timeout_s: float = DEFAULT_GATHER_TIMEOUT_S
    benchmark_ms: float = 30_000.0
    camera: str = "0"
    event_log: str = ""
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not 0.0 <= self.conf <= 1.0:
            raise ValueError(f"conf must be in [0, 1], got {self.conf}")
        if not 0.0 <= self.iou <= 1.0:
            raise ValueError(f"iou must be in [0, 1], got {self.iou}")
        if self.dispatch_hz <= 0 or self.capture_hz <= 0:
            raise ValueError("dispatch_hz and capture_hz must be > 0")
        if self.backend not in ("local", "remote"):
            raise ValueError(f"backend must be 'local' or 'remote', got {self.backend!r}")

    @staticmethod
    def from_env(**defaults: Any) -> "AppConfig":
        base = AppConfig(**defaults)
        return AppConfig(
            model=_env_str("MODEL", base.model),
            input_name=_env_str("INPUT_NAME", base.input_name),
            output_name=_env_str("OUTPUT_NAME", base.output_name),
            imgsz=_env_int("IMGSZ", base.imgsz),
            device=_env_str("DEVICE", base.device),
            labels_path=_env_str("LABELS", base.labels_path),
            conf=_env_float("CONF", base.conf),
            iou=_env_float("IOU", base.iou),
            backend=_env_str("BACKEND", base.backend),
            remote_url=_env_str("REMOTE_URL", base.remote_url),
            remote_timeout_s=_env_float("REMOTE_TIMEOUT_S", base.remote_timeout_s),
            jpeg_quality=_env_int("JPEG_QUALITY", base.jpeg_quality),
            dispatch_hz=_env_float("DISPATCH_HZ", base.dispatch_hz),
            capture_hz=_env_float("CAPTURE_HZ", base.capture_hz),
            ice_servers=_env_list("ICE_SERVERS", base.ice_servers),
            gather_timeout_s=_env_float("GATHER_TIMEOUT_S", base.gather_timeout_s),
            benchmark_ms=_env_float("BENCHMARK_MS", base.benchmark_ms),
            camera=_env_str("CAMERA", base.camera),
            event_log=_env_str("EVENT_LOG", base.event_log),
            log_level=_env_str("LOG_LEVEL", base.log_level),
        )

    def with_overrides(self, **changes: Any) -> "AppConfig":
        changes = {k: v for k, v in changes.items() if v is not None}
        if "ice_servers" in changes:
            changes["ice_servers"] = tuple(changes["ice_servers"])
        return dataclasses.replace(self, **changes)

    def from_yaml(self, path: str | Path) -> "AppConfig":
        """Overlay keys from a YAML mapping; unknown keys are rejected."""
        data = yaml.safe_load(Path(path).read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file must hold a mapping: {path}")
        known = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys in {path}: {', '.join(unknown)}")
        return self.with_overrides(**data)

from __future__ import annotations

import enum
import json
import logging
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import numpy as np

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str | int = "INFO", log_path: Optional[str | Path] = None) -> None:
    """
    Configure root logging to stderr and, optionally, a file.

    Calling it again replaces the previous handlers.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_path is not None:
        path = Path(log_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    # aiortc/aioice are chatty at INFO
    for noisy in ("aioice", "aiortc", "httpx"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))


class JsonlLogger:
    """Append session events as JSON lines."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log(self, data: Dict[str, Any]) -> None:
        line = json.dumps(data, default=_json_default, ensure_ascii=False) + "\n"
        with self._lock:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line)


def write_json(data: Dict[str, Any], path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, default=_json_default, ensure_ascii=False), encoding="utf-8")
    return path


def _json_default(obj: object) -> object:
    """
    JSON serializer fallback for enums, numpy scalars/arrays, Path and bytes.
    """
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return f"<{type(obj).__name__}:{len(obj)} bytes>"

    return repr(obj)

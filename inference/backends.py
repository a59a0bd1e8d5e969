"""
Inference backends with a uniform asynchronous contract:

    detections = await backend.infer(frame)

Two variants:
    - LocalBackend: ONNX Runtime session + DetectionDecoder
    - RemoteBackend: HTTP call to a detection service

`infer` never raises. Failures yield an empty list and are reported through
the backend's `on_error` observer (each distinct cause is logged once).
"""

from __future__ import annotations

import asyncio
import base64
import enum
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

import cv2
import httpx
import numpy as np
from starlette.concurrency import run_in_threadpool

from api.schemas import DetectRequest, DetectResponse
from .decoder import DetectionDecoder
from .errors import AssetUnavailableError, BackendError
from .frames import MediaFrame
from .utils import Detection, wall_ms

try:
    import onnxruntime as ort  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    ort = None

logger = logging.getLogger(__name__)

ErrorObserver = Callable[[BackendError], None]


class BackendKind(str, enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"


class InferenceBackend(Protocol):
    kind: BackendKind

    async def infer(self, frame: MediaFrame) -> List[Detection]: ...


class _ReportingBackend:
    kind: BackendKind

    def __init__(self, on_error: Optional[ErrorObserver] = None) -> None:
        self.on_error = on_error
        self._reported: Set[str] = set()
        self.failures = 0

    def _report(self, exc: BaseException) -> None:
        self.failures += 1
        err = exc if isinstance(exc, BackendError) else BackendError(f"{type(exc).__name__}: {exc}")
        cause = f"{type(exc).__name__}: {exc}"
        if cause in self._reported:
            return
        self._reported.add(cause)
        logger.error("%s backend failed: %s", self.kind.value, cause)
        if self.on_error is not None:
            try:
                self.on_error(err)
            except Exception:
                logger.exception("error observer raised")


def _create_ort_session(model: str | bytes, providers: List[str]) -> Any:
    if ort is None:
        raise ImportError("onnxruntime is required for the local backend")
    return ort.InferenceSession(model, providers=providers)


def preprocess(pixels_bgr: np.ndarray, size: int = 640) -> np.ndarray:
    """BGR frame -> float32 [1, 3, size, size] in 0..1 (stretch resize)."""
    img = cv2.cvtColor(pixels_bgr, cv2.COLOR_BGR2RGB)
    img = cv2.resize(img, (size, size), interpolation=cv2.INTER_LINEAR)
    chw = np.transpose(img.astype(np.float32) / 255.0, (2, 0, 1))
    return np.ascontiguousarray(chw[None, ...])


class LocalBackend(_ReportingBackend):
    """
    Runs the detection model in-process.

    The ONNX Runtime session is built lazily on first use and memoized. If
    building it fails the error is cached, so the asset is not re-fetched on
    every frame; call `reset()` to try again.
    """

    kind = BackendKind.LOCAL

    def __init__(
        self,
        model: str | Path,
        decoder: Optional[DetectionDecoder] = None,
        input_name: str = "images",
        output_name: str = "output0",
        imgsz: int = 640,
        device: str = "cpu",
        fetch_timeout_s: float = 30.0,
        session_factory: Callable[[str | bytes, List[str]], Any] = _create_ort_session,
        on_error: Optional[ErrorObserver] = None,
    ) -> None:
        super().__init__(on_error)
        self.model = str(model)
        self.decoder = decoder or DetectionDecoder(model_size=(imgsz, imgsz))
        self.input_name = input_name
        self.output_name = output_name
        self.imgsz = imgsz
        self.fetch_timeout_s = fetch_timeout_s
        self.providers = ["CPUExecutionProvider"]
        if device != "cpu":
            self.providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
        self._session_factory = session_factory
        self._session: Any = None
        self._session_error: Optional[AssetUnavailableError] = None
        self._load_lock: Optional[asyncio.Lock] = None

    @property
    def session_error(self) -> Optional[AssetUnavailableError]:
        return self._session_error

    @property
    def ready(self) -> bool:
        return self._session is not None

    def reset(self) -> None:
        self._session = None
        self._session_error = None
        self._reported.clear()

    async def _load_model_source(self) -> str | bytes:
        if self.model.startswith(("http://", "https://")):
            async with httpx.AsyncClient(timeout=self.fetch_timeout_s) as client:
                resp = await client.get(self.model)
                resp.raise_for_status()
                return resp.content
        path = Path(self.model)
        if not path.exists():
            raise FileNotFoundError(f"Model not found: {path}")
        return str(path)

    async def ensure_session(self) -> Any:
        """Return the memoized session, building it once. Raises AssetUnavailableError."""
        if self._session is not None:
            return self._session
        if self._session_error is not None:
            raise self._session_error

        if self._load_lock is None:
            self._load_lock = asyncio.Lock()
        async with self._load_lock:
            if self._session is not None:
                return self._session
            if self._session_error is not None:
                raise self._session_error
            try:
                source = await self._load_model_source()
                session = await run_in_threadpool(self._session_factory, source, self.providers)
            except Exception as exc:
                self._session_error = AssetUnavailableError(f"Failed to create model session from {self.model}: {exc}")
                raise self._session_error from exc

            input_names = [i.name for i in session.get_inputs()]
            if self.input_name not in input_names and input_names:
                logger.warning("model input %r not found, using %r", self.input_name, input_names[0])
                self.input_name = input_names[0]
            self._session = session
        logger.info("model session ready: %s (%s)", self.model, ",".join(self.providers))
        return session

    def run_session(self, session: Any, pixels: np.ndarray, width: int, height: int) -> List[Detection]:
        tensor = preprocess(pixels, self.imgsz)
        output = session.run([self.output_name], {self.input_name: tensor})[0]
        return self.decoder.decode(output, width, height)

    async def infer(self, frame: MediaFrame) -> List[Detection]:
        try:
            session = await self.ensure_session()
            if frame.pixels is None:
                raise BackendError(f"frame {frame.frame_id} has no pixels")
            return await run_in_threadpool(self.run_session, session, frame.pixels, frame.width, frame.height)
        except Exception as exc:
            self._report(exc)
            return []


def encode_data_uri(pixels_bgr: np.ndarray, quality: int = 80) -> str:
    ok, buf = cv2.imencode(".jpg", pixels_bgr, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return "data:image/jpeg;base64," + base64.b64encode(buf.tobytes()).decode("ascii")


class RemoteBackend(_ReportingBackend):
    """Posts frames to a detection service and maps the response to detections."""

    kind = BackendKind.REMOTE

    def __init__(
        self,
        url: str,
        timeout_s: float = 10.0,
        jpeg_quality: int = 80,
        client: Optional[httpx.AsyncClient] = None,
        on_error: Optional[ErrorObserver] = None,
    ) -> None:
        super().__init__(on_error)
        self.url = url
        self.timeout_s = timeout_s
        self.jpeg_quality = jpeg_quality
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def infer(self, frame: MediaFrame) -> List[Detection]:
        try:
            if frame.pixels is None:
                raise BackendError(f"frame {frame.frame_id} has no pixels")
            image = await run_in_threadpool(encode_data_uri, frame.pixels, self.jpeg_quality)
            request = DetectRequest(
                image=image,
                frame_id=str(frame.frame_id),
                capture_ts=wall_ms(),
                recv_ts=wall_ms(),
            )
            resp = await self._get_client().post(self.url, json=request.model_dump())
            resp.raise_for_status()
            result = DetectResponse.model_validate(resp.json())
        except Exception as exc:
            self._report(exc)
            return []

        if result.frame_id != request.frame_id:
            logger.debug("response frame id %s != request %s", result.frame_id, request.frame_id)
        return [
            Detection(
                label=d.label,
                score=d.score,
                xmin=d.xmin,
                ymin=d.ymin,
                xmax=d.xmax,
                ymax=d.ymax,
                backend=BackendKind.REMOTE.value,
            )
            for d in result.detections
        ]


class BackendSelector:
    """
    Holds one backend per kind and the currently active kind.

    Selecting a kind is a plain value switch; the scheduler reads `active`
    at dispatch time, so a switch takes effect on the next frame.
    """

    def __init__(self, backends: Dict[BackendKind, InferenceBackend], active: BackendKind | str) -> None:
        self._backends = dict(backends)
        self._active = BackendKind.LOCAL
        self.select(active)

    @property
    def kind(self) -> BackendKind:
        return self._active

    @property
    def active(self) -> InferenceBackend:
        return self._backends[self._active]

    def get(self, kind: BackendKind | str) -> InferenceBackend:
        return self._backends[BackendKind(kind)]

    def registered(self) -> List[InferenceBackend]:
        return list(self._backends.values())

    def select(self, kind: BackendKind | str) -> BackendKind:
        kind = BackendKind(kind)
        if kind not in self._backends:
            raise KeyError(f"No backend registered for {kind.value!r}")
        if kind != self._active:
            logger.info("switching inference backend %s -> %s", self._active.value, kind.value)
        self._active = kind
        return kind

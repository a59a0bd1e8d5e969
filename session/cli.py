"""
Command-line driver for a manual peer session.

    python -m session.cli viewer [--backend local|remote] [--benchmark --export metrics.json]
    python -m session.cli camera [--camera 0]

Local descriptors are printed to stdout; the peer's descriptor is pasted on
stdin and terminated by an empty line.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from starlette.concurrency import run_in_threadpool

from inference.frames import MediaFrame
from inference.utils import Detection
from monitoring.logger import setup_logging
from rtc.errors import SignalingError
from rtc.negotiator import LinkState, Role

from .config import AppConfig
from .controller import SessionController
from .events import SessionEvent, StateTransition

logger = logging.getLogger(__name__)

_END_STATES = {LinkState.FAILED.value, LinkState.CLOSED.value}


def read_descriptor(stream=None) -> str:
    """Read lines until an empty line (or EOF) and return them joined."""
    stream = stream or sys.stdin
    lines: List[str] = []
    for line in stream:
        if not line.strip():
            if lines:
                break
            continue
        lines.append(line.rstrip("\r\n"))
    return "\r\n".join(lines) + "\r\n" if lines else ""


def _print_descriptor(title: str, sdp: str) -> None:
    print(f"----- {title} (copy everything up to the blank line) -----")
    print(sdp.strip())
    print("", flush=True)


async def _prompt(title: str) -> str:
    print(f"----- paste {title}, then an empty line -----", flush=True)
    return await run_in_threadpool(read_descriptor)


def _log_detections(frame: MediaFrame, detections: List[Detection]) -> None:
    if detections:
        logger.debug(
            "frame %d: %s",
            frame.frame_id,
            ", ".join(f"{d.label} {d.score:.2f}" for d in detections),
        )


async def _until_ended(controller: SessionController, timeout_s: Optional[float] = None) -> None:
    ended = asyncio.Event()

    def _watch(event: SessionEvent) -> None:
        if isinstance(event, StateTransition) and event.current in _END_STATES:
            ended.set()

    unsubscribe = controller.events.subscribe(_watch)
    try:
        if timeout_s is None:
            await ended.wait()
        else:
            try:
                await asyncio.wait_for(ended.wait(), timeout_s)
            except asyncio.TimeoutError:
                pass
    finally:
        unsubscribe()


async def _apply_with_retry(title: str, apply) -> None:
    while True:
        descriptor = await _prompt(title)
        if not descriptor:
            raise SignalingError("No descriptor provided on stdin")
        try:
            await apply(descriptor)
            return
        except SignalingError as exc:
            print(f"rejected: {exc}", file=sys.stderr, flush=True)


async def run_viewer(controller: SessionController, args: argparse.Namespace) -> None:
    offer = await controller.create_offer()
    _print_descriptor("offer", offer)
    await _apply_with_retry("the camera's answer", controller.set_remote_answer)

    if args.benchmark:
        controller.start_benchmark()
        await _until_ended(controller, timeout_s=controller.cfg.benchmark_ms / 1000.0)
        summary = controller.stop_benchmark()
        logger.info("benchmark: %s", summary)
        if args.export:
            controller.export_benchmark(args.export)
        return
    await _until_ended(controller)


async def run_camera(controller: SessionController, args: argparse.Namespace) -> None:
    if controller.start_camera() is None:
        logger.warning("continuing without local camera")
    await _apply_with_retry("the viewer's offer", controller.set_remote_offer)
    answer = await controller.create_answer()
    _print_descriptor("answer", answer)
    await _until_ended(controller)


def build_config(args: argparse.Namespace) -> AppConfig:
    cfg = AppConfig.from_env()
    if args.config:
        cfg = cfg.from_yaml(args.config)
    return cfg.with_overrides(
        backend=args.backend,
        model=args.model,
        remote_url=args.remote_url,
        camera=args.camera,
        event_log=args.event_log,
        log_level=args.log_level,
    )


async def amain(args: argparse.Namespace) -> int:
    cfg = build_config(args)
    setup_logging(cfg.log_level)
    controller = SessionController(cfg, args.role, on_detections=_log_detections)
    try:
        if controller.role == Role.VIEWER:
            await run_viewer(controller, args)
        else:
            await run_camera(controller, args)
    finally:
        await controller.dispose()
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Peer-to-peer video session with manual descriptor exchange")
    parser.add_argument("role", choices=[r.value for r in Role])
    parser.add_argument("--config", type=Path, default=None, help="YAML file overriding config fields")
    parser.add_argument("--backend", choices=["local", "remote"], default=None)
    parser.add_argument("--model", default=None, help="ONNX model path or http(s) URL")
    parser.add_argument("--remote-url", default=None, help="Detection service endpoint")
    parser.add_argument("--camera", default=None, help="Capture device index, path or URL")
    parser.add_argument("--benchmark", action="store_true", help="Run a benchmark window after connecting")
    parser.add_argument("--export", type=Path, default=None, help="Write benchmark summary JSON here")
    parser.add_argument("--event-log", default=None, help="Append session events as JSON lines")
    parser.add_argument("--log-level", default=None)
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(amain(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())

import asyncio
from collections import defaultdict
from types import SimpleNamespace
from typing import Callable, List, Optional

import numpy as np
import pytest
from aiortc import RTCSessionDescription

from inference.backends import BackendKind
from inference.frames import MediaFrame
from inference.utils import Detection

FAKE_SDP = "v=0\r\no=- 0 0 IN IP4 127.0.0.1\r\ns=-\r\nt=0 0\r\nm=video 9 UDP/TLS/RTP/SAVPF 96\r\n"
FAKE_CANDIDATE = "a=candidate:1 1 udp 2130706431 192.168.1.2 50000 typ host\r\n"


class FakeSender:
    def __init__(self, track=None) -> None:
        self.track = track

    def replaceTrack(self, track) -> None:
        self.track = track


class FakeTransceiver:
    def __init__(self, kind: str, direction: str, track=None) -> None:
        self.kind = kind
        self.direction = direction
        self.sender = FakeSender(track)


class FakePeerConnection:
    """
    In-memory stand-in for RTCPeerConnection.

    gather="complete" finishes ICE gathering inside setLocalDescription;
    gather="hang" never finishes it. The first `fail_local` calls to
    setLocalDescription raise.
    """

    def __init__(
        self, ice_servers=(), gather: str = "complete", remote_video: bool = True, fail_local: int = 0
    ) -> None:
        self.ice_servers = list(ice_servers)
        self.gather = gather
        self.fail_local = fail_local
        self.remote_video = remote_video
        self._handlers = defaultdict(list)
        self.signalingState = "stable"
        self.connectionState = "new"
        self.iceGatheringState = "new"
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.transceivers: List[FakeTransceiver] = []
        self.added_tracks = []
        self.closed = False

    # event emitter surface
    def on(self, event: str, f: Optional[Callable] = None):
        self._handlers[event].append(f)
        return f

    def remove_listener(self, event: str, f: Callable) -> None:
        self._handlers[event].remove(f)

    def emit(self, event: str, *args) -> None:
        for f in list(self._handlers[event]):
            f(*args)

    def listener_count(self, event: str) -> int:
        return len(self._handlers[event])

    def set_connection_state(self, state: str) -> None:
        self.connectionState = state
        self.emit("connectionstatechange")

    # media
    def addTransceiver(self, kind: str, direction: str = "sendrecv") -> FakeTransceiver:
        t = FakeTransceiver(kind, direction)
        self.transceivers.append(t)
        return t

    def addTrack(self, track):
        self.added_tracks.append(track)
        t = FakeTransceiver(track.kind, "sendrecv", track)
        self.transceivers.append(t)
        return t.sender

    def getTransceivers(self) -> List[FakeTransceiver]:
        return list(self.transceivers)

    # negotiation
    async def createOffer(self) -> RTCSessionDescription:
        return RTCSessionDescription(sdp=FAKE_SDP, type="offer")

    async def createAnswer(self) -> RTCSessionDescription:
        if self.signalingState != "have-remote-offer":
            raise RuntimeError("no remote offer")
        return RTCSessionDescription(sdp=FAKE_SDP, type="answer")

    async def setLocalDescription(self, description: RTCSessionDescription) -> None:
        if self.fail_local > 0:
            self.fail_local -= 1
            raise RuntimeError("setLocalDescription failed")
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"
        self.iceGatheringState = "gathering"
        if self.gather == "hang":
            await asyncio.Event().wait()
        self.localDescription = RTCSessionDescription(sdp=description.sdp + FAKE_CANDIDATE, type=description.type)
        self.iceGatheringState = "complete"
        self.emit("icegatheringstatechange")

    async def setRemoteDescription(self, description: RTCSessionDescription) -> None:
        if "m=" not in description.sdp:
            raise ValueError("Invalid SDP: no media section")
        if description.type == "offer":
            if self.remote_video:
                self.transceivers.append(FakeTransceiver("video", "recvonly"))
            self.signalingState = "have-remote-offer"
        else:
            if self.signalingState != "have-local-offer":
                raise RuntimeError("answer without offer")
            self.signalingState = "stable"
        self.remoteDescription = description

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.signalingState = "closed"
        self.set_connection_state("closed")


class FakeTrack:
    """Minimal media track; `recv()` yields av-like frames."""

    def __init__(self, kind: str = "video", frames: int = 1000, interval_s: float = 0.01) -> None:
        self.kind = kind
        self.frames = frames
        self.interval_s = interval_s
        self.stopped = False

    async def recv(self):
        from aiortc.mediastreams import MediaStreamError

        if self.frames <= 0 or self.stopped:
            raise MediaStreamError
        self.frames -= 1
        await asyncio.sleep(self.interval_s)
        pixels = np.zeros((48, 64, 3), dtype=np.uint8)
        return SimpleNamespace(to_ndarray=lambda format="bgr24": pixels)

    def stop(self) -> None:
        self.stopped = True


class FakeOrtSession:
    def __init__(self, output: np.ndarray, input_name: str = "images") -> None:
        self.output = output
        self.input_name = input_name
        self.feeds = []

    def get_inputs(self):
        return [SimpleNamespace(name=self.input_name)]

    def run(self, output_names, feed):
        self.feeds.append(feed)
        return [self.output]


class RecordingSource:
    """Endless frame source that remembers every frame it handed out."""

    def __init__(self) -> None:
        self.frames: List[MediaFrame] = []
        self.active = True

    async def grab(self) -> Optional[MediaFrame]:
        frame = MediaFrame.from_array(np.zeros((48, 64, 3), dtype=np.uint8))
        self.frames.append(frame)
        return frame


class SlowBackend:
    """Backend that sleeps `delay_s` per call and records concurrency."""

    def __init__(self, delay_s: float = 0.1, kind: BackendKind = BackendKind.LOCAL, fail: bool = False) -> None:
        self.kind = kind
        self.delay_s = delay_s
        self.fail = fail
        self.active = 0
        self.max_active = 0
        self.calls = 0

    async def infer(self, frame: MediaFrame) -> List[Detection]:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay_s)
            if self.fail:
                raise RuntimeError("backend exploded")
            return [Detection("person", 0.9, 0.1, 0.1, 0.5, 0.5, backend=self.kind.value)]
        finally:
            self.active -= 1


class ManualClock:
    def __init__(self, t: float = 0.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


def make_yolo_output(rows) -> np.ndarray:
    """rows: iterable of (anchor, cx, cy, w, h, class_id, score) in model pixels."""
    out = np.zeros((1, 84, 8400), dtype=np.float32)
    for anchor, cx, cy, w, h, cls, score in rows:
        out[0, 0:4, anchor] = (cx, cy, w, h)
        out[0, 4 + cls, anchor] = score
    return out


@pytest.fixture
def peers():
    """Factory for fake transports; every created instance is recorded."""
    created: List[FakePeerConnection] = []

    def factory(**kwargs):
        def make(ice_servers):
            pc = FakePeerConnection(ice_servers, **kwargs)
            created.append(pc)
            return pc

        return make

    factory.created = created
    return factory


@pytest.fixture
def clock():
    return ManualClock()

"""
Manual offer/answer negotiation for a single peer link.

The viewer creates an offer and applies the camera's answer; the camera
applies the viewer's offer and produces an answer. Descriptors are plain SDP
text passed between the two sides by hand, so every local descriptor is only
returned once ICE gathering has completed (or a bounded wait expired).
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Set, Tuple

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

from session.events import EventBus
from session.timers import wait_bounded

from .errors import SignalingError

logger = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS: Tuple[str, ...] = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)
DEFAULT_GATHER_TIMEOUT_S = 12.0


class Role(str, enum.Enum):
    VIEWER = "viewer"
    CAMERA = "camera"


class LinkState(str, enum.Enum):
    NEW = "new"
    HAVE_LOCAL_OFFER = "have-local-offer"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    HAVE_LOCAL_ANSWER = "have-local-answer"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = (LinkState.FAILED, LinkState.CLOSED)

_TRANSPORT_STATES = {
    "connected": LinkState.CONNECTED,
    "failed": LinkState.FAILED,
    "closed": LinkState.CLOSED,
}


def create_peer_connection(ice_servers: Sequence[str]) -> RTCPeerConnection:
    config = RTCConfiguration(iceServers=[RTCIceServer(urls=[url]) for url in ice_servers])
    return RTCPeerConnection(configuration=config)


@dataclass(eq=False)
class PeerLink:
    role: Role
    transport: Any
    link_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: LinkState = LinkState.NEW
    local_descriptor: Optional[str] = None
    remote_descriptor: Optional[str] = None
    answer_applied: bool = False
    remote_track: Any = None
    tasks: Set[asyncio.Task] = field(default_factory=set)
    listeners: List[Tuple[str, Callable]] = field(default_factory=list)
    released: bool = False

    def listen(self, event: str, fn: Callable) -> None:
        self.transport.on(event, fn)
        self.listeners.append((event, fn))

    def track_task(self, task: asyncio.Task) -> None:
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def release(self) -> None:
        """Cancel pending work, detach handlers and close the transport. Idempotent."""
        if self.released:
            return
        self.released = True
        pending = list(self.tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for event, fn in self.listeners:
            self.transport.remove_listener(event, fn)
        self.listeners.clear()
        await self.transport.close()


TrackObserver = Callable[[Any], None]
ReleaseObserver = Callable[[PeerLink], Awaitable[None]]


class ConnectionNegotiator:
    """
    Owns at most one PeerLink at a time, created on the first connection
    attempt, and drives it through `LinkState`. Bad or out-of-order descriptors raise SignalingError and
    leave the link untouched.
    """

    def __init__(
        self,
        role: Role | str,
        ice_servers: Iterable[str] = DEFAULT_ICE_SERVERS,
        gather_timeout_s: float = DEFAULT_GATHER_TIMEOUT_S,
        transport_factory: Optional[Callable[[Sequence[str]], Any]] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self.role = Role(role)
        self.ice_servers = list(ice_servers)
        self.gather_timeout_s = gather_timeout_s
        self._transport_factory = transport_factory or create_peer_connection
        self.events = events or EventBus()
        self._local_tracks: List[Any] = []
        self._track_observers: List[TrackObserver] = []
        self._release_observers: List[ReleaseObserver] = []
        self.link: Optional[PeerLink] = None

    @property
    def state(self) -> LinkState:
        return self.link.state if self.link is not None else LinkState.NEW

    @property
    def link_id(self) -> str:
        return self.link.link_id if self.link is not None else ""

    @property
    def remote_track(self) -> Any:
        return self.link.remote_track if self.link is not None else None

    # ---- link lifecycle ----

    def _new_link(self) -> PeerLink:
        link = PeerLink(role=self.role, transport=self._transport_factory(self.ice_servers))
        link.listen("track", lambda track: self._on_track(link, track))
        link.listen("connectionstatechange", lambda: self._on_connection_state(link))
        logger.debug("link %s created (%s)", link.link_id[:8], self.role.value)
        return link

    def _current_link(self) -> PeerLink:
        if self.link is None:
            self.link = self._new_link()
        return self.link

    async def _release(self, link: PeerLink) -> None:
        """Let observers stop work fed by `link`, then tear the link down."""
        if link.released:
            return
        for observer in list(self._release_observers):
            try:
                await observer(link)
            except Exception:
                logger.exception("link release observer raised")
        await link.release()

    async def _replace_link(self) -> PeerLink:
        old = self.link
        if old is not None:
            if old.state not in TERMINAL_STATES:
                self._set_state(old, LinkState.CLOSED)
            await self._release(old)
        self.link = self._new_link()
        return self.link

    def _set_state(self, link: PeerLink, state: LinkState) -> None:
        if link.state == state:
            return
        previous = link.state
        link.state = state
        self.events.transition(link.link_id, self.role, previous, state)

    def _on_track(self, link: PeerLink, track: Any) -> None:
        if link is not self.link or link.released:
            return
        logger.info("remote %s track received", track.kind)
        if track.kind != "video":
            return
        link.remote_track = track
        for observer in list(self._track_observers):
            try:
                observer(track)
            except Exception:
                logger.exception("remote track observer raised")

    def _on_connection_state(self, link: PeerLink) -> None:
        if link is not self.link or link.released:
            return
        mapped = _TRANSPORT_STATES.get(link.transport.connectionState)
        if mapped is not None:
            self._set_state(link, mapped)

    def on_remote_track(self, observer: TrackObserver) -> None:
        self._track_observers.append(observer)

    def on_link_released(self, observer: ReleaseObserver) -> None:
        """Register a coroutine awaited before a link's transport is closed."""
        self._release_observers.append(observer)

    def attach_local_media(self, media: Any) -> None:
        """Register tracks to publish (a LocalMedia or an iterable of tracks)."""
        tracks = getattr(media, "tracks", media)
        self._local_tracks = list(tracks or [])

    # ---- descriptors ----

    def _reject(self, kind: str, message: str) -> SignalingError:
        self.events.error(kind, message, self.link_id)
        return SignalingError(message)

    def _validate(self, descriptor: str) -> str:
        text = (descriptor or "").strip()
        if not text:
            raise self._reject("malformed-descriptor", "Descriptor is empty")
        if not text.startswith("v="):
            raise self._reject("malformed-descriptor", "Descriptor is not SDP (expected it to start with 'v=')")
        return text + "\r\n"

    async def _gather(self, link: PeerLink, description: RTCSessionDescription) -> None:
        transport = link.transport
        await transport.setLocalDescription(description)
        if transport.iceGatheringState == "complete":
            return
        done = asyncio.Event()

        def _on_gathering() -> None:
            if transport.iceGatheringState == "complete":
                done.set()

        transport.on("icegatheringstatechange", _on_gathering)
        try:
            await done.wait()
        finally:
            transport.remove_listener("icegatheringstatechange", _on_gathering)

    def _gather_timed_out(self, link: PeerLink) -> None:
        message = f"ICE gathering did not complete within {self.gather_timeout_s:.0f}s; using partial candidates"
        logger.warning(message)
        self.events.error("ice-gathering-timeout", message, link.link_id)

    async def _apply_local(self, link: PeerLink, description: RTCSessionDescription) -> str:
        """Apply a local description and wait (bounded) for ICE gathering."""
        task = asyncio.ensure_future(self._gather(link, description))
        link.track_task(task)
        try:
            await wait_bounded(
                task,
                self.gather_timeout_s,
                fallback=lambda: self._gather_timed_out(link),
                shield=True,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise self._reject("local-description-failed", f"Could not apply local description: {exc}") from exc

        local = link.transport.localDescription
        sdp = local.sdp if local is not None else description.sdp
        if "a=candidate" not in sdp:
            message = "Local descriptor has no ICE candidates; the peer may not be reachable"
            logger.warning(message)
            self.events.error("ice-no-candidates", message, link.link_id)
        return sdp

    async def create_offer(self) -> str:
        link = self._current_link()
        if link.state in TERMINAL_STATES:
            link = await self._replace_link()
        if link.state == LinkState.HAVE_LOCAL_OFFER and link.local_descriptor is not None:
            return link.local_descriptor
        if link.state != LinkState.NEW:
            raise self._reject("invalid-state", f"Cannot create an offer in state {link.state.value}")
        if self.role == Role.CAMERA and not self._local_tracks:
            raise self._reject("no-local-media", "Camera role needs local media before creating an offer")

        transport = link.transport
        # a retry after a failed local description reuses the media already added
        if not transport.getTransceivers():
            if self._local_tracks:
                for track in self._local_tracks:
                    transport.addTrack(track)
            else:
                transport.addTransceiver("video", direction="recvonly")

        offer = await transport.createOffer()
        sdp = await self._apply_local(link, offer)
        link.local_descriptor = sdp
        if link.state == LinkState.NEW:
            self._set_state(link, LinkState.HAVE_LOCAL_OFFER)
        return sdp

    def _attach_tracks(self, link: PeerLink) -> None:
        transport = link.transport
        used: Set[int] = set()
        for track in self._local_tracks:
            for transceiver in transport.getTransceivers():
                if id(transceiver) in used or transceiver.kind != track.kind:
                    continue
                if transceiver.sender.track is not None:
                    continue
                transceiver.sender.replaceTrack(track)
                transceiver.direction = "sendrecv"
                used.add(id(transceiver))
                break
            else:
                transport.addTrack(track)

    async def set_remote_offer(self, descriptor: str) -> None:
        sdp = self._validate(descriptor)
        link = await self._replace_link()
        try:
            await link.transport.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
        except Exception as exc:
            raise self._reject("malformed-descriptor", f"Remote offer rejected: {exc}") from exc
        link.remote_descriptor = sdp
        self._attach_tracks(link)
        self._set_state(link, LinkState.HAVE_REMOTE_OFFER)

    async def create_answer(self) -> str:
        link = self.link
        if link is None:
            raise self._reject("no-remote-offer", "No remote offer applied; paste an offer first")
        if link.local_descriptor is not None and link.remote_descriptor is not None and link.state in (
            LinkState.HAVE_LOCAL_ANSWER,
            LinkState.CONNECTED,
        ):
            return link.local_descriptor
        if link.state != LinkState.HAVE_REMOTE_OFFER:
            raise self._reject("no-remote-offer", "No remote offer applied; paste an offer first")

        answer = await link.transport.createAnswer()
        sdp = await self._apply_local(link, answer)
        link.local_descriptor = sdp
        if link.state == LinkState.HAVE_REMOTE_OFFER:
            self._set_state(link, LinkState.HAVE_LOCAL_ANSWER)
        return sdp

    async def set_remote_answer(self, descriptor: str) -> bool:
        """Apply the peer's answer. Returns False when there is nothing to do."""
        link = self.link
        if link is not None and link.state == LinkState.CONNECTED:
            logger.info("link already connected; ignoring answer")
            return False
        if link is not None and link.answer_applied and link.transport.signalingState == "stable":
            logger.info("answer already applied; ignoring")
            return False
        if link is None or link.state != LinkState.HAVE_LOCAL_OFFER:
            raise self._reject("no-local-offer", "No local offer pending; create an offer first")

        sdp = self._validate(descriptor)
        try:
            await link.transport.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))
        except Exception as exc:
            raise self._reject("malformed-descriptor", f"Remote answer rejected: {exc}") from exc
        link.remote_descriptor = sdp
        link.answer_applied = True
        if link.state == LinkState.HAVE_LOCAL_OFFER:
            self._set_state(link, LinkState.CONNECTING)
        return True

    async def close(self) -> None:
        link = self.link
        if link is None:
            return
        self._set_state(link, LinkState.CLOSED)
        await self._release(link)

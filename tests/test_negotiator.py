import asyncio

import pytest

from conftest import FAKE_SDP, FakeTrack
from rtc.errors import SignalingError
from rtc.negotiator import ConnectionNegotiator, LinkState, Role
from session.events import ErrorReport, EventBus, StateTransition


def _negotiator(peers, role, **pc_kwargs):
    return ConnectionNegotiator(role, transport_factory=peers(**pc_kwargs), gather_timeout_s=0.2, events=EventBus())


def _errors(neg, kind=None):
    return [e for e in neg.events.history if isinstance(e, ErrorReport) and (kind is None or e.kind == kind)]


@pytest.mark.asyncio
async def test_viewer_offer_is_recvonly_and_cached(peers):
    neg = _negotiator(peers, Role.VIEWER)
    offer = await neg.create_offer()
    pc = peers.created[0]

    assert neg.state == LinkState.HAVE_LOCAL_OFFER
    assert "a=candidate" in offer
    assert [(t.kind, t.direction) for t in pc.transceivers] == [("video", "recvonly")]
    assert await neg.create_offer() == offer
    assert len(pc.transceivers) == 1


@pytest.mark.asyncio
async def test_answer_before_offer_is_rejected_without_state_change(peers):
    neg = _negotiator(peers, Role.VIEWER)
    with pytest.raises(SignalingError):
        await neg.set_remote_answer(FAKE_SDP)
    assert neg.state == LinkState.NEW
    assert _errors(neg, "no-local-offer")


@pytest.mark.asyncio
async def test_answer_lifecycle_and_idempotence(peers):
    neg = _negotiator(peers, Role.VIEWER)
    await neg.create_offer()
    assert await neg.set_remote_answer(FAKE_SDP) is True
    assert neg.state == LinkState.CONNECTING

    # applied answer + stable signaling: second paste is a no-op
    assert await neg.set_remote_answer(FAKE_SDP) is False

    peers.created[0].set_connection_state("connected")
    assert neg.state == LinkState.CONNECTED
    assert await neg.set_remote_answer(FAKE_SDP) is False

    states = [(e.previous, e.current) for e in neg.events.history if isinstance(e, StateTransition)]
    assert states == [
        ("new", "have-local-offer"),
        ("have-local-offer", "connecting"),
        ("connecting", "connected"),
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("descriptor", ["", "   ", "hello world", "v=0\r\no=- 0 0 IN IP4 0.0.0.0\r\n"])
async def test_malformed_answer_leaves_state(peers, descriptor):
    neg = _negotiator(peers, Role.VIEWER)
    await neg.create_offer()
    with pytest.raises(SignalingError):
        await neg.set_remote_answer(descriptor)
    assert neg.state == LinkState.HAVE_LOCAL_OFFER
    assert _errors(neg, "malformed-descriptor")


@pytest.mark.asyncio
async def test_malformed_offer_does_not_touch_existing_link(peers):
    neg = _negotiator(peers, Role.CAMERA)
    await neg.set_remote_offer(FAKE_SDP)
    link = neg.link
    with pytest.raises(SignalingError):
        await neg.set_remote_offer("not sdp")
    assert neg.link is link
    assert neg.state == LinkState.HAVE_REMOTE_OFFER
    assert not peers.created[0].closed


@pytest.mark.asyncio
async def test_camera_offer_requires_local_media(peers):
    neg = _negotiator(peers, Role.CAMERA)
    with pytest.raises(SignalingError):
        await neg.create_offer()
    assert neg.state == LinkState.NEW

    neg.attach_local_media([FakeTrack()])
    await neg.create_offer()
    assert neg.state == LinkState.HAVE_LOCAL_OFFER


@pytest.mark.asyncio
async def test_each_remote_offer_builds_fresh_link(peers):
    neg = _negotiator(peers, Role.CAMERA)
    await neg.set_remote_offer(FAKE_SDP)
    first = neg.link
    await neg.create_answer()

    await neg.set_remote_offer(FAKE_SDP)
    second = neg.link

    assert second is not first
    assert second.link_id != first.link_id
    assert first.released
    assert peers.created[0].closed
    assert peers.created[0].listener_count("track") == 0
    assert not peers.created[1].closed
    assert neg.state == LinkState.HAVE_REMOTE_OFFER


@pytest.mark.asyncio
async def test_local_track_reuses_matching_transceiver(peers):
    neg = _negotiator(peers, Role.CAMERA)
    track = FakeTrack()
    neg.attach_local_media([track])
    await neg.set_remote_offer(FAKE_SDP)
    pc = peers.created[-1]

    assert pc.added_tracks == []
    assert len(pc.transceivers) == 1
    assert pc.transceivers[0].sender.track is track
    assert pc.transceivers[0].direction == "sendrecv"


@pytest.mark.asyncio
async def test_local_track_added_when_no_transceiver_matches(peers):
    neg = _negotiator(peers, Role.CAMERA, remote_video=False)
    track = FakeTrack()
    neg.attach_local_media([track])
    await neg.set_remote_offer(FAKE_SDP)
    assert peers.created[-1].added_tracks == [track]


@pytest.mark.asyncio
async def test_answer_requires_offer_and_is_cached(peers):
    neg = _negotiator(peers, Role.CAMERA)
    with pytest.raises(SignalingError, match="paste an offer first"):
        await neg.create_answer()

    await neg.set_remote_offer(FAKE_SDP)
    answer = await neg.create_answer()
    assert neg.state == LinkState.HAVE_LOCAL_ANSWER
    assert await neg.create_answer() == answer


@pytest.mark.asyncio
async def test_gathering_timeout_returns_partial_descriptor(peers):
    neg = _negotiator(peers, Role.VIEWER, gather="hang")
    offer = await asyncio.wait_for(neg.create_offer(), 2.0)

    assert offer.startswith("v=0")
    assert "a=candidate" not in offer
    assert neg.state == LinkState.HAVE_LOCAL_OFFER
    assert _errors(neg, "ice-gathering-timeout")
    assert _errors(neg, "ice-no-candidates")

    # the shielded gathering task is cancelled when the link is released
    await neg.close()
    assert not neg.link.tasks


@pytest.mark.asyncio
async def test_failed_link_is_rebuilt_on_next_offer(peers):
    neg = _negotiator(peers, Role.VIEWER)
    await neg.create_offer()
    peers.created[0].set_connection_state("failed")
    assert neg.state == LinkState.FAILED

    await neg.create_offer()
    assert len(peers.created) == 2
    assert peers.created[0].closed
    assert neg.state == LinkState.HAVE_LOCAL_OFFER


@pytest.mark.asyncio
async def test_remote_video_track_notifies_observers(peers):
    neg = _negotiator(peers, Role.VIEWER)
    seen = []
    neg.on_remote_track(seen.append)
    await neg.create_offer()
    pc = peers.created[0]

    pc.emit("track", FakeTrack(kind="audio"))
    video = FakeTrack()
    pc.emit("track", video)

    assert seen == [video]
    assert neg.remote_track is video


@pytest.mark.asyncio
async def test_close_is_terminal(peers):
    neg = _negotiator(peers, Role.VIEWER)
    await neg.create_offer()
    await neg.close()
    assert neg.state == LinkState.CLOSED
    assert peers.created[0].closed
    # a closed transport reporting "closed" does not emit a second transition
    closed = [e for e in neg.events.history if isinstance(e, StateTransition) and e.current == "closed"]
    assert len(closed) == 1


@pytest.mark.asyncio
async def test_offer_answer_with_real_peer_connections():
    pytest.importorskip("aiortc")
    viewer = ConnectionNegotiator(Role.VIEWER, ice_servers=[], gather_timeout_s=5.0)
    camera = ConnectionNegotiator(Role.CAMERA, ice_servers=[], gather_timeout_s=5.0)
    try:
        offer = await viewer.create_offer()
        await camera.set_remote_offer(offer)
        answer = await camera.create_answer()
        assert await viewer.set_remote_answer(answer) is True
        assert viewer.state in (LinkState.CONNECTING, LinkState.CONNECTED)
    finally:
        await viewer.close()
        await camera.close()


def test_no_transport_until_first_connection_attempt(peers):
    neg = _negotiator(peers, Role.CAMERA)
    assert neg.link is None
    assert neg.state == LinkState.NEW
    assert peers.created == []


@pytest.mark.asyncio
async def test_camera_first_offer_builds_single_transport(peers):
    neg = _negotiator(peers, Role.CAMERA)
    await neg.set_remote_offer(FAKE_SDP)
    assert len(peers.created) == 1
    assert not peers.created[0].closed


@pytest.mark.asyncio
async def test_offer_retry_after_local_failure_does_not_duplicate_media(peers):
    neg = _negotiator(peers, Role.VIEWER, fail_local=1)
    with pytest.raises(SignalingError):
        await neg.create_offer()
    assert neg.state == LinkState.NEW
    assert _errors(neg, "local-description-failed")

    await neg.create_offer()
    pc = peers.created[0]
    assert len(peers.created) == 1
    assert [(t.kind, t.direction) for t in pc.transceivers] == [("video", "recvonly")]
    assert neg.state == LinkState.HAVE_LOCAL_OFFER


@pytest.mark.asyncio
async def test_release_observers_run_before_transport_closes(peers):
    neg = _negotiator(peers, Role.VIEWER)
    await neg.create_offer()
    old = neg.link
    seen = []

    async def observer(link):
        seen.append((link, link.transport.closed, link.released))

    neg.on_link_released(observer)
    old.transport.set_connection_state("failed")
    await neg.create_offer()

    assert seen == [(old, False, False)]
    assert old.transport.closed
    assert neg.link is not old

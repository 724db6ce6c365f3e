import asyncio
from collections import Counter

import pytest

from client.media import LocalMediaSession
from client.negotiation import NegotiationError, NegotiationState, PeerNegotiationOrchestrator, PeerRole
from fakes import FakeSink, FakeTransport
from schemas.messages import PeerInfo
from schemas.signals import IceCandidate

OFFER = {"type": "offer", "sdp": {"type": "offer", "sdp": "remote-offer"}}
ANSWER = {"type": "answer", "sdp": {"type": "answer", "sdp": "remote-answer"}}


def candidate(n):
    return {"type": "candidate", "candidate": {"candidate": f"candidate:{n} 1 udp 1 10.0.0.{n} 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}}


class FakeTrack:
    def __init__(self):
        self.stopped = False

    def stop(self):
        self.stopped = True


class Harness:
    def __init__(self, timeout=None, **transport_kwargs):
        self.sent = []
        self.failures = []
        self.transports = []
        self.sink = FakeSink()
        self.transport_kwargs = transport_kwargs
        self.orchestrator = PeerNegotiationOrchestrator(
            send_signal=self.send_signal,
            transport_factory=self.make_transport,
            media_sink=self.sink,
            on_failure=lambda peer_id, error: self.failures.append((peer_id, error)),
            negotiation_timeout=timeout,
        )

    async def send_signal(self, target, signal):
        self.sent.append((target, signal))

    def make_transport(self):
        transport = FakeTransport(**self.transport_kwargs)
        self.transports.append(transport)
        return transport

    def sent_types(self, target=None):
        return [s["type"] for t, s in self.sent if target is None or t == target]


@pytest.fixture
def harness():
    return Harness()


# ============================================================================
# Initiator / responder
# ============================================================================

@pytest.mark.asyncio
async def test_peer_joined_creates_initiator_and_offers(harness):
    await harness.orchestrator.peer_joined("B", "Bo")

    session = harness.orchestrator.sessions["B"]
    assert session.role is PeerRole.INITIATOR
    assert session.state is NegotiationState.NEGOTIATING
    assert harness.sent == [("B", {"type": "offer", "sdp": {"type": "offer", "sdp": "offer-1"}})]

    await harness.orchestrator.handle_signal("B", ANSWER)
    assert session.state is NegotiationState.ESTABLISHED
    assert harness.transports[0].remote.sdp == "remote-answer"


@pytest.mark.asyncio
async def test_existing_peers_create_waiting_responders(harness):
    await harness.orchestrator.existing_peers([PeerInfo(id="H", name="Host"), PeerInfo(id="A", name="A")])

    assert set(harness.orchestrator.sessions) == {"H", "A"}
    for session in harness.orchestrator.sessions.values():
        assert session.role is PeerRole.RESPONDER
        assert session.state is NegotiationState.ABSENT
    assert harness.sent == []

    await harness.orchestrator.handle_signal("H", OFFER)
    assert harness.sent == [("H", {"type": "answer", "sdp": {"type": "answer", "sdp": "answer"}})]
    assert harness.orchestrator.sessions["H"].state is NegotiationState.ESTABLISHED
    assert harness.orchestrator.sessions["A"].state is NegotiationState.ABSENT


@pytest.mark.asyncio
async def test_duplicate_peer_notice_is_ignored(harness):
    await harness.orchestrator.peer_joined("B")
    await harness.orchestrator.peer_joined("B")
    await harness.orchestrator.existing_peers([PeerInfo(id="B")])
    assert len(harness.transports) == 1
    assert harness.sent_types() == ["offer"]


@pytest.mark.asyncio
async def test_signal_from_unknown_peer_is_ignored(harness):
    await harness.orchestrator.handle_signal("ghost", OFFER)
    assert harness.sent == []
    assert harness.orchestrator.sessions == {}


@pytest.mark.asyncio
async def test_malformed_signal_is_ignored(harness):
    await harness.orchestrator.existing_peers([PeerInfo(id="H")])
    await harness.orchestrator.handle_signal("H", {"type": "offer"})
    assert harness.orchestrator.sessions["H"].state is NegotiationState.ABSENT
    assert harness.sent == []


@pytest.mark.asyncio
async def test_unexpected_answer_is_ignored(harness):
    await harness.orchestrator.existing_peers([PeerInfo(id="H")])
    await harness.orchestrator.handle_signal("H", ANSWER)
    session = harness.orchestrator.sessions["H"]
    assert session.state is NegotiationState.ABSENT
    assert harness.transports[0].remote is None


# ============================================================================
# Candidates
# ============================================================================

@pytest.mark.asyncio
async def test_candidates_before_offer_are_buffered_then_flushed(harness):
    await harness.orchestrator.existing_peers([PeerInfo(id="H")])
    for n in (1, 2, 3):
        await harness.orchestrator.handle_signal("H", candidate(n))

    session = harness.orchestrator.sessions["H"]
    assert len(session.pending_candidates) == 3
    assert harness.transports[0].applied_candidates == []

    await harness.orchestrator.handle_signal("H", OFFER)
    await harness.orchestrator.handle_signal("H", candidate(4))

    applied = [c.candidate for c in harness.transports[0].applied_candidates]
    received = [candidate(n)["candidate"]["candidate"] for n in (1, 2, 3, 4)]
    assert Counter(applied) == Counter(received)
    assert applied[:3] == received[:3]
    assert session.pending_candidates == []


@pytest.mark.asyncio
async def test_initiator_buffers_candidates_until_answer(harness):
    await harness.orchestrator.peer_joined("B")
    await harness.orchestrator.handle_signal("B", candidate(1))
    assert harness.transports[0].applied_candidates == []
    await harness.orchestrator.handle_signal("B", ANSWER)
    assert len(harness.transports[0].applied_candidates) == 1


@pytest.mark.asyncio
async def test_local_candidates_are_sent_to_peer(harness):
    await harness.orchestrator.peer_joined("B")
    transport = harness.transports[0]

    await transport.on_candidate(IceCandidate(candidate="candidate:9 1 udp 1 1.2.3.4 9 typ host", sdpMid="0"))
    assert harness.sent[-1] == (
        "B",
        {"type": "candidate", "candidate": {"candidate": "candidate:9 1 udp 1 1.2.3.4 9 typ host", "sdpMid": "0", "sdpMLineIndex": None}},
    )


# ============================================================================
# Local media
# ============================================================================

@pytest.mark.asyncio
async def test_start_sharing_renegotiates_established_sessions(harness):
    await harness.orchestrator.peer_joined("B")
    await harness.orchestrator.handle_signal("B", ANSWER)
    await harness.orchestrator.existing_peers([PeerInfo(id="H")])
    await harness.orchestrator.handle_signal("H", OFFER)
    harness.sent.clear()

    media = LocalMediaSession([FakeTrack()])
    await harness.orchestrator.start_sharing(media)

    assert sorted(t for t, _ in harness.sent) == ["B", "H"]
    assert harness.sent_types() == ["offer", "offer"]
    for transport in harness.transports:
        assert transport.attached is media
    # Roles are unchanged by renegotiation
    assert harness.orchestrator.sessions["H"].role is PeerRole.RESPONDER

    await harness.orchestrator.handle_signal("H", ANSWER)
    assert harness.orchestrator.sessions["H"].state is NegotiationState.ESTABLISHED


@pytest.mark.asyncio
async def test_renegotiation_waits_for_exchange_in_flight(harness):
    await harness.orchestrator.peer_joined("B")
    await harness.orchestrator.start_sharing(LocalMediaSession([FakeTrack()]))

    # Only the original offer is out while waiting for the answer
    assert harness.sent_types("B") == ["offer"]
    assert harness.orchestrator.sessions["B"].renegotiation_pending

    await harness.orchestrator.handle_signal("B", ANSWER)
    assert harness.sent_types("B") == ["offer", "offer"]
    assert harness.orchestrator.sessions["B"].state is NegotiationState.NEGOTIATING


@pytest.mark.asyncio
async def test_responder_created_while_sharing_offers_after_answer(harness):
    await harness.orchestrator.start_sharing(LocalMediaSession([FakeTrack()]))
    await harness.orchestrator.existing_peers([PeerInfo(id="H")])
    assert harness.transports[0].attached is not None
    assert harness.sent == []

    await harness.orchestrator.handle_signal("H", OFFER)
    assert harness.sent_types("H") == ["answer", "offer"]


@pytest.mark.asyncio
async def test_stop_sharing_detaches_without_messages(harness):
    await harness.orchestrator.peer_joined("B")
    await harness.orchestrator.handle_signal("B", ANSWER)
    track = FakeTrack()
    await harness.orchestrator.start_sharing(LocalMediaSession([track]))
    await harness.orchestrator.handle_signal("B", ANSWER)
    harness.sent.clear()

    await harness.orchestrator.stop_sharing()

    assert harness.sent == []
    assert harness.transports[0].attached is None
    assert track.stopped
    assert harness.orchestrator.local_media is None
    assert harness.orchestrator.sessions["B"].state is NegotiationState.ESTABLISHED


# ============================================================================
# Teardown and failures
# ============================================================================

@pytest.mark.asyncio
async def test_peer_left_tears_down_and_drops_media(harness):
    await harness.orchestrator.peer_joined("B")
    await harness.orchestrator.handle_signal("B", ANSWER)
    transport = harness.transports[0]
    transport.on_track("video-track")
    assert harness.sink.streams == {"B": "video-track"}

    session = harness.orchestrator.sessions["B"]
    await harness.orchestrator.peer_left("B")

    assert "B" not in harness.orchestrator.sessions
    assert session.state is NegotiationState.CLOSED
    assert transport.closed
    assert harness.sink.streams == {}
    assert harness.sink.removed == ["B"]

    # Late frames from the closed transport are not delivered
    transport.on_track("late-track")
    assert harness.sink.streams == {}

    # Late signals for the departed peer are ignored
    await harness.orchestrator.handle_signal("B", OFFER)
    assert harness.sent_types() == ["offer"]


@pytest.mark.asyncio
async def test_close_all_closes_every_session(harness):
    await harness.orchestrator.peer_joined("B")
    await harness.orchestrator.existing_peers([PeerInfo(id="H")])
    await harness.orchestrator.close_all()
    assert harness.orchestrator.sessions == {}
    assert all(t.closed for t in harness.transports)


@pytest.mark.asyncio
async def test_remote_description_failure_closes_session():
    harness = Harness(fail_remote=True)
    await harness.orchestrator.existing_peers([PeerInfo(id="H")])
    await harness.orchestrator.handle_signal("H", OFFER)

    assert "H" not in harness.orchestrator.sessions
    assert harness.transports[0].closed
    assert harness.sent == []
    [(peer_id, error)] = harness.failures
    assert peer_id == "H"
    assert isinstance(error, NegotiationError)


@pytest.mark.asyncio
async def test_offer_creation_failure_closes_session():
    harness = Harness(fail_offer=True)
    await harness.orchestrator.peer_joined("B")
    assert harness.orchestrator.sessions == {}
    assert [peer for peer, _ in harness.failures] == ["B"]


@pytest.mark.asyncio
async def test_unanswered_offer_times_out():
    harness = Harness(timeout=0.01)
    await harness.orchestrator.peer_joined("B")
    session = harness.orchestrator.sessions["B"]

    await asyncio.sleep(0.1)

    assert session.state is NegotiationState.CLOSED
    assert "B" not in harness.orchestrator.sessions
    assert [peer for peer, _ in harness.failures] == ["B"]


@pytest.mark.asyncio
async def test_established_session_does_not_time_out():
    harness = Harness(timeout=0.02)
    await harness.orchestrator.peer_joined("B")
    await harness.orchestrator.handle_signal("B", ANSWER)
    await asyncio.sleep(0.1)
    assert harness.orchestrator.sessions["B"].state is NegotiationState.ESTABLISHED
    assert harness.failures == []


# ============================================================================
# Offer collisions
# ============================================================================

@pytest.mark.asyncio
async def test_initiator_ignores_colliding_offer(harness):
    await harness.orchestrator.peer_joined("B")
    await harness.orchestrator.handle_signal("B", OFFER)

    assert harness.sent_types("B") == ["offer"]
    assert harness.transports[0].remote is None
    assert harness.orchestrator.sessions["B"].has_local_offer


@pytest.mark.asyncio
async def test_responder_rolls_back_on_collision(harness):
    await harness.orchestrator.existing_peers([PeerInfo(id="H")])
    await harness.orchestrator.handle_signal("H", OFFER)
    await harness.orchestrator.start_sharing(LocalMediaSession([FakeTrack()]))
    assert harness.sent_types("H") == ["answer", "offer"]

    # The host renegotiates at the same time
    await harness.orchestrator.handle_signal("H", OFFER)

    transport = harness.transports[0]
    assert "rollback" in transport.calls
    # Answer theirs, then re-issue ours
    assert harness.sent_types("H") == ["answer", "offer", "answer", "offer"]


@pytest.mark.asyncio
async def test_responder_replaces_transport_that_cannot_roll_back():
    harness = Harness(can_rollback=False)
    await harness.orchestrator.existing_peers([PeerInfo(id="H")])
    await harness.orchestrator.handle_signal("H", OFFER)
    media = LocalMediaSession([FakeTrack()])
    await harness.orchestrator.start_sharing(media)

    await harness.orchestrator.handle_signal("H", OFFER)

    session = harness.orchestrator.sessions["H"]
    old, new = harness.transports
    assert old.closed
    assert session.transport is new
    assert new.attached is media
    assert new.remote.sdp == "remote-offer"
    assert session.state is NegotiationState.NEGOTIATING
    assert harness.sent_types("H") == ["answer", "offer", "answer", "offer"]
    assert harness.failures == []

    # Remote tracks now arrive through the new transport only
    assert old.on_track is None and old.on_candidate is None
    new.on_track("fresh")
    assert harness.sink.streams == {"H": "fresh"}

"""
Per-peer session negotiation.

One ``PeerSession`` exists for each remote room member. Sessions created from a ``peer_joined``
notice are initiators and offer immediately; sessions created from the ``existing_peers``
snapshot are responders and wait for the remote offer. Every operation on a session runs under
that session's lock, so at most one offer/answer step is in flight per peer.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from client.media import AiortcTransport, LocalMediaSession, MediaSink, MediaTransport, TransportError
from constants import NEGOTIATION_TIMEOUT
from logging_config import get_logger
from schemas.messages import MalformedMessage, PeerInfo
from schemas.signals import (
    AnswerSignal,
    CandidateSignal,
    IceCandidate,
    NegotiationSignal,
    OfferSignal,
    SessionDescription,
    answer_signal,
    candidate_signal,
    offer_signal,
    parse_signal,
)

logger = get_logger(__name__)

SendSignal = Callable[[str, Dict[str, Any]], Awaitable[None]]
FailureCallback = Callable[[str, Exception], None]


class NegotiationState(str, Enum):
    ABSENT = "absent"
    NEGOTIATING = "negotiating"
    ESTABLISHED = "established"
    CLOSED = "closed"


class PeerRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class NegotiationError(RuntimeError):
    pass


class PeerSession:
    def __init__(
        self,
        remote_id: str,
        role: PeerRole,
        transport: MediaTransport,
        send_signal: SendSignal,
        name: Optional[str] = None,
        media_sink: Optional[MediaSink] = None,
        on_failure: Optional[FailureCallback] = None,
        negotiation_timeout: Optional[float] = NEGOTIATION_TIMEOUT,
        transport_factory: Optional[Callable[[], MediaTransport]] = None,
    ):
        """
        ``transport_factory`` supplies a replacement transport, already carrying any local
        media, for transports that cannot roll back a local offer on collision.
        """
        self.remote_id = remote_id
        self.name = name
        self.role = role
        self.transport = transport
        self.state = NegotiationState.ABSENT
        self.has_local_offer = False
        self.remote_description_set = False
        self.renegotiation_pending = False
        self.pending_candidates: List[IceCandidate] = []

        self._send_signal = send_signal
        self._media_sink = media_sink
        self._on_failure = on_failure
        self._negotiation_timeout = negotiation_timeout
        self._transport_factory = transport_factory
        self._timeout_task: Optional[asyncio.Task] = None
        self._media_dropped = False
        self._lock = asyncio.Lock()

        self._bind(transport)

    def _bind(self, transport: MediaTransport):
        transport.on_track = self._on_remote_track
        transport.on_candidate = self._on_local_candidate

    def __repr__(self):
        return f"<PeerSession {self.remote_id} {self.role.value} {self.state.value}>"

    @property
    def closed(self) -> bool:
        return self.state is NegotiationState.CLOSED

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def start(self):
        async with self._lock:
            if self.closed:
                return
            if self.role is PeerRole.INITIATOR:
                await self._send_offer()
            else:
                self._arm_timeout()

    async def renegotiate(self):
        """Re-offer after local media changed. Deferred until any exchange in flight completes."""
        async with self._lock:
            if self.closed:
                return
            if self.state is NegotiationState.ESTABLISHED:
                await self._send_offer()
            else:
                logger.debug(f"Deferring renegotiation with {self.remote_id} ({self.state.value})")
                self.renegotiation_pending = True

    async def receive(self, signal: NegotiationSignal):
        async with self._lock:
            if self.closed:
                logger.debug(f"Ignoring {signal.type} for closed session {self.remote_id}")
                return
            if isinstance(signal, OfferSignal):
                await self._handle_offer(signal.sdp)
            elif isinstance(signal, AnswerSignal):
                await self._handle_answer(signal.sdp)
            elif isinstance(signal, CandidateSignal):
                await self._handle_candidate(signal.candidate)

    async def close(self):
        # Remote media is gone as of now, even if a step is still in flight
        self._drop_remote_media()
        async with self._lock:
            await self._teardown()

    # ------------------------------------------------------------------
    # Steps (lock held)
    # ------------------------------------------------------------------

    async def _send_offer(self):
        try:
            description = await self.transport.create_offer()
            self.has_local_offer = True
            self.state = NegotiationState.NEGOTIATING
            self._arm_timeout()
            await self._send_signal(self.remote_id, offer_signal(description))
            logger.debug(f"Sent offer to {self.remote_id}")
        except Exception as e:
            await self._fail(NegotiationError(f"creating offer failed: {e}"))

    async def _handle_offer(self, description: SessionDescription):
        if self.has_local_offer:
            if self.role is PeerRole.INITIATOR:
                logger.info(f"Ignoring colliding offer from {self.remote_id}; our offer stands")
                return
            logger.info(f"Offer collision with {self.remote_id}; rolling back our offer")
        try:
            if self.has_local_offer:
                await self._roll_back()
            self.state = NegotiationState.NEGOTIATING
            await self.transport.set_remote_description(description)
            self.remote_description_set = True
            await self._flush_candidates()
            answer = await self.transport.create_answer()
            await self._send_signal(self.remote_id, answer_signal(answer))
            logger.debug(f"Answered offer from {self.remote_id}")
        except Exception as e:
            await self._fail(NegotiationError(f"applying offer failed: {e}"))
            return
        await self._established()

    async def _roll_back(self):
        try:
            await self.transport.rollback()
        except TransportError as e:
            if self._transport_factory is None:
                raise
            logger.info(f"Replacing transport for {self.remote_id}: {e}")
            await self._replace_transport()
        self.has_local_offer = False
        self.renegotiation_pending = True

    async def _replace_transport(self):
        old, self.transport = self.transport, self._transport_factory()
        self._bind(self.transport)
        old.on_track = None
        old.on_candidate = None
        self.remote_description_set = False
        try:
            await old.close()
        except Exception as e:
            logger.debug(f"Error closing replaced transport for {self.remote_id}: {e}")

    async def _handle_answer(self, description: SessionDescription):
        if self.state is not NegotiationState.NEGOTIATING or not self.has_local_offer:
            logger.warning(f"Unexpected answer from {self.remote_id} in state {self.state.value}, ignoring")
            return
        try:
            await self.transport.set_remote_description(description)
            self.has_local_offer = False
            self.remote_description_set = True
            await self._flush_candidates()
        except Exception as e:
            await self._fail(NegotiationError(f"applying answer failed: {e}"))
            return
        await self._established()

    async def _handle_candidate(self, candidate: IceCandidate):
        if not self.remote_description_set:
            self.pending_candidates.append(candidate)
            logger.debug(f"Buffered candidate from {self.remote_id} ({len(self.pending_candidates)} queued)")
            return
        await self._apply_candidate(candidate)

    async def _flush_candidates(self):
        queued, self.pending_candidates = self.pending_candidates, []
        for candidate in queued:
            await self._apply_candidate(candidate)
        if queued:
            logger.debug(f"Flushed {len(queued)} buffered candidate(s) from {self.remote_id}")

    async def _apply_candidate(self, candidate: IceCandidate):
        try:
            await self.transport.add_candidate(candidate)
        except Exception as e:
            logger.warning(f"Could not apply candidate from {self.remote_id}: {e}")

    async def _established(self):
        self.state = NegotiationState.ESTABLISHED
        self._cancel_timeout()
        logger.info(f"Session with {self.remote_id} established ({self.role.value})")
        if self.renegotiation_pending:
            self.renegotiation_pending = False
            await self._send_offer()

    async def _fail(self, error: Exception):
        logger.warning(f"Negotiation with {self.remote_id} failed: {error}")
        await self._teardown()
        if self._on_failure is not None:
            self._on_failure(self.remote_id, error)

    async def _teardown(self):
        if self.closed:
            return
        self.state = NegotiationState.CLOSED
        self._cancel_timeout()
        self.pending_candidates.clear()
        self._drop_remote_media()
        try:
            await self.transport.close()
        except Exception as e:
            logger.debug(f"Error closing transport for {self.remote_id}: {e}")
        logger.info(f"Session with {self.remote_id} closed")

    # ------------------------------------------------------------------
    # Timeout
    # ------------------------------------------------------------------

    def _arm_timeout(self):
        self._cancel_timeout()
        if self._negotiation_timeout is not None:
            self._timeout_task = asyncio.create_task(self._expire(self._negotiation_timeout))

    def _cancel_timeout(self):
        if self._timeout_task is not None:
            self._timeout_task.cancel()
            self._timeout_task = None

    async def _expire(self, delay: float):
        await asyncio.sleep(delay)
        async with self._lock:
            if self.state in (NegotiationState.ESTABLISHED, NegotiationState.CLOSED):
                return
            # This task is the timer; drop the reference so teardown does not cancel it
            self._timeout_task = None
            await self._fail(NegotiationError(f"no response within {delay:g}s"))

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    def _drop_remote_media(self):
        if self._media_dropped:
            return
        self._media_dropped = True
        if self._media_sink is not None:
            self._media_sink.remove_stream(self.remote_id)

    def _on_remote_track(self, track: Any):
        if self._media_dropped or self._media_sink is None:
            return
        self._media_sink.add_stream(self.remote_id, track)

    async def _on_local_candidate(self, candidate: IceCandidate):
        if self.closed:
            return
        await self._send_signal(self.remote_id, candidate_signal(candidate))


class PeerNegotiationOrchestrator:
    """Owns one ``PeerSession`` per remote room member and the local media session."""

    def __init__(
        self,
        send_signal: SendSignal,
        transport_factory: Callable[[], MediaTransport] = AiortcTransport,
        media_sink: Optional[MediaSink] = None,
        on_failure: Optional[FailureCallback] = None,
        negotiation_timeout: Optional[float] = NEGOTIATION_TIMEOUT,
    ):
        self.sessions: Dict[str, PeerSession] = {}
        self.local_media: Optional[LocalMediaSession] = None
        self._send_signal = send_signal
        self._transport_factory = transport_factory
        self._media_sink = media_sink
        self._on_failure = on_failure
        self._negotiation_timeout = negotiation_timeout

    def _new_transport(self) -> MediaTransport:
        transport = self._transport_factory()
        if self.local_media is not None:
            transport.attach(self.local_media)
        return transport

    def _create(self, remote_id: str, name: Optional[str], role: PeerRole) -> Optional[PeerSession]:
        if remote_id in self.sessions:
            logger.debug(f"Session with {remote_id} already exists, ignoring")
            return None
        session = PeerSession(
            remote_id,
            role,
            self._new_transport(),
            self._send_signal,
            name=name,
            media_sink=self._media_sink,
            on_failure=self._session_failed,
            negotiation_timeout=self._negotiation_timeout,
            transport_factory=self._new_transport,
        )
        if self.local_media is not None:
            if role is PeerRole.RESPONDER:
                # The remote offer cannot carry our tracks; offer them once established
                session.renegotiation_pending = True
        self.sessions[remote_id] = session
        logger.info(f"Created {role.value} session for {remote_id} ({name})")
        return session

    async def peer_joined(self, peer_id: str, name: Optional[str] = None):
        session = self._create(peer_id, name, PeerRole.INITIATOR)
        if session is not None:
            await session.start()

    async def existing_peers(self, peers: Iterable[PeerInfo]):
        for peer in peers:
            session = self._create(peer.id, peer.name, PeerRole.RESPONDER)
            if session is not None:
                await session.start()

    async def handle_signal(self, sender_id: str, signal: Dict[str, Any]):
        session = self.sessions.get(sender_id)
        if session is None:
            logger.warning(f"Received signal for unknown peer {sender_id}, ignoring")
            return
        try:
            parsed = parse_signal(signal)
        except MalformedMessage as e:
            logger.warning(f"Dropping signal from {sender_id}: {e}")
            return
        await session.receive(parsed)

    async def peer_left(self, peer_id: str):
        session = self.sessions.pop(peer_id, None)
        if session is None:
            logger.debug(f"peer_left for unknown peer {peer_id}")
            return
        await session.close()

    async def close_all(self):
        sessions, self.sessions = list(self.sessions.values()), {}
        for session in sessions:
            await session.close()

    async def start_sharing(self, media: LocalMediaSession):
        if self.local_media is not None:
            await self.stop_sharing()
        self.local_media = media
        logger.info(f"Sharing started with {len(media.tracks)} track(s) to {len(self.sessions)} peer(s)")
        for session in list(self.sessions.values()):
            if session.closed:
                continue
            session.transport.attach(media)
            await session.renegotiate()

    async def stop_sharing(self):
        media, self.local_media = self.local_media, None
        if media is None:
            return
        for session in list(self.sessions.values()):
            if not session.closed:
                session.transport.detach()
        media.stop()
        logger.info("Sharing stopped")

    def _session_failed(self, remote_id: str, error: Exception):
        session = self.sessions.get(remote_id)
        if session is not None and session.closed:
            del self.sessions[remote_id]
        if self._on_failure is not None:
            self._on_failure(remote_id, error)

"""
Media-side collaborators of the negotiation layer.

``MediaTransport`` is what a ``PeerSession`` drives; ``AiortcTransport`` implements it on top of
an aiortc ``RTCPeerConnection``. ``LocalMediaSession`` wraps the local capture tracks and
``MediaSink`` receives remote streams and cursor positions.
"""

from typing import Any, Awaitable, Callable, List, Optional, Protocol

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaRelay
from aiortc.sdp import candidate_from_sdp

from constants import STUN_URL
from logging_config import get_logger
from schemas.signals import IceCandidate, SessionDescription

logger = get_logger(__name__)

CandidateCallback = Callable[[IceCandidate], Awaitable[None]]
TrackCallback = Callable[[Any], None]


class TransportError(RuntimeError):
    pass


class MediaSink(Protocol):
    def add_stream(self, peer_id: str, stream: Any) -> None:
        ...

    def remove_stream(self, peer_id: str) -> None:
        ...

    def update_cursor(self, peer_id: str, x: float, y: float) -> None:
        ...


class MediaTransport(Protocol):
    on_candidate: Optional[CandidateCallback]
    on_track: Optional[TrackCallback]

    async def create_offer(self) -> SessionDescription:
        """Create an offer and apply it as the local description."""

    async def create_answer(self) -> SessionDescription:
        """Create an answer to the applied remote offer and apply it locally."""

    async def set_remote_description(self, description: SessionDescription) -> None:
        ...

    async def add_candidate(self, candidate: IceCandidate) -> None:
        ...

    async def rollback(self) -> None:
        """Discard an outstanding local offer."""

    def attach(self, media: "LocalMediaSession") -> None:
        ...

    def detach(self) -> None:
        ...

    async def close(self) -> None:
        ...


class LocalMediaSession:
    """Local capture stream: a list of tracks plus an ``ended`` notification.

    A capture track yields each frame once, so every peer connection gets its own
    subscription through ``relay`` instead of the track itself.
    """

    def __init__(self, tracks: List[Any]):
        self.tracks = list(tracks)
        self.relay = MediaRelay()
        self.stopped = False
        self._ended_listeners: List[Callable[[], None]] = []
        for track in self.tracks:
            # aiortc tracks are event emitters that fire "ended" when capture stops
            if hasattr(track, "on"):
                track.on("ended", self._handle_ended)

    def add_ended_listener(self, callback: Callable[[], None]):
        self._ended_listeners.append(callback)

    def _handle_ended(self):
        if self.stopped:
            return
        logger.info("Local capture ended")
        for callback in list(self._ended_listeners):
            callback()

    def stop(self):
        if self.stopped:
            return
        self.stopped = True
        for track in self.tracks:
            try:
                track.stop()
            except Exception as e:
                logger.debug(f"Error stopping track: {e}")


def parse_candidate(candidate: IceCandidate):
    """Convert a browser-style candidate line into an aiortc ``RTCIceCandidate``.

    Returns None for the empty end-of-candidates marker.
    """
    line = candidate.candidate.strip()
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    ice = candidate_from_sdp(line)
    ice.sdpMid = candidate.sdp_mid
    ice.sdpMLineIndex = candidate.sdp_m_line_index
    return ice


class AiortcTransport:
    """``MediaTransport`` backed by aiortc.

    aiortc gathers candidates before ``setLocalDescription`` returns and embeds them in the
    SDP, so ``on_candidate`` is never fired; remote trickled candidates are still accepted.
    """

    def __init__(self, stun_url: Optional[str] = STUN_URL):
        servers = [RTCIceServer(urls=stun_url)] if stun_url else []
        self.pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=servers))
        self.on_candidate: Optional[CandidateCallback] = None
        self.on_track: Optional[TrackCallback] = None
        self._senders: List[Any] = []

        @self.pc.on("track")
        def _on_track(track):
            logger.debug(f"Received remote {track.kind} track")
            if self.on_track is not None:
                self.on_track(track)

    async def create_offer(self) -> SessionDescription:
        if not self.pc.getTransceivers():
            # Nothing shared yet; offer to receive so the peer's tracks have a line to ride on
            self.pc.addTransceiver("video", direction="recvonly")
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        return SessionDescription(type="offer", sdp=self.pc.localDescription.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        return SessionDescription(type="answer", sdp=self.pc.localDescription.sdp)

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def add_candidate(self, candidate: IceCandidate) -> None:
        ice = parse_candidate(candidate)
        if ice is not None:
            await self.pc.addIceCandidate(ice)

    async def rollback(self) -> None:
        raise TransportError("aiortc does not support rolling back a local offer")

    def attach(self, media: LocalMediaSession) -> None:
        for track in media.tracks:
            relayed = media.relay.subscribe(track)
            self._senders.append((self.pc.addTrack(relayed), relayed))

    def detach(self) -> None:
        for sender, relayed in self._senders:
            sender.replaceTrack(None)
            relayed.stop()
        self._senders.clear()

    async def close(self) -> None:
        await self.pc.close()

"""One WebRTC connection to the remote party of a call (audio only)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..net.protocol import IceCandidateDict, SessionDescriptionDict


logger = logging.getLogger(__name__)


AsyncTransportCallback = Callable[..., Awaitable[None]]


def candidate_to_json(candidate: RTCIceCandidate) -> IceCandidateDict:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_json(obj: Any) -> RTCIceCandidate:
    if not isinstance(obj, dict):
        raise ValueError("candidate must be an object")
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp[len("candidate:"):]
    cand = candidate_from_sdp(cand_sdp)
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


def build_rtc_configuration(ice_servers: Iterable[str]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])


@dataclass
class TransportCallbacks:
    on_local_ice: Optional[AsyncTransportCallback] = None  # (candidate: dict)
    on_connection_state: Optional[AsyncTransportCallback] = None  # (state: str)
    on_track: Optional[AsyncTransportCallback] = None  # (track: MediaStreamTrack)


class PeerTransport:
    def __init__(self, ice_servers: Iterable[str], callbacks: Optional[TransportCallbacks] = None):
        self._callbacks = callbacks or TransportCallbacks()
        self._pc = RTCPeerConnection(configuration=build_rtc_configuration(ice_servers))
        self._closed = False

        @self._pc.on("icecandidate")
        async def on_icecandidate(candidate) -> None:
            # aiortc embeds gathered candidates in the SDP; this only fires
            # for implementations that trickle.
            if candidate is None or self._callbacks.on_local_ice is None:
                return
            await self._callbacks.on_local_ice(candidate_to_json(candidate))

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = self._pc.connectionState
            logger.info("transport connectionState=%s", state)
            if self._callbacks.on_connection_state:
                await self._callbacks.on_connection_state(state)

        @self._pc.on("track")
        async def on_track(track) -> None:
            logger.info("transport remote track kind=%s", track.kind)
            if track.kind == "audio" and self._callbacks.on_track:
                await self._callbacks.on_track(track)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def closed(self) -> bool:
        return self._closed

    def add_local_track(self, track: MediaStreamTrack) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescriptionDict:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return self._local_description()

    async def create_answer(self) -> SessionDescriptionDict:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return self._local_description()

    async def set_remote_description(self, description: SessionDescriptionDict) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_ice_candidate(self, candidate_obj: Any) -> None:
        if self._closed:
            return
        await self._pc.addIceCandidate(candidate_from_json(candidate_obj))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pc.close()

    def _local_description(self) -> SessionDescriptionDict:
        desc = self._pc.localDescription
        assert desc is not None
        return {"type": desc.type, "sdp": desc.sdp}


def create_transport(ice_servers: Iterable[str], callbacks: TransportCallbacks) -> PeerTransport:
    return PeerTransport(ice_servers, callbacks)

"""Tests for the aiortc transport wrapper."""

import pytest
from aiortc.mediastreams import AudioStreamTrack

from tourcall.rtc.webrtc_peer import (
    PeerTransport,
    build_rtc_configuration,
    candidate_from_json,
    candidate_to_json,
)


HOST_CANDIDATE = {
    "candidate": "candidate:842163049 1 udp 1677729535 192.168.1.5 46154 typ host",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


def test_candidate_json_keeps_browser_shape():
    cand = candidate_from_json(HOST_CANDIDATE)

    assert cand.ip == "192.168.1.5"
    assert cand.port == 46154
    assert cand.sdpMid == "0"
    assert candidate_to_json(cand)["candidate"].startswith("candidate:842163049 1 udp")


@pytest.mark.parametrize("obj", [None, {}, {"candidate": ""}, "candidate:1"])
def test_candidate_from_json_rejects_malformed(obj):
    with pytest.raises(ValueError):
        candidate_from_json(obj)


def test_rtc_configuration():
    config = build_rtc_configuration(["stun:stun.example:3478"])

    assert [s.urls for s in config.iceServers] == ["stun:stun.example:3478"]


@pytest.mark.asyncio
async def test_offer_answer_between_two_transports():
    caller = PeerTransport([])
    callee = PeerTransport([])
    try:
        caller.add_local_track(AudioStreamTrack())

        offer = await caller.create_offer()
        await callee.set_remote_description(offer)
        answer = await callee.create_answer()
        await caller.set_remote_description(answer)

        assert offer["type"] == "offer"
        assert "m=audio" in offer["sdp"]
        assert answer["type"] == "answer"
    finally:
        await caller.close()
        await callee.close()

    assert caller.closed
    await caller.close()
    await caller.add_ice_candidate(HOST_CANDIDATE)

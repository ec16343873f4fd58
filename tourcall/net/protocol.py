"""Signaling protocol helpers.

Two layers live here:

- call events: the payloads call peers broadcast to each other inside a room
  (`call-offer`, `call-answer`, `call-reject`, `call-end`, `ice-candidate`);
- wire frames: the JSON objects the websocket client and the relay exchange
  to join rooms and carry those events.

See `relay_server.py` for authoritative relay behavior.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, TypedDict


# Call event names
CALL_OFFER = "call-offer"
CALL_ANSWER = "call-answer"
CALL_REJECT = "call-reject"
CALL_END = "call-end"
ICE_CANDIDATE = "ice-candidate"

CALL_EVENTS = (CALL_OFFER, CALL_ANSWER, CALL_REJECT, CALL_END, ICE_CANDIDATE)

# Wire frame types
JOIN = "join"
JOINED = "joined"
LEAVE = "leave"
LEFT = "left"
BROADCAST = "broadcast"

ERROR = "error"

ROOM_PREFIX = "voice-call-"


class SessionDescriptionDict(TypedDict):
	type: str
	sdp: str


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


class ProtocolError(Exception):
	"""Raised when a signaling payload does not have the expected shape."""


def room_channel(room_id: str) -> str:
	return f"{ROOM_PREFIX}{room_id}"


# ----------------------
# Call event payloads
# ----------------------
def make_offer(
	from_id: str,
	user_name: str,
	offer: SessionDescriptionDict,
	to: Optional[str] = None,
) -> Dict[str, Any]:
	msg: Dict[str, Any] = {"from": from_id, "userName": user_name, "offer": dict(offer)}
	if to:
		msg["to"] = to
	return msg


def make_answer(from_id: str, user_name: str, answer: SessionDescriptionDict) -> Dict[str, Any]:
	return {"from": from_id, "userName": user_name, "answer": dict(answer)}


def make_reject(from_id: str) -> Dict[str, Any]:
	return {"from": from_id}


def make_end(from_id: str) -> Dict[str, Any]:
	return {"from": from_id}


def make_ice(from_id: str, candidate: IceCandidateDict) -> Dict[str, Any]:
	return {"from": from_id, "candidate": dict(candidate)}


def sender_of(payload: Any) -> Optional[str]:
	if not isinstance(payload, dict):
		return None
	sender = payload.get("from")
	return str(sender) if sender else None


def is_addressed_to(payload: Dict[str, Any], user_id: str) -> bool:
	"""True for room broadcasts and for events addressed to `user_id`."""
	to = payload.get("to")
	return not to or str(to) == user_id


def parse_description(obj: Any, expected_type: str) -> SessionDescriptionDict:
	"""Validate an offer/answer body and return a clean `{type, sdp}` dict."""
	if not isinstance(obj, dict):
		raise ProtocolError(f"{expected_type} must be an object")
	desc_type = obj.get("type")
	sdp = obj.get("sdp")
	if not isinstance(desc_type, str) or not desc_type:
		raise ProtocolError(f"{expected_type} is missing 'type'")
	if not isinstance(sdp, str) or not sdp:
		raise ProtocolError(f"{expected_type} is missing 'sdp'")
	if desc_type != expected_type:
		raise ProtocolError(f"expected type={expected_type} got type={desc_type}")
	return {"type": desc_type, "sdp": sdp}


# ----------------------
# Wire frames
# ----------------------
def make_join(room: str) -> Dict[str, Any]:
	return {"type": JOIN, "room": room}


def make_leave(room: str) -> Dict[str, Any]:
	return {"type": LEAVE, "room": room}


def make_joined(room: str) -> Dict[str, Any]:
	return {"type": JOINED, "room": room}


def make_left(room: str) -> Dict[str, Any]:
	return {"type": LEFT, "room": room}


def make_broadcast(room: str, event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
	return {"type": BROADCAST, "room": room, "event": event, "payload": payload}


def make_error(error: str) -> Dict[str, Any]:
	return {"type": ERROR, "error": error}

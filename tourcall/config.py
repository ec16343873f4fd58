"""Runtime configuration for the call client.

Every value has an environment override so the window and the relay can be
tuned without touching code.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional


DEFAULT_ICE_SERVERS = (
	"stun:stun.l.google.com:19302",
	"stun:stun1.l.google.com:19302",
)


def _env_float(name: str, default: float) -> float:
	v = os.environ.get(name)
	if v is None:
		return default
	try:
		return float(v)
	except ValueError:
		return default


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
	v = os.environ.get(name)
	if not v:
		return default
	items = tuple(s.strip() for s in v.split(",") if s.strip())
	return items or default


@dataclass
class CallConfig:
	"""Timing and transport settings for a CallManager."""

	ring_timeout_sec: float = 30.0
	tick_interval_sec: float = 1.0
	ice_servers: tuple[str, ...] = DEFAULT_ICE_SERVERS
	default_caller_name: str = "Caller"

	@classmethod
	def from_env(cls) -> "CallConfig":
		return cls(
			ring_timeout_sec=_env_float("TOURCALL_RING_TIMEOUT_SEC", cls.ring_timeout_sec),
			tick_interval_sec=_env_float("TOURCALL_TICK_INTERVAL_SEC", cls.tick_interval_sec),
			ice_servers=_env_list("TOURCALL_ICE_SERVERS", DEFAULT_ICE_SERVERS),
		)


@dataclass
class AppConfig:
	server_url: str = "ws://127.0.0.1:8765/ws"
	room: str = "default"
	user_id: str = ""
	name: str = ""
	target_id: Optional[str] = None
	target_name: Optional[str] = None
	call: CallConfig = field(default_factory=CallConfig)

	@classmethod
	def from_env(cls) -> "AppConfig":
		return cls(
			server_url=os.environ.get("TOURCALL_SERVER_URL", cls.server_url),
			room=os.environ.get("TOURCALL_ROOM", cls.room),
			user_id=os.environ.get("TOURCALL_USER_ID", ""),
			name=os.environ.get("TOURCALL_NAME", os.environ.get("USER", "")),
			call=CallConfig.from_env(),
		)

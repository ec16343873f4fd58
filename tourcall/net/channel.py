"""Contracts the call core expects from a room-scoped broadcast channel."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Protocol


logger = logging.getLogger(__name__)


EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class ChannelSubscription(Protocol):
	"""Membership in one room.

	`send` delivers to every *other* member of the room. Handlers for one
	event from one sender run in send order; nothing is promised across
	distinct events.
	"""

	@property
	def room(self) -> str:
		...

	def on(self, event: str, handler: EventHandler) -> None:
		...

	async def send(self, event: str, payload: Dict[str, Any]) -> None:
		...

	async def unsubscribe(self) -> None:
		...


class SignalingChannel(Protocol):
	async def subscribe(self, room: str) -> ChannelSubscription:
		...


class HandlerTable:
	"""Per-event handler lists shared by the channel implementations."""

	def __init__(self, room: str):
		self.room = room
		self._handlers: Dict[str, list[EventHandler]] = {}

	def add(self, event: str, handler: EventHandler) -> None:
		self._handlers.setdefault(event, []).append(handler)

	def clear(self) -> None:
		self._handlers.clear()

	async def dispatch(self, event: str, payload: Dict[str, Any]) -> None:
		for handler in list(self._handlers.get(event, ())):
			try:
				await handler(payload)
			except Exception:
				logger.exception("signaling handler failed room=%s event=%s", self.room, event)

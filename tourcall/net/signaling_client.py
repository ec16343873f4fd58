"""WebSocket signaling client.

This is intentionally unaware of aiortc and of call semantics. It joins
rooms on the relay (`relay_server.py`) over a single socket and hands each
room's broadcast events to the handlers registered on that room's
subscription.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets

from . import protocol
from .channel import EventHandler, HandlerTable


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class SignalingCallbacks:
	on_log: Optional[AsyncCallback] = None
	on_joined: Optional[AsyncCallback] = None  # (room: str)
	on_left: Optional[AsyncCallback] = None  # (room: str)
	on_error: Optional[AsyncCallback] = None  # (error: str, payload: dict)


class RoomSubscription:
	def __init__(self, client: "SignalingClient", room: str):
		self._client = client
		self._table = HandlerTable(room)
		self.active = True

	@property
	def room(self) -> str:
		return self._table.room

	def on(self, event: str, handler: EventHandler) -> None:
		self._table.add(event, handler)

	async def send(self, event: str, payload: Dict[str, Any]) -> None:
		if not self.active:
			raise RuntimeError(f"Subscription to {self.room} is closed")
		await self._client._send(protocol.make_broadcast(self.room, event, payload))

	async def unsubscribe(self) -> None:
		if not self.active:
			return
		self.active = False
		self._table.clear()
		await self._client._unsubscribe(self)

	async def _dispatch(self, event: str, payload: Dict[str, Any]) -> None:
		if self.active:
			await self._table.dispatch(event, payload)


class SignalingClient:
	def __init__(
		self,
		url: str,
		callbacks: Optional[SignalingCallbacks] = None,
		*,
		send_timeout_sec: float = 10.0,
	):
		self.url = url
		self.callbacks = callbacks or SignalingCallbacks()
		self.send_timeout_sec = send_timeout_sec

		# websockets' protocol types moved between versions; keep runtime-safe.
		self._ws: Optional[Any] = None
		self._recv_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._connected_evt = asyncio.Event()
		self._rooms: Dict[str, RoomSubscription] = {}

	@property
	def is_connected(self) -> bool:
		return self._ws is not None and self._connected_evt.is_set()

	async def connect(self) -> None:
		if self._recv_task and not self._recv_task.done():
			return

		await self._log(f"Connecting to {self.url}")
		logger.info("signaling connect url=%s", self.url)
		try:
			self._ws = await websockets.connect(self.url)
		except (OSError, websockets.WebSocketException):
			logger.exception("signaling connect failed url=%s", self.url)
			await self._emit_error("connect-failed", {"url": self.url})
			return
		self._connected_evt.set()
		self._recv_task = asyncio.create_task(self._recv_loop(), name="signaling-recv")

		# Rejoin rooms subscribed before a reconnect.
		for room in list(self._rooms):
			await self._send(protocol.make_join(room))

	async def disconnect(self) -> None:
		await self._log("Disconnecting")
		logger.info("signaling disconnect")
		self._connected_evt.clear()
		if self._recv_task:
			self._recv_task.cancel()
			try:
				await self._recv_task
			except asyncio.CancelledError:
				pass
			self._recv_task = None

		if self._ws:
			try:
				await self._ws.close()
			except (OSError, websockets.WebSocketException):
				logger.debug("signaling close failed", exc_info=True)
		self._ws = None

	async def subscribe(self, room: str) -> RoomSubscription:
		existing = self._rooms.get(room)
		if existing is not None:
			return existing
		sub = RoomSubscription(self, room)
		self._rooms[room] = sub
		logger.info("signaling subscribe room=%s", room)
		await self._send(protocol.make_join(room))
		return sub

	async def _unsubscribe(self, sub: RoomSubscription) -> None:
		if self._rooms.get(sub.room) is sub:
			del self._rooms[sub.room]
		logger.info("signaling unsubscribe room=%s", sub.room)
		if self.is_connected:
			await self._send(protocol.make_leave(sub.room))

	async def _send(self, payload: Dict[str, Any]) -> None:
		try:
			await asyncio.wait_for(self._connected_evt.wait(), timeout=self.send_timeout_sec)
		except asyncio.TimeoutError:
			raise RuntimeError("Signaling not connected") from None
		if not self._ws:
			raise RuntimeError("Signaling not connected")
		mtype = payload.get("type")
		if mtype == protocol.BROADCAST:
			event = payload.get("event")
			if event == protocol.ICE_CANDIDATE:
				logger.debug("signaling send room=%s event=%s", payload.get("room"), event)
			else:
				logger.info("signaling send room=%s event=%s", payload.get("room"), event)
		else:
			logger.debug("signaling send type=%s", mtype)
		raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
		async with self._send_lock:
			await self._ws.send(raw)

	async def _recv_loop(self) -> None:
		assert self._ws is not None
		ws = self._ws
		logger.debug("signaling recv loop started")

		try:
			async for raw in ws:
				try:
					msg = json.loads(raw)
				except json.JSONDecodeError:
					await self._emit_error("invalid-json", {"raw": raw})
					continue

				if not isinstance(msg, dict):
					await self._emit_error("invalid-message", {"msg": msg})
					continue

				mtype = msg.get("type")
				if not isinstance(mtype, str):
					await self._emit_error("missing-type", msg)
					continue

				if mtype == protocol.BROADCAST:
					room = str(msg.get("room", ""))
					event = msg.get("event")
					payload = msg.get("payload")
					sub = self._rooms.get(room)
					if not isinstance(event, str) or not isinstance(payload, dict):
						await self._emit_error("invalid-broadcast", msg)
						continue
					if sub is None:
						logger.debug("signaling broadcast for unknown room=%s event=%s", room, event)
						continue
					logger.debug("signaling recv room=%s event=%s from=%s", room, event, payload.get("from"))
					await sub._dispatch(event, payload)
					continue

				if mtype == protocol.JOINED:
					room = str(msg.get("room", ""))
					logger.info("signaling joined room=%s", room)
					if self.callbacks.on_joined:
						await self.callbacks.on_joined(room)
					continue

				if mtype == protocol.LEFT:
					room = str(msg.get("room", ""))
					logger.info("signaling left room=%s", room)
					if self.callbacks.on_left:
						await self.callbacks.on_left(room)
					continue

				if mtype == protocol.ERROR:
					await self._emit_error(str(msg.get("error", "error")), msg)
					continue

				await self._emit_error("unknown-type", msg)

		except asyncio.CancelledError:
			pass
		except Exception as e:
			logger.exception("signaling recv loop crashed")
			await self._emit_error(f"recv-loop-exception: {e}", {})
		finally:
			self._connected_evt.clear()
			logger.debug("signaling recv loop stopped")
			try:
				await ws.close()
			except (OSError, websockets.WebSocketException):
				pass
			if self._ws is ws:
				self._ws = None

	async def _emit_error(self, error: str, payload: Dict[str, Any]) -> None:
		logger.warning("signaling error=%s", error)
		await self._log(f"Signaling error: {error}")
		if self.callbacks.on_error:
			await self.callbacks.on_error(error, payload)

	async def _log(self, message: str) -> None:
		if self.callbacks.on_log:
			await self.callbacks.on_log(message)

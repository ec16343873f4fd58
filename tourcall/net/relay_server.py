"""Room-scoped broadcast relay.

Every connected socket may join any number of rooms. A `broadcast` frame is
forwarded, unchanged, to every *other* member of the frame's room; the relay
never inspects call payloads. Sockets are dropped from all rooms when they
disconnect.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

import websockets

from . import protocol


logger = logging.getLogger(__name__)


class RelayServer:
	def __init__(self, host: str = "127.0.0.1", port: int = 8765):
		self.host = host
		self.port = port
		self._rooms: Dict[str, Set[Any]] = {}
		self._server: Optional[Any] = None

	def members(self, room: str) -> int:
		return len(self._rooms.get(room, ()))

	async def start(self) -> None:
		self._server = await websockets.serve(self.handle, self.host, self.port)
		sockets = getattr(self._server, "sockets", None) or []
		if sockets:
			# Port 0 asks the OS for a free port.
			self.port = int(sockets[0].getsockname()[1])
		logger.info("relay listening host=%s port=%s", self.host, self.port)

	async def stop(self) -> None:
		if self._server is None:
			return
		self._server.close()
		await self._server.wait_closed()
		self._server = None
		self._rooms.clear()
		logger.info("relay stopped")

	async def serve_forever(self) -> None:
		await self.start()
		try:
			await asyncio.Future()
		finally:
			await self.stop()

	async def handle(self, ws: Any) -> None:
		joined: Set[str] = set()
		logger.info("relay client connected remote=%s", getattr(ws, "remote_address", None))
		try:
			async for raw in ws:
				try:
					msg = json.loads(raw)
				except json.JSONDecodeError:
					await self._send(ws, protocol.make_error("invalid-json"))
					continue
				if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
					await self._send(ws, protocol.make_error("invalid-message"))
					continue

				mtype = msg["type"]
				room = msg.get("room")
				if not isinstance(room, str) or not room:
					await self._send(ws, protocol.make_error("missing-room"))
					continue

				if mtype == protocol.JOIN:
					self._rooms.setdefault(room, set()).add(ws)
					joined.add(room)
					logger.info("relay join room=%s members=%s", room, self.members(room))
					await self._send(ws, protocol.make_joined(room))
					continue

				if mtype == protocol.LEAVE:
					self._leave(ws, room)
					joined.discard(room)
					await self._send(ws, protocol.make_left(room))
					continue

				if mtype == protocol.BROADCAST:
					if room not in joined:
						await self._send(ws, protocol.make_error("not-joined"))
						continue
					event = msg.get("event")
					payload = msg.get("payload")
					if not isinstance(event, str) or not isinstance(payload, dict):
						await self._send(ws, protocol.make_error("invalid-broadcast"))
						continue
					await self._broadcast(ws, room, event, payload)
					continue

				await self._send(ws, protocol.make_error("unknown-type"))
		except websockets.ConnectionClosed:
			pass
		finally:
			for room in joined:
				self._leave(ws, room)
			logger.info("relay client disconnected rooms=%s", len(joined))

	async def _broadcast(self, sender: Any, room: str, event: str, payload: Dict[str, Any]) -> None:
		frame = protocol.make_broadcast(room, event, payload)
		targets = [m for m in self._rooms.get(room, ()) if m is not sender]
		if event == protocol.ICE_CANDIDATE:
			logger.debug("relay broadcast room=%s event=%s targets=%s", room, event, len(targets))
		else:
			logger.info("relay broadcast room=%s event=%s targets=%s", room, event, len(targets))
		for member in targets:
			await self._send(member, frame)

	def _leave(self, ws: Any, room: str) -> None:
		members = self._rooms.get(room)
		if not members:
			return
		members.discard(ws)
		if not members:
			del self._rooms[room]

	async def _send(self, ws: Any, payload: Dict[str, Any]) -> None:
		raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
		try:
			await ws.send(raw)
		except websockets.ConnectionClosed:
			logger.debug("relay send to closed socket dropped")

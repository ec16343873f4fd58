"""In-process broadcast hub used as the signaling channel in tests.

Implements the same subscription contract as `SignalingClient` without a
network hop: every subscription gets its own delivery queue and worker task,
so events from one sender arrive in send order and handlers never run inside
the sender's `send` call.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from tourcall.net.channel import EventHandler, HandlerTable


logger = logging.getLogger(__name__)


class LocalSubscription:
    def __init__(self, hub: "LocalBroadcastHub", room: str):
        self._hub = hub
        self._table = HandlerTable(room)
        self._queue: asyncio.Queue[Tuple[str, Dict[str, Any]]] = asyncio.Queue()
        self._worker: Optional[asyncio.Task[None]] = None
        self._busy = False
        self.active = True

    @property
    def room(self) -> str:
        return self._table.room

    @property
    def idle(self) -> bool:
        return self._queue.empty() and not self._busy

    def on(self, event: str, handler: EventHandler) -> None:
        self._table.add(event, handler)

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.active:
            raise RuntimeError(f"Subscription to {self.room} is closed")
        self._hub._publish(self, event, payload)

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._hub._remove(self)
        self._table.clear()
        if self._worker is not None and self._worker is not asyncio.current_task():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

    def _deliver(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.active:
            return
        self._queue.put_nowait((event, dict(payload)))
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name=f"local-channel-{self.room}")

    async def _run(self) -> None:
        while True:
            event, payload = await self._queue.get()
            self._busy = True
            try:
                await self._table.dispatch(event, payload)
            finally:
                self._busy = False
                self._queue.task_done()


class LocalBroadcastHub:
    def __init__(self):
        self._rooms: Dict[str, list[LocalSubscription]] = {}
        self.sent: list[Tuple[str, str, Dict[str, Any]]] = []  # (room, event, payload)

    async def subscribe(self, room: str) -> LocalSubscription:
        sub = LocalSubscription(self, room)
        self._rooms.setdefault(room, []).append(sub)
        logger.debug("local channel subscribe room=%s members=%s", room, len(self._rooms[room]))
        return sub

    def members(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def events(self, event: Optional[str] = None) -> list[Dict[str, Any]]:
        """Payloads sent so far, optionally filtered by event name."""
        return [p for (_r, e, p) in self.sent if event is None or e == event]

    async def drain(self) -> None:
        """Wait until every queued event has been handled, including events
        sent by handlers while draining."""
        while True:
            busy = [s for subs in self._rooms.values() for s in subs if not s.idle]
            if not busy:
                return
            for s in busy:
                await s._queue.join()
            await asyncio.sleep(0)

    def _publish(self, sender: LocalSubscription, event: str, payload: Dict[str, Any]) -> None:
        self.sent.append((sender.room, event, dict(payload)))
        for sub in list(self._rooms.get(sender.room, ())):
            if sub is not sender:
                sub._deliver(event, payload)

    def _remove(self, sub: LocalSubscription) -> None:
        subs = self._rooms.get(sub.room)
        if subs and sub in subs:
            subs.remove(sub)
            if not subs:
                del self._rooms[sub.room]

"""Call state machine for one-to-one voice calls inside a room.

Every call attempt gets a new session generation. Anything that resumes
after an await (media capture, negotiation, the ring watchdog, transport
callbacks) first checks that its generation is still the current one and
drops its result otherwise, so a late callback can never touch a newer call.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ..config import CallConfig
from ..net import protocol
from ..net.channel import ChannelSubscription, SignalingChannel
from ..net.protocol import ProtocolError, SessionDescriptionDict
from .audio import MicrophoneCapture, RemoteAudioSink, classify_media_error
from .webrtc_peer import TransportCallbacks, create_transport


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]

CONNECTION_LOST = "Connection lost."
SETUP_FAILED = "Call setup failed."


class CallStatus(str, Enum):
    IDLE = "idle"
    CALLING = "calling"
    RINGING = "ringing"
    CONNECTED = "connected"
    ENDED = "ended"
    ERROR = "error"


_ACTIVE = (CallStatus.CALLING, CallStatus.RINGING, CallStatus.CONNECTED)


@dataclass
class CallSession:
    room_id: str
    local_user_id: str
    local_user_name: str
    generation: int
    status: CallStatus = CallStatus.IDLE
    remote_user_id: Optional[str] = None
    remote_user_name: Optional[str] = None
    started_at: Optional[float] = None
    duration_seconds: int = 0
    last_error: Optional[str] = None
    # Set once the offer may have reached the remote party.
    offer_sent: bool = False
    # Owned handles; released together on every terminal transition.
    media: Optional[Any] = field(default=None, repr=False)
    transport: Optional[Any] = field(default=None, repr=False)
    remote_sink: Optional[Any] = field(default=None, repr=False)


@dataclass(frozen=True)
class PendingOffer:
    sdp_offer: SessionDescriptionDict
    caller_name: str
    caller_id: str


@dataclass
class CallCallbacks:
    on_log: Optional[AsyncCallback] = None  # (message: str)
    on_status: Optional[AsyncCallback] = None  # (status: str)
    on_duration: Optional[AsyncCallback] = None  # (duration: str)
    on_error: Optional[AsyncCallback] = None  # (message: str)


def format_duration(seconds: int) -> str:
    mins, secs = divmod(max(0, int(seconds)), 60)
    return f"{mins:02d}:{secs:02d}"


class CallManager:
    def __init__(
        self,
        channel: SignalingChannel,
        room_id: str,
        user_id: str,
        user_name: str,
        *,
        config: Optional[CallConfig] = None,
        callbacks: Optional[CallCallbacks] = None,
        capture: Optional[Any] = None,
        transport_factory: Optional[Callable[..., Any]] = None,
        sink_factory: Optional[Callable[[], Any]] = None,
    ):
        self.room_id = room_id
        self.user_id = user_id
        self.user_name = user_name

        self._channel = channel
        self._config = config or CallConfig()
        self._callbacks = callbacks or CallCallbacks()
        self._capture = capture or MicrophoneCapture()
        self._transport_factory = transport_factory or create_transport
        self._sink_factory = sink_factory or RemoteAudioSink

        self._subscription: Optional[ChannelSubscription] = None
        self._generation = 0
        self._session = self._new_session(CallStatus.IDLE)
        self._pending: Optional[PendingOffer] = None
        self._watchdog: Optional[asyncio.Task[None]] = None
        self._ticker: Optional[asyncio.Task[None]] = None
        self._is_muted = False
        self._target_id: Optional[str] = None
        self._target_name: Optional[str] = None

    # ----------------------
    # Observable state
    # ----------------------
    @property
    def session(self) -> CallSession:
        return self._session

    @property
    def call_status(self) -> CallStatus:
        return self._session.status

    @property
    def call_error(self) -> Optional[str]:
        return self._session.last_error

    @property
    def call_duration(self) -> str:
        return format_duration(self._session.duration_seconds)

    @property
    def caller_name(self) -> str:
        return self._session.remote_user_name or ""

    @property
    def is_muted(self) -> bool:
        return self._is_muted

    @property
    def pending_offer(self) -> Optional[PendingOffer]:
        return self._pending

    @property
    def is_open(self) -> bool:
        return self._subscription is not None

    # ----------------------
    # Lifecycle
    # ----------------------
    async def open(self) -> None:
        if self._subscription is not None:
            return
        sub = await self._channel.subscribe(protocol.room_channel(self.room_id))
        sub.on(protocol.CALL_OFFER, self._on_offer)
        sub.on(protocol.CALL_ANSWER, self._on_answer)
        sub.on(protocol.CALL_REJECT, self._on_reject)
        sub.on(protocol.CALL_END, self._on_end)
        sub.on(protocol.ICE_CANDIDATE, self._on_ice_candidate)
        self._subscription = sub
        logger.info("call channel open room=%s user=%s", self.room_id, self.user_id)

    async def close(self) -> None:
        """Leave the room; an active call is ended (and the peer told) first."""
        await self.end_call()
        sub = self._subscription
        self._subscription = None
        if sub is not None:
            await sub.unsubscribe()
            logger.info("call channel closed room=%s", self.room_id)

    async def __aenter__(self) -> "CallManager":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def set_target(self, user_id: Optional[str], user_name: Optional[str] = None) -> None:
        self._target_id = user_id or None
        self._target_name = user_name or None

    # ----------------------
    # Local operations
    # ----------------------
    async def start_call(self, target_id: Optional[str] = None, target_name: Optional[str] = None) -> bool:
        if target_id is None:
            target_id = self._target_id
            target_name = target_name or self._target_name
        if not target_id:
            logger.error("call start failed: no target selected")
            await self._log("No call target selected")
            return False
        if target_id == self.user_id:
            logger.error("call start failed: target is self")
            return False
        if self._session.status is not CallStatus.IDLE:
            logger.warning("call start ignored status=%s", self._session.status.value)
            return False
        if self._subscription is None:
            logger.error("call start failed: channel not open")
            return False

        session = self._begin(CallStatus.CALLING, target_id, target_name)
        gen = session.generation
        logger.info("call start target=%s gen=%s", target_id, gen)
        await self._notify_status()

        try:
            media = await self._capture.acquire()
        except Exception as e:
            err = classify_media_error(e)
            if self._is_current(gen):
                logger.warning("call media capture failed kind=%s err=%s", err.kind.value, e)
                await self._fail(err.message, notify_peer=False)
            return False
        if not self._is_current(gen):
            logger.info("call start superseded during capture gen=%s", gen)
            media.stop()
            return False
        session.media = media

        try:
            transport = self._create_transport(gen)
            session.transport = transport
            transport.add_local_track(media.track)
            offer = await transport.create_offer()
        except Exception:
            logger.exception("call offer failed gen=%s", gen)
            if self._is_current(gen):
                await self._fail(SETUP_FAILED, notify_peer=False)
            return False
        if not self._is_current(gen):
            return False

        payload = protocol.make_offer(self.user_id, self.user_name, offer, to=target_id)
        session.offer_sent = True
        if not await self._send(protocol.CALL_OFFER, payload):
            if self._is_current(gen):
                await self._fail(SETUP_FAILED, notify_peer=False)
            return False
        if not self._is_current(gen):
            logger.info("call start superseded during offer send gen=%s", gen)
            return False

        self._watchdog = asyncio.create_task(self._watchdog_run(gen), name=f"call-watchdog-{gen}")
        await self._log(f"Calling {target_name or target_id}")
        return True

    async def accept_incoming_call(self) -> None:
        session = self._session
        pending = self._pending
        if session.status is not CallStatus.RINGING or pending is None:
            logger.warning("call accept ignored status=%s", session.status.value)
            return
        self._pending = None
        gen = session.generation
        logger.info("call accept from=%s gen=%s", pending.caller_id, gen)

        try:
            media = await self._capture.acquire()
        except Exception as e:
            err = classify_media_error(e)
            if self._is_current(gen):
                logger.warning("call media capture failed kind=%s err=%s", err.kind.value, e)
                # The caller is waiting on us; let it go instead of ringing out.
                await self._fail(err.message, notify_peer=True)
            return
        if not self._is_current(gen):
            logger.info("call accept superseded during capture gen=%s", gen)
            media.stop()
            return
        session.media = media

        try:
            transport = self._create_transport(gen)
            session.transport = transport
            transport.add_local_track(media.track)
            await transport.set_remote_description(pending.sdp_offer)
            answer = await transport.create_answer()
        except Exception:
            logger.exception("call answer failed gen=%s", gen)
            if self._is_current(gen):
                await self._fail(SETUP_FAILED, notify_peer=True)
            return
        if not self._is_current(gen):
            return

        if not await self._send(protocol.CALL_ANSWER, protocol.make_answer(self.user_id, self.user_name, answer)):
            if self._is_current(gen):
                await self._fail(SETUP_FAILED, notify_peer=True)
            return
        if not self._is_current(gen):
            logger.info("call accept superseded during answer send gen=%s", gen)
            return
        await self._connect(session)

    async def reject_call(self) -> None:
        status = self._session.status
        if status is CallStatus.IDLE:
            return
        if status is not CallStatus.RINGING:
            await self.end_call()
            return
        logger.info("call reject from=%s", self._session.remote_user_id)
        await self._send(protocol.CALL_REJECT, protocol.make_reject(self.user_id))
        await self._finish(notify_peer=False)

    async def end_call(self) -> None:
        status = self._session.status
        if status in (CallStatus.IDLE, CallStatus.ENDED):
            return
        if status is CallStatus.ERROR:
            await self.dismiss_error()
            return
        if status is CallStatus.RINGING:
            await self.reject_call()
            return
        logger.info("call end status=%s", status.value)
        await self._finish(notify_peer=self._peer_engaged())

    def toggle_mute(self) -> None:
        media = self._session.media
        if media is None:
            return
        self._is_muted = not self._is_muted
        media.set_enabled(not self._is_muted)
        logger.info("call mute=%s", self._is_muted)

    async def dismiss_error(self) -> None:
        if self._session.status is not CallStatus.ERROR:
            return
        self._session = self._new_session(CallStatus.IDLE)
        await self._notify_status()

    # ----------------------
    # Remote events
    # ----------------------
    async def _on_offer(self, payload: Dict[str, Any]) -> None:
        sender = protocol.sender_of(payload)
        if not sender or sender == self.user_id:
            return
        if not protocol.is_addressed_to(payload, self.user_id):
            logger.debug("call offer for someone else from=%s to=%s", sender, payload.get("to"))
            return
        if self._session.status is not CallStatus.IDLE:
            logger.info("call offer ignored from=%s status=%s", sender, self._session.status.value)
            return
        try:
            offer = protocol.parse_description(payload.get("offer"), "offer")
        except ProtocolError as e:
            logger.warning("call offer rejected from=%s: %s", sender, e)
            return

        caller_name = str(payload.get("userName") or "").strip() or self._config.default_caller_name
        session = self._begin(CallStatus.RINGING, sender, caller_name)
        self._pending = PendingOffer(sdp_offer=offer, caller_name=caller_name, caller_id=sender)
        logger.info("call ringing from=%s gen=%s", sender, session.generation)
        await self._notify_status()
        await self._log(f"Incoming call from {caller_name}")

    async def _on_answer(self, payload: Dict[str, Any]) -> None:
        sender = protocol.sender_of(payload)
        session = self._session
        if not sender or sender == self.user_id or session.status is not CallStatus.CALLING:
            return
        if session.remote_user_id and sender != session.remote_user_id:
            logger.debug("call answer from non-target=%s ignored", sender)
            return
        gen = session.generation
        try:
            answer = protocol.parse_description(payload.get("answer"), "answer")
        except ProtocolError as e:
            logger.warning("call answer rejected from=%s: %s", sender, e)
            await self._finish(notify_peer=True)
            return
        transport = session.transport
        if transport is None:
            logger.warning("call answer before offer was sent from=%s", sender)
            return

        try:
            await transport.set_remote_description(answer)
        except Exception:
            logger.exception("call apply answer failed gen=%s", gen)
            if self._is_current(gen):
                await self._fail(SETUP_FAILED, notify_peer=True)
            return
        if not self._is_current(gen):
            return
        name = str(payload.get("userName") or "").strip()
        if name:
            session.remote_user_name = name
        await self._connect(session)

    async def _on_reject(self, payload: Dict[str, Any]) -> None:
        await self._on_remote_hangup(protocol.CALL_REJECT, payload)

    async def _on_end(self, payload: Dict[str, Any]) -> None:
        await self._on_remote_hangup(protocol.CALL_END, payload)

    async def _on_remote_hangup(self, event: str, payload: Dict[str, Any]) -> None:
        sender = protocol.sender_of(payload)
        session = self._session
        if not sender or sender == self.user_id or session.status not in _ACTIVE:
            return
        if session.remote_user_id and sender != session.remote_user_id:
            logger.debug("call %s from non-party=%s ignored", event, sender)
            return
        logger.info("call %s received from=%s status=%s", event, sender, session.status.value)
        await self._finish(notify_peer=False)

    async def _on_ice_candidate(self, payload: Dict[str, Any]) -> None:
        sender = protocol.sender_of(payload)
        if not sender or sender == self.user_id:
            return
        transport = self._session.transport
        if transport is None:
            logger.debug("call ice dropped (no transport) from=%s", sender)
            return
        try:
            await transport.add_ice_candidate(payload.get("candidate"))
        except Exception as e:
            logger.warning("call ice candidate rejected from=%s: %s", sender, e)

    # ----------------------
    # Transport callbacks (bound to a generation)
    # ----------------------
    def _create_transport(self, gen: int) -> Any:
        callbacks = TransportCallbacks(
            on_local_ice=functools.partial(self._on_local_ice, gen),
            on_connection_state=functools.partial(self._on_transport_state, gen),
            on_track=functools.partial(self._on_remote_track, gen),
        )
        return self._transport_factory(self._config.ice_servers, callbacks)

    async def _on_local_ice(self, gen: int, candidate: Dict[str, Any]) -> None:
        if self._is_current(gen):
            await self._send(protocol.ICE_CANDIDATE, protocol.make_ice(self.user_id, candidate))

    async def _on_transport_state(self, gen: int, state: str) -> None:
        if not self._is_current(gen):
            return
        status = self._session.status
        if state in ("failed", "disconnected") and status in (CallStatus.CALLING, CallStatus.CONNECTED):
            logger.warning("call transport %s status=%s", state, status.value)
            await self._fail(CONNECTION_LOST, notify_peer=self._peer_engaged())
        elif state == "connected":
            await self._log("Media connected")

    async def _on_remote_track(self, gen: int, track: Any) -> None:
        if not self._is_current(gen):
            return
        session = self._session
        old_sink = session.remote_sink
        if old_sink is not None:
            session.remote_sink = None
            try:
                await old_sink.stop()
            except Exception:
                logger.warning("call remote sink stop failed", exc_info=True)
            if not self._is_current(gen):
                return
        sink = self._sink_factory()
        session.remote_sink = sink
        try:
            await sink.start(track)
        except Exception:
            logger.warning("call remote audio playback failed", exc_info=True)
        if not self._is_current(gen) and sink.started:
            # The call ended while playback was starting.
            try:
                await sink.stop()
            except Exception:
                logger.warning("call remote sink stop failed", exc_info=True)

    # ----------------------
    # Timers
    # ----------------------
    async def _watchdog_run(self, gen: int) -> None:
        await asyncio.sleep(self._config.ring_timeout_sec)
        await self._on_watchdog(gen)

    async def _on_watchdog(self, gen: int) -> None:
        if not self._is_current(gen) or self._session.status is not CallStatus.CALLING:
            logger.debug("call watchdog stale gen=%s", gen)
            return
        logger.info("call unanswered after %ss gen=%s", self._config.ring_timeout_sec, gen)
        await self._log("No answer")
        await self._finish(notify_peer=True)

    async def _tick(self, gen: int) -> None:
        loop = asyncio.get_running_loop()
        interval = self._config.tick_interval_sec
        started = loop.time()
        while True:
            # Sleep to the next whole tick so the counter does not drift.
            next_at = started + (self._session.duration_seconds + 1) * interval
            await asyncio.sleep(max(0.0, next_at - loop.time()))
            if not self._is_current(gen) or self._session.status is not CallStatus.CONNECTED:
                return
            self._session.duration_seconds += 1
            await self._emit(self._callbacks.on_duration, self.call_duration)

    # ----------------------
    # Transitions
    # ----------------------
    def _new_session(self, status: CallStatus, **fields: Any) -> CallSession:
        self._generation += 1
        return CallSession(
            room_id=self.room_id,
            local_user_id=self.user_id,
            local_user_name=self.user_name,
            generation=self._generation,
            status=status,
            **fields,
        )

    def _begin(self, status: CallStatus, remote_id: str, remote_name: Optional[str]) -> CallSession:
        self._is_muted = False
        self._session = self._new_session(status, remote_user_id=remote_id, remote_user_name=remote_name)
        return self._session

    def _is_current(self, gen: int) -> bool:
        return self._session.generation == gen

    def _peer_engaged(self) -> bool:
        """True when the remote party believes a call is in progress."""
        session = self._session
        if session.status is CallStatus.CALLING:
            return session.offer_sent
        return session.status in (CallStatus.RINGING, CallStatus.CONNECTED)

    async def _connect(self, session: CallSession) -> None:
        if session is not self._session:
            logger.debug("call connect for stale gen=%s", session.generation)
            return
        self._cancel(self._watchdog)
        self._watchdog = None
        session.status = CallStatus.CONNECTED
        session.started_at = time.time()
        session.duration_seconds = 0
        self._ticker = asyncio.create_task(self._tick(session.generation), name=f"call-duration-{session.generation}")
        logger.info("call connected remote=%s gen=%s", session.remote_user_id, session.generation)
        await self._notify_status()
        await self._emit(self._callbacks.on_duration, self.call_duration)

    async def _fail(self, message: str, *, notify_peer: bool) -> None:
        await self._finish(notify_peer=notify_peer, error=message)

    async def _finish(self, *, notify_peer: bool, error: Optional[str] = None) -> None:
        """Terminal transition: release every handle, then land in idle or error."""
        old = self._session
        if old.status not in _ACTIVE:
            return
        self._pending = None
        self._is_muted = False
        self._cancel(self._watchdog)
        self._cancel(self._ticker)
        self._watchdog = None
        self._ticker = None

        # Swap the session before any await so late callbacks see a new generation.
        if error is None:
            self._session = self._new_session(CallStatus.ENDED)
        else:
            self._session = self._new_session(
                CallStatus.ERROR,
                remote_user_id=old.remote_user_id,
                remote_user_name=old.remote_user_name,
                last_error=error,
            )
        current = self._session

        if notify_peer:
            await self._send(protocol.CALL_END, protocol.make_end(self.user_id))
        await self._release(old)

        if error is not None:
            logger.warning("call error: %s", error)
            await self._notify_status()
            await self._emit(self._callbacks.on_error, error)
            return

        await self._notify_status()
        if self._session is current:
            current.status = CallStatus.IDLE
            await self._notify_status()

    async def _release(self, session: CallSession) -> None:
        media, transport, sink = session.media, session.transport, session.remote_sink
        session.media = session.transport = session.remote_sink = None
        if media is not None:
            try:
                media.stop()
            except Exception:
                logger.warning("call media release failed", exc_info=True)
        if sink is not None:
            try:
                await sink.stop()
            except Exception:
                logger.warning("call remote sink stop failed", exc_info=True)
        if transport is not None:
            try:
                await transport.close()
            except Exception:
                logger.warning("call transport close failed", exc_info=True)
        logger.debug("call released gen=%s", session.generation)

    def _cancel(self, task: Optional[asyncio.Task[None]]) -> None:
        # The watchdog may be the task running this very transition.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _send(self, event: str, payload: Dict[str, Any]) -> bool:
        sub = self._subscription
        if sub is None:
            logger.warning("call send skipped (channel closed) event=%s", event)
            return False
        try:
            await sub.send(event, payload)
        except Exception:
            logger.warning("call send failed event=%s", event, exc_info=True)
            return False
        return True

    async def _notify_status(self) -> None:
        await self._emit(self._callbacks.on_status, self._session.status.value)

    async def _emit(self, callback: Optional[AsyncCallback], *args: Any) -> None:
        if callback is None:
            return
        try:
            await callback(*args)
        except Exception:
            logger.exception("call callback failed")

    async def _log(self, message: str) -> None:
        await self._emit(self._callbacks.on_log, message)

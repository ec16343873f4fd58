from __future__ import annotations

import asyncio
import functools
import logging
import threading
from concurrent.futures import Future
from typing import Optional

from PySide6 import QtCore, QtWidgets

from ..cache import ResponseCache
from ..config import AppConfig
from ..net.signaling_client import SignalingCallbacks, SignalingClient
from ..rtc.audio import AudioDevice, MicrophoneCapture, RemoteAudioSink, list_audio_inputs, list_audio_outputs
from ..rtc.call_manager import CallCallbacks, CallManager
from .windows import MainWindow


logger = logging.getLogger(__name__)


class AsyncioThread:
    """Runs an asyncio loop in a background thread and schedules coroutines."""

    def __init__(self):
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if not self._loop:
            raise RuntimeError("AsyncioThread not started")
        return self._loop

    @property
    def running(self) -> bool:
        return self._loop is not None and self._loop.is_running()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        def _run() -> None:
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            self._ready.set()
            self._loop.run_forever()

        self._thread = threading.Thread(target=_run, name="asyncio-thread", daemon=True)
        self._thread.start()
        self._ready.wait(timeout=5)

    def stop(self) -> None:
        if not self._loop:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)

    def submit(self, coro) -> Future:
        return asyncio.run_coroutine_threadsafe(coro, self.loop)


class UiBridge(QtCore.QObject):
    log = QtCore.Signal(str)
    status = QtCore.Signal(str)
    connection = QtCore.Signal(str)
    call_status = QtCore.Signal(str)
    duration = QtCore.Signal(str)
    call_error = QtCore.Signal(str)
    caller = QtCore.Signal(str)
    muted = QtCore.Signal(bool)


class CallClientApp(QtCore.QObject):
    def __init__(self, cfg: AppConfig):
        super().__init__()
        self.cfg = cfg

        self.window = MainWindow()
        self.bridge = UiBridge()
        self.asyncio_thread = AsyncioThread()
        # Device enumeration is slow on some hosts; refresh on demand only.
        self.device_cache = ResponseCache(ttl_sec=300)

        self.signaling: Optional[SignalingClient] = None
        self.call_manager: Optional[CallManager] = None
        self._call_status = "idle"
        self._connected = False

        self._selected_input: Optional[AudioDevice] = None
        self._selected_output: Optional[AudioDevice] = None

        self._wire_ui()
        self._wire_bridge()
        self._init_audio_device_selectors()

        # Defaults
        self.window.server_url_edit.setText(cfg.server_url)
        self.window.room_edit.setText(cfg.room)
        self.window.user_id_edit.setText(cfg.user_id)
        self.window.name_edit.setText(cfg.name)
        self.window.target_id_edit.setText(cfg.target_id or "")
        self.window.target_name_edit.setText(cfg.target_name or "")

    def start(self) -> None:
        self.asyncio_thread.start()
        self.window.show()
        self.bridge.status.emit("Ready")
        logger.info("ui started")

    def shutdown(self) -> None:
        logger.info("ui shutdown")
        if self.asyncio_thread.running:
            fut = self.asyncio_thread.submit(self._disconnect_async())
            try:
                fut.result(timeout=3)
            except Exception:
                logger.warning("ui shutdown cleanup did not finish", exc_info=True)
        self.asyncio_thread.stop()

    def _wire_ui(self) -> None:
        self.window.connect_clicked.connect(self._on_connect_clicked)
        self.window.disconnect_clicked.connect(self._on_disconnect_clicked)
        self.window.refresh_devices_clicked.connect(self._on_refresh_devices_clicked)
        self.window.call_clicked.connect(self._on_call_clicked)
        self.window.accept_clicked.connect(self._on_accept_clicked)
        self.window.reject_clicked.connect(self._on_reject_clicked)
        self.window.hangup_clicked.connect(self._on_hangup_clicked)
        self.window.mute_clicked.connect(self._on_mute_clicked)

        self.window.mic_combo.currentIndexChanged.connect(self._on_audio_device_changed)
        self.window.speaker_combo.currentIndexChanged.connect(self._on_audio_device_changed)

    def _wire_bridge(self) -> None:
        self.bridge.log.connect(self.window.log_panel.append_log)
        self.bridge.status.connect(self.window.set_status)
        self.bridge.connection.connect(self.window.status_card.set_connection_state)
        self.bridge.call_status.connect(self._apply_call_status)
        self.bridge.duration.connect(self.window.status_card.set_duration)
        self.bridge.call_error.connect(self.window.status_card.set_error)
        self.bridge.caller.connect(self.window.status_card.set_caller)
        self.bridge.muted.connect(self.window.set_muted)

    def _init_audio_device_selectors(self) -> None:
        inputs = self.device_cache.get_or_create("audio-inputs", list_audio_inputs)
        outputs = self.device_cache.get_or_create("audio-outputs", list_audio_outputs)

        self.window.mic_combo.blockSignals(True)
        self.window.speaker_combo.blockSignals(True)
        try:
            self.window.mic_combo.clear()
            for d in inputs:
                self.window.mic_combo.addItem(d.label, userData=d)

            self.window.speaker_combo.clear()
            for d in outputs:
                self.window.speaker_combo.addItem(d.label, userData=d)

            # Default to first entry ("System default").
            if self.window.mic_combo.count() > 0:
                self.window.mic_combo.setCurrentIndex(0)
            if self.window.speaker_combo.count() > 0:
                self.window.speaker_combo.setCurrentIndex(0)
        finally:
            self.window.mic_combo.blockSignals(False)
            self.window.speaker_combo.blockSignals(False)

        self._selected_input, self._selected_output = self._get_selected_devices()

    def _get_selected_devices(self) -> tuple[Optional[AudioDevice], Optional[AudioDevice]]:
        inp = self.window.mic_combo.currentData()
        out = self.window.speaker_combo.currentData()
        return (
            inp if isinstance(inp, AudioDevice) else None,
            out if isinstance(out, AudioDevice) else None,
        )

    @QtCore.Slot()
    def _on_refresh_devices_clicked(self) -> None:
        self.device_cache.invalidate_prefix("audio-")
        self._init_audio_device_selectors()
        self.bridge.log.emit("Audio devices refreshed")

    @QtCore.Slot(int)
    def _on_audio_device_changed(self, _index: int) -> None:
        # Applies to the next call; an active call keeps its devices.
        self._selected_input, self._selected_output = self._get_selected_devices()

    @QtCore.Slot()
    def _on_connect_clicked(self) -> None:
        url = self.window.server_url_edit.text().strip()
        room = self.window.room_edit.text().strip()
        user_id = self.window.user_id_edit.text().strip()
        name = self.window.name_edit.text().strip() or user_id
        if not room or not user_id:
            self.bridge.log.emit("Room and user id are required")
            return
        self.bridge.status.emit("Connecting...")
        logger.info("ui connect clicked url=%s room=%s", url, room)
        self.asyncio_thread.submit(self._connect_async(url, room, user_id, name))

    @QtCore.Slot()
    def _on_disconnect_clicked(self) -> None:
        self.bridge.status.emit("Disconnecting...")
        logger.info("ui disconnect clicked")
        self.asyncio_thread.submit(self._disconnect_async())

    @QtCore.Slot()
    def _on_call_clicked(self) -> None:
        manager = self.call_manager
        if manager is None:
            return
        target_id = self.window.target_id_edit.text().strip()
        target_name = self.window.target_name_edit.text().strip() or None
        manager.set_target(target_id or None, target_name)
        self.asyncio_thread.submit(manager.start_call())

    @QtCore.Slot()
    def _on_accept_clicked(self) -> None:
        if self.call_manager is not None:
            self.asyncio_thread.submit(self.call_manager.accept_incoming_call())

    @QtCore.Slot()
    def _on_reject_clicked(self) -> None:
        if self.call_manager is not None:
            self.asyncio_thread.submit(self.call_manager.reject_call())

    @QtCore.Slot()
    def _on_hangup_clicked(self) -> None:
        if self.call_manager is not None:
            self.asyncio_thread.submit(self.call_manager.end_call())

    @QtCore.Slot()
    def _on_mute_clicked(self) -> None:
        if self.call_manager is not None:
            self.asyncio_thread.submit(self._toggle_mute_async())

    @QtCore.Slot(str)
    def _apply_call_status(self, status: str) -> None:
        self._call_status = status
        self.window.status_card.set_call_status(status)
        self.window.set_call_controls(status, connected=self._connected)
        if status in ("idle", "ringing", "calling"):
            self.window.status_card.set_duration("00:00")
            self.window.set_muted(False)

    # ----------------------
    # Async side (runs in asyncio thread)
    # ----------------------
    async def _connect_async(self, url: str, room: str, user_id: str, name: str) -> None:
        await self._disconnect_async()
        self.signaling = SignalingClient(
            url=url,
            callbacks=SignalingCallbacks(
                on_log=self._on_async_log,
                on_joined=self._on_joined,
                on_left=self._on_left,
                on_error=self._on_signaling_error,
            ),
        )
        await self.signaling.connect()
        if not self.signaling.is_connected:
            self.bridge.status.emit("Connection failed")
            return

        self.call_manager = CallManager(
            self.signaling,
            room_id=room,
            user_id=user_id,
            user_name=name,
            config=self.cfg.call,
            callbacks=CallCallbacks(
                on_log=self._on_async_log,
                on_status=self._on_call_status,
                on_duration=self._on_duration,
                on_error=self._on_call_error,
            ),
            capture=MicrophoneCapture(self._selected_input),
            sink_factory=functools.partial(RemoteAudioSink, output=self._selected_output),
        )
        await self.call_manager.open()
        self._connected = True
        self.bridge.connection.emit("Connected")
        self.bridge.status.emit(f"Connected as {user_id}")
        self.bridge.call_status.emit(self.call_manager.call_status.value)

    async def _disconnect_async(self) -> None:
        manager, signaling = self.call_manager, self.signaling
        self.call_manager = None
        self.signaling = None
        self._connected = False
        if manager is not None:
            await manager.close()
        if signaling is not None:
            await signaling.disconnect()
            self.bridge.connection.emit("Disconnected")
            self.bridge.status.emit("Disconnected")
            self.bridge.call_status.emit("idle")

    async def _toggle_mute_async(self) -> None:
        manager = self.call_manager
        if manager is None:
            return
        manager.toggle_mute()
        self.bridge.muted.emit(manager.is_muted)

    async def _on_async_log(self, message: str) -> None:
        self.bridge.log.emit(message)

    async def _on_call_status(self, status: str) -> None:
        self.bridge.call_status.emit(status)
        if self.call_manager is not None:
            self.bridge.caller.emit(self.call_manager.caller_name)

    async def _on_duration(self, duration: str) -> None:
        self.bridge.duration.emit(duration)

    async def _on_call_error(self, message: str) -> None:
        self.bridge.call_error.emit(message)
        self.bridge.log.emit(f"Call error: {message}")

    async def _on_joined(self, room: str) -> None:
        self.bridge.log.emit(f"Joined {room}")

    async def _on_left(self, room: str) -> None:
        self.bridge.log.emit(f"Left {room}")

    async def _on_signaling_error(self, error: str, payload: dict) -> None:
        self.bridge.log.emit(f"Error: {error} {payload}")
        self.bridge.status.emit(f"Error: {error}")


def create_qt_app() -> QtWidgets.QApplication:
    app = QtWidgets.QApplication.instance()
    if app is None:
        app = QtWidgets.QApplication([])
    return app  # type: ignore

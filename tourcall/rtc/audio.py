"""Audio helpers for aiortc.

Scope:
- Acquire exclusive microphone capture for one call, with failures
  classified as permission / missing device / generic access errors.
- Mute by substituting silence, without renegotiating the peer connection.
- Play the remote party's audio (sounddevice if possible, else ffmpeg,
  else discard).
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from enum import Enum
from fractions import Fraction
from queue import Empty, Queue
from typing import Any, Optional

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

try:
	import sounddevice as sd  # type: ignore
except (ImportError, OSError):  # pragma: no cover - PortAudio missing
	sd = None  # type: ignore


logger = logging.getLogger(__name__)


SAMPLE_RATE = 48000
BLOCK_SIZE = 960  # 20 ms at 48 kHz


class MediaErrorKind(str, Enum):
	PERMISSION_DENIED = "permission-denied"
	DEVICE_NOT_FOUND = "device-not-found"
	ACCESS_FAILED = "access-failed"


MEDIA_ERROR_MESSAGES = {
	MediaErrorKind.PERMISSION_DENIED: "Microphone permission was denied. Allow microphone access in your system settings.",
	MediaErrorKind.DEVICE_NOT_FOUND: "No microphone was found. Check that a microphone is connected.",
	MediaErrorKind.ACCESS_FAILED: "Could not access the microphone. Check your audio settings.",
}

_NOT_FOUND_MARKERS = (
	"invalid device",
	"no default input device",
	"device unavailable",
	"no such device",
	"no such file",
	"no microphone",
)
_PERMISSION_MARKERS = ("permission denied", "access denied", "not allowed")


class MediaAccessError(Exception):
	def __init__(self, kind: MediaErrorKind, message: Optional[str] = None):
		self.kind = MediaErrorKind(kind)
		self.message = message or MEDIA_ERROR_MESSAGES[self.kind]
		super().__init__(self.message)


def classify_media_error(exc: BaseException) -> MediaAccessError:
	"""Map a capture failure onto the three user-facing error kinds."""
	if isinstance(exc, MediaAccessError):
		return exc

	if isinstance(exc, PermissionError):
		kind = MediaErrorKind.PERMISSION_DENIED
	elif isinstance(exc, FileNotFoundError):
		kind = MediaErrorKind.DEVICE_NOT_FOUND
	else:
		text = str(exc).casefold()
		if any(m in text for m in _NOT_FOUND_MARKERS):
			kind = MediaErrorKind.DEVICE_NOT_FOUND
		elif any(m in text for m in _PERMISSION_MARKERS):
			kind = MediaErrorKind.PERMISSION_DENIED
		else:
			kind = MediaErrorKind.ACCESS_FAILED

	err = MediaAccessError(kind)
	err.__cause__ = exc
	return err


@dataclass(frozen=True)
class AudioDevice:
	"""A selectable audio device.

	`backend` is "sounddevice" or an ffmpeg format string (e.g. "pulse",
	"alsa"). `device` is the PortAudio index or the ffmpeg device name.
	"""

	backend: str
	device: Any
	label: str


def _is_windows() -> bool:
	return sys.platform.startswith("win")


def _list_devices(direction: str) -> list[AudioDevice]:
	devices = [AudioDevice(backend="sounddevice", device="default", label="System default")]
	if sd is None:
		return devices
	key = "max_input_channels" if direction == "input" else "max_output_channels"
	try:
		found = list(sd.query_devices())
	except Exception:
		logger.warning("audio device query failed direction=%s", direction, exc_info=True)
		return devices
	seen: set[str] = set()
	for idx, dev in enumerate(found):
		name = str(dev.get("name", "") or "").strip()
		if not name or int(dev.get(key, 0) or 0) <= 0:
			continue
		if name.casefold() in seen:
			continue
		seen.add(name.casefold())
		devices.append(AudioDevice(backend="sounddevice", device=idx, label=name))
	logger.debug("audio devices direction=%s count=%s", direction, len(devices))
	return devices


def list_audio_inputs() -> list[AudioDevice]:
	return _list_devices("input")


def list_audio_outputs() -> list[AudioDevice]:
	return _list_devices("output")


class SoundDeviceAudioTrack(MediaStreamTrack):
	"""Microphone track fed by a PortAudio raw input stream."""

	kind = "audio"

	def __init__(self, *, device: Any = None, samplerate: int = SAMPLE_RATE, channels: int = 1):
		super().__init__()
		if sd is None:
			raise MediaAccessError(MediaErrorKind.ACCESS_FAILED, "sounddevice is not available")
		self._samplerate = int(samplerate)
		self._channels = int(channels)
		self._queue: Queue[bytes] = Queue(maxsize=50)
		self._timestamp = 0
		self._time_base = Fraction(1, self._samplerate)

		def _callback(indata, frames, time, status) -> None:  # noqa: ANN001
			try:
				self._queue.put_nowait(bytes(indata))
			except Exception:
				# Drop if consumer is too slow.
				pass

		self._stream = sd.RawInputStream(
			samplerate=self._samplerate,
			channels=self._channels,
			dtype="int16",
			blocksize=BLOCK_SIZE,
			device=device,
			callback=_callback,
		)
		self._stream.start()
		logger.info("local audio using sounddevice device=%s rate=%s", device, self._samplerate)

	async def recv(self):  # type: ignore[override]
		loop = asyncio.get_running_loop()
		while True:
			if self.readyState != "live":
				raise asyncio.CancelledError
			try:
				data = await loop.run_in_executor(None, self._queue.get, True, 0.5)
			except Empty:
				continue
			samples = len(data) // (self._channels * 2)
			if samples:
				break

		arr = np.frombuffer(data, dtype=np.int16).reshape((1, samples * self._channels))
		layout = "mono" if self._channels == 1 else "stereo"
		frame = av.AudioFrame.from_ndarray(arr, format="s16", layout=layout)
		frame.sample_rate = self._samplerate
		frame.pts = self._timestamp
		frame.time_base = self._time_base
		self._timestamp += samples
		return frame

	def stop(self) -> None:  # type: ignore[override]
		try:
			if self._stream is not None:
				self._stream.stop()
				self._stream.close()
		except Exception:
			logger.debug("sounddevice stream close failed", exc_info=True)
		finally:
			self._stream = None
			super().stop()


class MutableAudioTrack(MediaStreamTrack):
	"""Pass-through track that sends silence while disabled."""

	kind = "audio"

	def __init__(self, source: MediaStreamTrack):
		super().__init__()
		self._source = source
		self.enabled = True

	async def recv(self):  # type: ignore[override]
		frame = await self._source.recv()
		if self.enabled or not isinstance(frame, av.AudioFrame):
			return frame
		for plane in frame.planes:
			plane.update(bytes(plane.buffer_size))
		return frame

	def stop(self) -> None:  # type: ignore[override]
		try:
			self._source.stop()
		finally:
			super().stop()


class LocalMediaHandle:
	"""Owns one call's microphone capture.

	`stop()` releases the device and ends every track; it is safe to call
	more than once.
	"""

	def __init__(self, track: MediaStreamTrack, *, player: Optional[MediaPlayer] = None, backend: str = ""):
		self.track = MutableAudioTrack(track)
		self.backend = backend
		self._player = player
		self._stopped = False

	@property
	def active(self) -> bool:
		return not self._stopped and self.track.readyState == "live"

	@property
	def tracks(self) -> list[MediaStreamTrack]:
		return [self.track]

	def set_enabled(self, enabled: bool) -> None:
		self.track.enabled = bool(enabled)

	def stop(self) -> None:
		if self._stopped:
			return
		self._stopped = True
		try:
			self.track.stop()
		except Exception:
			logger.warning("local audio track stop failed", exc_info=True)
		# Stopping a MediaPlayer track also shuts down its ffmpeg reader.
		self._player = None
		logger.info("local audio released backend=%s", self.backend)


def _open_player(preferred: Optional[AudioDevice]) -> LocalMediaHandle:
	attempts: list[tuple[Any, str]] = []
	if preferred is not None and preferred.backend != "sounddevice":
		attempts.append((preferred.device, preferred.backend))
	# PulseAudio is typical on desktop Linux, ALSA is the fallback.
	attempts.extend([("default", "pulse"), ("default", "alsa")])

	last_error: Optional[BaseException] = None
	for device, backend in attempts:
		try:
			player = MediaPlayer(device, format=backend)
		except Exception as e:
			logger.debug("media player open failed device=%s backend=%s err=%s", device, backend, e)
			last_error = e
			continue
		if player.audio is None:
			last_error = MediaAccessError(MediaErrorKind.DEVICE_NOT_FOUND)
			continue
		logger.info("local audio backend=%s device=%s", backend, device)
		return LocalMediaHandle(player.audio, player=player, backend=backend)

	raise classify_media_error(last_error or MediaAccessError(MediaErrorKind.DEVICE_NOT_FOUND))


def open_microphone(preferred: Optional[AudioDevice] = None) -> LocalMediaHandle:
	"""Open the microphone synchronously (blocking device probe)."""
	# Windows-first: capture via sounddevice to get real device switching.
	if _is_windows() and sd is not None:
		device = None
		if preferred is not None and preferred.backend == "sounddevice" and preferred.device != "default":
			device = preferred.device
		try:
			return LocalMediaHandle(SoundDeviceAudioTrack(device=device), backend="sounddevice")
		except Exception as e:
			raise classify_media_error(e) from e
	return _open_player(preferred)


class MicrophoneCapture:
	"""Media capture adapter used by the call manager."""

	def __init__(self, preferred_input: Optional[AudioDevice] = None):
		self.preferred_input = preferred_input

	async def acquire(self) -> LocalMediaHandle:
		loop = asyncio.get_running_loop()
		try:
			return await loop.run_in_executor(None, open_microphone, self.preferred_input)
		except MediaAccessError:
			raise
		except Exception as e:
			raise classify_media_error(e) from e


@dataclass
class RemoteAudioSink:
	"""Plays the remote party's audio track.

	If playback to the chosen device isn't supported, falls back to ffmpeg
	and finally to discarding.
	"""

	output: Optional[AudioDevice] = None
	_recorder: Optional[Any] = None
	_task: Optional[asyncio.Task[None]] = None
	_started: bool = False

	@property
	def started(self) -> bool:
		return self._started

	async def start(self, track: MediaStreamTrack) -> None:
		if self._started:
			return

		if _is_windows() and sd is not None:
			self._task = asyncio.create_task(self._pump(track), name="remote-audio-pump")
			self._started = True
			return

		recorder: Any = None
		sink = "blackhole"
		candidates: list[tuple[Any, str]] = []
		if self.output is not None and self.output.backend != "sounddevice":
			candidates.append((self.output.device, self.output.backend))
		candidates.extend([("default", "pulse"), ("default", "alsa")])
		for device, backend in candidates:
			try:
				recorder = MediaRecorder(device, format=backend)
				sink = f"{backend}:{device}"
				break
			except Exception:
				logger.debug("media recorder open failed device=%s backend=%s", device, backend)
		if recorder is None:
			recorder = MediaBlackhole()

		logger.info("remote audio sink=%s track_kind=%s", sink, getattr(track, "kind", None))
		recorder.addTrack(track)
		await recorder.start()
		self._recorder = recorder
		self._started = True

	async def _pump(self, track: MediaStreamTrack) -> None:
		device = None
		if self.output is not None and self.output.backend == "sounddevice" and self.output.device != "default":
			device = self.output.device

		stream = sd.RawOutputStream(
			samplerate=SAMPLE_RATE,
			channels=1,
			dtype="int16",
			blocksize=BLOCK_SIZE,
			device=device,
		)
		stream.start()
		logger.info("remote audio sink=sounddevice:%s", device if device is not None else "default")
		try:
			while True:
				frame = await track.recv()
				if not isinstance(frame, av.AudioFrame):
					continue
				arr = frame.to_ndarray()
				# Shape can be (channels, samples) for planar.
				if arr.ndim == 2 and arr.shape[0] in (1, 2) and arr.shape[0] < arr.shape[1]:
					arr = arr.T
				if arr.ndim == 2 and arr.shape[1] > 1:
					arr = arr.mean(axis=1, keepdims=True)
				if arr.dtype != np.int16:
					arr = np.clip(arr, -32768, 32767).astype(np.int16, copy=False)
				stream.write(arr.tobytes(order="C"))
		except asyncio.CancelledError:
			pass
		except Exception as e:
			logger.info("remote audio pump stopped: %s", e)
		finally:
			try:
				stream.stop()
				stream.close()
			except Exception:
				logger.debug("sounddevice output close failed", exc_info=True)

	async def stop(self) -> None:
		if self._task is not None:
			self._task.cancel()
			try:
				await self._task
			except asyncio.CancelledError:
				pass
			self._task = None
		recorder = self._recorder
		self._recorder = None
		self._started = False
		if recorder is not None:
			await recorder.stop()

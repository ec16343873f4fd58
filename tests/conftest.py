"""Shared fakes for the call manager tests."""

import asyncio

import pytest

from local_hub import LocalBroadcastHub
from tourcall.config import CallConfig
from tourcall.rtc.call_manager import CallCallbacks, CallManager


class FakeTrack:
    kind = "audio"

    def __init__(self):
        self.readyState = "live"

    def stop(self):
        self.readyState = "ended"


class FakeMedia:
    """Stands in for LocalMediaHandle."""

    def __init__(self):
        self.track = FakeTrack()
        self.enabled = True
        self.stop_calls = 0

    @property
    def active(self):
        return self.track.readyState == "live"

    def set_enabled(self, enabled):
        self.enabled = enabled

    def stop(self):
        self.stop_calls += 1
        self.track.stop()


class FakeCapture:
    def __init__(self, error=None, gate=None):
        self.error = error
        self.gate = gate
        self.handles = []

    async def acquire(self):
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        media = FakeMedia()
        self.handles.append(media)
        return media


class FakeTransport:
    def __init__(self, ice_servers, callbacks):
        self.ice_servers = tuple(ice_servers)
        self.callbacks = callbacks
        self.local_tracks = []
        self.remote_description = None
        self.candidates = []
        self.closed = False
        self.fail_remote = False

    def add_local_track(self, track):
        self.local_tracks.append(track)

    async def create_offer(self):
        return {"type": "offer", "sdp": "v=0 offer"}

    async def create_answer(self):
        return {"type": "answer", "sdp": "v=0 answer"}

    async def set_remote_description(self, description):
        if self.fail_remote:
            raise ValueError("bad sdp")
        self.remote_description = description

    async def add_ice_candidate(self, candidate):
        if not isinstance(candidate, dict) or not candidate.get("candidate"):
            raise ValueError("missing candidate")
        self.candidates.append(candidate)

    async def close(self):
        self.closed = True

    async def emit_state(self, state):
        await self.callbacks.on_connection_state(state)


class FakeTransportFactory:
    def __init__(self):
        self.created = []

    def __call__(self, ice_servers, callbacks):
        transport = FakeTransport(ice_servers, callbacks)
        self.created.append(transport)
        return transport


class FakeSink:
    """Stands in for RemoteAudioSink."""

    def __init__(self, fail_stop=False):
        self.track = None
        self.started = False
        self.stop_calls = 0
        self.fail_stop = fail_stop

    async def start(self, track):
        self.track = track
        self.started = True

    async def stop(self):
        self.stop_calls += 1
        self.started = False
        if self.fail_stop:
            raise RuntimeError("output device gone")


class FakeSinkFactory:
    def __init__(self, fail_stop=False):
        self.fail_stop = fail_stop
        self.created = []

    def __call__(self):
        sink = FakeSink(fail_stop=self.fail_stop)
        self.created.append(sink)
        return sink


class Recorder:
    """Collects CallCallbacks invocations."""

    def __init__(self):
        self.statuses = []
        self.durations = []
        self.errors = []
        self.logs = []

    def callbacks(self):
        async def on_status(status):
            self.statuses.append(status)

        async def on_duration(duration):
            self.durations.append(duration)

        async def on_error(message):
            self.errors.append(message)

        async def on_log(message):
            self.logs.append(message)

        return CallCallbacks(on_log=on_log, on_status=on_status, on_duration=on_duration, on_error=on_error)


class Party:
    def __init__(self, manager, capture, transports, recorder, sinks):
        self.manager = manager
        self.capture = capture
        self.transports = transports
        self.recorder = recorder
        self.sinks = sinks

    @property
    def transport(self):
        return self.transports.created[-1] if self.transports.created else None

    @property
    def media(self):
        return self.capture.handles[-1] if self.capture.handles else None


@pytest.fixture
def hub():
    return LocalBroadcastHub()


@pytest.fixture
def fast_config():
    return CallConfig(ring_timeout_sec=0.2, tick_interval_sec=0.05)


@pytest.fixture
def make_party(hub, fast_config):
    def _make(user_id, user_name, room="r1", capture=None, config=None, sinks=None):
        capture = capture or FakeCapture()
        sinks = sinks or FakeSinkFactory()
        transports = FakeTransportFactory()
        recorder = Recorder()
        manager = CallManager(
            hub,
            room_id=room,
            user_id=user_id,
            user_name=user_name,
            config=config or fast_config,
            callbacks=recorder.callbacks(),
            capture=capture,
            transport_factory=transports,
            sink_factory=sinks,
        )
        return Party(manager, capture, transports, recorder, sinks)

    return _make


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)

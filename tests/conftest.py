from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from live_channel import ChannelError
from settings import EngineSettings


class FakeSink:
    """Output clock the test moves by hand."""

    def __init__(self) -> None:
        self.now = 0.0
        self.scheduled: list = []
        self.stopped: list = []

    def current_time(self) -> float:
        return self.now

    def schedule(self, unit) -> None:
        self.scheduled.append(unit)

    def stop(self, unit) -> None:
        self.stopped.append(unit)


class FakeAudio(FakeSink):
    def __init__(self, fail: bool = False) -> None:
        super().__init__()
        self.fail = fail
        self.on_block: Callable[[bytes], None] | None = None
        self.on_unit_ended = None
        self.started = False
        self.shutdown_calls = 0

    def initialize(self, loop, on_block, on_unit_ended) -> None:
        if self.fail:
            raise OSError("no microphone")
        self.on_block = on_block
        self.on_unit_ended = on_unit_ended

    def start(self) -> None:
        self.started = True

    def shutdown(self) -> None:
        self.shutdown_calls += 1


class FakeCamera:
    def __init__(self) -> None:
        self.opened = False
        self.release_calls = 0

    def open(self) -> None:
        self.opened = True

    def read_frame(self):
        return None

    def release(self) -> None:
        self.release_calls += 1


class FakeChannel:
    """In-memory live channel. push() feeds messages; None closes; an exception fails."""

    def __init__(self, connect_error: Exception | None = None, hang: bool = False, delay: float = 0.0) -> None:
        self.connect_error = connect_error
        self.hang = hang
        self.delay = delay
        self.socket_open = False
        self.setup: dict | None = None
        self.connect_cancelled = False
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.audio: list[bytes] = []
        self.images: list[bytes] = []
        self.tool_responses: list[tuple[str, str, dict]] = []
        self.close_calls = 0
        self.close_reason = ""

    async def connect(self, setup_message: dict) -> None:
        self.setup = setup_message
        try:
            if self.hang:
                await asyncio.Event().wait()
            elif self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.connect_cancelled = True
            raise
        if self.connect_error is not None:
            raise self.connect_error
        self.socket_open = True

    def push(self, message: Any) -> None:
        self.inbox.put_nowait(message)

    async def messages(self):
        while True:
            message = await self.inbox.get()
            if message is None:
                return
            if isinstance(message, Exception):
                raise ChannelError(str(message))
            yield message

    async def send_audio(self, pcm: bytes, mime_type: str = "") -> None:
        self.audio.append(pcm)

    async def send_image(self, jpeg: bytes, mime_type: str = "") -> None:
        self.images.append(jpeg)

    async def send_tool_response(self, call_id: str, name: str, response: dict) -> None:
        self.tool_responses.append((call_id, name, response))

    async def close(self) -> None:
        self.close_calls += 1
        self.socket_open = False


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(api_key="test-key", cue_duration=0.05)


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def fakes():
    """Factories that remember every device and channel they hand out."""

    class Fakes:
        def __init__(self) -> None:
            self.audios: list[FakeAudio] = []
            self.cameras: list[FakeCamera] = []
            self.channels: list[FakeChannel] = []
            self.audio_fails = False
            self.channel_kwargs: dict = {}

        def audio(self, _settings) -> FakeAudio:
            self.audios.append(FakeAudio(fail=self.audio_fails))
            return self.audios[-1]

        def camera(self, _settings) -> FakeCamera:
            self.cameras.append(FakeCamera())
            return self.cameras[-1]

        def channel(self, _settings) -> FakeChannel:
            self.channels.append(FakeChannel(**self.channel_kwargs))
            return self.channels[-1]

    return Fakes()


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def until():
    return wait_until

from __future__ import annotations

import asyncio
import base64

import numpy as np
import pytest

from live_channel import ChannelError
from session_controller import (
    SessionController,
    SessionState,
    build_system_instruction,
    format_elapsed,
)
from settings import SessionConfig
from tool_bridge import VISUAL_FEEDBACK_TOOL
from transcript import ConversationTurn, Speaker

CONFIG = SessionConfig.create("Backend Engineer", "Senior", ["System Design", "APIs"], company="Acme")


def audio_message(samples: int = 2400) -> dict:
    pcm = np.zeros(samples, dtype="<i2").tobytes()
    data = base64.b64encode(pcm).decode("ascii")
    return {"serverContent": {"modelTurn": {"parts": [{"inlineData": {"mimeType": "audio/pcm;rate=24000", "data": data}}]}}}


class Events:
    def __init__(self) -> None:
        self.states: list[SessionState] = []
        self.turns: list[ConversationTurn] = []
        self.partials: list[tuple[Speaker, str]] = []
        self.cues: list = []
        self.errors: list[str] = []
        self.interrupted = 0

    def callbacks(self) -> dict:
        return {
            "on_state_change": self.states.append,
            "on_turn": self.turns.append,
            "on_partial": lambda speaker, text: self.partials.append((speaker, text)),
            "on_visual_cue": self.cues.append,
            "on_error": self.errors.append,
            "on_interrupted": self._interrupted,
        }

    def _interrupted(self) -> None:
        self.interrupted += 1


def make_controller(settings, fakes) -> tuple[SessionController, Events]:
    events = Events()
    controller = SessionController(
        settings,
        events.callbacks(),
        audio_factory=fakes.audio,
        camera_factory=fakes.camera,
        channel_factory=fakes.channel,
    )
    return controller, events


def test_format_elapsed() -> None:
    assert format_elapsed(0) == "00:00"
    assert format_elapsed(75) == "01:15"
    assert format_elapsed(3600) == "60:00"


def test_system_instruction_mentions_role_topics_and_tool() -> None:
    text = build_system_instruction(CONFIG)

    assert "Senior Backend Engineer position at Acme" in text
    assert "  - APIs\n  - System Design" in text
    assert VISUAL_FEEDBACK_TOOL in text


@pytest.mark.asyncio
async def test_start_opens_session(settings, fakes) -> None:
    controller, events = make_controller(settings, fakes)

    assert await controller.start(CONFIG)

    assert controller.state is SessionState.OPEN
    assert events.states == [SessionState.ACQUIRING, SessionState.OPEN]
    assert fakes.audios[0].started
    assert fakes.cameras[0].opened
    setup = fakes.channels[0].setup["setup"]
    assert setup["tools"][0]["functionDeclarations"][0]["name"] == VISUAL_FEEDBACK_TOOL
    assert "Backend Engineer" in setup["systemInstruction"]["parts"][0]["text"]

    await controller.teardown()


@pytest.mark.asyncio
async def test_transcripts_become_turns(settings, fakes, until) -> None:
    controller, events = make_controller(settings, fakes)
    await controller.start(CONFIG)
    channel = fakes.channels[0]

    channel.push({"serverContent": {"outputTranscription": {"text": "Tell me about"}}})
    channel.push({"serverContent": {"outputTranscription": {"text": " yourself."}}})
    channel.push({"serverContent": {"inputTranscription": {"text": "I build APIs."}, "turnComplete": True}})
    await until(lambda: len(controller.history) == 2)

    assert controller.history == (
        ConversationTurn(Speaker.USER, "I build APIs."),
        ConversationTurn(Speaker.AGENT, "Tell me about yourself."),
    )
    assert events.turns == list(controller.history)
    assert (Speaker.AGENT, "Tell me about yourself.") in events.partials

    await controller.teardown()


@pytest.mark.asyncio
async def test_tool_call_is_acknowledged_and_cue_shown(settings, fakes, until) -> None:
    controller, events = make_controller(settings, fakes)
    await controller.start(CONFIG)
    channel = fakes.channels[0]

    channel.push({"toolCall": {"functionCalls": [{
        "id": "call-7",
        "name": VISUAL_FEEDBACK_TOOL,
        "args": {"cue": "Good eye contact", "sentiment": "positive"},
    }]}})
    await until(lambda: channel.tool_responses)

    assert channel.tool_responses == [("call-7", VISUAL_FEEDBACK_TOOL, {"result": "ok"})]
    assert events.cues[0].cue == "Good eye contact"
    assert controller.current_cue is events.cues[0]

    await until(lambda: controller.current_cue is None)
    await controller.teardown()


@pytest.mark.asyncio
async def test_interruption_cancels_playback(settings, fakes, until) -> None:
    controller, events = make_controller(settings, fakes)
    await controller.start(CONFIG)
    channel, audio = fakes.channels[0], fakes.audios[0]

    channel.push(audio_message())
    channel.push(audio_message())
    channel.push({"serverContent": {"outputTranscription": {"text": "As I was say"}}})
    channel.push({"serverContent": {"inputTranscription": {"text": "Sorry"}}})
    await until(lambda: len(audio.scheduled) == 2 and controller.scheduler.next_time > 0)
    audio.now = 0.05

    channel.push({"serverContent": {"interrupted": True}})
    await until(lambda: events.interrupted == 1)

    assert audio.stopped == audio.scheduled
    assert not controller.scheduler.is_playing
    assert controller.scheduler.next_time == pytest.approx(0.05)

    channel.push({"serverContent": {"turnComplete": True}})
    await until(lambda: controller.history)
    assert controller.history == (ConversationTurn(Speaker.USER, "Sorry"),)

    await controller.teardown()


@pytest.mark.asyncio
async def test_mic_blocks_flow_unless_muted(settings, fakes, until) -> None:
    controller, _ = make_controller(settings, fakes)
    await controller.start(CONFIG)
    channel, audio = fakes.channels[0], fakes.audios[0]

    audio.on_block(b"\x01\x00\x02\x00")
    await until(lambda: channel.audio)

    assert controller.toggle_mute() is True
    audio.on_block(b"\x03\x00")
    await asyncio.sleep(0.02)

    assert channel.audio == [b"\x01\x00\x02\x00"]
    assert controller.capture.audio_blocks_dropped == 1

    await controller.teardown()


@pytest.mark.asyncio
async def test_finish_returns_summary_and_closes(settings, fakes) -> None:
    controller, events = make_controller(settings, fakes)
    await controller.start(CONFIG)
    controller._seconds_elapsed = 75

    summary = await controller.finish()

    assert summary.duration == "01:15"
    assert summary.turns == ()
    assert controller.state is SessionState.CLOSED
    assert events.states[-2:] == [SessionState.CLOSING, SessionState.CLOSED]
    assert fakes.audios[0].shutdown_calls == 1
    assert fakes.cameras[0].release_calls == 1
    assert fakes.channels[0].close_calls == 1


@pytest.mark.asyncio
async def test_teardown_is_idempotent(settings, fakes) -> None:
    controller, events = make_controller(settings, fakes)
    await controller.teardown()
    assert controller.state is SessionState.IDLE

    await controller.start(CONFIG)
    await controller.teardown()
    await controller.teardown()

    assert controller.state is SessionState.CLOSED
    assert events.states.count(SessionState.CLOSED) == 1
    assert fakes.channels[0].close_calls == 1
    assert fakes.audios[0].shutdown_calls == 1


@pytest.mark.asyncio
async def test_device_failure_cancels_pending_connect(settings, fakes) -> None:
    fakes.audio_fails = True
    fakes.channel_kwargs = {"hang": True}
    controller, events = make_controller(settings, fakes)

    assert not await controller.start(CONFIG)

    assert controller.state is SessionState.ERROR
    assert fakes.channels[0].connect_cancelled
    assert fakes.channels[0].close_calls == 1
    assert events.errors and events.errors[0].startswith("Device acquisition failed")
    assert "no microphone" in controller.error_message


@pytest.mark.asyncio
async def test_channel_setup_failure_releases_devices(settings, fakes) -> None:
    fakes.channel_kwargs = {"connect_error": ChannelError("401 unauthorized")}
    controller, events = make_controller(settings, fakes)

    assert not await controller.start(CONFIG)

    assert controller.state is SessionState.ERROR
    assert events.errors == ["Live channel failed: 401 unauthorized"]
    assert fakes.audios[0].shutdown_calls == 1
    assert fakes.cameras[0].release_calls == 1
    assert not fakes.audios[0].started


@pytest.mark.asyncio
async def test_remote_failure_moves_to_error(settings, fakes, until) -> None:
    controller, events = make_controller(settings, fakes)
    await controller.start(CONFIG)

    fakes.channels[0].push(ConnectionResetError("reset by peer"))
    await until(lambda: controller.state is SessionState.ERROR)

    assert events.errors == ["Live channel failed: reset by peer"]
    assert fakes.audios[0].shutdown_calls == 1

    await controller.teardown()
    assert controller.state is SessionState.ERROR


@pytest.mark.asyncio
async def test_remote_close_ends_session(settings, fakes, until) -> None:
    controller, events = make_controller(settings, fakes)
    await controller.start(CONFIG)

    fakes.channels[0].push(None)
    await until(lambda: controller.state is SessionState.CLOSED)

    assert events.errors == []
    assert fakes.channels[0].close_calls == 1


@pytest.mark.asyncio
async def test_restart_begins_with_fresh_history(settings, fakes, until) -> None:
    controller, _ = make_controller(settings, fakes)
    await controller.start(CONFIG)
    fakes.channels[0].push({"serverContent": {"inputTranscription": {"text": "First"}, "turnComplete": True}})
    await until(lambda: controller.history)

    assert await controller.start(CONFIG)

    assert controller.history == ()
    assert fakes.channels[0].close_calls == 1
    assert len(fakes.channels) == 2

    await controller.finish()


@pytest.mark.asyncio
async def test_unexpected_connect_error_is_contained(settings, fakes) -> None:
    fakes.channel_kwargs = {"connect_error": ValueError("Expecting value")}
    controller, events = make_controller(settings, fakes)

    assert not await controller.start(CONFIG)

    assert controller.state is SessionState.ERROR
    assert events.errors == ["Live channel failed: Expecting value"]
    assert fakes.audios[0].shutdown_calls == 1
    assert fakes.cameras[0].release_calls == 1
    assert fakes.channels[0].close_calls == 1


@pytest.mark.asyncio
async def test_teardown_while_acquiring_cancels_connect(settings, fakes) -> None:
    fakes.channel_kwargs = {"delay": 0.1}
    controller, events = make_controller(settings, fakes)

    starting = asyncio.create_task(controller.start(CONFIG))
    await asyncio.sleep(0.02)
    await controller.teardown()

    assert await starting is False
    channel = fakes.channels[0]
    assert controller.state is SessionState.CLOSED
    assert channel.connect_cancelled
    assert not channel.socket_open
    assert channel.close_calls == 1
    assert fakes.audios[0].shutdown_calls >= 1
    assert fakes.cameras[0].release_calls >= 1
    assert not fakes.audios[0].started
    assert SessionState.OPEN not in events.states

    await asyncio.sleep(0.12)
    assert not channel.socket_open


@pytest.mark.asyncio
async def test_restart_after_error_reacquires_everything(settings, fakes, until) -> None:
    controller, _ = make_controller(settings, fakes)
    await controller.start(CONFIG)
    fakes.channels[0].push({"serverContent": {"inputTranscription": {"text": "Hello"}, "turnComplete": True}})
    await until(lambda: controller.history)
    fakes.channels[0].push(ConnectionResetError("reset by peer"))
    await until(lambda: controller.state is SessionState.ERROR)

    assert await controller.start(CONFIG)

    assert controller.state is SessionState.OPEN
    assert controller.history == ()
    assert controller.error_message is None
    assert len(fakes.channels) == 2 and len(fakes.audios) == 2 and len(fakes.cameras) == 2
    assert fakes.channels[0].close_calls == 1
    assert fakes.audios[0].shutdown_calls == 1
    assert fakes.cameras[0].release_calls == 1
    assert fakes.audios[1].started

    await controller.finish()
    assert fakes.channels[1].close_calls == 1


@pytest.mark.asyncio
async def test_block_captured_while_muted_is_not_sent_after_unmute(settings, fakes) -> None:
    controller, _ = make_controller(settings, fakes)
    await controller.start(CONFIG)
    channel, audio = fakes.channels[0], fakes.audios[0]

    controller.toggle_mute()
    audio.on_block(b"\x01\x00")
    controller.toggle_mute()
    audio.on_block(b"\x02\x00")
    await asyncio.sleep(0.02)

    assert channel.audio == [b"\x02\x00"]
    assert controller.capture.audio_blocks_dropped == 1

    await controller.teardown()

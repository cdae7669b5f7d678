"""
Session Controller
===================
Owns one live interview session end to end:
  - acquires microphone + camera and opens the live channel (concurrently)
  - starts the capture producers and the inbound consumers once ready
  - tears everything down on finish, remote close, or failure

Threading model: everything runs on one asyncio event loop. Hardware
callbacks (mic blocks, playback-ended) arrive from PyAudio's thread via
call_soon_threadsafe; they, the frame timer and the channel receiver all
post into a single event queue drained by one consumer task, so events
are handled one at a time in arrival order and no locks are needed.

Lifecycle:

    IDLE -> ACQUIRING -> OPEN -> CLOSING -> CLOSED
                 \\          \\
                  +-> ERROR <-+
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from audio_manager import AudioManager
from camera_manager import CameraManager
from capture_encoder import CaptureEncoder, OutboundFrame
from event_demux import ChannelClosed, ChannelFailed, EventDemultiplexer, parse_server_message
from live_channel import ChannelError, LiveChannel, build_setup_message
from playback_scheduler import PlaybackScheduler, PlaybackUnit
from settings import EngineSettings, SessionConfig
from tool_bridge import (
    VISUAL_FEEDBACK_DECLARATION,
    VISUAL_FEEDBACK_TOOL,
    CueBoard,
    ToolCallBridge,
    VisualCue,
)
from transcript import ConversationTurn, Speaker, TranscriptAggregator

logger = logging.getLogger(__name__)


# ─── Session State ────────────────────────────────────────────────────────────

class SessionState(Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    ERROR = "error"


class SessionError(Exception):
    pass


class DeviceAcquisitionError(SessionError):
    pass


@dataclass(frozen=True)
class SessionSummary:
    turns: tuple[ConversationTurn, ...]
    duration: str            # MM:SS
    seconds: int = 0


def format_elapsed(total_seconds: int) -> str:
    mins, secs = divmod(max(0, int(total_seconds)), 60)
    return f"{mins:02d}:{secs:02d}"


# ─── System Instruction Builder ───────────────────────────────────────────────

def build_system_instruction(config: SessionConfig) -> str:
    company = f" at {config.company}" if config.company else ""
    topics = config.sorted_topics()
    focus = "\n".join(f"  - {t}" for t in topics) if topics else "  - General role fundamentals"
    return f"""You are a high-end AI interviewer conducting a voice-driven, multimodal mock interview for a {config.seniority.value} {config.role} position{company}.

FOCUS TOPICS:
{focus}

GUIDELINES:
1. Use natural, conversational speech. Ask ONE question at a time.
2. Ground your follow-up questions in what the candidate just said.
3. Cover the focus topics above; calibrate depth to the {config.seniority.value} level.
4. Watch the camera feed for eye contact, posture and confidence. When you notice something worth mentioning, call "{VISUAL_FEEDBACK_TOOL}" with a short cue and a sentiment of "positive", "neutral", or "constructive". Never read these cues aloud.
5. Be fair but keep standard corporate interview rigor.
"""


# ─── Internal Loop Events ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class MicBlock:
    data: bytes
    muted: bool = False      # mute state at capture time


@dataclass(frozen=True)
class FrameTick:
    pass


@dataclass(frozen=True)
class PlaybackEnded:
    unit: PlaybackUnit


@dataclass(frozen=True)
class ToolResponse:
    call_id: str
    name: str
    response: dict = field(default_factory=dict)


# ─── Controller ───────────────────────────────────────────────────────────────

class SessionController:
    """
    callbacks = {
        'on_state_change': fn(SessionState),
        'on_partial':      fn(Speaker, str),        # live captions
        'on_turn':         fn(ConversationTurn),
        'on_interrupted':  fn(),
        'on_visual_cue':   fn(VisualCue),
        'on_cue_cleared':  fn(),
        'on_tick':         fn(str),                 # elapsed MM:SS
        'on_error':        fn(str),
    }
    """

    def __init__(
        self,
        settings: EngineSettings,
        callbacks: Optional[dict] = None,
        *,
        audio_factory: Callable[[EngineSettings], AudioManager] = None,
        camera_factory: Callable[[EngineSettings], CameraManager] = None,
        channel_factory: Callable[[EngineSettings], LiveChannel] = None,
    ):
        self.settings = settings
        self.cbs = callbacks or {}
        self._audio_factory = audio_factory or (
            lambda s: AudioManager(s.input_sample_rate, s.output_sample_rate, s.mic_block_size)
        )
        self._camera_factory = camera_factory or (
            lambda s: CameraManager(width=s.camera_width, height=s.camera_height)
        )
        self._channel_factory = channel_factory or (lambda s: LiveChannel(s.api_key))

        self.state = SessionState.IDLE
        self.error_message: Optional[str] = None
        self.config: Optional[SessionConfig] = None
        self._muted = False
        self._seconds_elapsed = 0

        self._aggregator = TranscriptAggregator()
        self._audio = None
        self._camera = None
        self._channel = None
        self._scheduler: Optional[PlaybackScheduler] = None
        self._capture: Optional[CaptureEncoder] = None
        self._cues: Optional[CueBoard] = None
        self._tools: Optional[ToolCallBridge] = None
        self._demux: Optional[EventDemultiplexer] = None
        self._events: Optional[asyncio.Queue] = None
        self._outbound: Optional[asyncio.Queue] = None
        self._tasks: list[asyncio.Task] = []
        self._channel_task: Optional[asyncio.Task] = None
        self._generation = 0

    # ── Public API ────────────────────────────────────────────────────────────

    @property
    def history(self) -> tuple[ConversationTurn, ...]:
        return self._aggregator.history

    @property
    def elapsed(self) -> str:
        return format_elapsed(self._seconds_elapsed)

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def scheduler(self) -> Optional[PlaybackScheduler]:
        return self._scheduler

    @property
    def capture(self) -> Optional[CaptureEncoder]:
        return self._capture

    @property
    def current_cue(self) -> Optional[VisualCue]:
        return self._cues.current if self._cues else None

    async def start(self, config: SessionConfig) -> bool:
        """Open a new session. Returns True once OPEN, False on failure."""
        await self.teardown()

        loop = asyncio.get_running_loop()
        self._generation += 1
        generation = self._generation
        self.config = config
        self.error_message = None
        self._seconds_elapsed = 0
        self._aggregator = TranscriptAggregator()
        self._events = asyncio.Queue()
        self._outbound = asyncio.Queue()
        self._transition(SessionState.ACQUIRING)

        self._audio = self._audio_factory(self.settings)
        self._camera = self._camera_factory(self.settings)
        self._channel = self._channel_factory(self.settings)
        self._scheduler = PlaybackScheduler(self._audio, self.settings.output_sample_rate)
        self._capture = CaptureEncoder(self._send_frame, self.settings, grab_frame=self._camera.read_frame)
        self._capture.muted = self._muted
        self._cues = CueBoard(
            loop,
            on_cue=lambda cue: self._emit("on_visual_cue", cue),
            on_cleared=lambda: self._emit("on_cue_cleared"),
            duration=self.settings.cue_duration,
        )
        self._tools = ToolCallBridge(
            self._respond_tool,
            {VISUAL_FEEDBACK_TOOL: self._cues.handle_tool_args},
        )
        self._demux = EventDemultiplexer({
            "on_tool_invocation": self._tools.handle,
            "on_delta": self._on_delta,
            "on_turn_boundary": self._on_turn_boundary,
            "on_interruption": self._on_interruption,
            "on_audio": self._scheduler.enqueue,
        })

        setup = build_setup_message(
            self.settings,
            build_system_instruction(config),
            [VISUAL_FEEDBACK_DECLARATION],
        )

        def superseded() -> bool:
            return self._generation != generation or self.state is not SessionState.ACQUIRING

        # Devices and channel are acquired concurrently
        audio, camera = self._audio, self._camera
        channel_task = self._channel_task = loop.create_task(self._channel.connect(setup))
        try:
            await asyncio.to_thread(self._acquire_devices, audio, camera, loop, self._events)
        except Exception as e:
            if superseded():
                self._release_devices(audio, camera)
                return False
            await self._fail(f"Device acquisition failed: {e}")
            return False

        if superseded():
            # torn down while the worker thread was still opening devices
            self._release_devices(audio, camera)
            return False

        await asyncio.wait({channel_task})
        if superseded():
            return False
        if channel_task.cancelled():
            await self._fail("Live channel failed: connect cancelled")
            return False
        error = channel_task.exception()
        if error is not None:
            await self._fail(f"Live channel failed: {error}")
            return False

        self._channel_task = None
        self._open()
        return True

    async def finish(self) -> SessionSummary:
        """Return the turn history and elapsed time, then close the session."""
        summary = SessionSummary(
            turns=self._aggregator.history,
            duration=format_elapsed(self._seconds_elapsed),
            seconds=self._seconds_elapsed,
        )
        logger.info(f"Session finished: {len(summary.turns)} turns in {summary.duration}")
        await self.teardown()
        return summary

    def toggle_mute(self) -> bool:
        """Flip the microphone mute. Only the capture path is affected."""
        self._muted = not self._muted
        if self._capture is not None:
            self._capture.muted = self._muted
        logger.info("Microphone muted" if self._muted else "Microphone unmuted")
        return self._muted

    async def teardown(self):
        """Stop everything the session owns. Safe to call any number of times."""
        if self.state in (SessionState.ACQUIRING, SessionState.OPEN):
            self._transition(SessionState.CLOSING)
        await self._release()
        if self.state is SessionState.CLOSING:
            self._transition(SessionState.CLOSED)

    # ── Lifecycle Internals ───────────────────────────────────────────────────

    def _acquire_devices(self, audio, camera, loop: asyncio.AbstractEventLoop, events: asyncio.Queue):
        """Runs in a worker thread. Posts bind to this session's queue only."""
        try:
            audio.initialize(
                loop,
                on_block=lambda data: events.put_nowait(MicBlock(data, self._muted)),
                on_unit_ended=lambda unit: events.put_nowait(PlaybackEnded(unit)),
            )
            camera.open()
        except Exception as e:
            raise DeviceAcquisitionError(str(e)) from e

    def _open(self):
        self._transition(SessionState.OPEN)
        self._audio.start()
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._consume_events(), name="session-consumer"),
            loop.create_task(self._receive_loop(), name="session-receiver"),
            loop.create_task(self._send_loop(), name="session-sender"),
            loop.create_task(self._frame_timer(), name="session-frame-timer"),
            loop.create_task(self._elapsed_timer(), name="session-elapsed-timer"),
        ]

    async def _fail(self, reason: str):
        logger.error(reason)
        self.error_message = reason
        await self._release()
        self._transition(SessionState.ERROR)
        self._emit("on_error", reason)

    async def _release(self):
        # Timers and loops first, so nothing produces while we release hardware
        current = asyncio.current_task()
        tasks, self._tasks = self._tasks, []
        connecting, self._channel_task = self._channel_task, None
        if connecting is not None:
            tasks.append(connecting)
        others = [t for t in tasks if t is not current and not t.done()]
        for task in others:
            task.cancel()
        if others:
            await asyncio.gather(*others, return_exceptions=True)

        if self._capture is not None:
            self._capture.stop()

        audio, self._audio = self._audio, None
        camera, self._camera = self._camera, None
        self._release_devices(audio, camera)

        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.close()

        if self._scheduler is not None:
            self._scheduler.cancel_all()
        if self._cues is not None:
            self._cues.clear()

    @staticmethod
    def _release_devices(audio, camera):
        if audio is not None:
            try:
                audio.shutdown()
            except Exception as e:
                logger.warning(f"Audio shutdown failed: {e}")
        if camera is not None:
            try:
                camera.release()
            except Exception as e:
                logger.warning(f"Camera release failed: {e}")

    def _transition(self, new_state: SessionState):
        if new_state is self.state:
            return
        logger.info(f"Session {self.state.name} -> {new_state.name}")
        self.state = new_state
        self._emit("on_state_change", new_state)

    def _emit(self, name: str, *args):
        try:
            self.cbs.get(name, lambda *a: None)(*args)
        except Exception as e:
            logger.error(f"Callback {name} raised: {e}")

    # ── Internal Loops ────────────────────────────────────────────────────────

    async def _consume_events(self):
        """Single consumer: every event is handled here, in arrival order."""
        while self.state is SessionState.OPEN:
            event = await self._events.get()
            if isinstance(event, ChannelFailed):
                await self._fail(f"Live channel failed: {event.reason}")
                return
            if isinstance(event, ChannelClosed):
                logger.info(f"Live channel closed by remote {event.reason}".rstrip())
                await self.teardown()
                return
            try:
                self._handle_event(event)
            except Exception as e:
                logger.exception(f"Error handling {type(event).__name__}: {e}")

    def _handle_event(self, event):
        if isinstance(event, MicBlock):
            self._capture.on_audio_block(event.data, event.muted)
        elif isinstance(event, FrameTick):
            self._capture.on_frame_tick()
        elif isinstance(event, PlaybackEnded):
            self._scheduler.on_unit_ended(event.unit)
        else:
            self._demux.dispatch(event)

    async def _receive_loop(self):
        events = self._events
        try:
            async for message in self._channel.messages():
                for event in parse_server_message(message):
                    events.put_nowait(event)
        except ChannelError as e:
            events.put_nowait(ChannelFailed(str(e) or "connection lost"))
        except Exception as e:
            events.put_nowait(ChannelFailed(f"{type(e).__name__}: {e}"))
        else:
            events.put_nowait(ChannelClosed(getattr(self._channel, "close_reason", "")))

    async def _send_loop(self):
        """Drain outbound frames in order; producers never wait on this."""
        while True:
            item = await self._outbound.get()
            try:
                if isinstance(item, ToolResponse):
                    await self._channel.send_tool_response(item.call_id, item.name, item.response)
                elif item.kind == "audio":
                    await self._channel.send_audio(item.data, item.mime_type)
                else:
                    await self._channel.send_image(item.data, item.mime_type)
            except Exception as e:
                logger.warning(f"Outbound send failed: {e}")

    async def _frame_timer(self):
        events = self._events
        while True:
            await asyncio.sleep(self._capture.frame_interval)
            events.put_nowait(FrameTick())

    async def _elapsed_timer(self):
        while True:
            await asyncio.sleep(1.0)
            self._seconds_elapsed += 1
            self._emit("on_tick", format_elapsed(self._seconds_elapsed))

    # ── Routing Targets ───────────────────────────────────────────────────────

    def _send_frame(self, frame: OutboundFrame):
        self._outbound.put_nowait(frame)

    def _respond_tool(self, call_id: str, name: str, response: dict):
        self._outbound.put_nowait(ToolResponse(call_id, name, response))

    def _on_delta(self, speaker: Speaker, text: str):
        self._aggregator.append_delta(speaker, text)
        self._emit("on_partial", speaker, self._aggregator.partial(speaker))

    def _on_turn_boundary(self):
        for turn in self._aggregator.on_turn_boundary():
            self._emit("on_turn", turn)

    def _on_interruption(self):
        self._aggregator.on_interruption()
        self._scheduler.cancel_all()
        self._emit("on_interrupted")

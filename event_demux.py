"""
Inbound Event Demultiplexer
============================
Turns raw server messages from the live channel into typed events and
routes each one to exactly one consumer:

  tool invocation       -> ToolCallBridge
  transcription delta   -> TranscriptAggregator
  turn boundary         -> TranscriptAggregator (flush)
  interruption          -> TranscriptAggregator (agent reset) + PlaybackScheduler (cancel)
  audio chunk           -> PlaybackScheduler

Events are handled strictly in arrival order by the session's consumer loop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from transcript import Speaker

logger = logging.getLogger(__name__)


# ─── Inbound Events ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SetupComplete:
    pass


@dataclass(frozen=True)
class ToolInvocation:
    name: str
    args: dict = field(default_factory=dict)
    call_id: str = ""


@dataclass(frozen=True)
class TranscriptionDelta:
    speaker: Speaker
    text: str


@dataclass(frozen=True)
class TurnBoundary:
    pass


@dataclass(frozen=True)
class Interruption:
    pass


@dataclass(frozen=True)
class AudioChunk:
    data: str    # base64 PCM as delivered; decoding happens in the scheduler


@dataclass(frozen=True)
class ChannelClosed:
    reason: str = ""


@dataclass(frozen=True)
class ChannelFailed:
    reason: str


def parse_server_message(message: dict) -> list:
    """
    Map one BidiGenerateContent server message to an ordered list of events.

    Within serverContent the order is: transcription deltas, audio, then
    interruption, then turn boundary, so a boundary always sees the text
    that arrived alongside it.
    """
    events: list = []
    if not isinstance(message, dict):
        logger.warning(f"Discarding non-object server message: {str(message)[:100]}")
        return events

    if "setupComplete" in message:
        events.append(SetupComplete())

    tool_call = message.get("toolCall")
    if tool_call:
        for fc in tool_call.get("functionCalls", []):
            name = fc.get("name", "")
            if not name:
                continue
            args = fc.get("args") or {}
            if not isinstance(args, dict):
                args = {}
            events.append(ToolInvocation(name=name, args=args, call_id=fc.get("id", "")))

    server_content = message.get("serverContent")
    if server_content:
        output_tx = server_content.get("outputTranscription") or {}
        if output_tx.get("text"):
            events.append(TranscriptionDelta(Speaker.AGENT, output_tx["text"]))
        input_tx = server_content.get("inputTranscription") or {}
        if input_tx.get("text"):
            events.append(TranscriptionDelta(Speaker.USER, input_tx["text"]))

        model_turn = server_content.get("modelTurn") or {}
        for part in model_turn.get("parts", []):
            inline_data = part.get("inlineData") or {}
            if inline_data.get("data") and inline_data.get("mimeType", "audio/pcm").startswith("audio/"):
                events.append(AudioChunk(inline_data["data"]))

        if server_content.get("interrupted"):
            events.append(Interruption())
        if server_content.get("turnComplete"):
            events.append(TurnBoundary())

    if "goAway" in message:
        logger.warning(f"Server going away: {message['goAway']}")

    return events


# ─── Demultiplexer ────────────────────────────────────────────────────────────

class EventDemultiplexer:
    """
    handlers = {
        'on_tool_invocation': fn(ToolInvocation),
        'on_delta':           fn(Speaker, str),
        'on_turn_boundary':   fn(),
        'on_interruption':    fn(),
        'on_audio':           fn(str),
    }
    """

    def __init__(self, handlers: dict[str, Callable]):
        self.cbs = handlers
        self._routes: dict[type, Callable[[Any], None]] = {
            ToolInvocation: self._route_tool,
            TranscriptionDelta: self._route_delta,
            TurnBoundary: self._route_turn_boundary,
            Interruption: self._route_interruption,
            AudioChunk: self._route_audio,
        }

    def dispatch(self, event) -> bool:
        """Route one event. Returns False if nothing handles its type."""
        route: Optional[Callable] = self._routes.get(type(event))
        if route is None:
            logger.debug(f"Ignoring event {type(event).__name__}")
            return False
        route(event)
        return True

    def _route_tool(self, event: ToolInvocation):
        self.cbs.get("on_tool_invocation", lambda e: None)(event)

    def _route_delta(self, event: TranscriptionDelta):
        self.cbs.get("on_delta", lambda s, t: None)(event.speaker, event.text)

    def _route_turn_boundary(self, event: TurnBoundary):
        self.cbs.get("on_turn_boundary", lambda: None)()

    def _route_interruption(self, event: Interruption):
        self.cbs.get("on_interruption", lambda: None)()

    def _route_audio(self, event: AudioChunk):
        self.cbs.get("on_audio", lambda d: None)(event.data)

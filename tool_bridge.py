"""
Tool Call Bridge
=================
The remote agent can ask the local side to perform a named side effect.
One tool is declared today: `updateVisualFeedback`, which flashes a short
sentiment-tagged cue on screen (eye contact, posture, confidence...).

The agent waits for a response before it continues, so every invocation
is acknowledged exactly once, whether or not the side effect succeeded.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from event_demux import ToolInvocation
from settings import CUE_DURATION_SECONDS

logger = logging.getLogger(__name__)

VISUAL_FEEDBACK_TOOL = "updateVisualFeedback"

VISUAL_FEEDBACK_DECLARATION = {
    "name": VISUAL_FEEDBACK_TOOL,
    "description": (
        "Update the subtle UI feedback based on the candidate's visual cues "
        "like eye contact, confidence, and posture."
    ),
    "parameters": {
        "type": "OBJECT",
        "properties": {
            "cue": {
                "type": "STRING",
                "description": "A short, encouraging, or constructive visual feedback phrase",
            },
            "sentiment": {
                "type": "STRING",
                "description": 'The sentiment of the feedback: "positive", "neutral", or "constructive".',
            },
        },
        "required": ["cue", "sentiment"],
    },
}

ACKNOWLEDGEMENT = {"result": "ok"}

ToolHandler = Callable[[Mapping[str, Any]], Any]
Responder = Callable[[str, str, dict], None]


class Sentiment(Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    CONSTRUCTIVE = "constructive"


@dataclass(frozen=True)
class VisualCue:
    cue: str
    sentiment: Sentiment
    shown_at: float

    @classmethod
    def from_args(cls, args: Mapping[str, Any]) -> "VisualCue":
        cue = args.get("cue")
        sentiment = args.get("sentiment")
        if not isinstance(cue, str) or not cue.strip():
            raise ValueError(f"cue must be a non-empty string, got {cue!r}")
        if not isinstance(sentiment, str):
            raise ValueError(f"sentiment must be a string, got {sentiment!r}")
        return cls(cue=cue.strip(), sentiment=Sentiment(sentiment.strip().lower()), shown_at=time.time())


# ─── Cue Board ────────────────────────────────────────────────────────────────

class CueBoard:
    """
    Holds the one visible cue and its expiry timer.
    A new cue replaces the old one and restarts the timer.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        on_cue: Callable[[VisualCue], None],
        on_cleared: Callable[[], None],
        duration: float = CUE_DURATION_SECONDS,
    ):
        self._loop = loop
        self._on_cue = on_cue
        self._on_cleared = on_cleared
        self.duration = duration
        self.current: Optional[VisualCue] = None
        self._expiry: Optional[asyncio.TimerHandle] = None

    def publish(self, cue: VisualCue):
        self._cancel_expiry()
        self.current = cue
        self._expiry = self._loop.call_later(self.duration, self._expire)
        self._on_cue(cue)

    def handle_tool_args(self, args: Mapping[str, Any]) -> dict:
        self.publish(VisualCue.from_args(args))
        return ACKNOWLEDGEMENT

    def clear(self):
        """Drop the current cue without notifying (teardown)."""
        self._cancel_expiry()
        self.current = None

    def _expire(self):
        self._expiry = None
        self.current = None
        self._on_cleared()

    def _cancel_expiry(self):
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None


# ─── Bridge ───────────────────────────────────────────────────────────────────

class ToolCallBridge:
    """
    Dispatches invocations through a name -> handler table and always
    answers. Handler failures are logged and swallowed; the fixed
    acknowledgement still goes out so the agent is never left waiting.
    """

    def __init__(self, respond: Responder, handlers: Optional[Mapping[str, ToolHandler]] = None):
        self._respond = respond
        self._handlers: dict[str, ToolHandler] = dict(handlers or {})

    def register(self, name: str, handler: ToolHandler):
        self._handlers[name] = handler

    @property
    def tool_names(self) -> list[str]:
        return list(self._handlers)

    def handle(self, invocation: ToolInvocation):
        handler = self._handlers.get(invocation.name)
        if handler is None:
            logger.warning(f"No handler for tool {invocation.name!r}")
            response = {"error": f"unknown tool: {invocation.name}"}
        else:
            response = ACKNOWLEDGEMENT
            try:
                result = handler(invocation.args)
                if isinstance(result, dict):
                    response = result
            except Exception as e:
                logger.warning(f"Tool {invocation.name!r} failed ({e}); acknowledging anyway")
        self._respond(invocation.call_id, invocation.name, dict(response))

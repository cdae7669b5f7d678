"""
Transcript Aggregation
=======================
Accumulates incremental transcription deltas per speaker and turns them
into finalized ConversationTurns when the remote agent signals a turn
boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class Speaker(Enum):
    USER = "user"
    AGENT = "agent"

    @property
    def label(self) -> str:
        return "Candidate" if self is Speaker.USER else "Interviewer"


# Turn flush order on a boundary
FLUSH_ORDER = (Speaker.USER, Speaker.AGENT)


@dataclass(frozen=True)
class ConversationTurn:
    speaker: Speaker
    text: str

    def to_dict(self) -> dict:
        return {"role": self.speaker.value, "text": self.text}


class TranscriptAggregator:
    """
    Per-speaker partial buffers plus an append-only turn history.

    Deltas are concatenated raw (no trimming, no dedup). A turn boundary
    trims both buffers, emits at most one turn per speaker (user first)
    and clears both. An interruption clears only the agent's buffer: the
    candidate's speech recognized so far is still valid.
    """

    def __init__(self):
        self._partials: dict[Speaker, str] = {s: "" for s in Speaker}
        self._history: list[ConversationTurn] = []

    @property
    def history(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._history)

    def partial(self, speaker: Speaker) -> str:
        return self._partials[speaker]

    def append_delta(self, speaker: Speaker, text: str):
        if text:
            self._partials[speaker] += text

    def on_turn_boundary(self) -> list[ConversationTurn]:
        """Finalize the current turn. Returns the turns appended (0-2)."""
        new_turns = []
        for speaker in FLUSH_ORDER:
            text = self._partials[speaker].strip()
            if text:
                new_turns.append(ConversationTurn(speaker, text))
        self._history.extend(new_turns)
        self._partials = {s: "" for s in Speaker}
        if new_turns:
            logger.debug(f"Turn finalized: {[t.speaker.value for t in new_turns]}")
        return new_turns

    def on_interruption(self):
        dropped = self._partials[Speaker.AGENT]
        self._partials[Speaker.AGENT] = ""
        if dropped:
            logger.debug(f"Interruption discarded {len(dropped)} chars of agent speech")

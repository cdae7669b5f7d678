"""
Post-Session Evaluation
========================
Turns a finished session's transcript into a structured evaluation via
the Gemini REST API (generateContent with a JSON response schema).

This sits outside the live engine: it only consumes the SessionSummary
the controller returns from finish().
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

import httpx

from settings import ANALYSIS_MODEL, SessionConfig
from transcript import ConversationTurn

logger = logging.getLogger(__name__)

GEMINI_BASE = "https://generativelanguage.googleapis.com/v1beta/models"

SCORE_FIELDS = ("overallScore", "clarity", "confidence", "communication", "technicalKnowledge")
LIST_FIELDS = ("strengths", "weaknesses", "recommendations")

RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        **{name: {"type": "NUMBER"} for name in SCORE_FIELDS},
        **{name: {"type": "ARRAY", "items": {"type": "STRING"}} for name in LIST_FIELDS},
    },
    "required": [*SCORE_FIELDS, *LIST_FIELDS],
}


class EvaluationError(Exception):
    pass


@dataclass
class InterviewAnalysis:
    overall_score: float
    clarity: float
    confidence: float
    communication: float
    technical_knowledge: float
    strengths: list[str] = field(default_factory=list)
    weaknesses: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    transcript: str = ""
    duration: Optional[str] = None

    @classmethod
    def from_response(cls, data: dict, transcript: str, duration: Optional[str] = None) -> "InterviewAnalysis":
        try:
            return cls(
                overall_score=float(data["overallScore"]),
                clarity=float(data["clarity"]),
                confidence=float(data["confidence"]),
                communication=float(data["communication"]),
                technical_knowledge=float(data["technicalKnowledge"]),
                strengths=[str(s) for s in data.get("strengths", [])],
                weaknesses=[str(s) for s in data.get("weaknesses", [])],
                recommendations=[str(s) for s in data.get("recommendations", [])],
                transcript=transcript,
                duration=duration,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise EvaluationError(f"Malformed evaluation: {e}") from e


def format_transcript(turns: Sequence[ConversationTurn]) -> str:
    return "\n".join(f"{t.speaker.label}: {t.text}" for t in turns)


def build_evaluation_prompt(config: SessionConfig, transcript: str) -> str:
    topics = ", ".join(config.sorted_topics()) or "general role fundamentals"
    return f"""Analyze the following mock interview transcript for a {config.seniority.value} {config.role} position.
The focus areas were: {topics}.

TRANSCRIPT:
{transcript}

Evaluate the candidate on a scale of 1-100 for Clarity, Confidence, and Communication.
Also provide overall score, technical knowledge assessment, strengths, weaknesses, and concrete recommendations.
"""


class EvaluationClient:
    """Single request/response call; no streaming needed here."""

    def __init__(self, api_key: str, model: str = ANALYSIS_MODEL, timeout: float = 60.0):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    async def evaluate(
        self,
        config: SessionConfig,
        turns: Sequence[ConversationTurn],
        duration: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> InterviewAnalysis:
        if not self.api_key:
            raise EvaluationError("GEMINI_API_KEY is not set")
        transcript = format_transcript(turns)
        payload = {
            "contents": [{"role": "user", "parts": [{"text": build_evaluation_prompt(config, transcript)}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": RESPONSE_SCHEMA,
            },
        }
        url = f"{GEMINI_BASE}/{self.model}:generateContent"
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

        owns_client = client is None
        client = client or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await client.post(url, headers=headers, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise EvaluationError(f"Evaluation request failed: {e}") from e
        finally:
            if owns_client:
                await client.aclose()

        try:
            text = body["candidates"][0]["content"]["parts"][0]["text"]
            data = json.loads(text)
        except (KeyError, IndexError, json.JSONDecodeError) as e:
            raise EvaluationError(f"Unreadable evaluation response: {e}") from e

        logger.info(f"Evaluation received (overall {data.get('overallScore')})")
        return InterviewAnalysis.from_response(data, transcript, duration)

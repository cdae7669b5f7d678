"""
Live Channel
=============
Bidirectional WebSocket link to the Gemini Live API
(BidiGenerateContent). Speaks the JSON message protocol directly:

  outbound: setup, realtimeInput.audio, realtimeInput.video, toolResponse
  inbound:  setupComplete, serverContent, toolCall, goAway

Everything below the message level (framing, pings, TLS) is the
websockets library's business.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import AsyncIterator, Optional

import websockets

from settings import EngineSettings

logger = logging.getLogger(__name__)

LIVE_WS_URL = (
    "wss://generativelanguage.googleapis.com/ws/"
    "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent"
)
SETUP_TIMEOUT = 15.0


class ChannelError(Exception):
    pass


def build_setup_message(
    settings: EngineSettings,
    system_instruction: str,
    function_declarations: list[dict],
) -> dict:
    model = settings.live_model
    if not model.startswith("models/"):
        model = f"models/{model}"

    setup = {
        "model": model,
        "generationConfig": {
            "responseModalities": ["AUDIO"],
            "speechConfig": {
                "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": settings.voice_name}}
            },
        },
        "systemInstruction": {"parts": [{"text": system_instruction}]},
        "inputAudioTranscription": {},
        "outputAudioTranscription": {},
    }
    if function_declarations:
        setup["tools"] = [{"functionDeclarations": function_declarations}]
    return {"setup": setup}


class LiveChannel:
    """
    One live connection. connect() returns once the server has
    acknowledged the setup; after that, messages() yields every
    inbound message as a dict until the socket closes.
    """

    def __init__(self, api_key: str, url: str = LIVE_WS_URL):
        self.api_key = api_key
        self.url = url
        self._ws = None
        self._connected = False
        self.close_reason = ""

    async def connect(self, setup_message: dict):
        if not self.api_key:
            raise ChannelError("GEMINI_API_KEY is not set")
        try:
            self._ws = await websockets.connect(
                f"{self.url}?key={self.api_key}",
                ping_interval=20,
                ping_timeout=10,
                max_size=2**24,
            )
            await self._ws.send(json.dumps(setup_message))
            raw = await asyncio.wait_for(self._ws.recv(), timeout=SETUP_TIMEOUT)
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            await self.close()
            raise ChannelError(f"could not open live session: {e}") from e

        try:
            reply = json.loads(raw)
        except ValueError as e:
            await self.close()
            raise ChannelError(f"unreadable setup reply: {str(raw)[:200]}") from e
        if not isinstance(reply, dict) or "setupComplete" not in reply:
            await self.close()
            raise ChannelError(f"unexpected setup reply: {str(reply)[:200]}")
        self._connected = True
        logger.info("Live channel connected")

    async def messages(self) -> AsyncIterator[dict]:
        """Yield decoded server messages; ends when the socket closes."""
        if self._ws is None:
            return
        try:
            async for raw in self._ws:
                try:
                    yield json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Discarding non-JSON server message")
        except websockets.ConnectionClosedError as e:
            self._connected = False
            raise ChannelError(self._describe_close(e)) from e
        finally:
            self._connected = False
        self.close_reason = self._describe_close(None)

    # ── Outbound ──────────────────────────────────────────────────────────────

    async def send_audio(self, pcm: bytes, mime_type: str = "audio/pcm;rate=16000"):
        await self._send_realtime("audio", pcm, mime_type)

    async def send_image(self, jpeg: bytes, mime_type: str = "image/jpeg"):
        await self._send_realtime("video", jpeg, mime_type)

    async def send_tool_response(self, call_id: str, name: str, response: dict):
        fr = {"name": name, "response": response}
        if call_id:
            fr["id"] = call_id
        await self._send_json({"toolResponse": {"functionResponses": [fr]}})

    async def _send_realtime(self, key: str, data: bytes, mime_type: str):
        payload = {"data": base64.b64encode(data).decode("ascii"), "mimeType": mime_type}
        await self._send_json({"realtimeInput": {key: payload}})

    async def _send_json(self, message: dict):
        if not (self._connected and self._ws):
            return
        try:
            await self._ws.send(json.dumps(message))
        except websockets.ConnectionClosed:
            self._connected = False

    async def close(self):
        ws, self._ws = self._ws, None
        self._connected = False
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error while closing live channel: {e}")
            logger.info("Live channel closed")

    def _describe_close(self, exc: Optional[BaseException]) -> str:
        rcvd = getattr(exc, "rcvd", None)
        if rcvd is not None:
            return f"{rcvd.code} {rcvd.reason}".strip()
        if exc is not None:
            return str(exc)
        return getattr(self._ws, "close_reason", None) or ""

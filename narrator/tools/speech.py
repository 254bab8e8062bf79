from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from config.settings import Settings, get_settings


logger = logging.getLogger("storyrelay.speech")


class SpeechSynthesisError(RuntimeError):
    """The speech endpoint rejected the request or could not be reached."""


@dataclass(frozen=True)
class SpeechAudio:
    audio: bytes
    format: str

    def to_base64(self) -> str:
        return base64.b64encode(self.audio).decode("ascii")


class SpeechSynthesizer:
    """Client for an OpenAI-compatible ``/audio/speech`` endpoint."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._client = client

    def _payload(self, text: str) -> dict:
        return {
            "model": self.settings.tts_model,
            "voice": self.settings.tts_voice,
            "input": text,
            "response_format": self.settings.tts_format,
        }

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.settings.tts_api_key:
            headers["Authorization"] = f"Bearer {self.settings.tts_api_key}"
        return headers

    async def _post(self, client: httpx.AsyncClient, text: str) -> bytes:
        response = await client.post(
            self.settings.tts_api_url,
            json=self._payload(text),
            headers=self._headers(),
        )
        response.raise_for_status()
        return response.content

    async def synthesize(self, text: str) -> SpeechAudio:
        text = (text or "").strip()
        if not text:
            raise ValueError("Cannot synthesize empty text")

        endpoint = self.settings.tts_api_url
        if not endpoint:
            raise SpeechSynthesisError("TTS_API_URL not configured")

        try:
            if self._client is not None:
                audio = await self._post(self._client, text)
            else:
                async with httpx.AsyncClient(timeout=self.settings.tts_timeout) as client:
                    audio = await self._post(client, text)
        except httpx.HTTPError as exc:
            raise SpeechSynthesisError(f"Speech synthesis call failed: {exc}") from exc

        if not audio:
            raise SpeechSynthesisError("Speech synthesis returned no audio")

        logger.info("Synthesized %s bytes for %s chars", len(audio), len(text))
        return SpeechAudio(audio=audio, format=self.settings.tts_format)

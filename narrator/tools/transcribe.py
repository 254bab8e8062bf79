from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Any, List, Optional

import numpy as np
from transformers import pipeline

from config.settings import Settings, get_settings


logger = logging.getLogger("storyrelay.transcribe")

SAMPLE_RATE = 16000
AUDIO_FILTERS = "highpass=f=80,lowpass=f=8000,volume=2.0"


class AudioDecodingError(RuntimeError):
    """Uploaded audio could not be converted into PCM samples."""


def ffmpeg_args(settings: Settings) -> List[str]:
    return [
        settings.ffmpeg_path,
        "-i", "pipe:0",
        "-f", "s16le",
        "-acodec", "pcm_s16le",
        "-ar", str(SAMPLE_RATE),
        "-ac", "1",
        "-af", AUDIO_FILTERS,
        "-t", str(settings.max_audio_seconds),
        "pipe:1",
    ]


async def convert_audio(data: bytes, settings: Optional[Settings] = None) -> bytes:
    """Decode any ffmpeg-readable upload into 16 kHz mono s16le PCM."""
    settings = settings or get_settings()
    if not data:
        raise AudioDecodingError("No audio data")

    try:
        proc = await asyncio.create_subprocess_exec(
            *ffmpeg_args(settings),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise AudioDecodingError(f"FFmpeg error: {exc}") from exc

    try:
        stdout, stderr = await proc.communicate(input=data)
    except asyncio.CancelledError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        raise
    if proc.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()[-500:]
        raise AudioDecodingError(f"FFmpeg failed with code {proc.returncode}: {detail}")
    if not stdout:
        raise AudioDecodingError("FFmpeg produced no audio")
    return stdout


def pcm_to_array(pcm: bytes) -> np.ndarray:
    if len(pcm) % 2:
        raise AudioDecodingError("Truncated PCM payload")
    return np.frombuffer(pcm, dtype=np.int16).astype(np.float32) / 32768.0


@lru_cache(maxsize=2)
def load_pipeline(model: str) -> Any:
    logger.info("Loading Whisper model: %s...", model)
    asr = pipeline("automatic-speech-recognition", model=model, device="cpu")
    logger.info("Whisper model loaded")
    return asr


class Transcriber:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def _run(self, samples: np.ndarray) -> str:
        asr = load_pipeline(self.settings.whisper_model)
        kwargs = {
            "chunk_length_s": 30,
            "stride_length_s": 5,
            "return_timestamps": False,
        }
        # English-only checkpoints reject language/task generation args.
        if not self.settings.whisper_model.endswith(".en"):
            kwargs["generate_kwargs"] = {
                "language": self.settings.stt_language,
                "task": "transcribe",
            }
        result = asr({"raw": samples, "sampling_rate": SAMPLE_RATE}, **kwargs)
        return (result.get("text") or "").strip()

    async def decode(self, data: bytes) -> np.ndarray:
        samples = pcm_to_array(await convert_audio(data, self.settings))
        logger.info("Audio converted (%.1fs)", len(samples) / SAMPLE_RATE)
        return samples

    async def recognize(self, samples: np.ndarray) -> str:
        text = await asyncio.to_thread(self._run, samples)
        logger.info("Transcription result: %s", text)
        return text

    async def transcribe(self, data: bytes) -> str:
        return await self.recognize(await self.decode(data))

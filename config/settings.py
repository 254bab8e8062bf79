from __future__ import annotations

import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv


load_dotenv()


class Settings:
    """Application settings loaded from environment variables.

    Keep all credentials and config centralized here.
    """

    app_env: str = os.getenv("APP_ENV", "development")
    port: int = int(os.getenv("PORT", "8787"))

    # Narration model
    google_api_key: Optional[str] = os.getenv("GOOGLE_API_KEY")
    gemini_model: str = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
    temperature: float = float(os.getenv("MODEL_TEMPERATURE", "0.8"))
    top_p: float = float(os.getenv("MODEL_TOP_P", "0.9"))

    # Speech synthesis (OpenAI-compatible /audio/speech endpoint)
    tts_api_url: str = os.getenv("TTS_API_URL", "https://api.openai.com/v1/audio/speech")
    tts_api_key: Optional[str] = os.getenv("TTS_API_KEY") or os.getenv("OPENAI_API_KEY")
    tts_model: str = os.getenv("TTS_MODEL", "tts-1")
    tts_voice: str = os.getenv("TTS_VOICE", "alloy")
    tts_format: str = os.getenv("TTS_FORMAT", "mp3")
    tts_timeout: float = float(os.getenv("TTS_TIMEOUT", "30"))

    # Speech-to-text
    whisper_model: str = os.getenv("WHISPER_MODEL", "openai/whisper-base.en")
    stt_language: str = os.getenv("STT_LANGUAGE", "english")
    ffmpeg_path: str = os.getenv("FFMPEG_PATH", "ffmpeg")
    max_audio_seconds: int = int(os.getenv("MAX_AUDIO_SECONDS", "30"))

    # Session memory
    summary_interval: int = int(os.getenv("SUMMARY_INTERVAL", "5"))
    max_recent: int = int(os.getenv("MAX_RECENT", "10"))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

"""
Shared fakes for the narration model and the speech endpoint.
"""

import asyncio
import json
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest
from langchain_core.messages import AIMessage, AIMessageChunk

from narrator.core.memory import MemoryPolicy, SessionStore
from narrator.relay import StoryRelay
from narrator.tools.speech import SpeechAudio, SpeechSynthesisError


class FakeChatModel:
    """Streams canned chunks and answers summary requests with a fixed reply."""

    def __init__(self, chunks=None, summary="Compact summary.", fail_at: Optional[int] = None):
        self.chunks = list(chunks or [])
        self.fail_at = fail_at
        self.prompts: List[str] = []
        self.closed = False
        self.ainvoke = AsyncMock(return_value=AIMessage(content=summary))

    async def astream(self, messages):
        self.prompts.append(messages[0].content)
        try:
            for i, chunk in enumerate(self.chunks):
                if self.fail_at is not None and i == self.fail_at:
                    raise RuntimeError("upstream exploded")
                await asyncio.sleep(0)
                yield AIMessageChunk(content=chunk)
        finally:
            self.closed = True


class FakeSpeech:
    """Records every sentence; raises for the ones listed in ``fail_on``."""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.calls: List[str] = []

    async def synthesize(self, text: str) -> SpeechAudio:
        self.calls.append(text)
        await asyncio.sleep(0)
        if text in self.fail_on:
            raise SpeechSynthesisError(f"rejected: {text}")
        return SpeechAudio(audio=f"audio:{text}".encode(), format="mp3")


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def fake_llm():
    def create(chunks=None, **kwargs):
        return FakeChatModel(chunks=chunks, **kwargs)
    return create


@pytest.fixture
def fake_speech():
    def create(fail_on=()):
        return FakeSpeech(fail_on=fail_on)
    return create


@pytest.fixture
def make_relay(store):
    def create(llm, speech=None, policy=None):
        return StoryRelay(llm=llm, speech=speech, store=store, policy=policy or MemoryPolicy())
    return create


async def collect(events):
    return [event async for event in events]


def parse_frames(body: str):
    """Decode an SSE body into the list of JSON payloads."""
    frames = []
    for block in body.split("\n\n"):
        if block.startswith("data: "):
            frames.append(json.loads(block[len("data: "):]))
    return frames

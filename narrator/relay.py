from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Sequence

from langchain_core.language_models import BaseChatModel

from narrator.core.memory import (
    Exchange,
    MemoryPolicy,
    SessionStore,
    Session,
    StoryState,
    append_exchange,
    get_session_store,
    summarize_pending,
)
from narrator.core.prompt import build_prompt
from narrator.core.sentences import extract_complete_sentences
from narrator.core.summarizer import update_summary
from narrator.narrator import COMPLETED, DELTA, ERROR, stream_narration
from narrator.tools.speech import SpeechAudio, SpeechSynthesizer
from narrator.tools.transcribe import Transcriber


logger = logging.getLogger("storyrelay.relay")

Event = Dict[str, Any]
SpeechTask = asyncio.Task


def status(message: str) -> Event:
    return {"type": "status", "message": message}


def error(message: str) -> Event:
    return {"type": "error", "message": message}


def audio_event(audio: SpeechAudio) -> Event:
    return {"type": "audio", "audio": audio.to_base64(), "format": audio.format}


class StoryRelay:
    """Coordinates one story turn: prompt, narration, speech and memory.

    Every public method is an async generator of client events. Closing a
    generator early (the client went away) cancels outstanding speech
    requests and the upstream narration stream; nothing is written to
    session memory for a turn that did not complete.
    """

    def __init__(
        self,
        llm: BaseChatModel,
        speech: Optional[SpeechSynthesizer] = None,
        store: Optional[SessionStore] = None,
        policy: Optional[MemoryPolicy] = None,
    ):
        self.llm = llm
        self.speech = speech
        self.store = store or get_session_store()
        self.policy = policy or MemoryPolicy()
        self._summaries: Dict[str, asyncio.Task] = {}

    # ---------- memory ----------
    def _schedule_summary(self, session: Session) -> asyncio.Task:
        # Runs outside the response so a client hanging up on "done" cannot cancel it.
        running = self._summaries.get(session.session_id)
        if running is not None and not running.done():
            return running

        task = asyncio.create_task(summarize_pending(session, self.summarize))
        self._summaries[session.session_id] = task

        def _forget(done: asyncio.Task, session_id: str = session.session_id) -> None:
            if self._summaries.get(session_id) is done:
                del self._summaries[session_id]

        task.add_done_callback(_forget)
        return task

    async def wait_for_memory(self) -> None:
        """Wait for every in-flight summary rebuild (used at shutdown and in tests)."""
        if self._summaries:
            await asyncio.gather(*list(self._summaries.values()), return_exceptions=True)

    async def summarize(
        self, old_summary: str, recent: Sequence[Exchange], state: Optional[StoryState] = None
    ) -> str:
        return await update_summary(self.llm, old_summary, recent, state)

    # ---------- speech ----------
    async def _synthesize(self, sentence: str) -> Optional[SpeechAudio]:
        try:
            return await self.speech.synthesize(sentence)
        except Exception as exc:
            logger.warning("TTS failed for %r: %s", sentence[:60], exc)
            return None

    def _schedule(self, sentence: str) -> SpeechTask:
        return asyncio.create_task(self._synthesize(sentence))

    async def _drain(self, pending: Deque[SpeechTask], wait: bool) -> AsyncIterator[Event]:
        # Audio goes out in sentence order; without ``wait`` only the ready prefix.
        while pending and (wait or pending[0].done()):
            audio = await pending.popleft()
            if audio is not None:
                yield audio_event(audio)

    # ---------- turns ----------
    async def narrate(
        self,
        session_id: str,
        character: Any,
        action: str,
        *,
        speak: bool = False,
        announce: Optional[str] = None,
    ) -> AsyncIterator[Event]:
        speak = speak and self.speech is not None
        session = self.store.get_or_create(session_id)

        if announce:
            yield status(announce)

        prompt = build_prompt(
            character=character,
            action=action,
            summary=session.summary,
            last_scene=session.last_scene,
            recent=session.recent,
        )

        scene: List[str] = []
        buffer = ""
        pending: Deque[SpeechTask] = deque()
        events = stream_narration(self.llm, prompt)
        try:
            async for event in events:
                if event.type == DELTA:
                    scene.append(event.text)
                    yield {"type": "delta", "text": event.text}
                    if speak:
                        buffer += event.text
                        split = extract_complete_sentences(buffer, final=False)
                        for sentence in split.sentences:
                            pending.append(self._schedule(sentence))
                        buffer = buffer[split.consumed:]
                        async for item in self._drain(pending, wait=False):
                            yield item
                elif event.type == ERROR:
                    logger.error("Narration failed for session %s: %s", session_id, event.message)
                    yield error(event.message or "Upstream failure")
                elif event.type == COMPLETED:
                    if speak:
                        if buffer.strip():
                            pending.append(self._schedule(buffer.strip()))
                            buffer = ""
                        async for item in self._drain(pending, wait=True):
                            yield item
                    if append_exchange(session, action, "".join(scene).strip(), self.policy):
                        self._schedule_summary(session)
                    yield {"type": "done"}
        finally:
            for task in pending:
                task.cancel()
            await events.aclose()

    async def narrate_audio(
        self,
        session_id: str,
        character: Any,
        audio: bytes,
        transcriber: Transcriber,
    ) -> AsyncIterator[Event]:
        yield status("Processing audio...")
        try:
            samples = await transcriber.decode(audio)
        except Exception as exc:
            logger.exception("Audio conversion failed: %s", exc)
            yield error(str(exc) or "Audio conversion failed")
            return

        yield status("Transcribing locally...")
        try:
            action = (await transcriber.recognize(samples)).strip()
        except Exception as exc:
            logger.exception("Transcription failed: %s", exc)
            yield error(str(exc) or "Local transcription failed")
            return

        if len(action) < 2:
            yield error("Could not understand audio clearly")
            return

        yield {"type": "transcription", "text": action}
        turn = self.narrate(session_id, character, action, speak=True, announce="Generating story...")
        try:
            async for event in turn:
                yield event
        finally:
            await turn.aclose()

    async def speak_text(self, text: str) -> AsyncIterator[Event]:
        yield status("Converting to audio...")
        if self.speech is None:
            yield error("Audio generation is not configured")
            return

        split = extract_complete_sentences(text)
        sentences = list(split.sentences)
        if split.remaining:
            sentences.append(split.remaining)

        tasks = [self._schedule(sentence) for sentence in sentences]
        try:
            for sentence, task in zip(sentences, tasks):
                audio = await task
                if audio is None:
                    yield error(f"Audio generation failed for: {sentence}")
                else:
                    yield audio_event(audio)
        finally:
            for task in tasks:
                task.cancel()

        yield {"type": "done"}

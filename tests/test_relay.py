"""
Tests for the per-request story relay: narration, speech and memory writes.
"""

import asyncio
import base64
from unittest.mock import AsyncMock, Mock

import numpy as np
import pytest
from langchain_core.messages import AIMessage

from narrator.core.memory import MemoryPolicy

from conftest import collect


CHARACTER = {"name": "Lyra"}


def _types(events):
    return [e["type"] for e in events]


def _audio_texts(events):
    return [base64.b64decode(e["audio"]).decode() for e in events if e["type"] == "audio"]


class TestNarrate:

    @pytest.mark.asyncio
    async def test_text_only_turn_records_exchange(self, fake_llm, make_relay, store):
        llm = fake_llm(["You enter ", "the keep.\nA) Climb\nB) Hide  "])
        relay = make_relay(llm)

        events = await collect(relay.narrate("s1", CHARACTER, "enter the keep"))

        assert _types(events) == ["delta", "delta", "done"]
        session = store.get("s1")
        assert session.last_scene == "You enter the keep.\nA) Climb\nB) Hide"
        assert session.recent[0].action == "enter the keep"
        assert session.turns == 1
        assert "=== PLAYER CUSTOM ACTION ===\nenter the keep" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_announce_comes_first(self, fake_llm, make_relay):
        relay = make_relay(fake_llm(["Hi."]))
        events = await collect(relay.narrate("s1", CHARACTER, "wave", announce="Generating story..."))
        assert events[0] == {"type": "status", "message": "Generating story..."}

    @pytest.mark.asyncio
    async def test_shorthand_uses_previous_scene(self, fake_llm, make_relay, store):
        llm = fake_llm(["A troll appears.\nA) Fight\nB) Flee"])
        relay = make_relay(llm)
        await collect(relay.narrate("s1", CHARACTER, "look around"))

        llm.chunks = ["You flee."]
        await collect(relay.narrate("s1", CHARACTER, "b"))

        assert "A troll appears.\nA) Fight\nB) Flee" in llm.prompts[1]
        assert 'The player chose option "B"' in llm.prompts[1]

    @pytest.mark.asyncio
    async def test_speech_failure_for_one_sentence_is_skipped(self, fake_llm, fake_speech, make_relay):
        speech = fake_speech(fail_on={"Two."})
        relay = make_relay(fake_llm(["One. ", "Two. ", "Three."]), speech=speech)

        events = await collect(relay.narrate("s1", CHARACTER, "count", speak=True))

        assert [e["text"] for e in events if e["type"] == "delta"] == ["One. ", "Two. ", "Three."]
        assert _audio_texts(events) == ["audio:One.", "audio:Three."]
        assert speech.calls == ["One.", "Two.", "Three."]
        assert events[-1] == {"type": "done"}
        assert all(e["format"] == "mp3" for e in events if e["type"] == "audio")

    @pytest.mark.asyncio
    async def test_trailing_fragment_spoken_on_completion(self, fake_llm, fake_speech, make_relay):
        speech = fake_speech()
        relay = make_relay(fake_llm(["The end. A) Stay", "\nB) Go"]), speech=speech)

        events = await collect(relay.narrate("s1", CHARACTER, "finish", speak=True))

        assert speech.calls == ["The end.", "A) Stay\nB) Go"]
        assert _audio_texts(events) == ["audio:The end.", "audio:A) Stay\nB) Go"]
        assert _types(events)[-1] == "done"

    @pytest.mark.asyncio
    async def test_speak_without_synthesizer_streams_text_only(self, fake_llm, make_relay):
        relay = make_relay(fake_llm(["One. Two."]))
        events = await collect(relay.narrate("s1", CHARACTER, "go", speak=True))
        assert _types(events) == ["delta", "done"]

    @pytest.mark.asyncio
    async def test_upstream_error_records_nothing(self, fake_llm, make_relay, store):
        relay = make_relay(fake_llm(["Half a scene", "never"], fail_at=1))

        events = await collect(relay.narrate("s1", CHARACTER, "go"))

        assert _types(events) == ["delta", "error"]
        assert events[-1]["message"] == "upstream exploded"
        session = store.get("s1")
        assert session.recent == []
        assert session.last_scene == ""

    @pytest.mark.asyncio
    async def test_closing_early_records_nothing(self, fake_llm, make_relay, store):
        llm = fake_llm(["one ", "two ", "three."])
        relay = make_relay(llm)
        turn = relay.narrate("s1", CHARACTER, "go")

        first = await turn.__anext__()
        await turn.aclose()

        assert first == {"type": "delta", "text": "one "}
        assert llm.closed is True
        assert store.get("s1").turns == 0

    @pytest.mark.asyncio
    async def test_decimal_split_across_deltas_is_spoken_whole(self, fake_llm, fake_speech, make_relay):
        speech = fake_speech()
        relay = make_relay(fake_llm(["The potion costs 3.", "5 gold. You buy it."]), speech=speech)

        events = await collect(relay.narrate("s1", CHARACTER, "buy", speak=True))

        assert speech.calls == ["The potion costs 3.5 gold.", "You buy it."]
        assert _audio_texts(events) == ["audio:The potion costs 3.5 gold.", "audio:You buy it."]

    @pytest.mark.asyncio
    async def test_fifth_turn_replaces_summary(self, fake_llm, make_relay, store):
        llm = fake_llm(["A scene."], summary="Five beats, folded.")
        relay = make_relay(llm, policy=MemoryPolicy(summary_interval=5, max_recent=10))

        for i in range(5):
            await collect(relay.narrate("s1", CHARACTER, f"action {i}"))
        await relay.wait_for_memory()

        llm.ainvoke.assert_awaited_once()
        session = store.get("s1")
        assert session.summary == "Five beats, folded."
        assert session.recent == []
        assert session.turns == 5

        llm.chunks = ["Next."]
        await collect(relay.narrate("s1", CHARACTER, "continue"))
        assert "Five beats, folded." in llm.prompts[-1]

    @pytest.mark.asyncio
    async def test_exchange_recorded_before_done(self, fake_llm, make_relay, store):
        relay = make_relay(fake_llm(["A scene."]))
        turn = relay.narrate("s1", CHARACTER, "go")

        events = []
        async for event in turn:
            events.append(event)
            if event["type"] == "done":
                break
        await turn.aclose()

        assert store.get("s1").last_scene == "A scene."
        assert store.get("s1").turns == 1

    @pytest.mark.asyncio
    async def test_summary_survives_client_leaving_on_done(self, fake_llm, make_relay, store):
        llm = fake_llm(["A scene."], summary="Folded anyway.")
        gate = asyncio.Event()

        async def slow_summary(*args, **kwargs):
            await gate.wait()
            return AIMessage(content="Folded anyway.")

        llm.ainvoke = AsyncMock(side_effect=slow_summary)
        relay = make_relay(llm, policy=MemoryPolicy(summary_interval=1, max_recent=3))
        saw_done = asyncio.Event()

        async def consume():
            async for event in relay.narrate("s1", CHARACTER, "go"):
                if event["type"] == "done":
                    saw_done.set()
                    await asyncio.sleep(3600)

        consumer = asyncio.create_task(consume())
        await saw_done.wait()
        consumer.cancel()
        with pytest.raises(asyncio.CancelledError):
            await consumer

        gate.set()
        await relay.wait_for_memory()

        assert store.get("s1").summary == "Folded anyway."
        assert store.get("s1").recent == []

    @pytest.mark.asyncio
    async def test_summary_failure_is_silent(self, fake_llm, make_relay, store):
        llm = fake_llm(["A scene."])
        llm.ainvoke = AsyncMock(side_effect=RuntimeError("quota"))
        relay = make_relay(llm, policy=MemoryPolicy(summary_interval=1, max_recent=3))

        events = await collect(relay.narrate("s1", CHARACTER, "go"))
        await relay.wait_for_memory()

        assert _types(events) == ["delta", "done"]
        session = store.get("s1")
        assert session.summary == ""
        assert len(session.recent) == 1


def _transcriber(text=None, decode_error=None, recognize_error=None):
    transcriber = Mock()
    transcriber.decode = AsyncMock(return_value=np.zeros(4, dtype=np.float32), side_effect=decode_error)
    transcriber.recognize = AsyncMock(return_value=text, side_effect=recognize_error)
    return transcriber


class TestNarrateAudio:

    @pytest.mark.asyncio
    async def test_transcribes_then_narrates(self, fake_llm, fake_speech, make_relay, store):
        transcriber = _transcriber(" search the chest ")
        relay = make_relay(fake_llm(["You find gold."]), speech=fake_speech())

        events = await collect(relay.narrate_audio("s1", CHARACTER, b"webm", transcriber))

        assert _types(events) == [
            "status", "status", "transcription", "status", "delta", "audio", "done",
        ]
        assert events[2] == {"type": "transcription", "text": "search the chest"}
        assert store.get("s1").recent[0].action == "search the chest"
        transcriber.decode.assert_awaited_once_with(b"webm")

    @pytest.mark.asyncio
    async def test_transcribing_status_follows_conversion(self, fake_llm, make_relay):
        transcriber = _transcriber(decode_error=RuntimeError("FFmpeg failed with code 1"))
        relay = make_relay(fake_llm([]))

        events = await collect(relay.narrate_audio("s1", CHARACTER, b"webm", transcriber))

        assert events == [
            {"type": "status", "message": "Processing audio..."},
            {"type": "error", "message": "FFmpeg failed with code 1"},
        ]
        transcriber.recognize.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unclear_audio(self, fake_llm, make_relay, store):
        relay = make_relay(fake_llm(["unused"]))

        events = await collect(relay.narrate_audio("s1", CHARACTER, b"webm", _transcriber(" . ")))

        assert events[1] == {"type": "status", "message": "Transcribing locally..."}
        assert events[-1] == {"type": "error", "message": "Could not understand audio clearly"}
        assert store.get("s1") is None

    @pytest.mark.asyncio
    async def test_recognition_failure_is_in_band(self, fake_llm, make_relay):
        transcriber = _transcriber(recognize_error=RuntimeError("model missing"))
        relay = make_relay(fake_llm([]))

        events = await collect(relay.narrate_audio("s1", CHARACTER, b"webm", transcriber))

        assert events[-1] == {"type": "error", "message": "model missing"}


class TestSpeakText:

    @pytest.mark.asyncio
    async def test_one_audio_event_per_sentence(self, fake_llm, fake_speech, make_relay):
        speech = fake_speech(fail_on={"Second one."})
        relay = make_relay(fake_llm(), speech=speech)

        events = await collect(relay.speak_text("First one. Second one. Third"))

        assert _types(events) == ["status", "audio", "error", "audio", "done"]
        assert events[2]["message"] == "Audio generation failed for: Second one."
        assert _audio_texts(events) == ["audio:First one.", "audio:Third"]

    @pytest.mark.asyncio
    async def test_without_synthesizer(self, fake_llm, make_relay):
        events = await collect(make_relay(fake_llm()).speak_text("Hello."))
        assert _types(events) == ["status", "error"]

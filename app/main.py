from __future__ import annotations

import json
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator, Dict, Optional, Sequence

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
import logging
from pydantic import BaseModel, ConfigDict, Field

from config.settings import get_settings
from narrator.core.memory import MemoryPolicy, get_session_store
from narrator.narrator import build_llm
from narrator.relay import StoryRelay
from narrator.tools.speech import SpeechSynthesizer
from narrator.tools.transcribe import Transcriber


logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s - %(message)s")
logger = logging.getLogger("storyrelay")

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _build_relay.cache_info().currsize:
        await _build_relay().wait_for_memory()
    get_session_store().clear()


app = FastAPI(title="Story Relay", version="1.0.0", lifespan=lifespan)

# CORS: allow local frontend during development
settings = get_settings()
if settings.app_env.lower() in {"dev", "development", "local"}:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


class StoryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(None, alias="sessionId", description="Client-chosen session identifier")
    character: Optional[Any] = Field(None, description="Character sheet, any JSON value")
    action: Optional[str] = Field(None, description="'A', 'B' or a free-form action")


class SpeakRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(None, alias="sessionId")
    text: Optional[str] = None


@lru_cache(maxsize=1)
def _build_relay() -> StoryRelay:
    settings = get_settings()
    return StoryRelay(
        llm=build_llm(settings),
        speech=SpeechSynthesizer(settings),
        store=get_session_store(),
        policy=MemoryPolicy(
            summary_interval=settings.summary_interval,
            max_recent=settings.max_recent,
        ),
    )


def get_relay() -> StoryRelay:
    try:
        return _build_relay()
    except RuntimeError as e:
        logger.error("Relay unavailable: %s", e)
        raise HTTPException(status_code=500, detail=str(e))


@lru_cache(maxsize=1)
def get_transcriber() -> Transcriber:
    return Transcriber(get_settings())


def sse_frame(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


async def _relay_frames(
    request: Request,
    events: AsyncIterator[Dict[str, Any]],
    lead: Sequence[Dict[str, Any]] = (),
) -> AsyncIterator[str]:
    for event in lead:
        yield sse_frame(event)
    try:
        async for event in events:
            if await request.is_disconnected():
                logger.info("Client disconnected, stopping relay")
                break
            yield sse_frame(event)
    except Exception as e:
        logger.exception("Stream processing failed: %s", e)
        yield sse_frame({"type": "error", "message": str(e) or "Processing failed"})
    finally:
        await events.aclose()


def event_stream(
    request: Request,
    events: AsyncIterator[Dict[str, Any]],
    lead: Sequence[Dict[str, Any]] = (),
) -> StreamingResponse:
    return StreamingResponse(
        _relay_frames(request, events, lead),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


def _require_story_fields(req: StoryRequest) -> None:
    if not req.session_id or req.character is None or not req.action:
        raise HTTPException(status_code=400, detail="Missing sessionId, character or action")


async def _read_upload(audio: Optional[UploadFile]) -> bytes:
    if audio is None:
        raise HTTPException(status_code=400, detail="No audio file")
    data = await audio.read()
    if not data:
        raise HTTPException(status_code=400, detail="No audio file")
    return data


@app.post("/stream")
async def stream(req: StoryRequest, request: Request, relay: StoryRelay = Depends(get_relay)):
    _require_story_fields(req)
    logger.info("Incoming /stream: session=%s action_len=%s", req.session_id, len(req.action))
    events = relay.narrate(req.session_id, req.character, req.action)
    return event_stream(request, events, lead=[{"type": "open"}])


@app.post("/text-to-story")
async def text_to_story(req: StoryRequest, request: Request, relay: StoryRelay = Depends(get_relay)):
    _require_story_fields(req)
    logger.info("Incoming /text-to-story: session=%s action_len=%s", req.session_id, len(req.action))
    events = relay.narrate(
        req.session_id, req.character, req.action, speak=True, announce="Generating story..."
    )
    return event_stream(request, events)


@app.post("/text-stream")
async def text_stream(req: StoryRequest, request: Request, relay: StoryRelay = Depends(get_relay)):
    _require_story_fields(req)
    logger.info("Incoming /text-stream: session=%s action_len=%s", req.session_id, len(req.action))
    events = relay.narrate(req.session_id, req.character, req.action, announce="Generating story...")
    return event_stream(request, events)


@app.post("/audio-to-story")
async def audio_to_story(
    request: Request,
    audio: Optional[UploadFile] = File(None),
    session_id: Optional[str] = Form(None, alias="sessionId"),
    character: Optional[str] = Form(None),
    relay: StoryRelay = Depends(get_relay),
    transcriber: Transcriber = Depends(get_transcriber),
):
    data = await _read_upload(audio)
    if not session_id or not character:
        raise HTTPException(status_code=400, detail="Missing sessionId or character")
    try:
        character_data = json.loads(character)
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="character must be valid JSON")

    logger.info("Incoming /audio-to-story: session=%s bytes=%s", session_id, len(data))
    events = relay.narrate_audio(session_id, character_data, data, transcriber)
    return event_stream(request, events)


@app.post("/audio-stream")
async def audio_stream(req: SpeakRequest, request: Request, relay: StoryRelay = Depends(get_relay)):
    if not req.session_id or not req.text:
        raise HTTPException(status_code=400, detail="Missing sessionId or text")
    logger.info("Incoming /audio-stream: session=%s text_len=%s", req.session_id, len(req.text))
    return event_stream(request, relay.speak_text(req.text))


@app.post("/stt")
async def stt(
    audio: Optional[UploadFile] = File(None),
    transcriber: Transcriber = Depends(get_transcriber),
) -> Dict[str, Any]:
    data = await _read_upload(audio)
    try:
        text = await transcriber.transcribe(data)
    except Exception as e:
        logger.exception("STT processing failed: %s", e)
        raise HTTPException(status_code=500, detail=str(e) or "STT processing failed")
    return {"text": text}


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)

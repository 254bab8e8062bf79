from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import HumanMessage
from langchain_google_genai import ChatGoogleGenerativeAI

from config.settings import Settings, get_settings


DELTA = "delta"
ERROR = "error"
COMPLETED = "completed"


@dataclass(frozen=True)
class NarrationEvent:
    type: str
    text: str = ""
    message: Optional[str] = None


def build_llm(settings: Optional[Settings] = None) -> BaseChatModel:
    settings = settings or get_settings()
    if not settings.google_api_key:
        raise RuntimeError(
            "GOOGLE_API_KEY not set. Please configure it in environment or .env"
        )

    return ChatGoogleGenerativeAI(
        model=settings.gemini_model,
        google_api_key=settings.google_api_key,
        temperature=settings.temperature,
        top_p=settings.top_p,
    )


def content_text(content: Any) -> str:
    """Flatten message content, which may arrive as a list of parts."""
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text") or "")
    return "".join(parts)


async def stream_narration(llm: BaseChatModel, prompt: str) -> AsyncIterator[NarrationEvent]:
    """Stream one story beat as delta events followed by completed.

    An upstream failure yields a single error event and ends the stream.
    Closing the generator early abandons the upstream call.
    """
    stream = llm.astream([HumanMessage(content=prompt)])
    try:
        async for chunk in stream:
            text = content_text(chunk.content)
            if text:
                yield NarrationEvent(type=DELTA, text=text)
    except Exception as exc:
        yield NarrationEvent(type=ERROR, message=str(exc) or "Upstream failure")
        return
    finally:
        await stream.aclose()

    yield NarrationEvent(type=COMPLETED)

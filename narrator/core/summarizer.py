from __future__ import annotations

import json
from typing import Optional, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.prompts import ChatPromptTemplate

from narrator.core.memory import Exchange, StoryState
from narrator.narrator import content_text


class SummarizationError(RuntimeError):
    """The model could not produce a replacement summary."""


SUMMARY_PROMPT = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            (
                "You maintain the canon memory of an interactive fantasy story. "
                "Fold the previous summary and the new exchanges into ONE compact "
                "paragraph (max 120 words). Keep names, places, items, promises and "
                "unresolved threads. Drop the A/B option lists and flavour text. "
                "Never invent facts. Reply with the paragraph only."
            ),
        ),
        (
            "human",
            (
                "Previous summary:\n{summary}\n\n"
                "New exchanges (oldest first):\n{exchanges}"
                "{state_block}"
            ),
        ),
    ]
)


def _render_exchanges(recent: Sequence[Exchange]) -> str:
    return "\n\n".join(
        f"Player: {item.action}\nScene: {item.scene}" for item in recent
    ) or "(none)"


def _render_state(state: Optional[StoryState]) -> str:
    if state is None or state.is_empty():
        return ""
    return "\n\nKnown state:\n" + json.dumps(state.as_dict(), ensure_ascii=False)


async def update_summary(
    llm: BaseChatModel,
    old_summary: str,
    recent: Sequence[Exchange],
    state: Optional[StoryState] = None,
) -> str:
    messages = SUMMARY_PROMPT.format_messages(
        summary=old_summary or "(none)",
        exchanges=_render_exchanges(recent),
        state_block=_render_state(state),
    )
    try:
        result = await llm.ainvoke(messages)
    except Exception as exc:
        raise SummarizationError(f"Summary model call failed: {exc}") from exc

    text = content_text(result.content).strip()
    if not text:
        raise SummarizationError("Summary model returned an empty reply")
    return text

from __future__ import annotations

import json
import re
from typing import Any, Sequence

from narrator.core.memory import Exchange


SYSTEM_PROMPT = """You are an immersive fantasy storyteller.

Global rules:
- 2nd person ("you...").
- Tight narration (max 60 words).
- Maintain continuity using the summary. Do not contradict facts.
- End with exactly:
  A) <option A>
  B) <option B>
  (Or describe your own custom action.)"""

OUTPUT_FORMAT = """=== OUTPUT FORMAT (render exactly like this) ===
<Narration text...>
A) <New option A>
B) <New option B>
(Or describe your own custom action.)"""

NONE_PLACEHOLDER = "(none)"

_SHORTHAND_RE = re.compile(r"^[ab]$", re.IGNORECASE)


def is_shorthand_choice(action: Any) -> bool:
    return isinstance(action, str) and bool(_SHORTHAND_RE.match(action.strip()))


def _render_recent(recent: Sequence[Exchange]) -> str:
    lines = [
        f"#{i} Player: {item.action}\nScene: {item.scene}"
        for i, item in enumerate(reversed(list(recent)), start=1)
    ]
    return "\n\n".join(lines) or NONE_PLACEHOLDER


def _render_character(character: Any) -> str:
    return json.dumps(character, indent=2, ensure_ascii=False)


def build_prompt(
    character: Any,
    action: str,
    summary: str,
    last_scene: str,
    recent: Sequence[Exchange],
) -> str:
    """Render the narration request for the next story beat.

    A bare "a"/"b" continues from the matching option of ``last_scene``;
    anything else is treated as the player's own intent.
    """
    if is_shorthand_choice(action):
        choice = action.strip().upper()
        context = (
            "=== LAST SCENE (with options A/B) ===\n"
            f"{last_scene}\n\n"
            "=== PLAYER CHOICE ===\n"
            f'The player chose option "{choice}". Continue accordingly.'
        )
    else:
        context = (
            "=== PLAYER CUSTOM ACTION ===\n"
            f"{action}\n"
            "Continue the story treating this as the player's intent."
        )

    sections = [
        SYSTEM_PROMPT,
        "=== CANON SUMMARY (compact memory of prior story) ===\n"
        f"{summary or NONE_PLACEHOLDER}",
        "=== RECENT EXCHANGES (most recent first) ===\n"
        f"{_render_recent(recent)}",
        f"=== CHARACTER ===\n{_render_character(character)}",
        context,
        OUTPUT_FORMAT,
    ]
    return "\n\n".join(sections).strip()

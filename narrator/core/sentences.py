from __future__ import annotations

"""Sentence boundaries for incremental speech synthesis.

A sentence ends at a run of ``.``, ``!`` or ``?`` (optionally followed by
closing quotes or brackets) when that run is followed by whitespace or by
the end of a final buffer. A period inside a number never matches because
it is not followed by whitespace; a period closing a known abbreviation is
skipped explicitly. While a stream is still growing, punctuation at the
very end of the buffer waits for the next chunk.
"""

import re
from dataclasses import dataclass, field
from typing import List


ABBREVIATIONS = frozenset(
    {"mr.", "mrs.", "ms.", "dr.", "st.", "mt.", "vs.", "etc.", "e.g.", "i.e."}
)

_BOUNDARY_RE = re.compile(r"([.!?]+)([\"'”’)\]]*)(?=\s|\Z)")
_OPENERS = "\"'(“‘["


@dataclass
class SentenceSplit:
    sentences: List[str] = field(default_factory=list)
    remaining: str = ""
    consumed: int = 0  # chars of the buffer covered by ``sentences``

    @property
    def complete(self) -> str:
        return " ".join(self.sentences)


def _ends_with_abbreviation(segment: str, terminal: str, closer: str) -> bool:
    if terminal != "." or closer:
        return False
    words = segment.split()
    if not words:
        return False
    token = words[-1].lstrip(_OPENERS).lower() + "."
    return token in ABBREVIATIONS


def extract_complete_sentences(buffer: str, final: bool = True) -> SentenceSplit:
    """Split ``buffer`` into finished sentences and the trailing partial one.

    With ``final=False`` the buffer is still growing, so punctuation at its
    very end (``3.`` before ``5``) is not yet a boundary.
    """
    sentences: List[str] = []
    start = 0
    for match in _BOUNDARY_RE.finditer(buffer):
        if not final and match.end() == len(buffer):
            break
        if _ends_with_abbreviation(buffer[start:match.start()], match.group(1), match.group(2)):
            continue
        sentence = buffer[start:match.end()].strip()
        if sentence:
            sentences.append(sentence)
        start = match.end()
    return SentenceSplit(sentences=sentences, remaining=buffer[start:].strip(), consumed=start)

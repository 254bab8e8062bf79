from __future__ import annotations

"""Per-session story memory.

Sessions live in process memory only: they are created the first time a
session id is seen and stay until the process exits (or the store is
cleared at shutdown). Each session keeps a compact summary plus the
exchanges not yet folded into it; ``record_exchange`` applies the single
bounded-history policy that decides when the summary is rebuilt.
"""

import logging
import threading
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, List, Optional


logger = logging.getLogger("storyrelay.memory")


@dataclass
class Exchange:
    action: str
    scene: str


@dataclass
class StoryState:
    location: Optional[str] = None
    flags: Dict[str, Any] = field(default_factory=dict)
    inventory: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return self.location is None and not self.flags and not self.inventory

    def as_dict(self) -> Dict[str, Any]:
        return {
            "location": self.location,
            "flags": dict(self.flags),
            "inventory": list(self.inventory),
        }


@dataclass
class Session:
    session_id: str
    summary: str = ""
    last_scene: str = ""
    recent: List[Exchange] = field(default_factory=list)
    state: StoryState = field(default_factory=StoryState)
    turns: int = 0


@dataclass(frozen=True)
class MemoryPolicy:
    summary_interval: int = 5   # summarize once this many exchanges are pending
    max_recent: int = 10        # hard cap while summarization keeps failing

    def __post_init__(self):
        if self.summary_interval < 1:
            raise ValueError("summary_interval must be at least 1")
        if self.max_recent < self.summary_interval:
            raise ValueError("max_recent must be >= summary_interval")


class SessionStore:
    """Keyed, lock-guarded container of live sessions."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    def get_or_create(self, session_id: str) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = Session(session_id=session_id)
                self._sessions[session_id] = session
                logger.info("Created session %s", session_id)
            return session

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            count = len(self._sessions)
            self._sessions.clear()
        logger.info("Cleared %s session(s)", count)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions


@lru_cache(maxsize=1)
def get_session_store() -> SessionStore:
    return SessionStore()


def get_or_create_session(session_id: str) -> Session:
    return get_session_store().get_or_create(session_id)


Summarize = Callable[[str, List[Exchange], Optional[StoryState]], Awaitable[str]]


def append_exchange(
    session: Session,
    action: str,
    scene: str,
    policy: Optional[MemoryPolicy] = None,
) -> bool:
    """Append one exchange; returns True when a summary rebuild is due."""
    policy = policy or MemoryPolicy()

    session.recent.append(Exchange(action=str(action), scene=scene))
    session.last_scene = scene
    session.turns += 1

    if len(session.recent) > policy.max_recent:
        dropped = len(session.recent) - policy.max_recent
        del session.recent[:dropped]
        logger.warning(
            "Session %s: dropped %s unsummarized exchange(s) over cap", session.session_id, dropped
        )

    return len(session.recent) >= policy.summary_interval


async def summarize_pending(session: Session, summarize: Summarize) -> bool:
    """Fold every pending exchange into a new summary.

    Returns True when ``session.summary`` was replaced. A failed
    summarization keeps the previous summary and every pending exchange.
    """
    pending = list(session.recent)
    if not pending:
        return False
    try:
        new_summary = await summarize(session.summary, pending, session.state)
    except Exception as exc:
        logger.warning(
            "Session %s: summarization failed, keeping current memory: %s", session.session_id, exc
        )
        return False

    session.summary = new_summary
    # Another request for this session may have appended while we awaited.
    session.recent = [e for e in session.recent if not any(e is p for p in pending)]
    logger.info("Session %s summary: %s", session.session_id, session.summary)
    return True


async def record_exchange(
    session: Session,
    action: str,
    scene: str,
    summarize: Summarize,
    policy: Optional[MemoryPolicy] = None,
) -> bool:
    """Append one exchange and rebuild the summary when enough are pending."""
    if not append_exchange(session, action, scene, policy):
        return False
    return await summarize_pending(session, summarize)

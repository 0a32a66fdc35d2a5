"""
VOICETUTOR Transcript Recorder

Append-only log of conversation turns. Only the orchestrator appends;
everything else reads snapshots.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from voicetutor.types import Role, SessionSummary, Turn

logger = logging.getLogger(__name__)

__all__ = ["TranscriptRecorder", "DEFAULT_TITLE", "TITLE_LENGTH"]

DEFAULT_TITLE = "Voice Conversation"
TITLE_LENGTH = 50


class TranscriptRecorder:
    """
    Ordered, append-only record of a session's turns.

    Timestamps never go backwards: if the wall clock steps back between two
    appends, the new turn reuses the previous timestamp.
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self._clock = clock
        self._turns: List[Turn] = []
        self._counter = 0

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def turns(self) -> List[Turn]:
        """Snapshot copy of the turns."""
        return list(self._turns)

    @property
    def last_updated(self) -> Optional[datetime]:
        return self._turns[-1].created_at if self._turns else None

    def append(
        self,
        role: Role,
        text: str,
        audio_ref: Optional[bytes] = None,
        links: Iterable[str] = (),
    ) -> Turn:
        """Record a turn and return it."""
        now = self._clock()
        if self._turns and now < self._turns[-1].created_at:
            now = self._turns[-1].created_at

        self._counter += 1
        turn = Turn(
            id=f"{self.session_id}-{self._counter:04d}",
            role=role,
            text=text,
            created_at=now,
            audio_ref=audio_ref,
            links=tuple(links),
        )
        self._turns.append(turn)
        logger.debug(f"Turn {turn.id} appended ({role.value}, {len(text)} chars)")
        return turn

    def history(self, limit: int = 0) -> List[Turn]:
        """Context turns sent with the next dialogue request.

        Args:
            limit: Keep only the most recent N turns (0 keeps all)
        """
        return list(self._turns[-limit:] if limit else self._turns)

    def export(self) -> str:
        """Plain text transcript, one ``[HH:MM:SS] ROLE: text`` line per turn."""
        return "\n".join(
            f"[{t.created_at.strftime('%H:%M:%S')}] {t.role.value.upper()}: {t.text}"
            for t in self._turns
        )

    def title(self) -> str:
        """Title derived from the first user turn."""
        for turn in self._turns:
            if turn.role is Role.USER and turn.text.strip():
                text = turn.text.strip()
                if len(text) > TITLE_LENGTH:
                    return text[:TITLE_LENGTH] + "..."
                return text
        return DEFAULT_TITLE

    def to_session_summary(self) -> SessionSummary:
        return SessionSummary(
            session_id=self.session_id,
            title=self.title(),
            turns=self.turns,
            last_updated=self.last_updated or self._clock(),
        )

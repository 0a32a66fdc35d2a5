"""
VOICETUTOR Session Storage

Default persistence collaborator: one JSON document per completed
conversation, plus plain-text transcript exports.

Usage:
    store = JsonSessionStore("~/.voicetutor/sessions")
    orchestrator = ConversationOrchestrator(..., on_session_complete=store.save)
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from voicetutor.types import SessionSummary

logger = logging.getLogger(__name__)

__all__ = ["JsonSessionStore"]


class JsonSessionStore:
    """Writes session summaries as ``session_<id>.json`` files."""

    def __init__(self, directory: str | Path, transcripts_dir: Optional[str | Path] = None):
        self.directory = Path(directory).expanduser()
        self.transcripts_dir = (
            Path(transcripts_dir).expanduser() if transcripts_dir else self.directory
        )

    def save(self, summary: SessionSummary) -> Path:
        """Persist a completed conversation.

        Returns:
            Path of the written file
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"session_{summary.session_id}.json"
        with open(path, "w", encoding="utf-8") as f:
            json.dump(summary.to_dict(), f, indent=2)
        logger.info(f"Session log saved: {path}")
        return path

    def load(self, session_id: str) -> Dict[str, Any]:
        path = self.directory / f"session_{session_id}.json"
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def list_sessions(self) -> List[Dict[str, Any]]:
        """Saved sessions as ``{id, title, last_updated, turn_count}``, newest first."""
        if not self.directory.exists():
            return []

        sessions = []
        for path in self.directory.glob("session_*.json"):
            try:
                with open(path, encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable session file {path.name}: {e}")
                continue
            sessions.append({
                "id": data.get("id", path.stem[len("session_"):]),
                "title": data.get("title", ""),
                "last_updated": data.get("last_updated", ""),
                "turn_count": len(data.get("turns", [])),
            })

        sessions.sort(key=lambda s: s["last_updated"], reverse=True)
        return sessions

    def write_transcript(self, text: str, name: Optional[str] = None) -> Path:
        """Write an exported transcript to the transcripts directory."""
        self.transcripts_dir.mkdir(parents=True, exist_ok=True)
        if name is None:
            name = f"transcript_{datetime.now().strftime('%Y%m%d_%H%M%S')}.txt"
        path = self.transcripts_dir / name
        path.write_text(text + "\n" if text else "", encoding="utf-8")
        logger.info(f"Transcript exported: {path}")
        return path

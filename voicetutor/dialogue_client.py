"""
VOICETUTOR Dialogue Client

Sends a final transcript plus the prior conversation to the tutor backend
and returns one canonical DialogueReply. All payload-shape tolerance lives
in normalize_reply(); nothing downstream inspects raw backend JSON.

Wire format:
    request:  {"prompt": str,
               "conversationHistory": [{"role", "content", "type"}, ...]}
    response: {"content": str, "audio": base64?, "spotifyUrls"/"links": [str]?}
    error:    non-2xx with {"message": str}

Usage:
    async with HttpDialogueClient(config.dialogue) as client:
        reply = await client.send("what is a compressor?", turns)
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence

import aiohttp

from voicetutor.config import DialogueConfig
from voicetutor.exceptions import DialogueError
from voicetutor.types import DialogueReply, Role, Turn

logger = logging.getLogger(__name__)

__all__ = [
    "DialogueClient",
    "HttpDialogueClient",
    "FALLBACK_TEXT",
    "build_history",
    "ensure_text",
    "normalize_reply",
]

FALLBACK_TEXT = "Sorry, I couldn't generate a proper response. Please try asking again."
INVALID_FORMAT = "Invalid response format from API"

_BOLD = re.compile(r"\*\*(.*?)\*\*")


class DialogueClient(Protocol):
    """Remote tutor capability. One request per turn."""

    async def send(self, transcript: str, history: Sequence[Turn]) -> DialogueReply: ...


# =============================================================================
# Normalization
# =============================================================================


def ensure_text(value: Any) -> str:
    """Extract displayable text from whatever shape the backend returned.

    Tries plain strings, ``{"text": {"content": ...}}``, ``{"text": ...}``,
    ``{"content": ...}``, ``{"message": ...}``, lists (joined with spaces)
    and ``{"choices": [...]}``. Markdown bold markers are removed. Anything
    else yields FALLBACK_TEXT.
    """
    if isinstance(value, str):
        result = value.strip()
    elif value is None:
        result = FALLBACK_TEXT
    elif isinstance(value, dict):
        text = value.get("text")
        if isinstance(text, dict) and isinstance(text.get("content"), str):
            result = text["content"].strip()
        elif isinstance(text, str) and text:
            result = text.strip()
        elif isinstance(value.get("content"), str) and value["content"]:
            result = value["content"].strip()
        elif isinstance(value.get("message"), str) and value["message"]:
            result = value["message"].strip()
        elif isinstance(value.get("choices"), list) and value["choices"]:
            result = ensure_text(value["choices"][0])
        else:
            logger.error(f"Unable to extract text from object: {value!r}")
            result = FALLBACK_TEXT
    elif isinstance(value, (list, tuple)):
        items = [item for item in (ensure_text(v) for v in value) if item]
        result = " ".join(items).strip() or FALLBACK_TEXT
    else:
        result = str(value).strip()

    return _BOLD.sub(r"\1", result)


def _decode_audio(data: Any) -> Optional[bytes]:
    if not isinstance(data, str) or not data:
        return None
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        logger.warning(f"Discarding undecodable audio payload: {e}")
        return None


def _extract_links(payload: Dict[str, Any]) -> List[str]:
    for key in ("spotifyUrls", "links"):
        value = payload.get(key)
        if isinstance(value, list):
            return [str(v) for v in value if v]
    spotify = payload.get("spotify")
    if isinstance(spotify, list):
        return [str(v) for v in spotify if v]
    if isinstance(spotify, str) and spotify:
        return [spotify]
    return []


def normalize_reply(payload: Any) -> DialogueReply:
    """Convert a backend response body into a DialogueReply.

    Raises:
        DialogueError: No usable reply text could be extracted
    """
    if isinstance(payload, dict):
        source = payload.get("content") or payload.get("text") or payload
    else:
        source = payload

    text = ensure_text(source)
    if not text or text == FALLBACK_TEXT or "[object Object]" in text:
        raise DialogueError(INVALID_FORMAT)

    if not isinstance(payload, dict):
        return DialogueReply(reply_text=text)

    return DialogueReply(
        reply_text=text,
        audio_payload=_decode_audio(payload.get("audio")),
        links=_extract_links(payload),
    )


def build_history(turns: Sequence[Turn]) -> List[Dict[str, str]]:
    """Serialize prior turns for ``conversationHistory``."""
    return [
        {
            "role": turn.role.value,
            "content": turn.text,
            "type": "user" if turn.role is Role.USER else "ai",
        }
        for turn in turns
    ]


# =============================================================================
# HTTP Client
# =============================================================================


class HttpDialogueClient:
    """aiohttp client for the tutor-response endpoint."""

    def __init__(self, config: Optional[DialogueConfig] = None):
        self.config = config or DialogueConfig()
        self._session: Optional[aiohttp.ClientSession] = None
        self.last_latency_ms: Optional[float] = None

    async def __aenter__(self) -> "HttpDialogueClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout)
            )
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def send(self, transcript: str, history: Sequence[Turn]) -> DialogueReply:
        """POST the prompt and return the normalized reply.

        Raises:
            DialogueError: Transport failure, timeout, non-2xx status or an
                unusable response body
        """
        body = {"prompt": transcript, "conversationHistory": build_history(history)}
        url = self.config.url
        started = time.monotonic()

        try:
            session = self._get_session()
            async with session.post(url, json=body, headers=self._headers()) as response:
                if response.status < 200 or response.status >= 300:
                    message = await self._error_message(response)
                    raise DialogueError(message, status=response.status, url=url)
                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    raise DialogueError(INVALID_FORMAT, status=response.status, url=url) from e
        except asyncio.TimeoutError as e:
            raise DialogueError("Dialogue request timed out", url=url) from e
        except aiohttp.ClientError as e:
            raise DialogueError(f"Dialogue request failed: {e}", url=url) from e

        self.last_latency_ms = (time.monotonic() - started) * 1000
        logger.info(f"Dialogue reply received in {self.last_latency_ms:.0f} ms")

        reply = normalize_reply(payload)
        if reply.has_audio:
            logger.info(
                f"Audio ready after {(time.monotonic() - started) * 1000:.0f} ms "
                f"({len(reply.audio_payload)} bytes)"
            )
        else:
            logger.info("Dialogue reply carried no audio")
        return reply

    @staticmethod
    async def _error_message(response: aiohttp.ClientResponse) -> str:
        try:
            data = await response.json(content_type=None)
        except ValueError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("message"), str) and data["message"]:
            return data["message"]
        return "Failed to generate response"

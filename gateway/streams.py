"""Chunked delivery of large read results.

A read result too big for one reply is parked here under a token and
handed out in line-aligned chunks. Tokens are the MD5 of the originating
path, so opening the same path again replaces the live entry.
"""

from __future__ import annotations

import hashlib
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger()

DEFAULT_CHUNK_LIMIT = 10 * 1024 * 1024


def stream_token(path: str) -> str:
    """Derive the stream token for a path."""
    return hashlib.md5(path.encode("utf-8"), usedforsecurity=False).hexdigest()


@dataclass
class StreamEntry:
    """One open streaming read session."""

    token: str
    content: str
    cursor: int = 0
    last_access: float = field(default=0.0)


class StreamRegistry:
    """Owns every open stream entry and its lifetime.

    Entries are removed when a read comes back empty or when they sit
    unread for longer than the idle timeout. All access goes through a
    single lock.
    """

    def __init__(
        self,
        chunk_limit: int = DEFAULT_CHUNK_LIMIT,
        idle_timeout: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the registry.

        Args:
            chunk_limit: Chunk size in characters after which a read stops.
            idle_timeout: Seconds an untouched entry survives; 0 disables.
            clock: Monotonic time source.
        """
        self._chunk_limit = chunk_limit
        self._idle_timeout = idle_timeout
        self._clock = clock
        self._entries: dict[str, StreamEntry] = {}
        self._lock = threading.Lock()

    def __contains__(self, token: object) -> bool:
        with self._lock:
            return token in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def open(self, path: str, content: str) -> str:
        """Register content for streaming and return its token.

        Args:
            path: The request string the content was read from.
            content: The full text to stream.

        Returns:
            The token for subsequent read_chunk calls.
        """
        token = stream_token(path)
        now = self._clock()
        with self._lock:
            self._evict_idle(now)
            if token in self._entries:
                logger.debug("stream_reopened", token=token)
            self._entries[token] = StreamEntry(token=token, content=content, last_access=now)
        logger.info("stream_opened", token=token, size=len(content))
        return token

    def read_chunk(self, token: str) -> str:
        """Return the next run of whole lines for a token.

        Lines are appended until the text runs out or the chunk grows past
        the limit. An empty result means the stream is finished (or the
        token was never valid) and the entry is dropped.

        Args:
            token: Token returned by open().

        Returns:
            The next chunk, or "" when exhausted or unknown.
        """
        now = self._clock()
        with self._lock:
            self._evict_idle(now)
            entry = self._entries.get(token)
            if entry is None:
                return ""

            text = entry.content
            end = len(text)
            cursor = entry.cursor
            size = 0
            parts: list[str] = []
            while cursor < end:
                newline = text.find("\n", cursor)
                stop = end if newline == -1 else newline + 1
                parts.append(text[cursor:stop])
                size += stop - cursor
                cursor = stop
                if size > self._chunk_limit:
                    break

            entry.cursor = cursor
            entry.last_access = now
            if not parts:
                del self._entries[token]
                logger.info("stream_closed", token=token)
                return ""

        return "".join(parts)

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._entries.clear()

    def _evict_idle(self, now: float) -> None:
        """Remove entries idle past the timeout. Caller holds the lock."""
        if not self._idle_timeout:
            return
        expired = [
            token for token, entry in self._entries.items()
            if now - entry.last_access > self._idle_timeout
        ]
        for token in expired:
            del self._entries[token]
            logger.info("stream_expired", token=token)

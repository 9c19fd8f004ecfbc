"""In-memory one-time token store backing the short links."""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

TOKEN_TTL_SECONDS = 10 * 60


@dataclass
class TokenEntry:
    payload: str
    created_at: float
    expires_at: float


class TokenStore:
    """Maps generated ids to payloads that can be read exactly once.

    Entries vanish on the first successful ``consume`` or once their TTL has
    elapsed, whichever comes first. Everything lives in process memory.
    """

    def __init__(
        self,
        ttl: float = TOKEN_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, TokenEntry] = {}
        self._lock = threading.Lock()

    def store(self, payload: str) -> str:
        token_id = uuid.uuid4().hex
        now = self._clock()
        with self._lock:
            self._entries[token_id] = TokenEntry(
                payload=payload, created_at=now, expires_at=now + self.ttl
            )
        logger.debug("Stored token %s (%d chars)", token_id, len(payload))
        return token_id

    def consume(self, token_id: str) -> Optional[str]:
        """Return the payload and delete it, or None if unknown or expired."""
        with self._lock:
            entry = self._entries.pop(token_id, None)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            logger.debug("Token %s expired before it was consumed", token_id)
            return None
        return entry.payload

    def contains(self, token_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(token_id)
            if entry is None:
                return False
            if entry.expires_at <= self._clock():
                del self._entries[token_id]
                return False
            return True

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [tid for tid, e in self._entries.items() if e.expires_at <= now]
            for tid in expired:
                del self._entries[tid]
        if expired:
            logger.info("Purged %d expired token(s)", len(expired))
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

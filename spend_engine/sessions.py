# spend_engine/sessions.py
"""In-memory store for parsed-but-uncommitted imports."""
from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from spend_engine.core.models import ParsedRecord
from spend_engine.errors import SessionExpiredError

logger = logging.getLogger(__name__)


@dataclass
class ImportSession:
    session_id: str
    records: List[ParsedRecord]
    currencies: List[str]
    by_bank: Dict[str, int]
    by_currency: Dict[str, int]
    files: List[str] = field(default_factory=list)
    created_at: float = 0.0
    expires_at: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class SessionStore:
    """Thread-safe map of session id -> ImportSession with TTL eviction.

    Expired sessions are purged on every access, so memory is bounded by the
    number of imports started within one TTL window.
    """

    def __init__(self, ttl_seconds: float = 900, clock: Callable[[], float] = time.monotonic):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, ImportSession] = {}

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired(self._clock())
            return len(self._sessions)

    def _evict_expired(self, now: float) -> None:
        expired = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            logger.debug("Evicted %d expired import session(s)", len(expired))

    def create(
        self,
        records: List[ParsedRecord],
        currencies: List[str],
        by_bank: Dict[str, int],
        by_currency: Dict[str, int],
        files: Optional[List[str]] = None,
    ) -> ImportSession:
        with self._lock:
            now = self._clock()
            self._evict_expired(now)
            session = ImportSession(
                session_id=uuid.uuid4().hex,
                records=list(records),
                currencies=list(currencies),
                by_bank=dict(by_bank),
                by_currency=dict(by_currency),
                files=list(files or []),
                created_at=now,
                expires_at=now + self.ttl_seconds,
            )
            self._sessions[session.session_id] = session
            return session

    def get(self, session_id: str) -> ImportSession:
        with self._lock:
            self._evict_expired(self._clock())
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionExpiredError(session_id)
        return session

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

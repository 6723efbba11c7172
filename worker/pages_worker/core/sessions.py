"""Session pool tracking the health of the identities used to browse."""

from __future__ import annotations

import logging
import random
import threading
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from pages_worker.core.storage import StateStore

logger = logging.getLogger(__name__)

MAX_ERROR_SCORE = 3
MAX_USAGE_COUNT = 50
DEFAULT_POOL_SIZE = 100


@dataclass
class Session:
    id: str = field(default_factory=lambda: f"session_{uuid.uuid4().hex[:10]}")
    usage_count: int = 0
    error_score: float = 0
    retired: bool = False
    cookies: List[Dict[str, Any]] = field(default_factory=list)

    def is_usable(self) -> bool:
        return not self.retired and self.error_score < MAX_ERROR_SCORE and self.usage_count < MAX_USAGE_COUNT

    def mark_good(self) -> None:
        self.usage_count += 1
        self.error_score = max(0, self.error_score - 0.5)

    def mark_bad(self) -> None:
        self.usage_count += 1
        self.error_score += 1
        if self.error_score >= MAX_ERROR_SCORE:
            logger.debug("Session %s reached the error limit", self.id)

    def retire(self) -> None:
        self.retired = True
        self.cookies = []
        logger.info("Retired session %s", self.id)


class SessionPool:
    """Thread-safe pool handing out healthy sessions, optionally persisted to a store.

    When a persistence key is configured the pool is limited to a single
    session so the same cookies are reused across runs.
    """

    def __init__(
        self,
        *,
        max_pool_size: int = DEFAULT_POOL_SIZE,
        store: Optional[StateStore] = None,
        persist_key: str = "",
    ) -> None:
        self.persist_key = persist_key
        self.max_pool_size = 1 if persist_key else max_pool_size
        self._store = store if persist_key else None
        self._sessions: List[Session] = []
        self._lock = threading.Lock()
        self._load()

    @property
    def persist_cookies(self) -> bool:
        return bool(self.persist_key)

    def _load(self) -> None:
        if self._store is None:
            return
        data = self._store.load(self.persist_key) or []
        self._sessions = [Session(**item) for item in data]
        self._sessions = [session for session in self._sessions if session.is_usable()]
        if self._sessions:
            logger.info("Loaded %d sessions from %s", len(self._sessions), self.persist_key)

    def get_session(self) -> Session:
        with self._lock:
            self._sessions = [session for session in self._sessions if session.is_usable()]
            if len(self._sessions) < self.max_pool_size:
                session = Session()
                self._sessions.append(session)
                return session
            return random.choice(self._sessions)

    def persist(self) -> None:
        if self._store is None:
            return
        with self._lock:
            data = [asdict(session) for session in self._sessions if session.is_usable()]
        self._store.save(self.persist_key, data)

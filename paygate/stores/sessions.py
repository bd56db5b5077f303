"""
In-memory session store and session validation rules
"""

import threading
from datetime import datetime
from typing import Dict, List, Optional

import structlog

from paygate.payments.errors import SessionInvalid, StoreNotFound
from paygate.payments.models import utcnow
from paygate.stores.base import SessionStore
from paygate.stores.models import Session, SessionKind

logger = structlog.get_logger()

REASON_INACTIVE = "session is inactive"
REASON_EXPIRED = "session has expired"
REASON_EXHAUSTED = "session request limit exceeded"
REASON_ENDPOINT = "endpoint not allowed for this session"


def matches_endpoint(path: str, pattern: str) -> bool:
    """
    "*" and "/*" match everything; "/api/*" matches any path starting with
    "/api"; anything else must match exactly.
    """
    if pattern in ("*", "/*"):
        return True
    if pattern.endswith("/*"):
        return path.startswith(pattern[:-2])
    return path == pattern


def validate_session(session: Session, path: str, now: Optional[datetime] = None) -> Optional[str]:
    """Return the reason the session cannot serve `path`, or None"""
    if not session.active:
        return REASON_INACTIVE
    if (now or utcnow()) > session.expires_at:
        return REASON_EXPIRED
    if session.kind == SessionKind.REQUESTS and session.used_requests >= session.max_requests:
        return REASON_EXHAUSTED
    if session.allowed_endpoints and not any(
        matches_endpoint(path, pattern) for pattern in session.allowed_endpoints
    ):
        return REASON_ENDPOINT
    return None


class InMemorySessionStore(SessionStore):
    """Sessions held in a dict behind one lock; readers get copies"""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Session] = {}

    def create(self, session: Session) -> Session:
        session = session.model_copy(deep=True)
        with self._lock:
            if session.id in self._sessions:
                raise ValueError(f"session {session.id} already exists")
            self._sessions[session.id] = session
        logger.info(
            "session_created",
            session_id=session.id,
            payer=session.payer_address,
            kind=session.kind.value,
        )
        return session.model_copy(deep=True)

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    def update(self, session: Session) -> Session:
        with self._lock:
            if session.id not in self._sessions:
                raise StoreNotFound(f"session {session.id} not found")
            self._sessions[session.id] = session.model_copy(deep=True)
        return session

    def delete(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.info("session_deleted", session_id=session_id)
        return removed

    def list_by_payer(self, payer_address: str) -> List[Session]:
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._sessions.values()
                if s.payer_address.lower() == payer_address.lower()
            ]

    def consume(self, session_id: str, path: str, now: Optional[datetime] = None) -> Session:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise StoreNotFound(f"session {session_id} not found")
            reason = validate_session(session, path, now)
            if reason:
                raise SessionInvalid(reason, session_id=session_id)
            session.used_requests += 1
            return session.model_copy(deep=True)

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Remove sessions past their expiry; returns how many were removed"""
        now = now or utcnow()
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if now > s.expires_at]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

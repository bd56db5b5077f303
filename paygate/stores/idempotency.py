"""
In-memory idempotency store
"""

import threading
from datetime import datetime, timedelta
from typing import Dict, Optional

from paygate.payments.models import utcnow
from paygate.stores.base import IdempotencyStore
from paygate.stores.models import IdempotencyRecord

DEFAULT_TTL_SECONDS = 24 * 3600


class InMemoryIdempotencyStore(IdempotencyStore):
    """
    Completed responses keyed by idempotency key.

    Records are served only while strictly before their expiry. `set` stamps
    the creation time and, when the record carries no expiry, applies the
    store TTL. Two first-time requests racing on one key both run; the last
    write wins.
    """

    def __init__(self, ttl: int = DEFAULT_TTL_SECONDS):
        self._lock = threading.Lock()
        self._records: Dict[str, IdempotencyRecord] = {}
        self.ttl = ttl

    def get(self, key: str, now: Optional[datetime] = None) -> Optional[IdempotencyRecord]:
        now = now or utcnow()
        with self._lock:
            record = self._records.get(key)
        if record is None or record.expires_at is None or now >= record.expires_at:
            return None
        return record

    def set(self, key: str, record: IdempotencyRecord) -> IdempotencyRecord:
        created_at = utcnow()
        stored = record.model_copy(
            update={
                "key": key,
                "created_at": created_at,
                "expires_at": record.expires_at or created_at + timedelta(seconds=self.ttl),
            }
        )
        with self._lock:
            self._records[key] = stored
        return stored

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._lock:
            expired = [
                k for k, r in self._records.items()
                if r.expires_at is None or now >= r.expires_at
            ]
            for key in expired:
                del self._records[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

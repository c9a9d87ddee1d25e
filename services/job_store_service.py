"""
Job store: keyed records with expiry plus atomic chunk locks.

Two backends:
- SupabaseJobStore: tables `pairing_jobs (id, payload, expires_at)` and
  `pairing_chunk_locks (lock_key primary key, expires_at)`
- InMemoryJobStore: single process, for local runs and tests

A lock is "set if absent with expiry": acquiring an already-held,
unexpired lock returns False instead of raising.
"""

import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog
from postgrest.exceptions import APIError

from config.database import get_supabase_client
from config.settings import settings
from exceptions import JobStoreError

logger = structlog.get_logger(__name__)

JOBS_TABLE = "pairing_jobs"
LOCKS_TABLE = "pairing_chunk_locks"

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


class JobStore(ABC):
    """Persistence interface used by the orchestrator."""

    @abstractmethod
    def get(self, key: str) -> Optional[dict[str, Any]]:
        """Record for key, or None if missing or expired."""

    @abstractmethod
    def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        """Create or replace a record, resetting its expiry."""

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def acquire_lock(self, lock_key: str, ttl_seconds: int) -> bool:
        """Atomically take a lock. False if someone else holds it."""

    @abstractmethod
    def release_lock(self, lock_key: str) -> None:
        ...


# ===================
# IN-MEMORY
# ===================

class InMemoryJobStore(JobStore):
    """Dict-backed store with expiry; one process only."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._records: dict[str, tuple[float, dict[str, Any]]] = {}
        self._locks: dict[str, float] = {}
        self._mutex = threading.Lock()

    def get(self, key: str) -> Optional[dict[str, Any]]:
        with self._mutex:
            entry = self._records.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._records[key]
                return None
            return dict(value)

    def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        with self._mutex:
            self._records[key] = (self._clock() + ttl_seconds, dict(value))

    def delete(self, key: str) -> None:
        with self._mutex:
            self._records.pop(key, None)

    def acquire_lock(self, lock_key: str, ttl_seconds: int) -> bool:
        with self._mutex:
            now = self._clock()
            expires_at = self._locks.get(lock_key)
            if expires_at is not None and now < expires_at:
                return False
            self._locks[lock_key] = now + ttl_seconds
            return True

    def release_lock(self, lock_key: str) -> None:
        with self._mutex:
            self._locks.pop(lock_key, None)

    def is_locked(self, lock_key: str) -> bool:
        with self._mutex:
            expires_at = self._locks.get(lock_key)
            return expires_at is not None and self._clock() < expires_at


# ===================
# SUPABASE
# ===================

def _iso(dt: datetime) -> str:
    return dt.isoformat()


class SupabaseJobStore(JobStore):
    """
    Job store on Supabase tables.

    Expired rows are filtered on read and purged before a lock insert, so
    an abandoned lock frees itself after its TTL.
    """

    def __init__(self, client=None, now: Callable[[], datetime] = None):
        self.db = client or get_supabase_client()
        self._now = now or (lambda: datetime.now(timezone.utc))

    def get(self, key: str) -> Optional[dict[str, Any]]:
        try:
            result = self.db.table(JOBS_TABLE).select("payload, expires_at").eq(
                "id", key
            ).gt("expires_at", _iso(self._now())).limit(1).execute()
        except APIError as e:
            logger.error("job_store_read_failed", key=key, error=e.message)
            raise JobStoreError("get", f"Failed to read job record: {e.message}", key=key)

        if not result.data:
            return None
        return result.data[0]["payload"]

    def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        row = {
            "id": key,
            "payload": value,
            "expires_at": _iso(self._now() + timedelta(seconds=ttl_seconds)),
        }
        try:
            self.db.table(JOBS_TABLE).upsert(row).execute()
        except APIError as e:
            logger.error("job_store_write_failed", key=key, error=e.message)
            raise JobStoreError("set", f"Failed to write job record: {e.message}", key=key)

    def delete(self, key: str) -> None:
        try:
            self.db.table(JOBS_TABLE).delete().eq("id", key).execute()
        except APIError as e:
            raise JobStoreError("delete", f"Failed to delete job record: {e.message}", key=key)

    def acquire_lock(self, lock_key: str, ttl_seconds: int) -> bool:
        now = self._now()
        try:
            self.db.table(LOCKS_TABLE).delete().eq(
                "lock_key", lock_key
            ).lt("expires_at", _iso(now)).execute()

            self.db.table(LOCKS_TABLE).insert({
                "lock_key": lock_key,
                "expires_at": _iso(now + timedelta(seconds=ttl_seconds)),
            }).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                return False
            logger.error("chunk_lock_acquire_failed", lock_key=lock_key, error=e.message)
            raise JobStoreError("acquire_lock", f"Failed to acquire lock: {e.message}", key=lock_key)
        return True

    def release_lock(self, lock_key: str) -> None:
        try:
            self.db.table(LOCKS_TABLE).delete().eq("lock_key", lock_key).execute()
        except APIError as e:
            raise JobStoreError("release_lock", f"Failed to release lock: {e.message}", key=lock_key)


_job_store: Optional[JobStore] = None


def get_job_store() -> JobStore:
    """Get or create the job store for the configured backend."""
    global _job_store
    if _job_store is None:
        if settings.job_store_backend == "memory":
            _job_store = InMemoryJobStore()
        else:
            _job_store = SupabaseJobStore()
        logger.info("job_store_initialized", backend=settings.job_store_backend)
    return _job_store

import logging
import threading
import time
from typing import Callable, Dict, Tuple

from sqlalchemy.exc import IntegrityError

from arena.models.records import LeaseRecord

logger = logging.getLogger(__name__)


class InMemoryLeaseStore:
    """Per-process leases. Only safe with a single API instance."""

    def __init__(self, ttl_sec: float = 30, clock: Callable[[], float] = time.monotonic):
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._leases: Dict[str, Tuple[str, float]] = {}
        self._mutex = threading.Lock()

    def try_acquire(self, key: str, holder: str) -> bool:
        now = self._clock()
        with self._mutex:
            current = self._leases.get(key)
            if current is not None:
                current_holder, expires_at = current
                if expires_at > now and current_holder != holder:
                    return False
                if expires_at <= now:
                    logger.warning("Taking over stale lease %s from %s", key, current_holder)
            self._leases[key] = (holder, now + self.ttl_sec)
        return True

    def release(self, key: str, holder: str) -> None:
        with self._mutex:
            current = self._leases.get(key)
            if current is not None and current[0] == holder:
                del self._leases[key]


class DatabaseLeaseStore:
    """Leases shared by every instance pointed at the same database."""

    def __init__(self, session_factory, ttl_sec: float = 30, clock: Callable[[], float] = time.time):
        self._session_factory = session_factory
        self.ttl_sec = ttl_sec
        self._clock = clock

    def try_acquire(self, key: str, holder: str) -> bool:
        now = self._clock()
        with self._session_factory() as db:
            # Take over a lease that expired or that we already hold
            updated = db.query(LeaseRecord).filter(
                LeaseRecord.key == key,
                (LeaseRecord.expires_at <= now) | (LeaseRecord.holder == holder),
            ).update(
                {LeaseRecord.holder: holder, LeaseRecord.expires_at: now + self.ttl_sec},
                synchronize_session=False,
            )
            if updated:
                db.commit()
                return True
            db.add(LeaseRecord(key=key, holder=holder, expires_at=now + self.ttl_sec))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
        return True

    def release(self, key: str, holder: str) -> None:
        with self._session_factory() as db:
            db.query(LeaseRecord).filter(LeaseRecord.key == key, LeaseRecord.holder == holder).delete(
                synchronize_session=False
            )
            db.commit()


def build_lease_store(backend: str, session_factory=None, ttl_sec: float = 30):
    if backend == "memory":
        return InMemoryLeaseStore(ttl_sec=ttl_sec)
    if backend == "database":
        if session_factory is None:
            raise ValueError("The database lease backend needs a session factory")
        return DatabaseLeaseStore(session_factory, ttl_sec=ttl_sec)
    raise ValueError(f"Unknown lease backend: {backend}")

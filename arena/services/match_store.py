import logging
from typing import Callable, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError

from arena.core.database import init_db, make_engine, make_session_factory
from arena.core.errors import not_found
from arena.models.match_model import ACTIVE_STATUSES, OPEN_STATUSES, Match, MatchStatus, utcnow
from arena.models.records import CounterRecord, MatchRecord, PaymentRecord, PaymentSummaryRecord

logger = logging.getLogger(__name__)

MATCH_COUNTER = "matches"


class MatchConflictError(Exception):
    """The match changed since it was read; the write was not applied."""


def _naive(value):
    # SQLite DateTime columns hold naive UTC
    return value.replace(tzinfo=None) if value is not None and value.tzinfo else value


def _status_value(status) -> str:
    return status.value if isinstance(status, MatchStatus) else str(status)


class MatchStore:
    """
    Durable match documents keyed "game<N>".

    Every write is a compare-and-swap on the record version: a caller holding a
    stale copy gets MatchConflictError instead of overwriting a newer document.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    @property
    def session_factory(self):
        return self._session_factory

    @classmethod
    def from_url(cls, database_url: str) -> "MatchStore":
        engine = make_engine(database_url)
        init_db(engine)
        return cls(make_session_factory(engine))

    # --- counter ---

    def next_match_seq(self) -> int:
        with self._session_factory() as db:
            updated = db.query(CounterRecord).filter(CounterRecord.name == MATCH_COUNTER).update(
                {CounterRecord.value: CounterRecord.value + 1}, synchronize_session=False
            )
            if not updated:
                db.add(CounterRecord(name=MATCH_COUNTER, value=1))
                try:
                    db.commit()
                except IntegrityError:
                    # Another writer created the counter first
                    db.rollback()
                    return self.next_match_seq()
                return 1
            value = db.query(CounterRecord.value).filter(CounterRecord.name == MATCH_COUNTER).scalar()
            db.commit()
            return value

    # --- matches ---

    def create(self, match: Match, seq: int) -> Match:
        with self._session_factory() as db:
            db_match = MatchRecord(
                id=match.id,
                seq=seq,
                status=_status_value(match.status),
                version=1,
                created_at=_naive(match.created_at),
                updated_at=_naive(match.updated_at),
                completed_at=_naive(match.completed_at),
                data=match.to_document(),
            )
            db.add(db_match)
            db.commit()
        match.version = 1
        logger.info("Created match %s", match.id)
        return match

    def get(self, match_id: str) -> Optional[Match]:
        with self._session_factory() as db:
            db_match = db.query(MatchRecord).filter(MatchRecord.id == match_id).first()
            if not db_match:
                return None
            return Match.from_document(db_match.data, version=db_match.version)

    def list_by_status(self, statuses: Iterable[MatchStatus]) -> List[Match]:
        """Matches in the given statuses, oldest first."""
        values = [_status_value(s) for s in statuses]
        with self._session_factory() as db:
            records = (
                db.query(MatchRecord)
                .filter(MatchRecord.status.in_(values))
                .order_by(MatchRecord.created_at, MatchRecord.seq)
                .all()
            )
            return [Match.from_document(r.data, version=r.version) for r in records]

    def find_open_lobbies(self) -> List[Match]:
        return self.list_by_status(OPEN_STATUSES)

    def find_active_match_for_player(self, address: str, exclude_match_id: Optional[str] = None) -> Optional[Match]:
        for match in self.list_by_status(ACTIVE_STATUSES):
            if match.id != exclude_match_id and match.has_player(address):
                return match
        return None

    def list_completed(self, limit: Optional[int] = None) -> List[Match]:
        """Completed matches, most recently completed first."""
        with self._session_factory() as db:
            query = (
                db.query(MatchRecord)
                .filter(MatchRecord.status == MatchStatus.COMPLETED.value)
                .order_by(MatchRecord.completed_at.desc(), MatchRecord.seq.desc())
            )
            if limit:
                query = query.limit(limit)
            return [Match.from_document(r.data, version=r.version) for r in query.all()]

    def save(self, match: Match) -> Match:
        """Write match if its version is still current; bumps match.version on success."""
        with self._session_factory() as db:
            updated = db.query(MatchRecord).filter(
                MatchRecord.id == match.id, MatchRecord.version == match.version
            ).update(
                {
                    MatchRecord.status: _status_value(match.status),
                    MatchRecord.version: match.version + 1,
                    MatchRecord.updated_at: _naive(match.updated_at),
                    MatchRecord.completed_at: _naive(match.completed_at),
                    MatchRecord.data: match.to_document(),
                },
                synchronize_session=False,
            )
            if not updated:
                db.rollback()
                raise MatchConflictError(f"Match {match.id} changed since version {match.version}")
            db.commit()
        match.version += 1
        return match

    def update(self, match_id: str, mutate: Callable[[Match], Optional[bool]], max_attempts: int = 5) -> Match:
        """
        Read-modify-write with retry on version conflict.

        mutate receives a fresh copy on every attempt and must re-check its
        preconditions there. Returning False skips the write; raising aborts.
        """
        for attempt in range(1, max_attempts + 1):
            match = self.get(match_id)
            if match is None:
                raise not_found(f"Match {match_id} not found")
            if mutate(match) is False:
                return match
            try:
                return self.save(match)
            except MatchConflictError:
                logger.debug("Version conflict on %s (attempt %d/%d)", match_id, attempt, max_attempts)
        raise MatchConflictError(f"Match {match_id} kept changing after {max_attempts} attempts")

    def delete(self, match_id: str, version: Optional[int] = None) -> bool:
        with self._session_factory() as db:
            query = db.query(MatchRecord).filter(MatchRecord.id == match_id)
            if version is not None:
                query = query.filter(MatchRecord.version == version)
            deleted = query.delete(synchronize_session=False)
            db.commit()
        return bool(deleted)

    # --- payment ledger ---

    def is_signature_used(self, signature: str) -> bool:
        with self._session_factory() as db:
            return db.query(PaymentRecord).filter(PaymentRecord.signature == signature).first() is not None

    def claim_signature(self, signature: str, player_address: str, amount: float) -> bool:
        """Reserve a payment signature; False if it was already spent."""
        with self._session_factory() as db:
            db.add(PaymentRecord(signature=signature, player_address=player_address, amount=amount))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
        return True

    def attach_payment(self, signature: str, match_id: str) -> None:
        with self._session_factory() as db:
            db.query(PaymentRecord).filter(PaymentRecord.signature == signature).update(
                {PaymentRecord.match_id: match_id}, synchronize_session=False
            )
            db.commit()

    def release_signature(self, signature: str) -> None:
        with self._session_factory() as db:
            db.query(PaymentRecord).filter(
                PaymentRecord.signature == signature, PaymentRecord.match_id.is_(None)
            ).delete(synchronize_session=False)
            db.commit()

    # --- payment summaries ---

    def save_payment_summary(self, summary_id: str, match_id: str, data: dict) -> bool:
        """Write-once; False when a summary for this match already exists."""
        with self._session_factory() as db:
            db.add(PaymentSummaryRecord(id=summary_id, match_id=match_id, data=data))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
        return True

    def get_payment_summary(self, match_id: str) -> Optional[dict]:
        with self._session_factory() as db:
            record = db.query(PaymentSummaryRecord).filter(PaymentSummaryRecord.match_id == match_id).first()
            return dict(record.data) if record else None

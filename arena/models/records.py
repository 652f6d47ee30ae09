import datetime

from sqlalchemy import Column, DateTime, Float, Integer, JSON, String

from arena.core.database import Base


class MatchRecord(Base):
    __tablename__ = "matches"

    id = Column(String, primary_key=True, index=True) # "game<N>"
    seq = Column(Integer, nullable=False, index=True) # N, tie-break for creation order
    status = Column(String, nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.datetime.utcnow)
    completed_at = Column(DateTime, nullable=True, index=True)
    data = Column(JSON, nullable=False) # the full match document


class CounterRecord(Base):
    __tablename__ = "counters"

    name = Column(String, primary_key=True)
    value = Column(Integer, nullable=False, default=0)


class PaymentRecord(Base):
    """One row per entry-fee transaction; a signature can only be spent once."""
    __tablename__ = "payments"

    signature = Column(String, primary_key=True)
    player_address = Column(String, nullable=False, index=True)
    match_id = Column(String, nullable=True, index=True) # set once the join lands in a match
    amount = Column(Float, nullable=False)
    status = Column(String, default="confirmed")
    created_at = Column(DateTime, default=datetime.datetime.utcnow)


class PaymentSummaryRecord(Base):
    __tablename__ = "payment_summaries"

    id = Column(String, primary_key=True) # "game<N>payments"
    match_id = Column(String, nullable=False, unique=True, index=True)
    created_at = Column(DateTime, default=datetime.datetime.utcnow)
    data = Column(JSON, nullable=False)


class LeaseRecord(Base):
    __tablename__ = "leases"

    key = Column(String, primary_key=True)
    holder = Column(String, nullable=False)
    expires_at = Column(Float, nullable=False) # epoch seconds

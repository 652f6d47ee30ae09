from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from arena.core.config import settings

Base = declarative_base()


def make_engine(database_url: str):
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Store calls run in a threadpool, so connections cross threads
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine) -> None:
    # Import records so every table is registered on Base before create_all
    from arena.models import records  # noqa: F401
    Base.metadata.create_all(bind=engine)


engine = make_engine(settings.DATABASE_URL)
SessionLocal = make_session_factory(engine)

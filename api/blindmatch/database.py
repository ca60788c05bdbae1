from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from .errors import StoreUnavailableError


def create_session_factory(database_url: str) -> sessionmaker:
    engine = create_engine(database_url, future=True, pool_pre_ping=True)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@contextmanager
def session_scope(session_factory) -> Iterator[Session]:
    """Yield a session, translating connection failures into StoreUnavailableError."""
    try:
        with session_factory() as db:
            yield db
    except OperationalError as exc:
        raise StoreUnavailableError(str(exc)) from exc

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine

from services.indexer.src.indexer.config import settings


def get_engine(database_url: str | None = None) -> Engine:
    url = database_url or settings.database_url
    return create_engine(url, echo=False)


def init_db(engine: Engine) -> None:
    from services.indexer.src.indexer.db.models import metadata

    metadata.create_all(engine)


def is_sqlite(engine: Engine) -> bool:
    return "sqlite" in str(engine.url)


@contextmanager
def transaction(engine: Engine, conn: Connection | None = None) -> Iterator[Connection]:
    """Reuse the caller's connection (and its transaction) or open a new one."""
    if conn is not None:
        yield conn
        return
    with engine.begin() as new_conn:
        yield new_conn

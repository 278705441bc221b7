from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base

from vmplatform.config import settings


def make_engine(database_url: str, **kwargs):
    """
    Builds an engine for the given URL.

    SQLite needs ``check_same_thread=False`` for the WSGI server and an explicit
    ``PRAGMA foreign_keys=ON`` so that ``ON DELETE CASCADE`` is honoured.
    """
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(database_url, **kwargs)

    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


engine = make_engine(settings.database_url)

# autocommit=False, autoflush=False: repositories commit explicitly.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class of every mapped model.
Base = declarative_base()

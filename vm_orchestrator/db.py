from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base, sessionmaker

from vm_orchestrator.config import get_settings


Base = declarative_base()

SQLITE_BUSY_TIMEOUT_SEC = 30


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _build_engine():
    url = get_settings().database_url
    if is_sqlite(url):
        # Request threads and the sweeper share one file.
        return create_engine(
            url,
            connect_args={
                "check_same_thread": False,
                "timeout": SQLITE_BUSY_TIMEOUT_SEC,
            },
            future=True,
        )
    return create_engine(url, pool_pre_ping=True, future=True)


engine = _build_engine()
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    future=True,
)


def configure_sqlite_runtime() -> None:
    if not is_sqlite(get_settings().database_url):
        return
    with engine.begin() as conn:
        conn.execute(text("PRAGMA journal_mode=WAL;"))
        conn.execute(text(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_SEC * 1000};"))


def init_schema() -> None:
    """Apply runtime pragmas and create any missing tables.

    Model modules must be imported first so their tables are registered.
    """
    configure_sqlite_runtime()
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope():
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

"""Database layer. SQLite by default; set DATABASE_URL (or MYSQL_* vars) for MySQL.
Startup ensures the jobs table exists; on connection failure logs verbosely and falls back to SQLite or in-memory so the app can start."""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from converter import config as app_config

logger = logging.getLogger("converter.db")

_engine: Optional[Engine] = None

JOBS_TABLE = "conversion_jobs"


def is_mysql(engine: Engine) -> bool:
    return engine.dialect.name == "mysql"


def make_engine(url: str) -> Engine:
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            # One shared connection, otherwise every checkout sees a fresh empty database
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = make_engine(app_config.DATABASE_URL)
        logger.info("Database engine created (%s)", _engine.dialect.name)
    return _engine


def _create_sqlite_tables(conn: Connection) -> None:
    conn.execute(text(f"""
        CREATE TABLE IF NOT EXISTS {JOBS_TABLE} (
            job_id TEXT PRIMARY KEY,
            status TEXT NOT NULL,
            output_format TEXT NOT NULL,
            quality INTEGER NOT NULL,
            compression TEXT NOT NULL,
            file_count INTEGER NOT NULL,
            failed_count INTEGER,
            error_message TEXT,
            archive_ref TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """))


def _create_mysql_tables(conn: Connection) -> None:
    conn.execute(text(f"""
        CREATE TABLE IF NOT EXISTS {JOBS_TABLE} (
            job_id VARCHAR(64) PRIMARY KEY,
            status VARCHAR(20) NOT NULL,
            output_format VARCHAR(10) NOT NULL,
            quality INT NOT NULL,
            compression VARCHAR(10) NOT NULL,
            file_count INT NOT NULL,
            failed_count INT,
            error_message TEXT,
            archive_ref VARCHAR(255),
            created_at VARCHAR(50) NOT NULL,
            updated_at VARCHAR(50) NOT NULL
        )
    """))


def ensure_tables(engine: Engine) -> None:
    """Create required tables if they do not exist."""
    with engine.connect() as conn:
        if is_mysql(engine):
            _create_mysql_tables(conn)
        else:
            _create_sqlite_tables(conn)
        conn.commit()
    logger.info("Required tables ensured: %s", JOBS_TABLE)


def init_db() -> Engine:
    """Prepare database at startup. On failure, fall back to SQLite file or in-memory so the app can start."""
    global _engine
    try:
        engine = get_engine()
        ensure_tables(engine)
        logger.info("Database ready: %s", engine.dialect.name)
        return engine
    except OperationalError as e:
        logger.warning("Database connection failed: %s. Will try fallback.", e.orig, exc_info=True)
    except ImportError as e:
        logger.warning("Database driver missing: %s. Will try fallback.", e)

    if not app_config.DATABASE_URL.startswith("sqlite"):
        sqlite_path = app_config.BASE_DIR / "data" / "converter.db"
        try:
            sqlite_path.parent.mkdir(parents=True, exist_ok=True)
            app_config.DATABASE_URL = f"sqlite:///{sqlite_path}"
            _engine = make_engine(app_config.DATABASE_URL)
            ensure_tables(_engine)
            logger.warning("Primary database unavailable. Using SQLite at %s.", sqlite_path)
            return _engine
        except OperationalError:
            logger.exception("SQLite file fallback failed. Trying in-memory SQLite.")

    # Last resort: jobs will not persist across restarts
    app_config.DATABASE_URL = "sqlite:///:memory:"
    _engine = make_engine(app_config.DATABASE_URL)
    ensure_tables(_engine)
    logger.warning("Database unavailable. Using in-memory SQLite. Job state will not persist across restarts.")
    return _engine


@contextmanager
def session(engine: Engine) -> Iterator[Connection]:
    with engine.connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

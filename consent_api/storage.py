import logging
from datetime import datetime, timezone
from typing import Generator, Iterable

from sqlalchemy import Insert, create_engine, inspect, text
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from consent_api.config import settings

logger = logging.getLogger(__name__)


def _engine_kwargs(database_url: str) -> dict:
    """Build engine options for the configured backend."""
    kwargs = {"echo": False, "pool_pre_ping": True}
    if database_url.startswith("sqlite"):
        # check_same_thread=False lets the threadpool workers share pooled connections
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 15}
    return kwargs


engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp at second precision, as stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(microsecond=0, tzinfo=None)


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url.render_as_string(hide_password=True)}")
    try:
        # Import models to register them with Base.metadata
        from consent_api import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use, which hands the
    connection back to the pool on every exit path.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            if not inspect(conn).has_table("contacts"):
                logger.error("Database schema not applied: 'contacts' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Statement Helpers
# =============================================================================

def upsert_statement(db: Session, table, values: dict, conflict_on: str, update: Iterable[str]) -> Insert:
    """
    Build a single INSERT ... ON CONFLICT statement for the session's backend.

    Args:
        db: Database session (its bind decides the dialect)
        table: Table to insert into
        values: Column values for the insert branch
        conflict_on: Name of the unique column that detects an existing row
        update: Names of the columns overwritten, from the insert values, when
            the row already exists

    Returns:
        An executable insert statement; the upsert happens atomically in the store.
    """
    dialect = db.get_bind().dialect.name
    columns = list(update)

    if dialect == "mysql" or dialect == "mariadb":
        stmt = mysql.insert(table).values(**values)
        return stmt.on_duplicate_key_update({name: stmt.inserted[name] for name in columns})

    if dialect == "postgresql":
        stmt = postgresql.insert(table).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(table).values(**values)
    else:
        raise NotImplementedError(f"Upsert is not supported for dialect {dialect!r}")

    return stmt.on_conflict_do_update(
        index_elements=[conflict_on],
        set_={name: stmt.excluded[name] for name in columns},
    )

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

# Base class for models
Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """Build the SQLAlchemy engine for the conversation store."""
    if database_url.startswith("postgresql"):
        return create_engine(
            database_url,
            pool_size=20,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
        )

    # SQLite for local development and tests
    engine = create_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA foreign_keys=ON;")
        finally:
            cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def run_migrations(engine: Engine) -> None:
    """Bootstrap the database schema."""
    # Models must be imported so their tables are registered on Base.metadata.
    from app.core import models  # noqa: F401

    Base.metadata.create_all(bind=engine)

"""
Database engine and session handling for Mems.

PostgreSQL in deployment, SQLite for local runs and tests. Sessions are
committed when the block exits cleanly and rolled back otherwise.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.config import DatabaseConfig, settings
from ..core.logging import get_logger

logger = get_logger("models.db")

Base = declarative_base()


def _engine_options(config: DatabaseConfig) -> dict:
    if config.is_sqlite:
        # one shared connection so in-memory databases survive across sessions
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {
        "pool_size": config.pool_size,
        "max_overflow": config.max_overflow,
        "pool_timeout": config.pool_timeout,
        "pool_recycle": config.pool_recycle,
        "pool_pre_ping": True,
    }


class DatabaseManager:
    """Lazily builds the engine and hands out transactional sessions."""

    def __init__(self, config: DatabaseConfig = None):
        self.config = config or settings.database
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_engine(
                self.config.database_url, echo=self.config.echo_sql, **_engine_options(self.config)
            )
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._session_factory

    @contextmanager
    def get_sync_session(self) -> Generator[Session, None, None]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        from . import entities  # noqa: F401  registers tables on Base.metadata

        Base.metadata.create_all(self.engine)
        logger.info("Database schema ready", tables=sorted(Base.metadata.tables))

    def drop_all(self) -> None:
        from . import entities  # noqa: F401

        Base.metadata.drop_all(self.engine)
        logger.warning("Database schema dropped")

    def health_check(self) -> bool:
        """True when a trivial query round-trips."""
        try:
            with self.engine.connect() as connection:
                return connection.execute(text("SELECT 1")).scalar() == 1
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False

    def dispose(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("Database connections closed")


db_manager = DatabaseManager()


def init_database() -> bool:
    """Create the schema and confirm the database answers."""
    try:
        db_manager.create_all()
    except Exception as e:
        logger.error("Failed to create database schema", error=str(e))
        return False

    healthy = db_manager.health_check()
    if not healthy:
        logger.error("Database unreachable after schema creation")
    return healthy

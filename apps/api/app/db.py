import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

from fastapi import Request
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.exc import SQLAlchemyError

from .settings import Settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class DatabaseManager:
    """Database engine and session factory with cached health checks."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine: Optional[Engine] = None
        self.SessionLocal: Optional[sessionmaker] = None
        self._health_cache: Dict[str, Any] = {}
        self._health_cache_ttl = settings.health_cache_ttl
        self._last_health_check = 0.0
        self._initialize()

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name if self.engine else "unknown"

    def _engine_config(self) -> Dict[str, Any]:
        url = make_url(self.settings.database_url)
        if url.get_backend_name() == "sqlite":
            return {"connect_args": {"check_same_thread": False}}

        return {
            'pool_pre_ping': True,
            'pool_size': self.settings.db_pool_size,
            'max_overflow': self.settings.db_max_overflow,
            'pool_timeout': self.settings.db_pool_timeout,
            'pool_recycle': 3600,
            'pool_reset_on_return': 'rollback',
        }

    def _initialize(self):
        try:
            self.engine = create_engine(self.settings.database_url, **self._engine_config())

            event.listen(self.engine, "checkout", self._on_checkout)
            event.listen(self.engine, "checkin", self._on_checkin)

            self.SessionLocal = sessionmaker(
                bind=self.engine,
                autoflush=False,
                expire_on_commit=False,
            )
            logger.info(f"Database manager initialized ({self.dialect})")
        except Exception as e:
            logger.error(f"Failed to initialize database manager: {e}")
            raise

    def _on_checkout(self, dbapi_connection, connection_record, connection_proxy):
        connection_record.info['checkout_time'] = time.time()

    def _on_checkin(self, dbapi_connection, connection_record):
        checkout_time = connection_record.info.get('checkout_time')
        if checkout_time:
            duration = time.time() - checkout_time
            if duration > 10:
                logger.warning(f"Slow database operation detected: {duration:.2f}s")

    def create_tables(self) -> None:
        """Create database tables if they don't exist."""
        # Registers the mapped classes on Base.metadata
        from . import models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created successfully")

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Session scope that commits on success and rolls back on error."""
        if not self.SessionLocal:
            raise RuntimeError("Database not initialized")

        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def health_check(self) -> Dict[str, Any]:
        """
        Connectivity check with caching.
        Returns status, query latency and pool statistics.
        """
        current_time = time.time()
        if (current_time - self._last_health_check < self._health_cache_ttl
                and self._health_cache):
            return self._health_cache

        try:
            start_time = time.time()
            with self.get_session() as session:
                if session.execute(text("SELECT 1")).scalar() != 1:
                    raise RuntimeError("Basic query failed")
            query_time = time.time() - start_time

            health_info = {
                'healthy': True,
                'dialect': self.dialect,
                'query_time_ms': round(query_time * 1000, 2),
                'pool_status': self.engine.pool.status(),
                'timestamp': current_time,
            }
            self._health_cache = health_info
            self._last_health_check = current_time
            return health_info

        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {
                'healthy': False,
                'error': str(e),
                'timestamp': current_time,
            }

    def close(self):
        """Clean shutdown of database connections."""
        if self.engine:
            self.engine.dispose()
            logger.info("Database connections closed")


def get_db_manager(request: Request) -> DatabaseManager:
    return request.app.state.db


def get_db_session(request: Request) -> Generator[Session, None, None]:
    """Dependency for FastAPI route handlers."""
    with get_db_manager(request).get_session() as session:
        yield session

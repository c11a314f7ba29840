"""
Tiris Backend
Database Manager

This module provides the database management capabilities for the backend,
handling engine construction, connection pooling and transactional sessions
for PostgreSQL deployments and SQLite test databases.
"""

import threading
from typing import Any, Dict, Union
from contextlib import contextmanager

import sqlalchemy
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.exc import SQLAlchemyError, OperationalError, IntegrityError

from common.logger import get_logger
from common.exceptions import (
    DatabaseConnectionError,
    DatabaseQueryError,
    DatabaseIntegrityError,
)
from data_storage.models import Base

# Initialize logger
logger = get_logger(__name__)


class DatabaseManager:
    """
    Manages database connections and provides transaction management.

    Every unit of work runs inside :meth:`session`, which commits on success
    and rolls back on any error so that multi-step mutations never leave
    partial state behind.
    """

    def __init__(self, config: Union[Dict[str, Any], Any]):
        """
        Initialize the database manager with configuration.

        Args:
            config: Either a ``Config`` or the ``database`` section dictionary containing:
                - url: Database connection URL
                - pool_size: Connection pool size
                - max_overflow: Maximum overflow connections
                - pool_timeout: Pool timeout in seconds
                - pool_recycle: Connection recycle time in seconds
                - echo: Whether to echo SQL statements
                - auto_create: Create tables on startup

        Raises:
            DatabaseConnectionError: If database connection fails
        """
        if not isinstance(config, dict):
            config = config.get("database", {})
        self.config = dict(config or {})
        self.url = self.config.get('url', 'sqlite:///tiris.db')
        self.session_factory = None
        self.engine = None
        self._init_lock = threading.Lock()
        self._initialized = False

        self._initialize_connection()

        if self.config.get('auto_create', False):
            self.create_tables()

        logger.info(f"Database manager initialized with {self.engine.url.render_as_string(hide_password=True)}")

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith('sqlite')

    def _engine_options(self) -> Dict[str, Any]:
        options = {'echo': self.config.get('echo', False)}
        if self.is_sqlite:
            options['connect_args'] = {'check_same_thread': False}
            # An in-memory database lives only as long as its single connection
            if ':memory:' in self.url or self.url.rstrip('/') == 'sqlite:':
                options['poolclass'] = StaticPool
            return options

        options.update(
            pool_size=self.config.get('pool_size', 10),
            max_overflow=self.config.get('max_overflow', 20),
            pool_timeout=self.config.get('pool_timeout', 30),
            pool_recycle=self.config.get('pool_recycle', 1800),
            pool_pre_ping=True,
        )
        return options

    def _initialize_connection(self) -> None:
        """
        Initialize the database engine and session factory.

        Raises:
            DatabaseConnectionError: If connection initialization fails
        """
        with self._init_lock:
            if self._initialized:
                return

            try:
                self.engine = create_engine(self.url, **self._engine_options())
                self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

                # If using SQLite, enable foreign keys
                if self.is_sqlite:
                    @sqlalchemy.event.listens_for(self.engine, "connect")
                    def set_sqlite_pragma(dbapi_connection, connection_record):
                        cursor = dbapi_connection.cursor()
                        cursor.execute("PRAGMA foreign_keys=ON")
                        cursor.close()

                self._initialized = True
                logger.info("Database connection initialized successfully")
            except (SQLAlchemyError, ValueError, ImportError) as e:
                logger.error(f"Failed to initialize database connection: {str(e)}")
                raise DatabaseConnectionError(f"Failed to connect to database: {str(e)}")

    @contextmanager
    def session(self):
        """
        Provide a transactional session scope.

        Yields:
            SQLAlchemy session object

        Raises:
            DatabaseConnectionError: If the store is unreachable
            DatabaseIntegrityError: If an untranslated integrity error occurs
            DatabaseQueryError: If query error occurs
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError as e:
            session.rollback()
            logger.error(f"Database integrity error: {str(e.orig)}")
            raise DatabaseIntegrityError("Database integrity error", constraint=str(e.orig))
        except OperationalError as e:
            session.rollback()
            logger.error(f"Database connection error: {str(e.orig)}")
            raise DatabaseConnectionError("Database unavailable")
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database query error: {str(e)}")
            raise DatabaseQueryError("Database query failed")
        except BaseException:
            # Domain errors and task cancellation both leave nothing behind
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """
        Create all tables defined in the Base metadata.

        Raises:
            DatabaseConnectionError: If table creation fails
        """
        try:
            Base.metadata.create_all(self.engine)
            logger.info("Database tables created successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create database tables: {str(e)}")
            raise DatabaseConnectionError(f"Failed to create tables: {str(e)}")

    def drop_tables(self) -> None:
        """Drop all tables defined in the Base metadata."""
        Base.metadata.drop_all(self.engine)
        logger.info("Database tables dropped")

    def check_connection(self) -> bool:
        """
        Check that the database answers a trivial query.

        Returns:
            True when reachable, False otherwise
        """
        try:
            with self.engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"Database health check failed: {str(e)}")
            return False

    def shutdown(self) -> None:
        """
        Properly shut down the database connection pool.
        """
        if self.engine:
            logger.info("Shutting down database connection pool")
            self.engine.dispose()
            self._initialized = False
            logger.info("Database connection pool shut down successfully")

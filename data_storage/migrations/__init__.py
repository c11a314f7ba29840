#!/usr/bin/env python3
"""
Tiris Backend
Database Migration Module

This module provides database migration capabilities using Alembic.
It applies the revisions under ``versions/`` to the configured database.
"""

import os
from typing import Optional

from alembic import command
from alembic.config import Config as AlembicConfig
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from config import Config
from common.logger import get_logger
from common.exceptions import MigrationError

logger = get_logger(__name__)

MIGRATIONS_DIR = os.path.dirname(os.path.abspath(__file__))


class MigrationManager:
    """
    Manages database migrations using Alembic.

    This class provides methods to upgrade, downgrade, and check the
    status of database migrations.
    """

    def __init__(self, config: Config, alembic_location: str = MIGRATIONS_DIR):
        """
        Initialize the migration manager.

        Args:
            config: System configuration
            alembic_location: Path to the alembic migrations directory
        """
        self.config = config
        self.url = config.get("database.url")
        self.alembic_location = alembic_location
        self.alembic_cfg = self._create_alembic_config()
        logger.info("Migration manager initialized")

    def _create_alembic_config(self) -> AlembicConfig:
        alembic_cfg = AlembicConfig()
        alembic_cfg.set_main_option("script_location", self.alembic_location)
        alembic_cfg.set_main_option("sqlalchemy.url", self.url.replace("%", "%%"))
        alembic_cfg.set_main_option("timezone", "UTC")
        return alembic_cfg

    def has_migration_history(self) -> bool:
        """
        Check if the database has a migration history table.

        Returns:
            bool: True if the database has migration history
        """
        engine = create_engine(self.url, pool_pre_ping=True)
        try:
            return 'alembic_version' in inspect(engine).get_table_names()
        except SQLAlchemyError as e:
            logger.warning(f"Error checking migration history: {e}")
            return False
        finally:
            engine.dispose()

    def get_current_revision(self) -> Optional[str]:
        """
        Get the current migration revision of the database.

        Returns:
            Optional[str]: The current revision or None if no migrations are applied
        """
        if not self.has_migration_history():
            return None

        engine = create_engine(self.url, pool_pre_ping=True)
        try:
            with engine.connect() as conn:
                return conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
        except SQLAlchemyError as e:
            logger.warning(f"Error retrieving current revision: {e}")
            return None
        finally:
            engine.dispose()

    def upgrade_database(self, target: str = "head") -> None:
        """
        Upgrade the database to the specified revision.

        Raises:
            MigrationError: If database upgrade fails
        """
        try:
            logger.info(f"Upgrading database from revision '{self.get_current_revision()}' to '{target}'")
            command.upgrade(self.alembic_cfg, target)
            logger.info(f"Successfully upgraded database to revision '{target}'")
        except (SQLAlchemyError, RuntimeError) as e:
            logger.error(f"Failed to upgrade database: {e}")
            raise MigrationError(f"Database upgrade failed: {e}")

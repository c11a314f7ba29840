#!/usr/bin/env python3
"""
Tiris Backend
Main Application Entry Point

This module serves as the entry point for the Tiris backend. It loads and
validates configuration, sets up logging and either serves the API Gateway
with uvicorn or runs the periodic maintenance jobs.
"""

import sys
import asyncio
import argparse
import datetime

import uvicorn

from config import Config, load_config
from common.logger import setup_logging, setup_logging_from_config, get_logger
from common.constants import LOG_LEVELS, DEFAULT_CONFIG_PATH, VERSION
from common.exceptions import ConfigurationError, TirisError
from common.redis_client import RedisClient
from data_storage.database import DatabaseManager
from data_storage.migrations import MigrationManager
from api_gateway.audit import AuditLogger
from api_gateway.rate_limiter import RateLimiter
from api_gateway.app import create_app

logger = get_logger(__name__)


def setup_argument_parser():
    """
    Set up command-line argument parser.

    Returns:
        Configured argument parser.
    """
    parser = argparse.ArgumentParser(
        description=f"Tiris Backend v{VERSION}",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        "-c", "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to configuration file"
    )

    parser.add_argument(
        "-l", "--log-level",
        choices=LOG_LEVELS.keys(),
        default=None,
        help="Override the configured logging level"
    )

    parser.add_argument(
        "--log-file",
        help="Path to log file (if not specified, logs to console only)"
    )

    parser.add_argument("--host", help="Bind address, overrides api.host")
    parser.add_argument("--port", type=int, help="Bind port, overrides api.port")

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate configuration without starting the server"
    )

    parser.add_argument(
        "--migrate",
        action="store_true",
        help="Apply database migrations up to head, then exit"
    )

    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Purge expired audit events and rate-limit windows, then exit"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Tiris Backend v{VERSION}",
        help="Show version information and exit"
    )

    return parser


async def run_cleanup(config: Config) -> None:
    """Apply audit retention and trim stale rate-limit windows."""
    db_manager = DatabaseManager(config)
    audit_logger = AuditLogger(db_manager)
    removed = audit_logger.cleanup(datetime.timedelta(days=config.get("audit.retention_days")))
    logger.info(f"Removed {removed} expired audit events")

    redis_client = RedisClient.from_config(config)
    await redis_client.initialize()
    try:
        scanned = await RateLimiter.from_config(redis_client, config).cleanup_expired()
        logger.info(f"Trimmed {scanned} rate-limit windows")
    finally:
        await redis_client.close()
        db_manager.shutdown()


def main():
    """
    Entry point for the application.
    """
    args = setup_argument_parser().parse_args()

    try:
        config = load_config(args.config)
        if args.log_level or args.log_file:
            setup_logging(
                level=args.log_level or config.get("logging.level", "INFO"),
                log_file=args.log_file or config.get("logging.file"),
                json_format=config.get("logging.json", False),
            )
        else:
            setup_logging_from_config(config)
        config.validate()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {str(e)}")
        sys.exit(2)

    if args.dry_run:
        logger.info("Configuration is valid")
        return

    if args.migrate:
        try:
            MigrationManager(config).upgrade_database()
        except TirisError as e:
            logger.error(f"Migration failed: {str(e)}")
            sys.exit(1)
        return

    if args.cleanup:
        try:
            asyncio.run(run_cleanup(config))
        except TirisError as e:
            logger.error(f"Cleanup failed: {str(e)}")
            sys.exit(1)
        return

    app = create_app(config)
    uvicorn.run(
        app,
        host=args.host or config.get("api.host", "0.0.0.0"),
        port=args.port or config.get("api.port", 8080),
        log_config=None,
    )


if __name__ == "__main__":
    main()

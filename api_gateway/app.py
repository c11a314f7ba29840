#!/usr/bin/env python3
"""
Tiris Backend
API Gateway Main Application

This module builds the FastAPI application: it wires the database, Redis,
the security managers and the services onto ``app.state``, installs the
middleware and exception handlers and mounts the routers. Prometheus metrics
are served at ``/metrics`` unless disabled.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Union

from fastapi import FastAPI, Request, Response
from starlette.concurrency import run_in_threadpool

from config import Config
from common.logger import get_logger
from common.constants import METRICS_PATH
from common.exceptions import RedisError
from common.redis_client import RedisClient
from common.security import EncryptionManager
from common.api_keys import APIKeyManager
from common.metrics import MetricsCollector
from data_storage.database import DatabaseManager
from api_gateway import __version__
from api_gateway.audit import AuditLogger
from api_gateway.authentication import JWTManager
from api_gateway.middleware import configure_middleware
from api_gateway.oauth import OAuthManager
from api_gateway.rate_limiter import RateLimiter
from api_gateway.routes import get_routers
from api_gateway.services.auth_service import AuthService
from api_gateway.services.security_service import SecurityService
from api_gateway.services.trading_log_service import TradingLogService

logger = get_logger('api_gateway')


def create_app(config: Union[Config, Dict[str, Any], None] = None,
               db_manager: Optional[DatabaseManager] = None,
               redis_client: Optional[RedisClient] = None,
               oauth_manager: Optional[OAuthManager] = None,
               rate_limiter: Optional[RateLimiter] = None,
               audit_logger: Optional[AuditLogger] = None,
               metrics: Optional[MetricsCollector] = None) -> FastAPI:
    """
    Build the API Gateway application.

    Collaborators that are not passed in are built from ``config``. A Redis
    client built here is connected on startup and closed on shutdown; one
    passed in is assumed to be ready.

    Args:
        config: Configuration, a ``Config`` or a plain dictionary
        db_manager: Database manager
        redis_client: Redis client backing the rate limiter
        oauth_manager: Registry of identity providers
        rate_limiter: Rate limiter
        audit_logger: Audit logger
        metrics: Prometheus collectors

    Returns:
        FastAPI application

    Raises:
        ConfigurationError: If a required secret is missing
    """
    if not isinstance(config, Config):
        config = Config(config)

    owns_redis = redis_client is None
    db_manager = db_manager or DatabaseManager(config)
    redis_client = redis_client or RedisClient.from_config(config)

    encryption = EncryptionManager(config.get("security.master_key"))
    api_keys = APIKeyManager(encryption, config.get("security.api_key_signing_key"))
    jwt_manager = JWTManager.from_config(config)
    audit_logger = audit_logger or AuditLogger(db_manager)
    rate_limiter = rate_limiter or RateLimiter.from_config(redis_client, config)
    oauth_manager = oauth_manager or OAuthManager(config)
    metrics = metrics or MetricsCollector()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_redis:
            await redis_client.initialize()
        logger.info(f"API Gateway {__version__} started")
        yield
        if owns_redis:
            await redis_client.close()
        logger.info("API Gateway stopped")

    app = FastAPI(
        title="Tiris Backend",
        description="Trading ledger, authentication and security API",
        version=__version__,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.db_manager = db_manager
    app.state.redis_client = redis_client
    app.state.jwt_manager = jwt_manager
    app.state.rate_limiter = rate_limiter
    app.state.rate_limit_enabled = bool(config.get("rate_limit.enabled", True))
    app.state.audit_logger = audit_logger
    app.state.metrics = metrics
    app.state.security_service = SecurityService(
        db_manager, api_keys, encryption, rate_limiter, audit_logger, metrics=metrics
    )
    app.state.auth_service = AuthService(db_manager, oauth_manager, jwt_manager, audit_logger, metrics=metrics)
    app.state.trading_log_service = TradingLogService(db_manager, audit_logger=audit_logger, metrics=metrics)

    configure_middleware(app, config)

    prefix = config.get("api.prefix", "/v1")
    for router in get_routers():
        app.include_router(router, prefix=prefix)

    @app.get("/health")
    async def health_check(request: Request):
        """Liveness and dependency status."""
        database_ok = await run_in_threadpool(request.app.state.db_manager.check_connection)
        try:
            redis_ok = bool(await request.app.state.redis_client.ping())
        except RedisError:
            redis_ok = False

        return {
            "status": "healthy" if database_ok and redis_ok else "degraded",
            "version": __version__,
            "database": database_ok,
            "redis": redis_ok,
        }

    if config.get("metrics.enabled", True):
        @app.get(METRICS_PATH, include_in_schema=False)
        def prometheus_metrics(request: Request):
            """Prometheus exposition of the application metrics."""
            collector = request.app.state.metrics
            return Response(content=collector.render(), media_type=collector.content_type)

    return app

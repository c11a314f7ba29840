#!/usr/bin/env python3
"""
Tiris Backend
Base Service Class

This module provides the base service class for all API Gateway services,
implementing the common plumbing: the unit-of-work session, the audit trail
and error translation at the service boundary.
"""

from contextlib import contextmanager
from typing import Any, Dict, Optional

from common.logger import get_logger
from common.metrics import MetricsCollector
from common.exceptions import (
    TirisError, DatabaseError, DatabaseConnectionError, ServiceUnavailableError, InternalError
)

# Initialize logger
logger = get_logger(__name__)


class BaseService:
    """Base class for API Gateway services."""

    def __init__(self, name: str, db_manager, audit_logger=None, metrics: MetricsCollector = None):
        """
        Initialize the base service.

        Args:
            name: Service name
            db_manager: DatabaseManager providing transactional sessions
            audit_logger: AuditLogger for security relevant events
            metrics: Prometheus collectors, private ones by default
        """
        self.name = name
        self.db = db_manager
        self.audit = audit_logger
        self.metrics = metrics or MetricsCollector()
        self.logger = get_logger(name)

    @contextmanager
    def unit_of_work(self):
        """
        Run a block in one database transaction.

        Store failures are translated here, once: an unreachable store becomes
        ``ServiceUnavailableError`` and any other store failure an
        ``InternalError`` with a neutral message. Domain errors pass through.
        """
        try:
            with self.db.session() as session:
                yield session
        except DatabaseConnectionError as e:
            self.logger.error(f"{self.name}: database unavailable: {str(e)}")
            raise ServiceUnavailableError("database unavailable")
        except DatabaseError as e:
            self.logger.error(f"{self.name}: database error: {str(e)}")
            raise InternalError("internal error")

    def audit_event(self, action, **kwargs) -> bool:
        """Write an audit event if an audit logger is attached."""
        if self.audit is None:
            return False
        return self.audit.log_event(action, **kwargs)

    def audit_security_event(self, action, **kwargs) -> bool:
        if self.audit is None:
            return False
        return self.audit.log_security_event(action, **kwargs)

    def health(self) -> Dict[str, Any]:
        """Basic health information for the service."""
        return {
            "service": self.name,
            "database": self.db.check_connection(),
        }


def error_message(exc: Optional[BaseException]) -> str:
    """Caller-safe text for an exception."""
    if isinstance(exc, TirisError) and exc.expose:
        return str(exc)
    return "internal error"

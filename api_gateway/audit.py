#!/usr/bin/env python3
"""
Tiris Backend
Audit Log Module

This module records security relevant events in the append-only audit trail,
answers filtered queries over it and detects suspicious patterns such as
repeated failed logins or rate-limit hits from one address.

Writes are best effort: a failure to append an event is logged and reported
to the caller but never undoes the action being audited.
"""

import datetime
import ipaddress
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Union

from fastapi import Request
from sqlalchemy import func, select

from common.logger import get_logger
from common.exceptions import TirisError
from common.constants import (
    AuditAction, AuditLevel, AUDIT_RETENTION_DAYS, DEFAULT_ALERT_LIMIT,
    FAILED_LOGIN_THRESHOLD, RATE_LIMIT_HIT_THRESHOLD, SUSPICIOUS_WINDOW_HOURS
)
from common.utils import utc_now, parse_uuid, ensure_utc
from data_storage.models import AuditEvent
from data_storage.repositories import AuditEventRepository

logger = get_logger(__name__)

ALERT_ACTIONS = (
    AuditAction.LOGIN_FAILED.value,
    AuditAction.RATE_LIMIT_HIT.value,
    AuditAction.SECURITY_ALERT.value,
)
ALERT_LEVELS = (AuditLevel.WARN.value, AuditLevel.CRITICAL.value)

_WARN_ON_SUCCESS = {
    AuditAction.PASSWORD_CHANGE, AuditAction.PASSWORD_RESET,
    AuditAction.CONFIG_CHANGE, AuditAction.DATA_EXPORT,
}
_ERROR_ON_FAILURE = {AuditAction.SYSTEM_ACCESS, AuditAction.CONFIG_CHANGE}
_WARN_ON_FAILURE_PREFIXES = ("auth.", "apikey.", "exchange.")


def get_level_for_action(action: Union[AuditAction, str], success: bool) -> AuditLevel:
    """
    Derive the level of an event from its action and outcome.

    Args:
        action: Audit action
        success: Whether the audited operation succeeded

    Returns:
        AuditLevel
    """
    action = AuditAction(action)
    if action is AuditAction.SECURITY_ALERT:
        return AuditLevel.CRITICAL
    if not success:
        if action in _ERROR_ON_FAILURE:
            return AuditLevel.ERROR
        if action.value.startswith(_WARN_ON_FAILURE_PREFIXES) or action is AuditAction.RATE_LIMIT_HIT:
            return AuditLevel.WARN
        return AuditLevel.INFO
    if action in _WARN_ON_SUCCESS:
        return AuditLevel.WARN
    return AuditLevel.INFO


def _valid_ip(value: str) -> Optional[str]:
    value = (value or "").strip()
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return None
    return value


def get_client_ip(request: Request) -> str:
    """
    Resolve the client address of a request.

    The first valid address in ``X-Forwarded-For`` wins, then ``X-Real-IP``,
    then the socket peer.
    """
    forwarded = request.headers.get("X-Forwarded-For", "")
    for candidate in forwarded.split(","):
        ip = _valid_ip(candidate)
        if ip:
            return ip

    real_ip = _valid_ip(request.headers.get("X-Real-IP", ""))
    if real_ip:
        return real_ip

    return request.client.host if request.client else ""


@dataclass
class AuditFilter:
    """Filters for :meth:`AuditLogger.query`."""
    user_id: Optional[str] = None
    action: Optional[str] = None
    level: Optional[str] = None
    ip_address: Optional[str] = None
    start_time: Optional[datetime.datetime] = None
    end_time: Optional[datetime.datetime] = None
    success: Optional[bool] = None
    limit: int = DEFAULT_ALERT_LIMIT
    offset: int = 0


@dataclass
class SuspiciousActivity:
    """Aggregated pattern of concerning events from one address."""
    type: str
    ip_address: str
    count: int
    severity: str
    description: str
    first_seen: datetime.datetime
    last_seen: datetime.datetime
    user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["first_seen"] = self.first_seen.isoformat()
        data["last_seen"] = self.last_seen.isoformat()
        return data


class AuditLogger:
    """
    Appends and queries audit events.

    Each write runs in its own unit of work so that an event describing a
    failed operation survives that operation's rollback.
    """

    def __init__(self, db_manager):
        """
        Initialize the audit logger.

        Args:
            db_manager: DatabaseManager providing sessions
        """
        self.db = db_manager
        self.repository = AuditEventRepository()
        self.logger = get_logger("AuditLogger")

    def log_event(self, action: Union[AuditAction, str], level: Union[AuditLevel, str] = None,
                  user_id=None, session_id: str = None, ip_address: str = "",
                  user_agent: str = "", resource: str = "", details: Dict[str, Any] = None,
                  success: bool = True, error: str = None, duration: float = None) -> bool:
        """
        Append an event.

        Args:
            action: Audit action
            level: Explicit level, default ``info``
            user_id: Acting user, if known
            session_id: Client session identifier
            ip_address: Client address
            user_agent: Client user agent
            resource: Affected resource
            details: Free-form key/value details
            success: Whether the audited operation succeeded
            error: Error text for failures
            duration: Duration in seconds

        Returns:
            True when the event was stored, False otherwise
        """
        try:
            action = AuditAction(action)
            level = AuditLevel(level) if level else AuditLevel.INFO
            event = AuditEvent(
                timestamp=utc_now(),
                level=level.value,
                action=action.value,
                user_id=parse_uuid(user_id),
                session_id=session_id,
                ip_address=ip_address or "",
                user_agent=user_agent or "",
                resource=resource or "",
                details=dict(details or {}),
                success=success,
                error=error,
                duration=int(duration * 1000) if duration is not None else None,
            )
            with self.db.session() as session:
                self.repository.append(session, event)
            return True
        except (TirisError, ValueError) as e:
            self.logger.error(f"Failed to write audit event {action}: {str(e)}")
            return False

    def log_security_event(self, action: Union[AuditAction, str], user_id=None, ip_address: str = "",
                           user_agent: str = "", success: bool = True,
                           details: Dict[str, Any] = None, error: str = None) -> bool:
        """
        Append a security event.

        An error marks the event failed. The level follows
        :func:`get_level_for_action`, so failed auth, API-key and exchange
        operations are ``warn``; failed logins and rate limit hits are
        ``warn`` regardless and any other failure carrying an error is
        ``error``.
        """
        if error:
            success = False

        action = AuditAction(action)
        level = get_level_for_action(action, success)
        if action in (AuditAction.LOGIN_FAILED, AuditAction.RATE_LIMIT_HIT):
            level = AuditLevel.WARN
        elif error and level is AuditLevel.INFO:
            level = AuditLevel.ERROR

        return self.log_event(
            action, level=level, user_id=user_id, ip_address=ip_address,
            user_agent=user_agent, details=details, success=success, error=error,
        )

    def log_http_request(self, request: Request, action: Union[AuditAction, str], user_id=None,
                         resource: str = None, success: bool = True, duration: float = None,
                         error: str = None) -> bool:
        """Append an event describing an HTTP request."""
        details = {
            "method": request.method,
            "path": request.url.path,
            "query": request.url.query,
            "remote_addr": request.client.host if request.client else "",
            "referer": request.headers.get("Referer", ""),
        }
        if error:
            details["error_type"] = "error"

        return self.log_event(
            action,
            level=get_level_for_action(action, success),
            user_id=user_id,
            session_id=request.headers.get("X-Session-ID") or None,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("User-Agent", ""),
            resource=resource or f"{request.method} {request.url.path}",
            details=details,
            success=success,
            error=error,
            duration=duration,
        )

    def log_data_access(self, user_id, resource_type: str, resource_id: str,
                        action: Union[AuditAction, str], ip_address: str = "",
                        success: bool = True) -> bool:
        """Append an event describing a read or write of a resource."""
        action = AuditAction(action)
        return self.log_event(
            action,
            level=get_level_for_action(action, success),
            user_id=user_id,
            ip_address=ip_address,
            resource=f"{resource_type}:{resource_id}",
            details={
                "resource_type": resource_type,
                "resource_id": str(resource_id),
                "access_type": action.value,
            },
            success=success,
        )

    def query(self, filters: AuditFilter = None) -> List[AuditEvent]:
        """Filtered events, newest first."""
        filters = filters or AuditFilter()
        with self.db.session() as session:
            return self.repository.query(
                session,
                user_id=filters.user_id,
                action=AuditAction(filters.action).value if filters.action else None,
                level=AuditLevel(filters.level).value if filters.level else None,
                ip_address=filters.ip_address,
                start=filters.start_time,
                end=filters.end_time,
                success=filters.success,
                limit=filters.limit,
                offset=filters.offset,
            )

    def get_security_alerts(self, since: datetime.datetime = None,
                            limit: int = DEFAULT_ALERT_LIMIT) -> List[AuditEvent]:
        """
        Events needing attention.

        Returns warn or critical events since ``since`` together with every
        failed login, rate-limit hit and security alert, newest first.
        """
        since = since or utc_now() - datetime.timedelta(hours=SUSPICIOUS_WINDOW_HOURS)
        with self.db.session() as session:
            return self.repository.alerts(session, since, ALERT_LEVELS, ALERT_ACTIONS, limit)

    def get_suspicious_activity(self, window: datetime.timedelta = None) -> List[SuspiciousActivity]:
        """
        Detect suspicious patterns within ``window``.

        One entry is produced per offending address and pattern type.
        """
        window = window or datetime.timedelta(hours=SUSPICIOUS_WINDOW_HOURS)
        since = utc_now() - window

        patterns = (
            (
                "multiple_failed_logins", "high", FAILED_LOGIN_THRESHOLD,
                [AuditEvent.action == AuditAction.LOGIN_FAILED.value, AuditEvent.success.is_(False)],
                "{count} failed login attempts from IP {ip}",
            ),
            (
                "excessive_rate_limiting", "medium", RATE_LIMIT_HIT_THRESHOLD,
                [AuditEvent.action == AuditAction.RATE_LIMIT_HIT.value],
                "{count} rate limit violations from IP {ip}",
            ),
        )

        results = []
        with self.db.session() as session:
            for pattern_type, severity, threshold, conditions, template in patterns:
                count = func.count(AuditEvent.id)
                query = (
                    select(
                        AuditEvent.ip_address, count,
                        func.min(AuditEvent.timestamp), func.max(AuditEvent.timestamp),
                    )
                    .filter(AuditEvent.timestamp >= since, *conditions)
                    .group_by(AuditEvent.ip_address)
                    .having(count >= threshold)
                    .order_by(count.desc())
                )
                for ip, total, first_seen, last_seen in session.execute(query).all():
                    results.append(SuspiciousActivity(
                        type=pattern_type,
                        ip_address=ip,
                        count=total,
                        severity=severity,
                        description=template.format(count=total, ip=ip),
                        first_seen=ensure_utc(first_seen),
                        last_seen=ensure_utc(last_seen),
                    ))

        if results:
            self.logger.warning(f"Detected {len(results)} suspicious activity patterns")
        return results

    def cleanup(self, retention: datetime.timedelta = None) -> int:
        """
        Hard-delete events older than ``retention``.

        Returns:
            Number of events removed
        """
        retention = retention or datetime.timedelta(days=AUDIT_RETENTION_DAYS)
        cutoff = utc_now() - retention
        with self.db.session() as session:
            removed = self.repository.delete_before(session, cutoff)
        self.logger.info(f"Audit cleanup removed {removed} events older than {cutoff.isoformat()}")
        return removed

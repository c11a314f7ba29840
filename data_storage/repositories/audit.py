#!/usr/bin/env python3
"""
Tiris Backend
Audit Event Repository

Append, query and retention deletes for the audit trail.
"""

import datetime
from typing import Iterable, List, Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from common.utils import parse_uuid
from data_storage.models import AuditEvent
from data_storage.repositories.base import BaseRepository, clamp_limit


class AuditEventRepository(BaseRepository):
    """Repository for audit events."""

    model = AuditEvent

    def append(self, session: Session, event: AuditEvent) -> AuditEvent:
        session.add(event)
        session.flush()
        return event

    def query(self, session: Session, user_id=None, action: str = None, level: str = None,
              ip_address: str = None, start: datetime.datetime = None,
              end: datetime.datetime = None, success: Optional[bool] = None,
              limit: int = None, offset: int = 0) -> List[AuditEvent]:
        """Filter events, newest first."""
        query = select(AuditEvent)
        if user_id is not None:
            query = query.filter(AuditEvent.user_id == parse_uuid(user_id))
        if action:
            query = query.filter(AuditEvent.action == action)
        if level:
            query = query.filter(AuditEvent.level == level)
        if ip_address:
            query = query.filter(AuditEvent.ip_address == ip_address)
        if start is not None:
            query = query.filter(AuditEvent.timestamp >= start)
        if end is not None:
            query = query.filter(AuditEvent.timestamp <= end)
        if success is not None:
            query = query.filter(AuditEvent.success.is_(success))

        query = query.order_by(AuditEvent.timestamp.desc()).limit(clamp_limit(limit)).offset(offset or 0)
        return list(session.execute(query).scalars().all())

    def alerts(self, session: Session, since: datetime.datetime, levels: Iterable[str],
               actions: Iterable[str], limit: int) -> List[AuditEvent]:
        """Events at an alerting level since ``since``, or with an alerting action."""
        query = select(AuditEvent).filter(
            or_(
                (AuditEvent.level.in_(list(levels))) & (AuditEvent.timestamp >= since),
                AuditEvent.action.in_(list(actions)),
            )
        ).order_by(AuditEvent.timestamp.desc()).limit(clamp_limit(limit))
        return list(session.execute(query).scalars().all())

    def delete_before(self, session: Session, cutoff: datetime.datetime) -> int:
        """Hard-delete events older than ``cutoff``; returns the count removed."""
        result = session.execute(delete(AuditEvent).where(AuditEvent.timestamp < cutoff))
        return result.rowcount or 0

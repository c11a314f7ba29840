#!/usr/bin/env python3
"""
Tiris Backend
System Data Models

This module defines the append-only audit trail of security relevant events.
Rows are only inserted and, during retention cleanup, hard-deleted.
"""

from typing import Any, Dict

from sqlalchemy import (
    Column, String, Boolean, Text, Integer, Index, CheckConstraint, TIMESTAMP, Uuid
)

from common.constants import AuditLevel
from common.utils import utc_now
from data_storage.models.base import Base, MutableJSON, uuid_pk, iso


class AuditEvent(Base):
    """Model for a single audit trail entry"""
    __tablename__ = 'audit_events'

    id = uuid_pk()
    timestamp = Column(TIMESTAMP(timezone=True), default=utc_now, nullable=False)
    level = Column(String(10), nullable=False, default=AuditLevel.INFO.value)
    action = Column(String(50), nullable=False)
    user_id = Column(Uuid(as_uuid=True), nullable=True)
    session_id = Column(String(100), nullable=True)
    ip_address = Column(String(45), nullable=False, default="")
    user_agent = Column(Text, nullable=False, default="")
    resource = Column(String(255), nullable=False, default="")
    details = Column(MutableJSON(), nullable=False, default=dict)
    success = Column(Boolean, nullable=False, default=True)
    error = Column(Text, nullable=True)
    # Milliseconds
    duration = Column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "level IN (" + ", ".join(f"'{lvl.value}'" for lvl in AuditLevel) + ")", name="level"
        ),
        Index('ix_audit_events_timestamp', 'timestamp'),
        Index('ix_audit_events_user_id_timestamp', 'user_id', 'timestamp'),
        Index('ix_audit_events_action', 'action'),
        Index('ix_audit_events_ip_address', 'ip_address'),
        Index('ix_audit_events_level', 'level'),
    )

    def __repr__(self):
        return f"<AuditEvent(action='{self.action}', level='{self.level}', success={self.success})>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "timestamp": iso(self.timestamp),
            "level": self.level,
            "action": self.action,
            "user_id": str(self.user_id) if self.user_id else None,
            "session_id": self.session_id,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "resource": self.resource,
            "details": dict(self.details or {}),
            "success": self.success,
            "error": self.error,
            "duration": self.duration,
        }

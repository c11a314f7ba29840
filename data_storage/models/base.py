#!/usr/bin/env python3
"""
Tiris Backend
Model Base and Mixins

Declarative base with constraint naming conventions, portable column types
and the timestamp and soft-delete mixins shared by every entity.
"""

import uuid
import datetime

from sqlalchemy import Column, JSON, TIMESTAMP, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.mutable import MutableDict, MutableList
from sqlalchemy.orm import declarative_base
from sqlalchemy.schema import MetaData

from common.utils import utc_now, ensure_utc, to_rfc3339

# Base metadata with naming conventions for constraints
db_metadata = MetaData(naming_convention={
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s"
})

Base = declarative_base(metadata=db_metadata)


def json_type():
    """JSONB on PostgreSQL, plain JSON elsewhere."""
    return JSON().with_variant(JSONB(), "postgresql")


# Each call builds a new type: as_mutable() binds to the type instance
def MutableJSON():
    """Mapping column type that tracks in-place changes."""
    return MutableDict.as_mutable(json_type())


def MutableJSONList():
    """Sequence column type that tracks in-place changes."""
    return MutableList.as_mutable(json_type())


def uuid_pk():
    """Primary key column holding a system generated UUID."""
    return Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)


class TimestampMixin:
    """Mixin for adding timestamp fields to models."""
    created_at = Column(TIMESTAMP(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)


class SoftDeleteMixin:
    """Mixin for soft delete functionality."""
    deleted_at = Column(TIMESTAMP(timezone=True), nullable=True)

    def soft_delete(self):
        """Mark record as deleted."""
        self.deleted_at = utc_now()

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def active(cls):
        """Filter clause selecting rows that are not soft-deleted."""
        return cls.deleted_at.is_(None)


def iso(value: datetime.datetime):
    """RFC 3339 rendering used by every ``to_dict``."""
    return to_rfc3339(value)


def aware(value: datetime.datetime):
    """Column values read back from SQLite are naive UTC."""
    return ensure_utc(value)

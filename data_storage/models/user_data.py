#!/usr/bin/env python3
"""
Tiris Backend
User Data Models

This module defines the database models for users, their linked OAuth
identities and the API keys they issue for machine access.
"""

from typing import Any, Dict, List

from sqlalchemy import (
    Column, String, Boolean, Text, ForeignKey, Index, UniqueConstraint,
    CheckConstraint, TIMESTAMP, Uuid
)

from common.constants import OAuthProviderName, WILDCARD_PERMISSION
from common.utils import utc_now
from data_storage.models.base import (
    Base, TimestampMixin, SoftDeleteMixin, MutableJSON, MutableJSONList, uuid_pk, iso, aware
)

_PROVIDERS = ", ".join(f"'{p.value}'" for p in OAuthProviderName)


class User(Base, TimestampMixin, SoftDeleteMixin):
    """Account holder, created on first OAuth login."""
    __tablename__ = 'users'

    id = uuid_pk()
    username = Column(String(50), nullable=False)
    email = Column(String(255), nullable=False)
    avatar = Column(Text, nullable=True)
    settings = Column(MutableJSON(), nullable=False, default=dict)
    info = Column(MutableJSON(), nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint("length(username) >= 3", name="username_length"),
        Index('uq_users_username_active', 'username', unique=True,
              postgresql_where=Column('deleted_at').is_(None),
              sqlite_where=Column('deleted_at').is_(None)),
        Index('uq_users_email_active', 'email', unique=True,
              postgresql_where=Column('deleted_at').is_(None),
              sqlite_where=Column('deleted_at').is_(None)),
    )

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}')>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "username": self.username,
            "email": self.email,
            "avatar": self.avatar,
            "settings": dict(self.settings or {}),
            "info": dict(self.info or {}),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class OAuthToken(Base, TimestampMixin):
    """Provider identity linked to a user, with the provider's tokens."""
    __tablename__ = 'oauth_tokens'

    id = uuid_pk()
    user_id = Column(Uuid(as_uuid=True), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    provider = Column(String(20), nullable=False)
    provider_user_id = Column(String(255), nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=True)
    info = Column(MutableJSON(), nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint('provider', 'provider_user_id', name='uq_oauth_tokens_provider_user'),
        CheckConstraint(f"provider IN ({_PROVIDERS})", name="provider"),
        Index('ix_oauth_tokens_user_id', 'user_id'),
    )

    def __repr__(self):
        return f"<OAuthToken(provider='{self.provider}', provider_user_id='{self.provider_user_id}')>"

    def to_dict(self) -> Dict[str, Any]:
        # access and refresh tokens are never serialized
        return {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "provider": self.provider,
            "provider_user_id": self.provider_user_id,
            "expires_at": iso(self.expires_at),
            "info": dict(self.info or {}),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }


class UserAPIKey(Base, TimestampMixin):
    """API key issued by a user. Only the encrypted key and its hash are stored."""
    __tablename__ = 'user_api_keys'

    id = uuid_pk()
    user_id = Column(Uuid(as_uuid=True), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    name = Column(String(100), nullable=False)
    encrypted_key = Column(Text, nullable=False)
    key_hash = Column(String(64), nullable=False)
    permissions = Column(MutableJSONList(), nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False)
    last_used_at = Column(TIMESTAMP(timezone=True), nullable=True)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('key_hash', name='uq_user_api_keys_key_hash'),
        Index('ix_user_api_keys_user_id', 'user_id'),
        Index('ix_user_api_keys_is_active', 'is_active'),
    )

    # Set in memory on creation or rotation, never persisted
    plaintext_key = None

    def __repr__(self):
        return f"<UserAPIKey(id={self.id}, name='{self.name}', active={self.is_active})>"

    def has_permission(self, capability: str) -> bool:
        """Check whether the key grants ``capability`` (or the ``*`` wildcard)."""
        permissions: List[str] = self.permissions or []
        return capability in permissions or WILDCARD_PERMISSION in permissions

    @property
    def is_expired(self) -> bool:
        """Check if the API key has expired."""
        if not self.expires_at:
            return False
        return aware(self.expires_at) < utc_now()

    def update_last_used(self):
        """Update the last used timestamp."""
        self.last_used_at = utc_now()

    def to_dict(self, masked_key: str = None) -> Dict[str, Any]:
        # encrypted_key and key_hash are never serialized
        data = {
            "id": str(self.id),
            "user_id": str(self.user_id),
            "name": self.name,
            "permissions": list(self.permissions or []),
            "is_active": self.is_active,
            "last_used_at": iso(self.last_used_at),
            "expires_at": iso(self.expires_at),
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if masked_key is not None:
            data["masked_key"] = masked_key
        if self.plaintext_key:
            data["api_key"] = self.plaintext_key
        return data

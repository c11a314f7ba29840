#!/usr/bin/env python3
"""
Tiris Backend
User Repositories

Data access for users, linked OAuth identities and user-issued API keys.
"""

from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from common.exceptions import NotFoundError
from common.utils import parse_uuid, utc_now
from data_storage.models import User, OAuthToken, UserAPIKey
from data_storage.repositories.base import BaseRepository


class UserRepository(BaseRepository):
    """Repository for users. Deletion is always soft."""

    model = User
    conflicts = (
        (("uq_users_username_active", "users.username"), "username already exists"),
        (("uq_users_email_active", "users.email"), "email already exists"),
    )

    def get_by_email(self, session: Session, email: str) -> Optional[User]:
        query = select(User).filter(User.email == email, User.active())
        return session.execute(query).scalars().first()

    def get_by_username(self, session: Session, username: str) -> Optional[User]:
        query = select(User).filter(User.username == username, User.active())
        return session.execute(query).scalars().first()

    def username_exists(self, session: Session, username: str) -> bool:
        return self.get_by_username(session, username) is not None

    def create(self, session: Session, username: str, email: str, avatar: str = None,
               settings: dict = None, info: dict = None) -> User:
        """
        Create a user.

        Raises:
            ConflictError: "username already exists" or "email already exists"
        """
        user = User(
            username=username,
            email=email,
            avatar=avatar,
            settings=settings or {},
            info=info or {},
        )
        return self.add(session, user)

    def update(self, session: Session, user: User, **fields) -> User:
        return self.update_fields(session, user, fields)

    def delete(self, session: Session, user_id) -> None:
        """
        Soft-delete a user.

        Raises:
            NotFoundError: If the user does not exist
        """
        user = self.get_by_id(session, user_id)
        if user is None:
            raise NotFoundError("user not found")
        user.soft_delete()
        self.flush(session)

    def list(self, session: Session, limit: int = None, offset: int = 0) -> Tuple[List[User], int]:
        query = select(User).filter(User.active())
        return self.paginate(session, query, limit, offset, order_by=User.created_at.desc())


class OAuthTokenRepository(BaseRepository):
    """Repository for provider identities linked to users."""

    model = OAuthToken
    conflicts = (
        (("uq_oauth_tokens_provider_user", "oauth_tokens.provider"), "oauth identity already linked"),
    )

    def get_by_provider_user_id(self, session: Session, provider: str,
                                provider_user_id: str) -> Optional[OAuthToken]:
        query = select(OAuthToken).filter(
            OAuthToken.provider == provider,
            OAuthToken.provider_user_id == provider_user_id,
        )
        return session.execute(query).scalars().first()

    def get_by_user_id(self, session: Session, user_id) -> List[OAuthToken]:
        query = select(OAuthToken).filter(OAuthToken.user_id == parse_uuid(user_id))
        return list(session.execute(query).scalars().all())

    def create(self, session: Session, user_id, provider: str, provider_user_id: str,
               access_token: str, refresh_token: str = None, expires_at=None,
               info: dict = None) -> OAuthToken:
        token = OAuthToken(
            user_id=parse_uuid(user_id),
            provider=provider,
            provider_user_id=provider_user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            info=info or {},
        )
        return self.add(session, token)

    def update(self, session: Session, token: OAuthToken, **fields) -> OAuthToken:
        return self.update_fields(session, token, fields)


class UserAPIKeyRepository(BaseRepository):
    """Repository for user API keys. Lookups go through the key hash only."""

    model = UserAPIKey
    conflicts = (
        (("uq_user_api_keys_key_hash", "user_api_keys.key_hash"), "api key already exists"),
    )

    def create(self, session: Session, user_id, name: str, encrypted_key: str, key_hash: str,
               permissions: List[str], expires_at=None) -> UserAPIKey:
        api_key = UserAPIKey(
            user_id=parse_uuid(user_id),
            name=name,
            encrypted_key=encrypted_key,
            key_hash=key_hash,
            permissions=list(permissions),
            is_active=True,
            expires_at=expires_at,
        )
        return self.add(session, api_key)

    def get_by_id_and_user(self, session: Session, key_id, user_id) -> Optional[UserAPIKey]:
        query = select(UserAPIKey).filter(
            UserAPIKey.id == parse_uuid(key_id),
            UserAPIKey.user_id == parse_uuid(user_id),
        )
        return session.execute(query).scalars().first()

    def get_active_by_hash(self, session: Session, key_hash: str) -> Optional[UserAPIKey]:
        query = select(UserAPIKey).filter(
            UserAPIKey.key_hash == key_hash,
            UserAPIKey.is_active.is_(True),
        )
        return session.execute(query).scalars().first()

    def list_by_user(self, session: Session, user_id) -> List[UserAPIKey]:
        query = (
            select(UserAPIKey)
            .filter(UserAPIKey.user_id == parse_uuid(user_id))
            .order_by(UserAPIKey.created_at.desc())
        )
        return list(session.execute(query).scalars().all())

    def deactivate(self, session: Session, api_key: UserAPIKey) -> UserAPIKey:
        api_key.is_active = False
        api_key.updated_at = utc_now()
        self.flush(session)
        return api_key

    def touch_last_used(self, session: Session, api_key_id) -> bool:
        api_key = self.get_by_id(session, api_key_id)
        if api_key is None:
            return False
        api_key.update_last_used()
        self.flush(session)
        return True

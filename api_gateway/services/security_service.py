#!/usr/bin/env python3
"""
Tiris Backend
Security Service

This module provides the security use cases of the API Gateway: the user API
key lifecycle (issue, validate, rotate, list, revoke), rate-limit checks by
rule name, security alert reporting, and exchange bindings whose credentials
are encrypted at rest.
"""

import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from common.logger import get_logger
from common.exceptions import (
    APIKeyError, ConflictError, NotFoundError, TirisError, ValidationError
)
from common.constants import (
    AuditAction, APIKeyPrefix, USER_API_KEY_BYTES, ROTATED_KEY_SUFFIX,
    RATE_LIMIT_FALLBACK_RULE, API_KEY_DEFAULT_PERMISSIONS
)
from common.utils import parse_uuid
from common.security import EncryptionManager
from common.api_keys import APIKeyManager
from data_storage.models import UserAPIKey, ExchangeBinding
from data_storage.repositories import UserAPIKeyRepository, ExchangeBindingRepository
from api_gateway.audit import SuspiciousActivity
from api_gateway.rate_limiter import RateLimiter, RateLimitResult
from api_gateway.services.base_service import BaseService

# Initialize logger
logger = get_logger(__name__)


class CreateAPIKeyRequest(BaseModel):
    """Model for issuing a user API key."""
    name: str = Field(..., min_length=1, max_length=100)
    permissions: Optional[List[str]] = None
    expires_at: Optional[datetime.datetime] = None


def _invalid(error: str) -> Dict[str, Any]:
    return {"valid": False, "user_id": None, "api_key_id": None, "permissions": [], "error": error}


class SecurityService(BaseService):
    """API keys, rate limits, alerts and encrypted exchange credentials."""

    def __init__(self, db_manager, api_keys: APIKeyManager, encryption: EncryptionManager,
                 rate_limiter: RateLimiter = None, audit_logger=None, metrics=None):
        """
        Initialize the security service.

        Args:
            db_manager: DatabaseManager
            api_keys: API key manager
            encryption: Encryption manager for sensitive data
            rate_limiter: Redis rate limiter
            audit_logger: AuditLogger
            metrics: Prometheus collectors
        """
        super().__init__("SecurityService", db_manager, audit_logger, metrics)
        self.api_keys = api_keys
        self.encryption = encryption
        self.rate_limiter = rate_limiter
        self.user_api_keys = UserAPIKeyRepository()
        self.exchange_bindings = ExchangeBindingRepository()

    # ------------------------------------------------------------------
    # User API keys
    # ------------------------------------------------------------------

    def _issue(self, session, user_id, name: str, permissions: List[str], expires_at=None) -> UserAPIKey:
        plaintext = self.api_keys.generate(APIKeyPrefix.USER, USER_API_KEY_BYTES)
        record = self.user_api_keys.create(
            session,
            user_id=user_id,
            name=name,
            encrypted_key=self.api_keys.encrypt(plaintext),
            key_hash=self.api_keys.hash(plaintext),
            permissions=permissions,
            expires_at=expires_at,
        )
        record.plaintext_key = plaintext
        return record

    def create_user_api_key(self, user_id, name: str, permissions: List[str] = None,
                            expires_at: datetime.datetime = None, ip_address: str = "") -> UserAPIKey:
        """
        Issue a new ``usr_`` API key.

        The returned record carries ``plaintext_key``; this is the only time
        the key is visible.

        Args:
            user_id: Owner
            name: Display name
            permissions: Capabilities, defaults to the user key defaults
            expires_at: Optional expiry
            ip_address: Client address for the audit trail

        Returns:
            UserAPIKey
        """
        if permissions is None:
            permissions = list(API_KEY_DEFAULT_PERMISSIONS[APIKeyPrefix.USER])

        with self.unit_of_work() as session:
            record = self._issue(session, user_id, name, permissions, expires_at)

        self.audit_security_event(
            AuditAction.API_KEY_CREATE,
            user_id=user_id,
            ip_address=ip_address,
            details={"api_key_id": str(record.id), "api_key_name": name, "permissions": permissions},
        )
        self.logger.info(f"Created API key {record.id} for user {user_id}")
        return record

    def validate_api_key(self, api_key: str, ip_address: str = "", user_agent: str = "") -> Dict[str, Any]:
        """
        Validate a presented API key.

        The key must be well formed and correctly signed, match a stored
        active key by hash and not be expired. A valid key has its
        ``last_used_at`` refreshed in a separate transaction; a failure there
        is logged and does not fail validation.

        Returns:
            Dictionary with ``valid``, ``user_id``, ``api_key_id``,
            ``permissions`` and ``error``
        """
        try:
            self.api_keys.validate(api_key)
        except APIKeyError as e:
            result = _invalid(str(e))
        else:
            key_hash = self.api_keys.hash(api_key)
            with self.unit_of_work() as session:
                record = self.user_api_keys.get_active_by_hash(session, key_hash)
                if record is None:
                    result = _invalid("API key not found or inactive")
                elif record.is_expired:
                    result = _invalid("API key has expired")
                    result["user_id"] = str(record.user_id)
                else:
                    result = {
                        "valid": True,
                        "user_id": str(record.user_id),
                        "api_key_id": str(record.id),
                        "permissions": list(record.permissions or []),
                        "error": None,
                    }

            if result["valid"]:
                self._touch_last_used(result["api_key_id"])

        self.metrics.record_auth_request("api_key", "api_key", result["valid"])
        details = {"api_key_id": result["api_key_id"]}
        if not result["valid"]:
            details["reason"] = result["error"]
        self.audit_security_event(
            AuditAction.API_KEY_USED,
            user_id=result["user_id"],
            ip_address=ip_address,
            user_agent=user_agent,
            success=result["valid"],
            details=details,
            error=result["error"],
        )
        return result

    def _touch_last_used(self, api_key_id) -> None:
        # Best effort, outside the validation transaction
        try:
            with self.unit_of_work() as session:
                self.user_api_keys.touch_last_used(session, api_key_id)
        except TirisError as e:
            self.logger.warning(f"Failed to update last use of API key {api_key_id}: {str(e)}")

    def rotate_api_key(self, user_id, api_key_id, ip_address: str = "") -> UserAPIKey:
        """
        Replace an API key with a fresh one.

        The old key is deactivated and a new key with the same permissions
        and a ``" (Rotated)"`` name suffix is issued in the same transaction.

        Raises:
            NotFoundError: If the key does not exist or belongs to another user
        """
        with self.unit_of_work() as session:
            existing = self.user_api_keys.get_by_id_and_user(session, api_key_id, user_id)
            if existing is None:
                raise NotFoundError("API key not found")

            self.user_api_keys.deactivate(session, existing)
            record = self._issue(
                session, user_id, existing.name + ROTATED_KEY_SUFFIX,
                list(existing.permissions or []), existing.expires_at,
            )
            old_name = existing.name

        self.audit_security_event(
            AuditAction.API_KEY_UPDATE,
            user_id=user_id,
            ip_address=ip_address,
            details={
                "action": "rotate",
                "old_key_id": str(api_key_id),
                "new_key_id": str(record.id),
                "api_key_name": old_name,
            },
        )
        self.logger.info(f"Rotated API key {api_key_id} for user {user_id}")
        return record

    def _masked(self, record: UserAPIKey) -> str:
        return self.api_keys.mask(self.api_keys.decrypt(record.encrypted_key))

    def list_user_api_keys(self, user_id) -> List[Dict[str, Any]]:
        """The user's API keys, newest first, with masked key material."""
        with self.unit_of_work() as session:
            return [
                record.to_dict(masked_key=self._masked(record))
                for record in self.user_api_keys.list_by_user(session, user_id)
            ]

    def revoke_api_key(self, user_id, api_key_id, ip_address: str = "") -> None:
        """
        Deactivate an API key.

        Raises:
            NotFoundError: If the key does not exist or belongs to another user
        """
        with self.unit_of_work() as session:
            record = self.user_api_keys.get_by_id_and_user(session, api_key_id, user_id)
            if record is None:
                raise NotFoundError("API key not found")
            self.user_api_keys.deactivate(session, record)

        self.audit_security_event(
            AuditAction.API_KEY_DELETE,
            user_id=user_id,
            ip_address=ip_address,
            details={"api_key_id": str(api_key_id)},
        )

    # ------------------------------------------------------------------
    # Rate limiting and alerts
    # ------------------------------------------------------------------

    async def check_rate_limit(self, identifier: str, rule_name: str,
                               ip_address: str = "") -> RateLimitResult:
        """
        Check ``identifier`` against a named rule.

        Unknown rule names fall back to ``api_general``. Denials are audited.
        """
        rule = self.rate_limiter.rules.get(rule_name) or self.rate_limiter.get_rule(RATE_LIMIT_FALLBACK_RULE)
        result = await self.rate_limiter.check(identifier, rule)
        if not result.allowed:
            await run_in_threadpool(
                self.audit_security_event,
                AuditAction.RATE_LIMIT_HIT,
                ip_address=ip_address,
                success=False,
                details={"identifier": identifier, "rule": rule.name, "usage": result.current_usage},
                error=f"rate limit exceeded for rule {rule.name}",
            )
        return result

    def get_security_alerts(self, since: datetime.datetime = None, limit: int = None) -> List[Dict[str, Any]]:
        """Recent security alerts, newest first."""
        kwargs = {"since": since}
        if limit is not None:
            kwargs["limit"] = limit
        return [event.to_dict() for event in self.audit.get_security_alerts(**kwargs)]

    def get_suspicious_activity(self, window: datetime.timedelta = None) -> List[SuspiciousActivity]:
        return self.audit.get_suspicious_activity(window)

    def encrypt_sensitive_data(self, data: str) -> str:
        return self.encryption.encrypt(data)

    def decrypt_sensitive_data(self, encrypted_data: str) -> str:
        return self.encryption.decrypt(encrypted_data)

    # ------------------------------------------------------------------
    # Exchange credentials
    # ------------------------------------------------------------------

    def _check_duplicate_credentials(self, session, user_id, api_key: str, api_secret: str) -> None:
        # Ciphertexts are nonce-randomized, so duplicates are found on plaintext
        for binding in self.exchange_bindings.get_by_user_id(session, user_id):
            if self.encryption.decrypt(binding.api_key) == api_key:
                raise ConflictError("api key already exists")
            if self.encryption.decrypt(binding.api_secret) == api_secret:
                raise ConflictError("api secret already exists")

    def create_secure_exchange_binding(self, user_id, name: str, exchange: str, api_key: str,
                                       api_secret: str, ip_address: str = "") -> Dict[str, Any]:
        """
        Create a private exchange binding with encrypted credentials.

        Returns:
            The binding view with the API key masked

        Raises:
            ValidationError: If a credential is empty
            ConflictError: If the name or a credential is already bound
        """
        if not api_key or not api_secret:
            raise ValidationError("private exchange binding requires api_key and api_secret")

        with self.unit_of_work() as session:
            self._check_duplicate_credentials(session, user_id, api_key, api_secret)
            binding = self.exchange_bindings.create(session, ExchangeBinding(
                user_id=parse_uuid(user_id),
                name=name,
                exchange=exchange,
                type='private',
                api_key=self.encryption.encrypt(api_key),
                api_secret=self.encryption.encrypt(api_secret),
                status='active',
                info={},
            ))
            view = binding.to_dict(masked_api_key=self.api_keys.mask(api_key))

        self.audit_security_event(
            AuditAction.EXCHANGE_CREATE,
            user_id=user_id,
            ip_address=ip_address,
            details={"exchange_id": view["id"], "exchange_name": name, "exchange_type": exchange},
        )
        return view

    def get_exchange_credentials(self, user_id, binding_id, ip_address: str = "") -> Dict[str, str]:
        """
        Decrypt the credentials of one of the caller's exchange bindings.

        Every read is audited; a failed read is audited as a failure and the
        error re-raised.

        Raises:
            NotFoundError: If the binding is missing, public or foreign
            DecryptionError: If the stored credentials cannot be decrypted
        """
        try:
            with self.unit_of_work() as session:
                binding = self.exchange_bindings.get_by_id(session, binding_id)
                if (binding is None or binding.deleted_at is not None or binding.type != "private"
                        or binding.user_id != parse_uuid(user_id)):
                    raise NotFoundError("exchange binding not found")
                encrypted_key, encrypted_secret = binding.api_key, binding.api_secret

            credentials = {
                "api_key": self.encryption.decrypt(encrypted_key),
                "api_secret": self.encryption.decrypt(encrypted_secret),
            }
        except TirisError as e:
            self.audit_security_event(
                AuditAction.EXCHANGE_VIEW,
                user_id=user_id,
                ip_address=ip_address,
                success=False,
                details={"resource_type": "exchange_binding", "resource_id": str(binding_id)},
                error=str(e),
            )
            raise

        self.audit_event(
            AuditAction.EXCHANGE_VIEW,
            user_id=user_id,
            ip_address=ip_address,
            resource=f"exchange_binding:{binding_id}",
            details={"resource_type": "exchange_binding", "resource_id": str(binding_id)},
        )
        return credentials

#!/usr/bin/env python3
"""
Tiris Backend
Security Module

This module provides the cryptographic primitives used for secrets at rest:
AES-256-GCM encryption under a PBKDF2-derived master key, secure randomness,
constant-time comparison and masking helpers for display.
"""

import base64
import binascii
import hashlib
import hmac
import secrets
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from common.logger import get_logger
from common.exceptions import ConfigurationError, DecryptionError, SecurityError, ValidationError
from common.constants import (
    KDF_SALT, KDF_ITERATIONS, KDF_KEY_LENGTH, AES_NONCE_SIZE, MIN_MASTER_KEY_LENGTH
)

logger = get_logger(__name__)


def derive_key(master_key: str, salt: bytes = KDF_SALT, iterations: int = KDF_ITERATIONS) -> bytes:
    """
    Derive a 256-bit key from the configured master secret.

    Args:
        master_key: Master secret from configuration
        salt: Deployment-wide salt
        iterations: PBKDF2 iteration count

    Returns:
        32 bytes of key material
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KDF_KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(master_key.encode('utf-8'))


class EncryptionManager:
    """Authenticated symmetric encryption for secrets stored in the database."""

    def __init__(self, master_key: str):
        """
        Initialize the encryption manager.

        Args:
            master_key: Master secret, at least 32 characters

        Raises:
            ConfigurationError: If the master key is too short
        """
        if not master_key or len(master_key) < MIN_MASTER_KEY_LENGTH:
            raise ConfigurationError(
                f"master key must be at least {MIN_MASTER_KEY_LENGTH} characters long"
            )
        self._aead = AESGCM(derive_key(master_key))
        self.logger = get_logger("EncryptionManager")

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Args:
            plaintext: Text to protect

        Returns:
            base64(nonce || ciphertext || tag), or "" for empty input

        Raises:
            SecurityError: If encryption fails
        """
        if plaintext == "":
            return ""

        nonce = secrets.token_bytes(AES_NONCE_SIZE)
        try:
            sealed = self._aead.encrypt(nonce, plaintext.encode('utf-8'), None)
        except (TypeError, ValueError, OverflowError) as e:
            self.logger.error(f"Encryption failed: {str(e)}")
            raise SecurityError(f"Encryption failed: {str(e)}")
        return base64.b64encode(nonce + sealed).decode('ascii')

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a string produced by :meth:`encrypt`.

        Args:
            ciphertext: Base64 payload

        Returns:
            The plaintext, or "" for empty input

        Raises:
            DecryptionError: For malformed, truncated or tampered payloads
        """
        if ciphertext == "":
            return ""

        try:
            payload = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError):
            raise DecryptionError("decryption failed") from None

        if len(payload) < AES_NONCE_SIZE:
            raise DecryptionError("decryption failed")

        nonce, sealed = payload[:AES_NONCE_SIZE], payload[AES_NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag:
            raise DecryptionError("decryption failed") from None

        try:
            return plaintext.decode('utf-8')
        except UnicodeDecodeError:
            raise DecryptionError("decryption failed") from None


def generate_secure_bytes(length: int) -> bytes:
    """Return ``length`` bytes from the OS CSPRNG."""
    if length <= 0:
        raise ValidationError("length must be positive")
    return secrets.token_bytes(length)


def generate_secure_key(length: int = 32) -> str:
    """
    Generate a URL-safe base64 key from ``length`` random bytes.

    Raises:
        ValidationError: If length is not positive
    """
    return base64.urlsafe_b64encode(generate_secure_bytes(length)).decode('ascii')


def validate_key_strength(material: str) -> None:
    """
    Check that key material is long and mixed enough to use as a master key.

    Raises:
        ValidationError: If the key is shorter than 32 characters or lacks an
            uppercase letter, a lowercase letter or a digit
    """
    if len(material) < MIN_MASTER_KEY_LENGTH:
        raise ValidationError(f"key must be at least {MIN_MASTER_KEY_LENGTH} characters long")

    has_upper = any(c.isupper() for c in material)
    has_lower = any(c.islower() for c in material)
    has_digit = any(c.isdigit() for c in material)
    if not (has_upper and has_lower and has_digit):
        raise ValidationError("key must contain uppercase, lowercase, and numeric characters")


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """Compare two secrets without leaking where they differ."""
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)


def mask_sensitive_data(data: str, show_length: int = 4) -> str:
    """
    Mask a secret for display.

    Args:
        data: Value to mask
        show_length: Characters kept at each end

    Returns:
        "" for empty input, "***" when the value is too short to show
        anything, otherwise prefix + asterisks + suffix
    """
    if data == "":
        return ""
    if len(data) <= show_length * 2:
        return "***"
    hidden = len(data) - show_length * 2
    return data[:show_length] + "*" * hidden + data[-show_length:]


def hash_content(content: Union[str, bytes]) -> str:
    """
    Hash content with SHA-256.

    Args:
        content: Text or bytes

    Returns:
        Hex digest
    """
    if isinstance(content, str):
        content = content.encode('utf-8')
    return hashlib.sha256(content).hexdigest()

"""
Security utilities for token encryption and internal job authentication.

CRITICAL SECURITY REQUIREMENTS:
1. NEVER log tokens (access_token, refresh_token)
2. ALWAYS encrypt OAuth tokens before database storage
3. Internal job endpoints compare the shared secret in constant time
"""

import base64
import binascii
import os
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from billybot.core.config import Settings
from billybot.core.exceptions import (
    ConfigurationError,
    TokenAuthenticationError,
    TokenFormatError,
)

TOKEN_SEPARATOR = "."
NONCE_LENGTH = 12  # 96-bit GCM nonce
TAG_LENGTH = 16
KEY_LENGTH = 32  # AES-256


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(segment: str) -> bytes:
    try:
        return base64.b64decode(segment, validate=True)
    except (binascii.Error, ValueError) as e:
        raise TokenFormatError(f"Invalid encrypted token segment: {e}")


class TokenCipher:
    """
    Symmetric authenticated encryption for OAuth tokens (AES-256-GCM).

    Serialized form is three base64 segments joined by ".":
        nonce . tag . ciphertext

    A fresh random nonce is drawn on every encrypt() call, so the same
    plaintext never encrypts to the same string twice.
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_LENGTH:
            raise ConfigurationError(
                "EMAIL_TOKEN_ENCRYPTION_KEY must be base64-encoded 32 bytes"
            )
        self._aead = AESGCM(key)

    @classmethod
    def from_base64_key(cls, key_base64: Optional[str]) -> "TokenCipher":
        """
        Build a cipher from the base64 key stored in configuration.

        Raises:
            ConfigurationError: If the key is absent, not base64, or not 32 bytes
        """
        if not key_base64:
            raise ConfigurationError("EMAIL_TOKEN_ENCRYPTION_KEY is required")

        try:
            key = base64.b64decode(key_base64, validate=True)
        except (binascii.Error, ValueError):
            raise ConfigurationError(
                "EMAIL_TOKEN_ENCRYPTION_KEY must be base64-encoded 32 bytes"
            )

        return cls(key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenCipher":
        return cls.from_base64_key(settings.EMAIL_TOKEN_ENCRYPTION_KEY)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt plaintext string.

        Args:
            plaintext: OAuth token or other sensitive string

        Returns:
            "nonce.tag.ciphertext" (safe for database storage)
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")

        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        return TOKEN_SEPARATOR.join(
            _b64encode(part) for part in (nonce, tag, ciphertext)
        )

    def decrypt(self, token: str) -> str:
        """
        Decrypt a token produced by encrypt().

        Raises:
            TokenFormatError: Token is not three non-empty base64 segments
            TokenAuthenticationError: Tag check failed
        """
        segments = (token or "").split(TOKEN_SEPARATOR)
        if len(segments) != 3 or not all(segments):
            raise TokenFormatError("Invalid encrypted token format")

        nonce, tag, ciphertext = (_b64decode(segment) for segment in segments)
        if len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
            raise TokenFormatError("Invalid encrypted token format")

        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            raise TokenAuthenticationError("Encrypted token failed authentication")

        return plaintext.decode("utf-8")


def generate_encryption_key() -> str:
    """
    Generate a new EMAIL_TOKEN_ENCRYPTION_KEY value.

    Usage:
        print(f"EMAIL_TOKEN_ENCRYPTION_KEY={generate_encryption_key()}")

    WARNING: Never regenerate in production without re-encrypting stored
    tokens first.
    """
    return _b64encode(AESGCM.generate_key(bit_length=256))


def generate_state_token() -> str:
    """
    Generate secure random state token for OAuth flow (CSRF protection).

    Usage:
        state = generate_state_token()
        redis.setex(f"oauth_state:{state}", 600, client_id)
    """
    return secrets.token_urlsafe(24)


def is_valid_internal_token(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time check of the x-internal-token header. Unset secret never matches."""
    if not expected or not provided:
        return False
    return secrets.compare_digest(provided.encode(), expected.encode())

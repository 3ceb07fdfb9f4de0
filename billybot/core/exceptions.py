"""
Exception hierarchy shared by the email connection modules.

Configuration errors are fatal (HTTP 500). Cipher and provider errors are
caught per account by batch jobs and recorded instead of propagated.
"""

from typing import Optional


class ConfigurationError(RuntimeError):
    """Required configuration is missing or malformed."""


class TokenCipherError(Exception):
    """Base class for token encryption/decryption failures."""


class TokenFormatError(TokenCipherError):
    """Encrypted token does not have the nonce.tag.ciphertext shape."""


class TokenAuthenticationError(TokenCipherError):
    """Authentication tag check failed (tampered, corrupted or wrong key)."""


class ProviderError(Exception):
    """A call to Google or Microsoft failed."""


class TokenRefreshError(ProviderError):
    """
    Access token could not be obtained or refreshed.

    Messages are matched by the status classifier, so they keep the
    provider's phrasing (e.g. "Google token refresh failed: invalid_grant").
    """


class GraphRequestError(ProviderError):
    """Microsoft Graph returned a non-2xx response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GmailWatchError(ProviderError):
    """Gmail users.watch registration failed."""


class EmailSendError(ProviderError):
    """Gmail or Microsoft Graph refused an outgoing message."""


class OAuthStateError(Exception):
    """OAuth callback state token missing, expired or already used."""


class OAuthExchangeError(ProviderError):
    """
    OAuth callback could not complete.

    reason is the short code shown to the user as ?email_error=<reason>.
    """

    def __init__(self, message: str, reason: str):
        super().__init__(message)
        self.reason = reason

"""Error taxonomy for Gmail Triage.

Recoverable errors (``GatewayError``, ``ClassifierError``) are logged and the
current invocation gives up, leaving state consistent for a later retry.
Fatal errors (``AuthRequired``, ``RefreshFailed``) need an operator to
re-authorize the account and are never retried automatically.
"""

from __future__ import annotations


class TriageError(Exception):
    """Base class for all Gmail Triage errors."""


class ConfigError(TriageError):
    """Missing or invalid configuration value."""


class DecodeError(TriageError):
    """A push notification could not be decoded."""


class StoreError(TriageError):
    """A durable record is unreadable."""


class AuthError(TriageError):
    """Base class for fatal credential problems."""


class AuthRequired(AuthError):
    """No credential is stored for the account."""

    def __init__(self, account: str) -> None:
        super().__init__(
            f"No stored credentials for {account}. "
            "Complete the authorization flow first (gmail-triage auth url)."
        )
        self.account = account


class RefreshFailed(AuthError):
    """The refresh token was rejected; the account must be re-authorized."""

    def __init__(self, account: str, reason: str = "") -> None:
        message = f"Token refresh failed for {account}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.account = account


class GatewayError(TriageError):
    """A remote mailbox call failed (transient)."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class HistoryExpired(GatewayError):
    """The provider no longer keeps history from the requested start id."""


class ClassifierError(TriageError):
    """The classifier failed or timed out."""

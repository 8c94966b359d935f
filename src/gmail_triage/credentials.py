"""OAuth credential lifecycle: storage, refresh and authorization-code exchange."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Protocol

import requests
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from .constants import (
    AUTH_URI,
    DEFAULT_TIMEOUT_SECONDS,
    REFRESH_SKEW_SECONDS,
    REVOKE_URI,
    SCOPES,
    TOKEN_KEY_PREFIX,
    TOKEN_URI,
)
from .errors import AuthRequired, GatewayError, RefreshFailed
from .locks import KeyedLocks
from .models import Credential, utcnow
from .store import ObjectStore

logger = logging.getLogger(__name__)


def _mask(token: str) -> str:
    return f"{token[:6]}..." if token else "<missing>"


class TokenStore:
    """Credential records persisted in the object store, one per account."""

    def __init__(self, store: ObjectStore) -> None:
        self._store = store

    @staticmethod
    def _key(account: str) -> str:
        return f"{TOKEN_KEY_PREFIX}{account.lower()}"

    def load(self, account: str) -> Credential | None:
        record = self._store.get(self._key(account))
        if record is None:
            logger.warning("No token stored for %s", account)
            return None
        return Credential.from_record(record)

    def save(self, account: str, credential: Credential) -> None:
        self._store.put(self._key(account), credential.to_record())
        logger.info("Token saved for %s", account)

    def clear(self, account: str) -> None:
        self._store.delete(self._key(account))


class TokenClient(Protocol):
    """Remote token operations used by :class:`CredentialManager`."""

    def refresh(self, credential: Credential) -> Credential | None: ...

    def exchange_code(self, code: str) -> Credential: ...

    def authorization_url(self) -> str: ...

    def revoke(self, credential: Credential) -> bool: ...


class _TimeoutRequest(Request):
    """google-auth transport that applies a default timeout to every call."""

    def __init__(self, timeout: float) -> None:
        super().__init__()
        self._timeout = timeout

    def __call__(self, url, method="GET", body=None, headers=None, timeout=None, **kwargs):  # noqa: ANN001
        return super().__call__(
            url, method=method, body=body, headers=headers, timeout=timeout or self._timeout, **kwargs
        )


def _to_google(credential: Credential, client_id: str, client_secret: str) -> Credentials:
    expiry = None
    if credential.expiry is not None:
        # google-auth compares against naive UTC datetimes
        expiry = credential.expiry.astimezone(timezone.utc).replace(tzinfo=None)
    return Credentials(
        token=credential.access_token or None,
        refresh_token=credential.refresh_token or None,
        token_uri=credential.token_uri or TOKEN_URI,
        client_id=credential.client_id or client_id,
        client_secret=credential.client_secret or client_secret,
        scopes=credential.scopes or None,
        expiry=expiry,
    )


def _from_google(creds: Credentials) -> Credential:
    expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None
    return Credential(
        access_token=creds.token or "",
        refresh_token=creds.refresh_token or "",
        expiry=expiry,
        token_uri=creds.token_uri or TOKEN_URI,
        client_id=creds.client_id or "",
        client_secret=creds.client_secret or "",
        scopes=list(creds.scopes or []),
    )


class GoogleTokenClient:
    """Token operations against Google's OAuth 2.0 endpoints."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        scopes: list[str] | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes or SCOPES
        self.timeout = timeout

    def _flow(self) -> Flow:
        config = {
            "web": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": [self.redirect_uri],
            }
        }
        return Flow.from_client_config(config, scopes=self.scopes, redirect_uri=self.redirect_uri)

    def authorization_url(self) -> str:
        # offline + consent makes Google issue a refresh token every time
        url, _state = self._flow().authorization_url(access_type="offline", prompt="consent")
        return url

    def exchange_code(self, code: str) -> Credential:
        flow = self._flow()
        flow.fetch_token(code=code)
        return _from_google(flow.credentials)

    def refresh(self, credential: Credential) -> Credential | None:
        """Refresh the access token. Returns None when Google rejects the refresh."""
        creds = _to_google(credential, self.client_id, self.client_secret)
        try:
            creds.refresh(_TimeoutRequest(self.timeout))
        except RefreshError as exc:
            logger.error("Google rejected token refresh: %s", exc)
            return None
        except TransportError as exc:
            raise GatewayError(f"Token endpoint unreachable: {exc}") from exc
        return _from_google(creds)

    def revoke(self, credential: Credential) -> bool:
        token = credential.refresh_token or credential.access_token
        try:
            resp = requests.post(
                REVOKE_URI,
                params={"token": token},
                headers={"content-type": "application/x-www-form-urlencoded"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Token revocation request failed: %s", exc)
            return False
        return resp.status_code == 200


class CredentialManager:
    """Hands out a valid access credential per account.

    Credentials are cached in memory per instance. Each account has its own
    lock held across the check/refresh/persist sequence, so concurrent callers
    wait for an in-flight refresh instead of starting a second one.
    """

    def __init__(
        self,
        token_store: TokenStore,
        token_client: TokenClient,
        skew_seconds: int = REFRESH_SKEW_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._token_store = token_store
        self._token_client = token_client
        self._skew = skew_seconds
        self._clock = clock
        self._cache: dict[str, Credential] = {}
        self._locks = KeyedLocks()

    def get_valid_credential(self, account: str) -> Credential:
        key = account.lower()
        with self._locks.hold(key):
            credential = self._cache.get(key)
            if credential is None:
                logger.info("Loading stored credentials for %s", account)
                credential = self._token_store.load(account)
                if credential is None:
                    raise AuthRequired(account)
                self._cache[key] = credential

            if not credential.is_stale(self._skew, self._clock()):
                return credential

            return self._refresh_locked(account, credential)

    def _refresh_locked(self, account: str, previous: Credential) -> Credential:
        key = account.lower()
        logger.info("Token for %s is stale, refreshing (refresh token %s)", account, _mask(previous.refresh_token))
        if not previous.refresh_token:
            self._cache.pop(key, None)
            raise RefreshFailed(account, "no refresh token stored")

        refreshed = self._token_client.refresh(previous)
        if refreshed is None:
            self._cache.pop(key, None)
            raise RefreshFailed(account, "refresh token rejected")

        if not refreshed.refresh_token:
            # Providers may omit the refresh token from refresh responses
            logger.warning("Refresh response for %s omitted the refresh token, keeping the previous one", account)
            refreshed.refresh_token = previous.refresh_token
        refreshed.issued_at = self._clock().isoformat()

        self._token_store.save(account, refreshed)
        self._cache[key] = refreshed
        logger.info("Refreshed token for %s, new access token %s", account, _mask(refreshed.access_token))
        return refreshed

    def authorization_url(self) -> str:
        return self._token_client.authorization_url()

    def exchange_code(self, account: str, code: str) -> Credential:
        """Exchange an authorization code and persist the resulting credential."""
        credential = self._token_client.exchange_code(code)
        key = account.lower()
        with self._locks.hold(key):
            if not credential.refresh_token:
                previous = self._cache.get(key) or self._token_store.load(account)
                if previous is not None and previous.refresh_token:
                    credential.refresh_token = previous.refresh_token
            credential.issued_at = self._clock().isoformat()
            self._token_store.save(account, credential)
            self._cache[key] = credential
        logger.info("Stored new credentials for %s", account)
        return credential

    def revoke(self, account: str) -> None:
        """Revoke the account's token at the provider and forget it locally."""
        key = account.lower()
        with self._locks.hold(key):
            credential = self._cache.pop(key, None) or self._token_store.load(account)
            if credential is not None and not self._token_client.revoke(credential):
                logger.warning("Provider did not confirm revocation for %s", account)
            self._token_store.clear(account)

    def invalidate(self, account: str) -> None:
        """Drop the cached credential so the next call reloads it from storage."""
        with self._locks.hold(account.lower()):
            self._cache.pop(account.lower(), None)

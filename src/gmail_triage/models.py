"""Data models for Gmail Triage."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Watermark:
    """Last processed history id for one account."""

    account: str
    history_id: int
    last_updated: str = field(default_factory=lambda: utcnow().isoformat())

    def to_record(self) -> dict:
        return {
            "emailAddress": self.account,
            "historyId": self.history_id,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_record(cls, record: dict) -> Watermark:
        return cls(
            account=record["emailAddress"],
            history_id=int(record["historyId"]),
            last_updated=record.get("lastUpdated", ""),
        )


@dataclass(frozen=True)
class NotificationEvent:
    """A decoded push notification.

    A message id takes priority over a history id; an event carrying neither
    (or a history id without an account) is inert.
    """

    account: str = ""
    message_id: str = ""
    history_id: int = 0
    pubsub_message_id: str = ""
    publish_time: str = ""

    @property
    def kind(self) -> str:
        if self.message_id:
            return "direct"
        if self.history_id > 0 and self.account:
            return "delta"
        return "inert"


@dataclass(frozen=True)
class MessageAdded:
    """One messageAdded entry of a history delta."""

    message_id: str
    history_id: int = 0


@dataclass
class Message:
    """A fully fetched Gmail message."""

    id: str
    thread_id: str = ""
    headers: list[tuple[str, str]] = field(default_factory=list)
    body_text: str = ""
    attachment_filenames: list[str] = field(default_factory=list)
    label_ids: set[str] = field(default_factory=set)

    def header(self, name: str) -> str:
        """Return the first header value matching name, or an empty string."""
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return ""

    @property
    def subject(self) -> str:
        return self.header("Subject")

    @property
    def sender(self) -> str:
        return self.header("From")

    @property
    def recipients(self) -> str:
        return self.header("To")

    @property
    def rfc822_message_id(self) -> str:
        return self.header("Message-ID")


@dataclass(frozen=True)
class Label:
    id: str
    name: str


class RiskLevel(enum.Enum):
    NONE = "NO_RISK"
    MODERATE = "MODERATE_RISK"
    HIGH = "HIGH_RISK"


@dataclass(frozen=True)
class RiskVerdict:
    level: RiskLevel
    explanation: str = ""


@dataclass
class Credential:
    """An OAuth access credential plus the long-lived refresh token."""

    access_token: str
    refresh_token: str = ""
    expiry: datetime | None = None
    token_uri: str = ""
    client_id: str = ""
    client_secret: str = ""
    scopes: list[str] = field(default_factory=list)
    issued_at: str = field(default_factory=lambda: utcnow().isoformat())

    def is_stale(self, skew_seconds: int = 0, now: datetime | None = None) -> bool:
        """True when the access token is expired or expires within skew_seconds."""
        if not self.access_token or self.expiry is None:
            return True
        now = now or utcnow()
        return self.expiry - timedelta(seconds=skew_seconds) <= now

    def to_record(self) -> dict:
        return {
            "token": self.access_token,
            "refresh_token": self.refresh_token,
            "expiry": self.expiry.isoformat() if self.expiry else None,
            "token_uri": self.token_uri,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scopes": list(self.scopes),
            "issued_at": self.issued_at,
        }

    @classmethod
    def from_record(cls, record: dict) -> Credential:
        expiry = record.get("expiry")
        parsed: datetime | None = None
        if expiry:
            parsed = datetime.fromisoformat(expiry)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
        return cls(
            access_token=record.get("token") or record.get("access_token") or "",
            refresh_token=record.get("refresh_token") or "",
            expiry=parsed,
            token_uri=record.get("token_uri", ""),
            client_id=record.get("client_id", ""),
            client_secret=record.get("client_secret", ""),
            scopes=list(record.get("scopes") or []),
            issued_at=record.get("issued_at", ""),
        )


@dataclass
class MessageReport:
    """Outcome of running the classification pipeline on one message."""

    message_id: str
    fetched: bool = False
    skipped_reason: str = ""  # e.g. "self-mail"
    urgent: bool | None = None  # None when the check did not run
    risk: RiskLevel | None = None
    labels_added: list[str] = field(default_factory=list)
    reply_sent: bool = False

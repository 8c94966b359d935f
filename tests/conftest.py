"""Shared fixtures for tests."""

from __future__ import annotations

import itertools
import time

import pytest

from gmail_triage.errors import GatewayError
from gmail_triage.gateway import find_label
from gmail_triage.ledger import VerdictLedger
from gmail_triage.models import Label, Message, MessageAdded, RiskLevel, RiskVerdict
from gmail_triage.pipeline import ClassificationPipeline
from gmail_triage.reconciler import ReconciliationEngine
from gmail_triage.store import ObjectStore
from gmail_triage.watermarks import WatermarkStore

ACCOUNT = "owner@example.com"


def make_message(
    message_id: str,
    subject: str = "Quarterly numbers",
    sender: str = "Bob Jones <bob@partner.example>",
    to: str = ACCOUNT,
    body: str = "Please see the attached figures.",
    label_ids: set[str] | None = None,
    attachments: list[str] | None = None,
) -> Message:
    return Message(
        id=message_id,
        thread_id=f"thread-{message_id}",
        headers=[
            ("From", sender),
            ("To", to),
            ("Subject", subject),
            ("Message-ID", f"<{message_id}@mail.partner.example>"),
        ],
        body_text=body,
        attachment_filenames=attachments or [],
        label_ids=set(label_ids or {"INBOX"}),
    )


class FakeGateway:
    """In-memory stand-in for MailboxGateway."""

    def __init__(self, account: str = ACCOUNT) -> None:
        self.account = account
        self.messages: dict[str, Message] = {}
        self.labels: dict[str, Label] = {}
        self.history: list[MessageAdded] = []
        self.history_id = 100
        self.history_errors: list[Exception] = []
        self.fail_get: set[str] = set()
        self.fail_modify: set[str] = set()
        self.history_calls: list[int] = []
        self.get_calls: list[str] = []
        self.modify_calls: list[tuple[str, list[str]]] = []
        self.created_labels: list[str] = []
        self.sent: list[tuple[bytes, str]] = []
        self.watch_calls: list[tuple[str, list[str]]] = []
        self.stopped = False
        self._ids = itertools.count(1)

    def add(self, message: Message, history_id: int | None = None) -> Message:
        self.messages[message.id] = message
        if history_id is not None:
            self.history.append(MessageAdded(message_id=message.id, history_id=history_id))
        return message

    @property
    def mutations(self) -> int:
        return len(self.modify_calls) + len(self.sent) + len(self.created_labels)

    def get_profile(self) -> dict:
        return {"emailAddress": self.account, "historyId": str(self.history_id), "messagesTotal": len(self.messages)}

    def list_labels(self) -> dict[str, Label]:
        return dict(self.labels)

    def ensure_label(self, name: str) -> Label:
        existing = find_label(self.labels, name)
        if existing is not None:
            return existing
        label = Label(id=f"Label_{next(self._ids)}", name=name)
        self.labels[name] = label
        self.created_labels.append(name)
        return label

    def get_message(self, message_id: str) -> Message:
        self.get_calls.append(message_id)
        if message_id in self.fail_get or message_id not in self.messages:
            raise GatewayError(f"messages.get({message_id}) failed with HTTP 404", status=404)
        stored = self.messages[message_id]
        return Message(
            id=stored.id,
            thread_id=stored.thread_id,
            headers=list(stored.headers),
            body_text=stored.body_text,
            attachment_filenames=list(stored.attachment_filenames),
            label_ids=set(stored.label_ids),
        )

    def modify_labels(self, message_id: str, add=(), remove=()) -> None:  # noqa: ANN001
        add = list(add)
        if message_id in self.fail_modify:
            raise GatewayError(f"messages.modify({message_id}) failed with HTTP 500", status=500)
        self.modify_calls.append((message_id, add))
        self.messages[message_id].label_ids.update(add)
        self.messages[message_id].label_ids.difference_update(remove)

    def list_message_ids(self, label_ids=None, max_results=None) -> list[str]:  # noqa: ANN001
        ids = [m.id for m in self.messages.values() if not label_ids or set(label_ids) <= m.label_ids]
        return ids[:max_results] if max_results else ids

    def send_message(self, raw: bytes, thread_id: str = "") -> dict:
        self.sent.append((raw, thread_id))
        return {"id": f"sent-{len(self.sent)}", "threadId": thread_id}

    def list_history(self, start_history_id: int) -> list[MessageAdded]:
        self.history_calls.append(start_history_id)
        if self.history_errors:
            raise self.history_errors.pop(0)
        return [entry for entry in self.history if entry.history_id > start_history_id]

    def watch(self, topic_name: str, label_ids: list[str]) -> dict:
        self.watch_calls.append((topic_name, label_ids))
        return {"historyId": str(self.history_id), "expiration": "1767225600000"}

    def stop(self) -> None:
        self.stopped = True


class FakeClassifier:
    """Classifier with verdicts chosen by subject."""

    def __init__(self) -> None:
        self.urgent_subjects: set[str] = set()
        self.risk_by_subject: dict[str, RiskVerdict] = {}
        self.error: Exception | None = None
        self.errors_by_subject: dict[str, Exception] = {}
        self.delay = 0.0
        self.urgency_calls: list[str] = []
        self.risk_calls: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.urgency_calls) + len(self.risk_calls)

    def _maybe_fail(self, subject: str) -> None:
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if subject in self.errors_by_subject:
            raise self.errors_by_subject[subject]

    def classify_urgency(self, subject: str, body: str, sender: str) -> bool:
        self.urgency_calls.append(subject)
        self._maybe_fail(subject)
        return subject in self.urgent_subjects

    def classify_risk(self, subject: str, body: str, sender: str, attachments) -> RiskVerdict:  # noqa: ANN001
        self.risk_calls.append(subject)
        self._maybe_fail(subject)
        return self.risk_by_subject.get(subject, RiskVerdict(level=RiskLevel.NONE))


@pytest.fixture
def store(tmp_path) -> ObjectStore:
    with ObjectStore(tmp_path / "store.db") as s:
        yield s


@pytest.fixture
def watermarks(store: ObjectStore) -> WatermarkStore:
    return WatermarkStore(store)


@pytest.fixture
def ledger(store: ObjectStore) -> VerdictLedger:
    return VerdictLedger(store)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def pipeline(gateway: FakeGateway, classifier: FakeClassifier, ledger: VerdictLedger) -> ClassificationPipeline:
    return ClassificationPipeline(lambda account: gateway, classifier, ledger=ledger)


@pytest.fixture
def engine(gateway: FakeGateway, watermarks: WatermarkStore, pipeline: ClassificationPipeline) -> ReconciliationEngine:
    return ReconciliationEngine(lambda account: gateway, watermarks, pipeline, lookback=10, max_workers=1)

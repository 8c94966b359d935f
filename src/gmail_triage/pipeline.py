"""Per-message classification: urgency and risk labels plus the high-risk alert."""

from __future__ import annotations

import logging
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Callable

from .classifier import Classifier
from .constants import LABEL_HIGH_RISK, LABEL_MODERATE_RISK, LABEL_URGENT, RISK_LABELS
from .errors import ClassifierError, GatewayError
from .gateway import MailboxGateway, find_label
from .ledger import VerdictLedger
from .locks import KeyedLocks
from .models import Label, Message, MessageReport, RiskLevel, RiskVerdict

logger = logging.getLogger(__name__)

GatewayProvider = Callable[[str], MailboxGateway]


def is_self_mail(account: str, message: Message) -> bool:
    """True when both From and To mention the account's own address."""
    address = account.lower()
    return address in message.sender.lower() and address in message.recipients.lower()


def _single_line(value: str) -> str:
    return " ".join(value.split())


def compose_risk_alert(account: str, message: Message, verdict: RiskVerdict) -> EmailMessage:
    """Build the reply sent to the account owner for a high-risk message."""
    original_id = message.rfc822_message_id or message.id
    domain = account.partition("@")[2] or None

    alert = EmailMessage()
    alert["From"] = account
    alert["To"] = account
    # Gmail only threads replies whose subject matches the original
    alert["Subject"] = _single_line(message.subject)
    alert["Message-ID"] = make_msgid(domain=domain)
    alert["In-Reply-To"] = original_id
    alert["References"] = original_id
    alert.set_content(
        f"High risk email detected from: {message.sender}\n\n"
        f"Original Subject: {message.subject}\n\n"
        "Risk Analysis Report:\n"
        f"{verdict.explanation}\n\n"
        "It is recommended to not engage with this email.\n"
    )
    return alert


class ClassificationPipeline:
    """Classifies one message at a time and labels it idempotently.

    Existing labels act as the idempotency marker: a message that already
    carries ``URGENT`` is never sent to the urgency classifier again, and one
    carrying a risk label is never sent to the risk classifier again. With a
    :class:`VerdictLedger`, negative verdicts are remembered the same way.
    Classifier failures are never recorded. Work on the same message id is
    serialized.
    """

    def __init__(
        self,
        gateways: GatewayProvider,
        classifier: Classifier,
        ledger: VerdictLedger | None = None,
    ) -> None:
        self._gateways = gateways
        self._classifier = classifier
        self._ledger = ledger
        self._message_locks = KeyedLocks()

    def _recorded(self, account: str, message_id: str) -> dict:
        return self._ledger.get(account, message_id) if self._ledger else {}

    def _record(self, account: str, message_id: str, **verdicts) -> None:  # noqa: ANN003
        if self._ledger:
            self._ledger.record(account, message_id, **verdicts)

    def process_message(self, account: str, message_id: str) -> MessageReport:
        report = MessageReport(message_id=message_id)
        gateway = self._gateways(account)

        with self._message_locks.hold(message_id):
            logger.info("Processing message %s", message_id)
            try:
                message = gateway.get_message(message_id)
            except GatewayError as exc:
                logger.error("Could not fetch message %s: %s", message_id, exc)
                return report
            report.fetched = True

            if is_self_mail(account, message):
                logger.info("Skipping email from me to me: %s", message_id)
                report.skipped_reason = "self-mail"
                return report

            try:
                labels = gateway.list_labels()
            except GatewayError as exc:
                logger.error("Could not list labels while processing %s: %s", message_id, exc)
                return report

            recorded = self._recorded(account, message_id)
            self._check_urgency(account, gateway, message, labels, recorded, report)
            self._check_risk(account, gateway, message, labels, recorded, report)

        logger.info("Completed processing for message %s", message_id)
        return report

    def _check_urgency(
        self,
        account: str,
        gateway: MailboxGateway,
        message: Message,
        labels: dict[str, Label],
        recorded: dict,
        report: MessageReport,
    ) -> None:
        existing = find_label(labels, LABEL_URGENT)
        if existing is not None and existing.id in message.label_ids:
            logger.debug("Message %s already labelled %s", message.id, LABEL_URGENT)
            return
        if "urgent" in recorded:
            logger.debug("Urgency of %s already classified", message.id)
            return

        try:
            label = existing or gateway.ensure_label(LABEL_URGENT)
        except GatewayError as exc:
            logger.error("Could not ensure label %s: %s", LABEL_URGENT, exc)
            return

        try:
            urgent = self._classifier.classify_urgency(message.subject, message.body_text, message.sender)
        except (ClassifierError, TimeoutError) as exc:
            # Not recorded, so a later delivery asks the classifier again
            logger.error("Urgency check failed for %s, treating as not urgent: %s", message.id, exc)
            report.urgent = False
            return
        report.urgent = urgent
        if not urgent:
            self._record(account, message.id, urgent=False)
            return

        logger.info("Adding %s label to message with subject: %s", LABEL_URGENT, message.subject)
        try:
            gateway.modify_labels(message.id, add=[label.id])
        except GatewayError as exc:
            logger.error("Could not label message %s as %s: %s", message.id, LABEL_URGENT, exc)
            return
        report.labels_added.append(LABEL_URGENT)
        self._record(account, message.id, urgent=True)

    def _check_risk(
        self,
        account: str,
        gateway: MailboxGateway,
        message: Message,
        labels: dict[str, Label],
        recorded: dict,
        report: MessageReport,
    ) -> None:
        for name in RISK_LABELS:
            existing = find_label(labels, name)
            if existing is not None and existing.id in message.label_ids:
                logger.debug("Message %s already labelled %s", message.id, name)
                return
        if "risk" in recorded:
            logger.debug("Risk of %s already classified", message.id)
            return

        try:
            high = find_label(labels, LABEL_HIGH_RISK) or gateway.ensure_label(LABEL_HIGH_RISK)
            moderate = find_label(labels, LABEL_MODERATE_RISK) or gateway.ensure_label(LABEL_MODERATE_RISK)
        except GatewayError as exc:
            logger.error("Could not ensure risk labels: %s", exc)
            return

        try:
            verdict = self._classifier.classify_risk(
                message.subject, message.body_text, message.sender, message.attachment_filenames
            )
        except (ClassifierError, TimeoutError) as exc:
            logger.error("Risk check failed for %s, treating as no risk: %s", message.id, exc)
            report.risk = RiskLevel.NONE
            return
        report.risk = verdict.level
        if verdict.level is RiskLevel.NONE:
            self._record(account, message.id, risk=verdict.level.value)
            return

        label = high if verdict.level is RiskLevel.HIGH else moderate
        logger.info("Adding %s label to message with subject: %s", label.name, message.subject)
        try:
            gateway.modify_labels(message.id, add=[label.id])
        except GatewayError as exc:
            logger.error("Could not label message %s as %s: %s", message.id, label.name, exc)
            return
        report.labels_added.append(label.name)
        self._record(account, message.id, risk=verdict.level.value)

        if verdict.level is RiskLevel.HIGH:
            alert = compose_risk_alert(account, message, verdict)
            try:
                gateway.send_message(alert.as_bytes(), thread_id=message.thread_id)
            except GatewayError as exc:
                logger.error("Could not send risk alert for %s: %s", message.id, exc)
                return
            report.reply_sent = True
            logger.info("Sent risk analysis reply for message %s", message.id)

    def sweep(
        self,
        account: str,
        label_ids: list[str] | None = None,
        max_results: int | None = None,
        callback: Callable[[MessageReport], None] | None = None,
    ) -> list[MessageReport]:
        """Run the pipeline over existing messages, e.g. everything in INBOX."""
        gateway = self._gateways(account)
        try:
            message_ids = gateway.list_message_ids(label_ids=label_ids, max_results=max_results)
        except GatewayError as exc:
            logger.error("Could not list messages for sweep: %s", exc)
            return []

        reports: list[MessageReport] = []
        for message_id in message_ids:
            report = self.process_message(account, message_id)
            reports.append(report)
            if callback:
                callback(report)
        return reports

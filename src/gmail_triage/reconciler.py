"""Incremental-change reconciliation driven by push notifications."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

from .constants import DEFAULT_LOOKBACK, DEFAULT_MAX_WORKERS
from .errors import AuthError, GatewayError, HistoryExpired
from .locks import KeyedLocks
from .models import MessageAdded, MessageReport, NotificationEvent
from .pipeline import ClassificationPipeline, GatewayProvider
from .watermarks import WatermarkStore

logger = logging.getLogger(__name__)


def unique_message_ids(entries: list[MessageAdded]) -> list[str]:
    """Message ids in delta order, each once."""
    seen: set[str] = set()
    ordered: list[str] = []
    for entry in entries:
        if entry.message_id not in seen:
            seen.add(entry.message_id)
            ordered.append(entry.message_id)
    return ordered


def lookback_start(history_id: int, lookback: int) -> int:
    return max(history_id - lookback, 1)


class ReconciliationEngine:
    """Turns notifications into pipeline runs and advances the watermark.

    Work for one account is serialized for the whole of :meth:`reconcile`;
    different accounts run in parallel. The watermark only moves after the
    delta was fetched successfully, so a failed fetch is retried by the next
    notification over the same range.
    """

    def __init__(
        self,
        gateways: GatewayProvider,
        watermarks: WatermarkStore,
        pipeline: ClassificationPipeline,
        lookback: int = DEFAULT_LOOKBACK,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        if lookback < 0:
            raise ValueError("lookback must be >= 0")
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._gateways = gateways
        self._watermarks = watermarks
        self._pipeline = pipeline
        self.lookback = lookback
        self.max_workers = max_workers
        self._account_locks = KeyedLocks()

    def reconcile(self, account: str, event: NotificationEvent) -> int:
        """Process one notification. Returns the number of messages processed."""
        kind = event.kind
        if kind == "inert":
            logger.info("Ignoring inert notification %s", event.pubsub_message_id or "<unknown>")
            return 0

        with self._account_locks.hold(account.lower()):
            if kind == "direct":
                logger.info("Processing email with ID: %s", event.message_id)
                report = self._process_one(account, event.message_id)
                return 1 if report.fetched else 0
            return self._reconcile_delta(account, event.history_id)

    def _reconcile_delta(self, account: str, history_id: int) -> int:
        stored = self._watermarks.get(account)
        if stored is not None:
            start = stored.history_id
            logger.info("Processing history changes from stored ID %s to new ID %s", start, history_id)
        else:
            start = lookback_start(history_id, self.lookback)
            logger.info("No stored historyId for %s, replaying from %s to %s", account, start, history_id)

        entries = self._fetch_delta(account, start, history_id)
        if entries is None:
            return 0

        message_ids = unique_message_ids(entries)
        logger.info("Found %d messages added since %s", len(message_ids), start)
        reports = self._process_all(account, message_ids)

        self._watermarks.advance(account, history_id)
        return sum(1 for report in reports if report.fetched)

    def _fetch_delta(self, account: str, start: int, history_id: int) -> list[MessageAdded] | None:
        gateway = self._gateways(account)
        try:
            return gateway.list_history(start)
        except HistoryExpired as exc:
            fallback = lookback_start(history_id, self.lookback)
            if fallback == start:
                logger.error("History for %s unavailable from %s: %s", account, start, exc)
                return None
            logger.warning("History from %s expired for %s, replaying from %s instead", start, account, fallback)
            try:
                return gateway.list_history(fallback)
            except GatewayError as retry_exc:
                logger.error("Error processing history changes for %s: %s", account, retry_exc)
                return None
        except GatewayError as exc:
            logger.error("Error processing history changes for %s: %s", account, exc)
            return None

    def _process_one(self, account: str, message_id: str) -> MessageReport:
        """Run the pipeline on one message; only credential failures escape."""
        try:
            return self._pipeline.process_message(account, message_id)
        except AuthError:
            raise
        except Exception:
            logger.exception("Unexpected error processing message %s", message_id)
            return MessageReport(message_id=message_id)

    def _process_all(self, account: str, message_ids: list[str]) -> list[MessageReport]:
        if self.max_workers == 1 or len(message_ids) <= 1:
            return [self._process_one(account, message_id) for message_id in message_ids]

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="triage") as pool:
            futures = [pool.submit(self._process_one, account, message_id) for message_id in message_ids]
            return [future.result() for future in futures]

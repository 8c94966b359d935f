"""Webhook entry point: acknowledge quickly, reconcile in the background."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor

from .errors import DecodeError
from .notifications import decode_notification
from .reconciler import ReconciliationEngine

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Decodes push bodies and hands them to the reconciliation engine.

    :meth:`handle` never raises for a bad payload: undecodable and inert
    notifications are logged and acknowledged so Pub/Sub stops redelivering
    them. Reconciliation runs on a worker pool; the engine serializes per
    account.
    """

    def __init__(self, engine: ReconciliationEngine, default_account: str, max_workers: int = 2) -> None:
        self._engine = engine
        self._default_account = default_account
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch")

    def handle(self, raw: bytes | str) -> Future | None:
        """Schedule reconciliation for one push body; None when nothing was scheduled."""
        try:
            event = decode_notification(raw)
        except DecodeError as exc:
            logger.error("Dropping undecodable notification: %s", exc)
            return None
        if event.kind == "inert":
            return None

        account = event.account or self._default_account
        logger.info("Scheduling %s notification for %s", event.kind, account)
        future = self._pool.submit(self._engine.reconcile, account, event)
        future.add_done_callback(self._log_failure)
        return future

    @staticmethod
    def _log_failure(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Reconciliation failed: %s", exc, exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

"""Durable per-account history watermark."""

from __future__ import annotations

import logging

from .constants import HISTORY_KEY_PREFIX
from .models import Watermark, utcnow
from .store import ObjectStore

logger = logging.getLogger(__name__)


class WatermarkStore:
    """Maps an account address to the last processed Gmail historyId.

    The stored history id never decreases: :meth:`advance` compares and
    writes inside one store transaction and skips stale values.
    """

    def __init__(self, store: ObjectStore) -> None:
        self._store = store

    @staticmethod
    def _key(account: str) -> str:
        return f"{HISTORY_KEY_PREFIX}{account.lower()}"

    def get(self, account: str) -> Watermark | None:
        record = self._store.get(self._key(account))
        if record is None:
            logger.info("No stored historyId for %s", account)
            return None
        return Watermark.from_record(record)

    def advance(self, account: str, history_id: int) -> bool:
        """Store history_id unless it is below the stored value.

        Returns True when the record was written.
        """
        with self._store.transaction():
            current = self.get(account)
            if current is not None and history_id < current.history_id:
                logger.info(
                    "Skipping out-of-order historyId %s for %s (stored %s)",
                    history_id,
                    account,
                    current.history_id,
                )
                return False
            mark = Watermark(account=account, history_id=history_id, last_updated=utcnow().isoformat())
            self._store.put(self._key(account), mark.to_record())
        logger.info("Stored historyId %s for %s", history_id, account)
        return True

    def reset(self, account: str) -> bool:
        """Forget the watermark so the next delta is treated as first contact."""
        return self._store.delete(self._key(account))

"""Durable record of classifier verdicts per message.

Labels mark positive verdicts; the ledger also remembers negative ones, so a
replayed notification does not send an already classified message back to
the classifier.
"""

from __future__ import annotations

from .constants import VERDICT_KEY_PREFIX
from .models import utcnow
from .store import ObjectStore


class VerdictLedger:
    def __init__(self, store: ObjectStore) -> None:
        self._store = store

    @staticmethod
    def _key(account: str, message_id: str) -> str:
        return f"{VERDICT_KEY_PREFIX}{account.lower()}/{message_id}"

    def get(self, account: str, message_id: str) -> dict:
        return self._store.get(self._key(account, message_id)) or {}

    def record(self, account: str, message_id: str, **verdicts) -> None:  # noqa: ANN003
        key = self._key(account, message_id)
        with self._store.transaction():
            record = self._store.get(key) or {}
            record.update(verdicts)
            record["updatedAt"] = utcnow().isoformat()
            self._store.put(key, record)

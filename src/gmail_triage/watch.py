"""Gmail push subscription (users.watch) lifecycle."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from .constants import WATCH_LABEL_IDS
from .errors import ConfigError
from .gateway import MailboxGateway
from .watermarks import WatermarkStore

logger = logging.getLogger(__name__)


def expiration_to_datetime(expiration) -> datetime | None:  # noqa: ANN001
    """Convert a watch expiration (epoch milliseconds) to an aware datetime."""
    if expiration in (None, ""):
        return None
    return datetime.fromtimestamp(int(expiration) / 1000, tz=timezone.utc)


class WatchManager:
    """Starts, renews and stops the mailbox watch, seeding the watermark."""

    def __init__(self, gateway: MailboxGateway, watermarks: WatermarkStore) -> None:
        self._gateway = gateway
        self._watermarks = watermarks

    def initialize_watermark(self) -> int | None:
        """Advance the stored watermark to the mailbox's current historyId."""
        profile = self._gateway.get_profile()
        history_id = profile.get("historyId")
        if not history_id:
            logger.warning("Profile for %s carries no historyId", self._gateway.account)
            return None
        self._watermarks.advance(self._gateway.account, int(history_id))
        logger.info("Initialized historyId %s for %s", history_id, self._gateway.account)
        return int(history_id)

    def start(self, topic_name: str) -> dict:
        """Begin push delivery to topic_name. Returns the watch response."""
        self.initialize_watermark()
        return self.renew(topic_name)

    def renew(self, topic_name: str) -> dict:
        """Re-issue the watch; Gmail expires watches after seven days."""
        if not topic_name:
            raise ConfigError("GMAIL_PUBSUB_TOPIC is not set")
        response = self._gateway.watch(topic_name, WATCH_LABEL_IDS)
        logger.info("Watch request successful. Expiration: %s", expiration_to_datetime(response.get("expiration")))
        if response.get("historyId"):
            self._watermarks.advance(self._gateway.account, int(response["historyId"]))
        return response

    def stop(self) -> None:
        self._gateway.stop()
        logger.info("Stopped watching %s", self._gateway.account)

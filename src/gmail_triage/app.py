"""Wiring of stores, gateway, classifier and engine from :class:`Settings`."""

from __future__ import annotations

import threading
from functools import cached_property

from .classifier import Classifier, OpenAIClassifier
from .config import Settings
from .credentials import CredentialManager, GoogleTokenClient, TokenClient, TokenStore
from .dispatcher import NotificationDispatcher
from .gateway import MailboxGateway
from .ledger import VerdictLedger
from .pipeline import ClassificationPipeline
from .reconciler import ReconciliationEngine
from .store import ObjectStore
from .watch import WatchManager
from .watermarks import WatermarkStore


class TriageApp:
    """Owns every long-lived component for one process."""

    def __init__(
        self,
        settings: Settings,
        store: ObjectStore,
        token_client: TokenClient,
        classifier: Classifier | None = None,
        service_factory=None,  # noqa: ANN001
    ) -> None:
        self.settings = settings
        self.store = store
        self.watermarks = WatermarkStore(store)
        self.ledger = VerdictLedger(store)
        self.credentials = CredentialManager(TokenStore(store), token_client)
        self._classifier = classifier
        self._service_factory = service_factory
        self._gateways: dict[str, MailboxGateway] = {}
        self._gateways_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> TriageApp:
        token_client = GoogleTokenClient(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=settings.redirect_uri,
            timeout=settings.timeout_seconds,
        )
        return cls(settings, ObjectStore(settings.store_path), token_client)

    @property
    def account(self) -> str:
        return self.settings.user_email

    def gateway(self, account: str | None = None) -> MailboxGateway:
        account = account or self.account
        with self._gateways_lock:
            gateway = self._gateways.get(account.lower())
            if gateway is None:
                gateway = MailboxGateway(
                    account,
                    self.credentials,
                    timeout=self.settings.timeout_seconds,
                    service_factory=self._service_factory,
                )
                self._gateways[account.lower()] = gateway
            return gateway

    @property
    def classifier(self) -> Classifier:
        # Built on first use so auth and watch commands work without classifier settings.
        if self._classifier is None:
            self._classifier = OpenAIClassifier.from_settings(self.settings)
        return self._classifier

    @cached_property
    def pipeline(self) -> ClassificationPipeline:
        return ClassificationPipeline(self.gateway, self.classifier, ledger=self.ledger)

    @cached_property
    def engine(self) -> ReconciliationEngine:
        return ReconciliationEngine(
            self.gateway,
            self.watermarks,
            self.pipeline,
            lookback=self.settings.lookback,
            max_workers=self.settings.max_workers,
        )

    def dispatcher(self) -> NotificationDispatcher:
        return NotificationDispatcher(self.engine, default_account=self.account)

    def watch_manager(self) -> WatchManager:
        return WatchManager(self.gateway(), self.watermarks)

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> TriageApp:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.close()

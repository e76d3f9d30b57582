"""
Application Context for ledgerlink

Ties the components together:

    remote client -> SyncCacheManager -> ReactiveLedgerStore -> subscribers
                          ^                                        |
                          |---- ReconciliationEngine <-------------|

DESIGN DECISION: There are no module-level singletons. The caches, the
store and the engine are owned by one LedgerContext created at startup
and passed to whoever needs them. Tests build a context around fakes.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from ledgerlink.audit import AuditLogger, configure_logging
from ledgerlink.config import Settings, get_settings, validate_all_settings
from ledgerlink.models.ledger import HouseholdConfig
from ledgerlink.reconciliation import ReconciliationEngine
from ledgerlink.services.remote import HttpLedgerClient, LedgerClientInterface
from ledgerlink.services.storage import (
    AuditStorageInterface,
    CacheBackend,
    JsonFileBackend,
    MemoryAuditStorage,
    PersistentCacheStore,
)
from ledgerlink.services.ui import (
    ConfirmationInterface,
    DenyConfirmation,
    LoggingNotifier,
    NotifierInterface,
)
from ledgerlink.store import ReactiveLedgerStore
from ledgerlink.sync import SyncCacheManager


logger = structlog.get_logger(__name__)


@dataclass
class LedgerContext:
    """Everything one running application owns."""

    settings: Settings
    cache_store: PersistentCacheStore
    client: LedgerClientInterface
    store: ReactiveLedgerStore
    sync: SyncCacheManager
    engine: ReconciliationEngine
    audit: AuditLogger
    notifier: NotifierInterface
    confirmer: ConfirmationInterface

    async def load_household(self, force_refresh: bool = False) -> None:
        """
        Load every configured ledger into the store.

        Personal ledgers first, then the shared ledger.
        """
        config = self.store.config
        if not config.is_configured:
            logger.info("household_not_configured")
            return
        ledger_ids = [p.personal_ledger_id for p in config.participants]
        ledger_ids.append(config.shared_ledger_id)
        if force_refresh:
            for ledger_id in ledger_ids:
                self.sync.invalidate_ledger(ledger_id)
        await self.sync.preload(dict.fromkeys(ledger_ids))

    def configure_household(self, config: HouseholdConfig) -> None:
        """Persist and activate a new household configuration."""
        self.store.set_config(config)

    def set_token(self, token: str) -> None:
        """Store the API credential and hand it to the HTTP client."""
        self.cache_store.set_credential(token)
        if isinstance(self.client, HttpLedgerClient):
            self.client.set_token(token)

    async def close(self) -> None:
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()


def create_app_components(
    settings: Optional[Settings] = None,
    backend: Optional[CacheBackend] = None,
    client: Optional[LedgerClientInterface] = None,
    notifier: Optional[NotifierInterface] = None,
    confirmer: Optional[ConfirmationInterface] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
) -> LedgerContext:
    """
    Factory function to create all application components.

    Args:
        settings: Settings (defaults to get_settings())
        backend: Persistent cache backend (defaults to a JSON file
                 backend in the configured cache directory)
        client: Remote ledger client (defaults to HttpLedgerClient with
                the configured or stored token)
        notifier: Notification collaborator (defaults to logging)
        confirmer: Confirmation collaborator (defaults to always-deny)
        audit_storage: Audit persistence (defaults to in-memory)

    Returns:
        A LedgerContext whose store is hydrated from the persistent cache

    Raises:
        ValueError: A settings section failed to load
    """
    settings = settings or get_settings()
    checks = validate_all_settings(settings)
    failed = {name: checks[f"{name}_error"] for name, ok in checks.items() if ok is False}
    if failed:
        raise ValueError(f"Invalid settings: {failed}")
    configure_logging(settings.app.log_level)

    cache_settings = settings.cache
    if backend is None:
        backend = JsonFileBackend(cache_settings.directory_path, cache_settings.quota_bytes)
    cache_store = PersistentCacheStore(backend, cache_settings)

    if client is None:
        api_settings = settings.ledger_api
        token = api_settings.token or cache_store.get_credential()
        client = HttpLedgerClient(token=token, settings=api_settings)

    notifier = notifier or LoggingNotifier()
    confirmer = confirmer or DenyConfirmation()
    audit = AuditLogger(audit_storage or MemoryAuditStorage())

    store = ReactiveLedgerStore(cache_store=cache_store)
    store.hydrate_from(cache_store)

    sync = SyncCacheManager(
        client=client,
        cache_store=cache_store,
        store=store,
        notifier=notifier,
        settings=cache_settings,
        audit=audit,
    )
    engine = ReconciliationEngine(
        sync=sync,
        cache_store=cache_store,
        notifier=notifier,
        confirmer=confirmer,
        audit=audit,
        settings=settings.reconciliation,
    )

    logger.info(
        "app_components_created",
        environment=settings.app.app_environment,
        configured=store.config.is_configured,
    )
    return LedgerContext(
        settings=settings,
        cache_store=cache_store,
        client=client,
        store=store,
        sync=sync,
        engine=engine,
        audit=audit,
        notifier=notifier,
        confirmer=confirmer,
    )

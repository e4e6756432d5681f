"""
System Wiring Module

Builds the ledger components from configuration and passes them to each
other explicitly. Nothing here is a process-wide singleton; tests and
applications create as many independent systems as they need.
"""

from typing import List, Optional

from .accounts import AccountStore
from .config import LedgerConfig, get_config
from .currency import Currency
from .engine import LedgerEngine
from .identity import IdentityProvider, StaticIdentityProvider
from .locking import AccountLockManager
from .logging_config import get_logger, setup_logging
from .notifications import (
    LogChannel, NotificationChannel, NotificationDispatcher,
    ThreadPoolNotificationDispatcher, WebhookChannel
)
from .service import BankService
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .transaction_log import TransactionLog


class LedgerSystem:
    """Ledger components initialized from one configuration"""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        identity_provider: Optional[IdentityProvider] = None
    ):
        self.config = config or get_config()
        self.logger = get_logger("ledger.system")

        self.storage = storage or self._create_storage()
        try:
            self.currency = Currency[self.config.currency.upper()]
        except KeyError:
            raise ValueError(f"Unsupported currency: {self.config.currency}")

        self.accounts = AccountStore(
            self.storage,
            currency=self.currency,
            account_number_attempts=self.config.account_number_attempts
        )
        self.transaction_log = TransactionLog(self.storage)
        self.locks = AccountLockManager(timeout=self.config.lock_timeout_seconds)
        self.dispatcher = dispatcher or ThreadPoolNotificationDispatcher(
            channels=self._create_channels(),
            max_workers=self.config.notification_workers
        )
        self.engine = LedgerEngine(self.accounts, self.transaction_log, self.locks, self.dispatcher)
        self.identity_provider = identity_provider or StaticIdentityProvider()
        self.service = BankService(self.engine, self.identity_provider)

        self.logger.info(
            f"Ledger system ready (storage={type(self.storage).__name__}, "
            f"currency={self.currency.code})"
        )

    def _create_storage(self) -> StorageInterface:
        """Create storage based on configuration"""
        backend = self.config.storage_backend.lower()
        if backend == "memory":
            return InMemoryStorage()
        if backend == "sqlite":
            return SQLiteStorage(self.config.sqlite_path, timeout=self.config.sqlite_timeout_seconds)
        raise ValueError(f"Unknown storage backend: {self.config.storage_backend}")

    def _create_channels(self) -> List[NotificationChannel]:
        """Log channel always; webhook only when a URL is configured"""
        channels: List[NotificationChannel] = [LogChannel()]
        if self.config.notification_webhook_url:
            channels.append(WebhookChannel(
                self.config.notification_webhook_url,
                timeout=self.config.notification_webhook_timeout
            ))
        return channels

    def close(self) -> None:
        """Drain notifications and release storage"""
        self.dispatcher.shutdown(wait=True)
        self.storage.close()

    def __enter__(self) -> 'LedgerSystem':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def create_system(config: Optional[LedgerConfig] = None, **overrides) -> LedgerSystem:
    """
    Configure logging and build a ledger system

    Args:
        config: Settings to use (environment settings if omitted)
        overrides: Components passed through to LedgerSystem
    """
    config = config or get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)
    return LedgerSystem(config, **overrides)

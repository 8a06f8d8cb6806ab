"""Wiring of the stores, clients and services for one process."""

from __future__ import annotations

from dataclasses import dataclass

from gmail_mirror.cache import CacheService
from gmail_mirror.config import Settings, get_settings
from gmail_mirror.gmail import GmailClientFactory
from gmail_mirror.mailbox import MailboxService
from gmail_mirror.storage import BlobStore
from gmail_mirror.store import MailStoreRepository
from gmail_mirror.sync import ReconciliationEngine, SyncService


@dataclass
class Services:
    settings: Settings
    repository: MailStoreRepository
    blobs: BlobStore
    cache: CacheService
    clients: GmailClientFactory
    engine: ReconciliationEngine
    sync: SyncService
    mailbox: MailboxService


def build_services(settings: Settings | None = None) -> Services:
    """Build every service from settings.

    Refreshed access tokens are written back to the user row so the next
    client starts from the newest token.
    """

    settings = settings or get_settings()
    repository = MailStoreRepository.from_url(settings.database_url)
    blobs = BlobStore(settings)
    cache = CacheService(settings)
    clients = GmailClientFactory(settings, on_token_refresh=repository.update_credentials)
    engine = ReconciliationEngine(repository, blobs, clients, settings)
    return Services(
        settings=settings,
        repository=repository,
        blobs=blobs,
        cache=cache,
        clients=clients,
        engine=engine,
        sync=SyncService(engine, repository, settings),
        mailbox=MailboxService(repository, blobs, clients, engine, cache, settings),
    )

#!/usr/bin/env python3
"""
PlexShelf Library Synchronization

This module brings the local document collections in line with the Plex
server. A sync run for one entity type (movies or shows) fetches the full
catalog, then reconciles it against storage: every fetched record is
upserted by external id and every stored record no longer present upstream
is deleted.

**Single flight per entity type:**
    Only one sync per entity type may run at a time. A second request while
    one is running is rejected with SyncInProgressError instead of being
    queued, so a slow run can never prune records written by a newer one.
    Movies and shows have separate locks and may sync concurrently.

**Partial fetches:**
    Items that the section listing reports but whose details could not be
    fetched are kept in storage untouched. Only ids missing from the listing
    itself are pruned. A fetch that fails as a whole is never reconciled.

Classes:
    SyncInProgressError: A sync for the entity type is already running
    SyncTimeoutError: The sync exceeded its overall time limit
    ReconcileResult: Counts produced by reconcile()
    SyncResult: Outcome of one sync run
    LibrarySyncService: Orchestrates fetch, reconcile and history recording

Functions:
    reconcile: Mirror a record set into a document collection
    summarize_movies: Statistics for stored movies
    summarize_shows: Statistics for stored shows

Project: PlexShelf
Version: 1.0.0
License: MIT
"""

import asyncio
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Iterable, Callable, Awaitable

import aiosqlite

from .config_models import SyncConfig
from .database_manager import DatabaseManager, DocumentCollection, MOVIES_COLLECTION, SHOWS_COLLECTION
from .media_models import LibraryFetch
from .plex_api import PlexAPI, PlexError
from .utils import get_logger, format_bytes


logger = get_logger("plexshelf.sync")

ENTITY_MOVIES = "movies"
ENTITY_SHOWS = "shows"


class SyncInProgressError(Exception):
    """Raised when a sync for the same entity type is already running."""

    def __init__(self, entity_type: str):
        super().__init__(f"A {entity_type} sync is already in progress")
        self.entity_type = entity_type


class SyncTimeoutError(Exception):
    """Raised when a sync run exceeds the configured overall timeout."""


@dataclass
class ReconcileResult:
    """Counts of what reconcile() did to the collection."""
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    pruned: int = 0

    @property
    def upserted(self) -> int:
        return self.inserted + self.updated + self.unchanged


@dataclass
class SyncResult:
    """
    Outcome of one sync run, returned to the API caller.

    ``status`` is "success" when every listed item was fetched and stored,
    "partial" when some items were skipped (``items_skipped`` > 0) and
    "error" when nothing was reconciled.
    """
    entity_type: str
    status: str
    message: str
    items_fetched: int = 0
    items_skipped: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    pruned: int = 0
    processing_time: float = 0.0
    error_type: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in ("success", "partial")

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result['success'] = self.success
        return result


async def reconcile(records: Iterable[Any], collection: DocumentCollection,
                    keep_ids: Iterable[str] = ()) -> ReconcileResult:
    """
    Make a collection mirror the given records.

    The set of current external ids is computed once from ``records`` before
    any write. Each record is upserted as a full replacement of the stored
    document; stored documents whose id is not current (and not in
    ``keep_ids``) are deleted. Both steps run in one transaction.

    Running reconcile twice with the same records changes nothing the second
    time: every document compares equal and nothing is pruned.

    Args:
        records: Records exposing ``external_id`` and ``to_document()``
        collection: Target document collection
        keep_ids: Ids to protect from pruning although no record is supplied

    Returns:
        ReconcileResult: Inserted, updated, unchanged and pruned counts

    Raises:
        ValueError: If a record has no external id
        aiosqlite.Error: If the transaction fails (nothing is applied)
    """
    documents: Dict[str, Dict[str, Any]] = {}
    for record in records:
        if not record.external_id:
            raise ValueError(f"Cannot reconcile a record without an external id: {record!r}")
        if record.external_id in documents:
            logger.warning(f"Duplicate external id {record.external_id} in '{collection.name}' fetch; keeping the last one")
        documents[record.external_id] = record.to_document()

    counts = await collection.apply_snapshot(list(documents.values()), keep_ids=keep_ids)
    return ReconcileResult(**counts)


async def summarize_movies(collection: DocumentCollection) -> Dict[str, Any]:
    """Count stored movies and total their file sizes."""
    documents = await collection.find_all()
    total_size = sum(document.get('file_size_bytes') or 0 for document in documents)
    return {
        'total_count': len(documents),
        'total_size_bytes': total_size,
        'total_size': format_bytes(total_size, empty_label="0 GB"),
    }


async def summarize_shows(collection: DocumentCollection) -> Dict[str, Any]:
    """Count stored shows and episodes and total their file sizes."""
    documents = await collection.find_all()
    total_size = sum(document.get('total_file_size_bytes') or 0 for document in documents)
    return {
        'total_shows': len(documents),
        'total_episodes': sum(document.get('episode_count') or 0 for document in documents),
        'total_size_bytes': total_size,
        'total_size': format_bytes(total_size, empty_label="0 GB"),
    }


class LibrarySyncService:
    """
    Runs library syncs for movies and shows.

    The service owns one asyncio.Lock per entity type. The lock is checked
    and taken without an await in between, so the check cannot race inside
    the event loop.

    Attributes:
        plex (PlexAPI): Client used to fetch the catalog
        db_manager (DatabaseManager): Storage for documents and history
        config (SyncConfig): Overall timeout and history settings

    Example:
        ```python
        service = LibrarySyncService(plex, db_manager, config.sync)
        result = await service.sync_movies()
        if result.status == "partial":
            logger.warning(f"{result.items_skipped} movies were skipped")
        ```
    """

    def __init__(self, plex: PlexAPI, db_manager: DatabaseManager, config: SyncConfig):
        self.plex = plex
        self.db_manager = db_manager
        self.config = config
        self.logger = logger
        self._locks: Dict[str, asyncio.Lock] = {
            ENTITY_MOVIES: asyncio.Lock(),
            ENTITY_SHOWS: asyncio.Lock(),
        }
        self._fetchers: Dict[str, Callable[[], Awaitable[LibraryFetch]]] = {
            ENTITY_MOVIES: self.plex.fetch_movie_batch,
            ENTITY_SHOWS: self.plex.fetch_show_batch,
        }
        self._collections: Dict[str, str] = {
            ENTITY_MOVIES: MOVIES_COLLECTION,
            ENTITY_SHOWS: SHOWS_COLLECTION,
        }

    def is_running(self, entity_type: str) -> bool:
        return self._locks[entity_type].locked()

    async def sync_movies(self) -> SyncResult:
        return await self.sync(ENTITY_MOVIES)

    async def sync_shows(self) -> SyncResult:
        return await self.sync(ENTITY_SHOWS)

    async def sync(self, entity_type: str) -> SyncResult:
        """
        Fetch one entity type from Plex and reconcile it into storage.

        Args:
            entity_type (str): "movies" or "shows"

        Returns:
            SyncResult: The outcome; failures that prevented reconciliation
                are reported with status "error" and the error type

        Raises:
            SyncInProgressError: If a sync for this entity type is running
            KeyError: If entity_type is unknown
        """
        lock = self._locks[entity_type]
        if lock.locked():
            self.logger.warning(f"{entity_type.capitalize()} sync already in progress - rejecting request")
            raise SyncInProgressError(entity_type)

        async with lock:
            started_at = datetime.now(timezone.utc)
            sync_start_time = time.time()
            self.logger.info(f"Starting {entity_type} sync...")

            try:
                fetch, reconciled = await asyncio.wait_for(
                    self._fetch_and_reconcile(entity_type),
                    timeout=self.config.timeout_seconds
                )
                result = self._build_result(entity_type, fetch, reconciled, time.time() - sync_start_time)
            except asyncio.TimeoutError:
                error = SyncTimeoutError(
                    f"{entity_type.capitalize()} sync exceeded {self.config.timeout_seconds}s"
                )
                result = self._error_result(entity_type, error, time.time() - sync_start_time)
            except (PlexError, aiosqlite.Error) as e:
                result = self._error_result(entity_type, e, time.time() - sync_start_time)

            self._log_summary(result)
            await self._record_history(result, started_at)
            return result

    async def _fetch_and_reconcile(self, entity_type: str):
        fetch = await self._fetchers[entity_type]()
        collection = self.db_manager.collection(self._collections[entity_type])
        reconciled = await reconcile(fetch.records, collection, keep_ids=fetch.failed_ids)
        return fetch, reconciled

    def _build_result(self, entity_type: str, fetch: LibraryFetch, reconciled: ReconcileResult,
                      elapsed: float) -> SyncResult:
        if fetch.complete:
            status = "success"
            message = f"Synced {len(fetch.records)} {entity_type}"
        else:
            status = "partial"
            message = (
                f"Synced {len(fetch.records)} {entity_type}; {fetch.skipped_count} skipped "
                f"after fetch errors and kept unchanged"
            )

        return SyncResult(
            entity_type=entity_type,
            status=status,
            message=message,
            items_fetched=len(fetch.records),
            items_skipped=fetch.skipped_count,
            inserted=reconciled.inserted,
            updated=reconciled.updated,
            unchanged=reconciled.unchanged,
            pruned=reconciled.pruned,
            processing_time=round(elapsed, 2),
        )

    def _error_result(self, entity_type: str, error: Exception, elapsed: float) -> SyncResult:
        self.logger.error(f"{entity_type.capitalize()} sync failed, nothing was reconciled: {error}")
        return SyncResult(
            entity_type=entity_type,
            status="error",
            message=str(error),
            processing_time=round(elapsed, 2),
            error_type=type(error).__name__,
        )

    def _log_summary(self, result: SyncResult) -> None:
        self.logger.info("=" * 60)
        self.logger.info(f"{result.entity_type.capitalize()} sync {result.status.upper()}")
        self.logger.info(f"  Fetched: {result.items_fetched}")
        if result.items_skipped:
            self.logger.warning(f"  Skipped: {result.items_skipped}")
        self.logger.info(
            f"  Inserted: {result.inserted}, Updated: {result.updated}, "
            f"Unchanged: {result.unchanged}, Pruned: {result.pruned}"
        )
        self.logger.info(f"  Time: {result.processing_time}s")
        self.logger.info("=" * 60)

    async def _record_history(self, result: SyncResult, started_at: datetime) -> None:
        entry = asdict(result)
        entry['started_at'] = started_at.isoformat()
        entry['finished_at'] = datetime.now(timezone.utc).isoformat()
        try:
            await self.db_manager.record_sync(entry)
        except aiosqlite.Error as e:
            self.logger.warning(f"Failed to record sync history: {e}")

    async def get_status(self) -> Dict[str, Any]:
        """Running flag and latest recorded run for each entity type."""
        status = {}
        for entity_type in self._locks:
            history = await self.db_manager.get_sync_history(limit=1, entity_type=entity_type)
            status[entity_type] = {
                'in_progress': self.is_running(entity_type),
                'last_sync': history[0] if history else None,
            }
        return status

    async def get_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self.db_manager.get_sync_history(limit=limit or self.config.history_limit)

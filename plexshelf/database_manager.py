#!/usr/bin/env python3
"""
PlexShelf Database Manager

This module handles all SQLite operations: the document collections holding
synchronized movies and shows, the user table used by the auth service and
the sync history log, plus the per-user record collections (diary entries,
therapy notes and transactions). It provides an async interface on top of
aiosqlite.

**Document collections:**
    Each entity type lives in its own logical collection inside the
    ``documents`` table. A row stores the external id (the Plex ratingKey,
    unique per collection), the title used for sorting and the record
    serialized as canonical JSON. Reconciliation compares these JSON strings
    to decide what changed, so writing the same data twice leaves every row
    byte-identical.

Classes:
    DocumentCollection: Handle for one collection (find/upsert/prune)
    UserRecordCollection: Handle for one user-owned record collection (CRUD)
    DatabaseManager: SQLite connection lifecycle, schema, users and sync history

Project: PlexShelf
Version: 1.0.0
License: MIT
"""

import asyncio
import json
import os
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Iterable, Set

import aiosqlite

from .config_models import DatabaseConfig
from .utils import get_logger


MOVIES_COLLECTION = "movies"
SHOWS_COLLECTION = "shows"

# Keeps IN (...) lists well below SQLite's host parameter limit
DELETE_CHUNK_SIZE = 500


def serialize_document(document: Dict[str, Any]) -> str:
    """Serialize a document to canonical JSON (sorted keys, no whitespace)."""
    return json.dumps(document, sort_keys=True, separators=(',', ':'), ensure_ascii=False)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DocumentCollection:
    """
    Handle for one document collection.

    Instances are created once per collection by DatabaseManager.collection()
    and share the manager's connection and lock.

    Example:
        ```python
        movies = db_manager.collection("movies")
        documents = await movies.find_all()           # sorted by title
        counts = await movies.apply_snapshot(docs, keep_ids=set())
        ```
    """

    def __init__(self, manager: 'DatabaseManager', name: str):
        self.manager = manager
        self.name = name
        self.logger = get_logger("plexshelf.database")

    async def find_all(self) -> List[Dict[str, Any]]:
        """Return every document of the collection sorted by title (case-insensitive)."""
        rows = await self.manager.fetch_all(
            """
            SELECT document FROM documents
            WHERE collection = ?
            ORDER BY title COLLATE NOCASE, external_id
            """,
            (self.name,)
        )
        return [json.loads(row['document']) for row in rows]

    async def get(self, external_id: str) -> Optional[Dict[str, Any]]:
        """Return one document by external id, or None."""
        row = await self.manager.fetch_one(
            "SELECT document FROM documents WHERE collection = ? AND external_id = ?",
            (self.name, external_id)
        )
        return json.loads(row['document']) if row else None

    async def count(self) -> int:
        row = await self.manager.fetch_one(
            "SELECT COUNT(*) AS count FROM documents WHERE collection = ?", (self.name,)
        )
        return row['count'] if row else 0

    async def external_ids(self) -> Set[str]:
        rows = await self.manager.fetch_all("SELECT external_id FROM documents WHERE collection = ?", (self.name,))
        return {row['external_id'] for row in rows}

    async def upsert(self, external_id: str, document: Dict[str, Any]) -> str:
        """
        Insert or fully replace one document.

        Returns:
            str: "inserted", "updated" or "unchanged"
        """
        async with self.manager.transaction() as db:
            return await self._upsert(db, external_id, document, _utc_now())

    async def delete_not_in(self, external_ids: Iterable[str]) -> int:
        """Delete every document whose external id is not in ``external_ids``."""
        async with self.manager.transaction() as db:
            return await self._delete_not_in(db, set(external_ids))

    async def apply_snapshot(self, documents: List[Dict[str, Any]], keep_ids: Iterable[str] = ()) -> Dict[str, int]:
        """
        Make the collection mirror ``documents`` in a single transaction.

        Every document is upserted by its ``external_id`` (full replace).
        Every stored document whose id is neither in ``documents`` nor in
        ``keep_ids`` is deleted. If anything fails the transaction is rolled
        back and the collection is left exactly as it was.

        Args:
            documents (List[Dict[str, Any]]): Current documents, each with an ``external_id``
            keep_ids (Iterable[str]): Ids that must survive the prune even though
                no fresh document was supplied for them

        Returns:
            Dict[str, int]: Counts for inserted, updated, unchanged and pruned
        """
        counts = {'inserted': 0, 'updated': 0, 'unchanged': 0, 'pruned': 0}
        current_ids = {document['external_id'] for document in documents}
        retained_ids = current_ids | set(keep_ids)
        timestamp = _utc_now()

        async with self.manager.transaction() as db:
            for document in documents:
                outcome = await self._upsert(db, document['external_id'], document, timestamp)
                counts[outcome] += 1
            counts['pruned'] = await self._delete_not_in(db, retained_ids)

        return counts

    async def _upsert(self, db: aiosqlite.Connection, external_id: str, document: Dict[str, Any], timestamp: str) -> str:
        if not external_id:
            raise ValueError(f"Document in collection '{self.name}' has no external_id")

        serialized = serialize_document(document)
        cursor = await db.execute(
            "SELECT document FROM documents WHERE collection = ? AND external_id = ?",
            (self.name, external_id)
        )
        existing = await cursor.fetchone()

        if existing is None:
            await db.execute(
                """
                INSERT INTO documents (collection, external_id, title, document, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (self.name, external_id, document.get('title') or '', serialized, timestamp, timestamp)
            )
            return 'inserted'

        if existing['document'] == serialized:
            return 'unchanged'

        await db.execute(
            """
            UPDATE documents SET title = ?, document = ?, updated_at = ?
            WHERE collection = ? AND external_id = ?
            """,
            (document.get('title') or '', serialized, timestamp, self.name, external_id)
        )
        return 'updated'

    async def _delete_not_in(self, db: aiosqlite.Connection, retained_ids: Set[str]) -> int:
        cursor = await db.execute("SELECT external_id FROM documents WHERE collection = ?", (self.name,))
        stale_ids = [row['external_id'] for row in await cursor.fetchall() if row['external_id'] not in retained_ids]

        for chunk_start in range(0, len(stale_ids), DELETE_CHUNK_SIZE):
            chunk = stale_ids[chunk_start:chunk_start + DELETE_CHUNK_SIZE]
            placeholders = ','.join('?' * len(chunk))
            await db.execute(
                f"DELETE FROM documents WHERE collection = ? AND external_id IN ({placeholders})",
                [self.name, *chunk]
            )

        if stale_ids:
            self.logger.debug(f"Pruned {len(stale_ids)} documents from '{self.name}'")
        return len(stale_ids)


class UserRecordCollection:
    """
    Handle for one collection of records owned by users (diary, notes, transactions).

    Every operation takes the owner's user id and only ever touches that
    user's rows; a record id belonging to someone else behaves exactly like
    a missing one. Listings are ordered by ``sort_key`` descending, newest
    first.

    Records are returned as the stored document plus ``id``, ``created_at``
    and ``updated_at``.
    """

    def __init__(self, manager: 'DatabaseManager', name: str):
        self.manager = manager
        self.name = name
        self.logger = get_logger("plexshelf.database")

    @staticmethod
    def _to_record(row: aiosqlite.Row) -> Dict[str, Any]:
        record = json.loads(row['document'])
        record.update(id=row['id'], created_at=row['created_at'], updated_at=row['updated_at'])
        return record

    async def list(self, user_id: int) -> List[Dict[str, Any]]:
        rows = await self.manager.fetch_all(
            """
            SELECT id, document, created_at, updated_at FROM user_records
            WHERE collection = ? AND user_id = ?
            ORDER BY sort_key DESC, id DESC
            """,
            (self.name, user_id)
        )
        return [self._to_record(row) for row in rows]

    async def get(self, user_id: int, record_id: int) -> Optional[Dict[str, Any]]:
        row = await self.manager.fetch_one(
            """
            SELECT id, document, created_at, updated_at FROM user_records
            WHERE collection = ? AND user_id = ? AND id = ?
            """,
            (self.name, user_id, record_id)
        )
        return self._to_record(row) if row else None

    async def create(self, user_id: int, document: Dict[str, Any], sort_key: Optional[str] = None) -> Dict[str, Any]:
        """
        Store a new record for a user.

        Args:
            user_id (int): Owner
            document (Dict[str, Any]): JSON-serializable record fields
            sort_key (Optional[str]): Listing order key; defaults to the creation time

        Returns:
            Dict[str, Any]: The stored record including its new ``id``
        """
        timestamp = _utc_now()
        async with self.manager.transaction() as db:
            cursor = await db.execute(
                """
                INSERT INTO user_records (collection, user_id, sort_key, document, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (self.name, user_id, sort_key or timestamp, serialize_document(document), timestamp, timestamp)
            )
            record_id = cursor.lastrowid
        return {**document, 'id': record_id, 'created_at': timestamp, 'updated_at': timestamp}

    async def update(self, user_id: int, record_id: int, document: Dict[str, Any],
                     sort_key: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Fully replace a user's record.

        ``sort_key`` keeps its stored value when omitted.

        Returns:
            Optional[Dict[str, Any]]: The updated record, or None if the user has no such record
        """
        async with self.manager.transaction() as db:
            cursor = await db.execute(
                """
                UPDATE user_records SET document = ?, sort_key = COALESCE(?, sort_key), updated_at = ?
                WHERE collection = ? AND user_id = ? AND id = ?
                """,
                (serialize_document(document), sort_key, _utc_now(), self.name, user_id, record_id)
            )
            if cursor.rowcount == 0:
                return None
            cursor = await db.execute(
                "SELECT id, document, created_at, updated_at FROM user_records WHERE id = ?",
                (record_id,)
            )
            row = await cursor.fetchone()
        return self._to_record(row)

    async def delete(self, user_id: int, record_id: int) -> bool:
        """Delete a user's record; returns False if the user has no such record."""
        async with self.manager.transaction() as db:
            cursor = await db.execute(
                "DELETE FROM user_records WHERE collection = ? AND user_id = ? AND id = ?",
                (self.name, user_id, record_id)
            )
            return cursor.rowcount > 0


class _Transaction:
    """Async context manager running a BEGIN IMMEDIATE ... COMMIT block under the connection lock."""

    def __init__(self, manager: 'DatabaseManager'):
        self.manager = manager

    async def __aenter__(self) -> aiosqlite.Connection:
        await self.manager._lock.acquire()
        try:
            await self.manager.connection.execute("BEGIN IMMEDIATE")
        except BaseException:
            self.manager._lock.release()
            raise
        return self.manager.connection

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is None:
                await self.manager.connection.commit()
            else:
                await self.manager.connection.rollback()
                self.manager.logger.error(f"Transaction rolled back: {exc}")
        finally:
            self.manager._lock.release()
        return False


class DatabaseManager:
    """
    SQLite database manager for the document store, user records, users and
    sync history.

    One connection is opened by initialize() and kept until close(). Every
    statement on it runs under one asyncio lock: writes as explicit
    transactions holding the lock from BEGIN to COMMIT, reads through
    fetch_all()/fetch_one(). A read therefore never runs inside another
    coroutine's open transaction and only ever sees committed data.

    **Table Schema:**
    - documents: (collection, external_id) primary key, title, JSON document,
      created_at, updated_at
    - user_records: id, collection, owning user_id, sort_key, JSON document,
      created_at, updated_at
    - users: id, username (unique), name, password_hash, created_at
    - sync_history: one row per sync run with its status and counts

    Attributes:
        config (DatabaseConfig): Database configuration settings
        logger (logging.Logger): Logger instance for database operations
        db_path (str): Full path to SQLite database file

    Example:
        ```python
        db_manager = DatabaseManager(DatabaseConfig(path="/data/plexshelf.db"))
        await db_manager.initialize()
        movies = db_manager.collection("movies")
        print(await movies.count())
        await db_manager.close()
        ```
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.logger = get_logger("plexshelf.database")
        self.db_path = config.path
        self.wal_mode = config.wal_mode
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._collections: Dict[str, DocumentCollection] = {}
        self._user_collections: Dict[str, UserRecordCollection] = {}

        database_dir = os.path.dirname(self.db_path)
        if database_dir:
            os.makedirs(database_dir, exist_ok=True)

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Database manager is not initialized")
        return self._db

    def transaction(self) -> _Transaction:
        """Return an async context manager wrapping one write transaction."""
        return _Transaction(self)

    async def fetch_all(self, sql: str, parameters: Iterable[Any] = ()) -> List[aiosqlite.Row]:
        """Run a read query outside any open transaction and return every row."""
        async with self._lock:
            cursor = await self.connection.execute(sql, tuple(parameters))
            return await cursor.fetchall()

    async def fetch_one(self, sql: str, parameters: Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
        """Run a read query outside any open transaction and return the first row."""
        async with self._lock:
            cursor = await self.connection.execute(sql, tuple(parameters))
            return await cursor.fetchone()

    def collection(self, name: str) -> DocumentCollection:
        """Return the long-lived handle for a collection."""
        if name not in self._collections:
            self._collections[name] = DocumentCollection(self, name)
        return self._collections[name]

    def user_collection(self, name: str) -> UserRecordCollection:
        """Return the long-lived handle for a user-owned record collection."""
        if name not in self._user_collections:
            self._user_collections[name] = UserRecordCollection(self, name)
        return self._user_collections[name]

    async def initialize(self) -> None:
        """
        Open the connection, configure SQLite and create the schema.

        Raises:
            aiosqlite.Error: If the database cannot be opened or migrated
        """
        self.logger.info(f"Initializing database at {self.db_path}")

        # Transactions are managed explicitly with BEGIN IMMEDIATE
        self._db = await aiosqlite.connect(self.db_path, isolation_level=None)
        self._db.row_factory = aiosqlite.Row

        try:
            if self.wal_mode:
                await self._db.execute("PRAGMA journal_mode=WAL")
                self.logger.debug("WAL mode enabled")
            await self._db.execute("PRAGMA synchronous=NORMAL")
            await self._db.execute("PRAGMA busy_timeout=30000")
            await self._db.execute("PRAGMA foreign_keys=ON")

            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection     TEXT NOT NULL,   -- Entity type (movies, shows)
                    external_id    TEXT NOT NULL,   -- Plex ratingKey
                    title          TEXT NOT NULL,   -- Sort key for listings
                    document       TEXT NOT NULL,   -- Canonical JSON record
                    created_at     TEXT NOT NULL,
                    updated_at     TEXT NOT NULL,
                    PRIMARY KEY (collection, external_id)
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_documents_title ON documents(collection, title COLLATE NOCASE)"
            )

            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id             INTEGER PRIMARY KEY AUTOINCREMENT,
                    username       TEXT NOT NULL UNIQUE COLLATE NOCASE,
                    name           TEXT NOT NULL DEFAULT '',
                    password_hash  TEXT NOT NULL,
                    created_at     TEXT NOT NULL
                )
            """)
            await self._migrate_users_table()

            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS user_records (
                    id             INTEGER PRIMARY KEY AUTOINCREMENT,
                    collection     TEXT NOT NULL,   -- diary, notes, transactions
                    user_id        INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    sort_key       TEXT NOT NULL,   -- ISO date or timestamp, listed newest first
                    document       TEXT NOT NULL,
                    created_at     TEXT NOT NULL,
                    updated_at     TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_user_records_owner ON user_records(collection, user_id, sort_key)"
            )

            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS sync_history (
                    id             INTEGER PRIMARY KEY AUTOINCREMENT,
                    entity_type    TEXT NOT NULL,
                    status         TEXT NOT NULL,   -- success, partial, error
                    items_fetched  INTEGER NOT NULL DEFAULT 0,
                    items_skipped  INTEGER NOT NULL DEFAULT 0,
                    inserted       INTEGER NOT NULL DEFAULT 0,
                    updated        INTEGER NOT NULL DEFAULT 0,
                    unchanged      INTEGER NOT NULL DEFAULT 0,
                    pruned         INTEGER NOT NULL DEFAULT 0,
                    message        TEXT,
                    started_at     TEXT NOT NULL,
                    finished_at    TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_sync_history_type ON sync_history(entity_type, id)"
            )
        except aiosqlite.Error as e:
            self.logger.error(f"Database initialization failed: {e}")
            await self.close()
            raise

        self.logger.info("Database initialization completed successfully")

    async def _migrate_users_table(self) -> None:
        """Add the display name column to users tables created before it existed."""
        cursor = await self._db.execute("PRAGMA table_info(users)")
        columns = {row['name'] for row in await cursor.fetchall()}
        if 'name' not in columns:
            self.logger.info("Migrating users table: adding name column")
            await self._db.execute("ALTER TABLE users ADD COLUMN name TEXT NOT NULL DEFAULT ''")

    async def health_check(self) -> bool:
        """Return True if the connection answers a trivial query."""
        if self._db is None:
            return False
        try:
            await self.fetch_one("SELECT 1")
            return True
        except aiosqlite.Error as e:
            self.logger.warning(f"Database health check failed: {e}")
            return False

    # ==================== USERS ====================

    async def create_user(self, username: str, password_hash: str, name: Optional[str] = None) -> Dict[str, Any]:
        """
        Insert a user. The display name defaults to the username.

        Raises:
            aiosqlite.IntegrityError: If the username is already taken
        """
        created_at = _utc_now()
        name = name or username
        async with self.transaction() as db:
            cursor = await db.execute(
                "INSERT INTO users (username, name, password_hash, created_at) VALUES (?, ?, ?, ?)",
                (username, name, password_hash, created_at)
            )
            user_id = cursor.lastrowid
        return {'id': user_id, 'username': username, 'name': name, 'created_at': created_at}

    async def get_user_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        row = await self.fetch_one(
            "SELECT id, username, name, password_hash, created_at FROM users WHERE username = ?",
            (username,)
        )
        return dict(row) if row else None

    async def get_user(self, user_id: int, include_password_hash: bool = False) -> Optional[Dict[str, Any]]:
        columns = "id, username, name, created_at" + (", password_hash" if include_password_hash else "")
        row = await self.fetch_one(f"SELECT {columns} FROM users WHERE id = ?", (user_id,))
        return dict(row) if row else None

    async def update_user(self, user_id: int, name: Optional[str] = None,
                          password_hash: Optional[str] = None) -> bool:
        """Change a user's display name and/or password hash; False if the user does not exist."""
        async with self.transaction() as db:
            cursor = await db.execute(
                """
                UPDATE users SET name = COALESCE(?, name), password_hash = COALESCE(?, password_hash)
                WHERE id = ?
                """,
                (name, password_hash, user_id)
            )
            return cursor.rowcount > 0

    async def delete_user(self, user_id: int) -> bool:
        """Delete a user together with every record they own."""
        async with self.transaction() as db:
            await db.execute("DELETE FROM user_records WHERE user_id = ?", (user_id,))
            cursor = await db.execute("DELETE FROM users WHERE id = ?", (user_id,))
            return cursor.rowcount > 0

    # ==================== SYNC HISTORY ====================

    async def record_sync(self, entry: Dict[str, Any]) -> None:
        """Append one sync run to the history log."""
        async with self.transaction() as db:
            await db.execute(
                """
                INSERT INTO sync_history (
                    entity_type, status, items_fetched, items_skipped, inserted, updated,
                    unchanged, pruned, message, started_at, finished_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry['entity_type'], entry['status'], entry.get('items_fetched', 0),
                    entry.get('items_skipped', 0), entry.get('inserted', 0), entry.get('updated', 0),
                    entry.get('unchanged', 0), entry.get('pruned', 0), entry.get('message'),
                    entry['started_at'], entry['finished_at'],
                )
            )

    async def get_sync_history(self, limit: int = 50, entity_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return the most recent sync runs, newest first."""
        if entity_type:
            rows = await self.fetch_all(
                "SELECT * FROM sync_history WHERE entity_type = ? ORDER BY id DESC LIMIT ?",
                (entity_type, limit)
            )
        else:
            rows = await self.fetch_all(
                "SELECT * FROM sync_history ORDER BY id DESC LIMIT ?",
                (limit,)
            )
        return [dict(row) for row in rows]

    async def close(self) -> None:
        """Close the connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None
            self.logger.info("Database connection closed")

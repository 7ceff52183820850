#!/usr/bin/env python3
"""
PlexShelf Personal Records Service

Business logic for the records each user keeps next to their media library:
a diary, therapy session notes and a finance ledger. Every operation is
scoped to the calling user; a record id owned by someone else is reported
exactly like a missing one.

**Ordering:**
    Diary entries are listed newest first by creation time, therapy notes
    by session date and transactions by transaction date. Ties fall back to
    the most recently created record.

Classes:
    RecordNotFoundError: The user has no record with the requested id
    PersonalRecordService: List, create, update and delete personal records

Project: PlexShelf
Version: 1.0.0
License: MIT
"""

from typing import Dict, Any, List, Optional

from .database_manager import DatabaseManager, UserRecordCollection
from .record_models import DiaryEntryInput, TherapyNoteInput, TransactionInput
from .utils import get_logger


DIARY_COLLECTION = "diary"
NOTES_COLLECTION = "notes"
TRANSACTIONS_COLLECTION = "transactions"


class RecordNotFoundError(Exception):
    """Raised when a user has no record with the given id in a collection."""

    def __init__(self, kind: str, record_id: int):
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id


class PersonalRecordService:
    """
    Per-user diary, therapy notes and transaction ledger.

    Attributes:
        diary (UserRecordCollection): Diary entries
        notes (UserRecordCollection): Therapy session notes
        transactions (UserRecordCollection): Finance ledger

    Example:
        ```python
        records = PersonalRecordService(db_manager)
        entry = await records.create_diary_entry(user.id, DiaryEntryInput(title="Monday", content="..."))
        matches = await records.list_diary_entries(user.id, search="monday")
        ```
    """

    def __init__(self, db_manager: DatabaseManager):
        self.diary: UserRecordCollection = db_manager.user_collection(DIARY_COLLECTION)
        self.notes: UserRecordCollection = db_manager.user_collection(NOTES_COLLECTION)
        self.transactions: UserRecordCollection = db_manager.user_collection(TRANSACTIONS_COLLECTION)
        self.logger = get_logger("plexshelf.records")

    # ==================== DIARY ====================

    async def list_diary_entries(self, user_id: int, search: Optional[str] = None,
                                 category: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List a user's diary entries, newest first.

        Args:
            user_id (int): Owner
            search (Optional[str]): Case-insensitive text matched against the
                title, the content and every tag
            category (Optional[str]): Only entries in this category (case-insensitive)

        Returns:
            List[Dict[str, Any]]: Matching entries
        """
        entries = await self.diary.list(user_id)

        if category and category.strip():
            wanted = category.strip().lower()
            entries = [entry for entry in entries if entry.get('category') == wanted]

        if search and search.strip():
            needle = search.strip().lower()
            entries = [
                entry for entry in entries
                if needle in entry.get('title', '').lower()
                or needle in entry.get('content', '').lower()
                or any(needle in tag.lower() for tag in entry.get('tags', []))
            ]

        return entries

    async def create_diary_entry(self, user_id: int, entry: DiaryEntryInput) -> Dict[str, Any]:
        record = await self.diary.create(user_id, entry.model_dump(mode='json'))
        self.logger.debug(f"User {user_id} created diary entry {record['id']}")
        return record

    async def update_diary_entry(self, user_id: int, entry_id: int, entry: DiaryEntryInput) -> Dict[str, Any]:
        # Creation time stays the sort key
        record = await self.diary.update(user_id, entry_id, entry.model_dump(mode='json'))
        if record is None:
            raise RecordNotFoundError("Diary entry", entry_id)
        return record

    async def delete_diary_entry(self, user_id: int, entry_id: int) -> None:
        if not await self.diary.delete(user_id, entry_id):
            raise RecordNotFoundError("Diary entry", entry_id)
        self.logger.debug(f"User {user_id} deleted diary entry {entry_id}")

    # ==================== THERAPY NOTES ====================

    async def list_notes(self, user_id: int) -> List[Dict[str, Any]]:
        return await self.notes.list(user_id)

    async def create_note(self, user_id: int, note: TherapyNoteInput) -> Dict[str, Any]:
        document = note.model_dump(mode='json')
        record = await self.notes.create(user_id, document, sort_key=document['session_date'])
        self.logger.debug(f"User {user_id} created note {record['id']}")
        return record

    async def update_note(self, user_id: int, note_id: int, note: TherapyNoteInput) -> Dict[str, Any]:
        document = note.model_dump(mode='json')
        record = await self.notes.update(user_id, note_id, document, sort_key=document['session_date'])
        if record is None:
            raise RecordNotFoundError("Note", note_id)
        return record

    async def delete_note(self, user_id: int, note_id: int) -> None:
        if not await self.notes.delete(user_id, note_id):
            raise RecordNotFoundError("Note", note_id)
        self.logger.debug(f"User {user_id} deleted note {note_id}")

    # ==================== TRANSACTIONS ====================

    async def list_transactions(self, user_id: int) -> List[Dict[str, Any]]:
        return await self.transactions.list(user_id)

    async def create_transaction(self, user_id: int, transaction: TransactionInput) -> Dict[str, Any]:
        document = transaction.model_dump(mode='json')
        record = await self.transactions.create(user_id, document, sort_key=document['date'])
        self.logger.debug(f"User {user_id} recorded {document['type']} transaction {record['id']}")
        return record

    async def update_transaction(self, user_id: int, transaction_id: int,
                                 transaction: TransactionInput) -> Dict[str, Any]:
        document = transaction.model_dump(mode='json')
        record = await self.transactions.update(user_id, transaction_id, document, sort_key=document['date'])
        if record is None:
            raise RecordNotFoundError("Transaction", transaction_id)
        return record

    async def delete_transaction(self, user_id: int, transaction_id: int) -> None:
        if not await self.transactions.delete(user_id, transaction_id):
            raise RecordNotFoundError("Transaction", transaction_id)
        self.logger.debug(f"User {user_id} deleted transaction {transaction_id}")

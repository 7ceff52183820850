#!/usr/bin/env python3
"""
PlexShelf Personal Record Models

Pydantic models validating the request bodies of the per-user record
endpoints: diary entries, therapy session notes and the finance ledger.
A validated model is turned into the stored document with
``model_dump(mode='json')``, so dates are kept as ISO strings and enums as
their values.

Classes:
    DiaryEntryInput: Title, content, category and tags of a diary entry
    TherapyNoteInput: Session date and content of a therapy note
    TransactionType: CREDIT or DEBIT
    RecurrenceInterval: How often a recurring transaction repeats
    TransactionInput: One ledger transaction, optionally recurring

Project: PlexShelf
Version: 1.0.0
License: MIT
"""

import datetime as dt
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator


DEFAULT_DIARY_CATEGORY = "general"


class DiaryEntryInput(BaseModel):
    """
    A diary entry as submitted by its author.

    Categories are compared case-insensitively, so they are stored lower-cased.
    Tags are stripped, blank tags are dropped and duplicates are removed
    keeping the first occurrence.

    Example:
        ```python
        entry = DiaryEntryInput(title="Monday", content="...", tags=["Work", " work", ""])
        entry.tags      # ["Work"]
        entry.category  # "general"
        ```
    """
    model_config = ConfigDict(extra='forbid', str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1)
    category: str = Field(default=DEFAULT_DIARY_CATEGORY, min_length=1, max_length=50)
    tags: List[str] = Field(default_factory=list)

    # noinspection PyDecorator
    @field_validator('category')
    @classmethod
    def normalize_category(cls, v: str) -> str:
        return v.lower()

    # noinspection PyDecorator
    @field_validator('tags')
    @classmethod
    def normalize_tags(cls, v: List[str]) -> List[str]:
        tags: List[str] = []
        seen = set()
        for tag in v:
            tag = tag.strip()
            if tag and tag.lower() not in seen:
                seen.add(tag.lower())
                tags.append(tag)
        return tags


class TherapyNoteInput(BaseModel):
    """Notes taken for one therapy session."""
    model_config = ConfigDict(extra='forbid', str_strip_whitespace=True)

    session_date: dt.date
    content: str = Field(..., min_length=1)


class TransactionType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class RecurrenceInterval(str, Enum):
    NONE = "NONE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class TransactionInput(BaseModel):
    """
    One ledger transaction.

    ``amount`` is always positive; ``type`` says whether money came in
    (CREDIT) or went out (DEBIT).

    **Recurrence rules:**
    - A recurring transaction needs an interval other than NONE
    - A one-off transaction is stored with interval NONE and no end date
    - An end date cannot fall before the transaction date
    """
    model_config = ConfigDict(extra='forbid', str_strip_whitespace=True)

    amount: float = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=500)
    type: TransactionType
    date: dt.date
    is_recurring: bool = False
    recurrence_interval: RecurrenceInterval = RecurrenceInterval.NONE
    recurrence_end_date: Optional[dt.date] = None

    @model_validator(mode='after')
    def check_recurrence(self) -> 'TransactionInput':
        if not self.is_recurring:
            self.recurrence_interval = RecurrenceInterval.NONE
            self.recurrence_end_date = None
            return self

        if self.recurrence_interval == RecurrenceInterval.NONE:
            raise ValueError("Recurring transactions need a recurrence interval")
        if self.recurrence_end_date is not None and self.recurrence_end_date < self.date:
            raise ValueError("Recurrence end date cannot be before the transaction date")
        return self

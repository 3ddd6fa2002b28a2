"""Escrow Guard storage layer -- async SQLite mirror store and Pydantic models."""

from escrow_guard.storage.database import Database, MirrorStore, get_database
from escrow_guard.storage.models import (
    DisputeCase,
    DisputeRecord,
    EscrowRecord,
    EscrowStatus,
    Milestone,
    MirrorStatus,
    TimelineEntry,
    TransactionMirror,
    TransactionType,
)

__all__ = [
    "Database",
    "MirrorStore",
    "get_database",
    "DisputeCase",
    "DisputeRecord",
    "EscrowRecord",
    "EscrowStatus",
    "Milestone",
    "MirrorStatus",
    "TimelineEntry",
    "TransactionMirror",
    "TransactionType",
]

"""Storage package providing the strategy's trade journal."""

from .sqlite_journal import SQLiteJournal

__all__ = ["SQLiteJournal"]

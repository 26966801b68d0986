"""
Wallet storage backends.

Available databases:
- MemoryDatabase: volatile, for tests and one-shot tools
- SqliteDatabase: persistent single-file storage
"""

from descwallet.config import MemoryConfig, SqliteConfig
from descwallet.database.base import Database, TxRecord, UtxoRecord
from descwallet.database.memory import MemoryDatabase
from descwallet.database.sqlite import SqliteDatabase


def open_database(config: MemoryConfig | SqliteConfig) -> Database:
    if isinstance(config, SqliteConfig):
        return SqliteDatabase(config.path)
    return MemoryDatabase()


__all__ = [
    "Database",
    "MemoryDatabase",
    "SqliteDatabase",
    "TxRecord",
    "UtxoRecord",
    "open_database",
]

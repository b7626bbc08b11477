"""
Database layer: signatures, transactions, transfer rows and address jobs.

SQLAlchemy-backed; SQLite by default, PostgreSQL via DATABASE_URL.
"""

from onchain_indexer.database.models import (
    JOB_ERROR,
    JOB_INDEXING,
    JOB_PENDING,
    JOB_READY,
    Job,
    SaveStats,
)
from onchain_indexer.database.store import IndexStore, SqlAlchemyStore, get_store

__all__ = [
    "IndexStore",
    "JOB_ERROR",
    "JOB_INDEXING",
    "JOB_PENDING",
    "JOB_READY",
    "Job",
    "SaveStats",
    "SqlAlchemyStore",
    "get_store",
]

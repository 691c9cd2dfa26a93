"""
Database Infrastructure Package for Caption Crafter

Exports database utilities, models, and repositories.
"""

from app.infrastructure.db.database import DatabaseManager
from app.infrastructure.db.repositories import SqlUsageStore


__all__ = [
    "DatabaseManager",
    "SqlUsageStore",
]

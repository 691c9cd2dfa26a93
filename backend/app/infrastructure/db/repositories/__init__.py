"""
Repository Layer for Caption Crafter

Exports repository classes for dependency injection.
"""

from app.infrastructure.db.repositories.usage_repository import SqlUsageStore


__all__ = [
    "SqlUsageStore",
]

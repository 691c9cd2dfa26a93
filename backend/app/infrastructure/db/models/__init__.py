"""
SQLModel ORM Models for Caption Crafter

Import models here to register them with SQLModel.metadata.
"""

from app.infrastructure.db.models.base import TimestampMixin
from app.infrastructure.db.models.usage_record import UsageRecordModel
from app.infrastructure.db.models.processed_webhook_event import ProcessedWebhookEventModel


__all__ = [
    "TimestampMixin",
    "UsageRecordModel",
    "ProcessedWebhookEventModel",
]

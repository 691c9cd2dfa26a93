"""
Usage Record Database Model

SQLModel table for per-user caption usage and subscription state.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Column, DateTime
from sqlmodel import Field

from app.infrastructure.db.models.base import TimestampMixin


class UsageRecordModel(TimestampMixin, table=True):
    """
    Maps to the 'usage_records' table.

    One row per user, keyed by the application's numeric user id.
    """

    __tablename__ = "usage_records"

    user_id: int = Field(sa_column=Column(BigInteger, primary_key=True, autoincrement=False))

    # Usage tracking
    free_captions_used: int = Field(default=0, nullable=False)

    # Subscription details
    subscription_status: str = Field(default="inactive", max_length=32, nullable=False, index=True)
    plan_id: Optional[str] = Field(default=None, max_length=255)
    billing_cycle: Optional[str] = Field(default=None, max_length=16)
    next_billing_date: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), index=True)
    )
    subscription_start_date: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )

    # Whop references
    payment_method_id: Optional[str] = Field(default=None, max_length=255)
    external_subscription_id: Optional[str] = Field(default=None, max_length=255, index=True)

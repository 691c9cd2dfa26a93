# API Routes Module
from app.api.routes import (
    captions,
    cron,
    plans,
    usage,
    webhooks,
)

__all__ = [
    "captions",
    "cron",
    "plans",
    "usage",
    "webhooks",
]

"""
Subscription Reconciler

Applies Whop webhook events to usage records.

Events:
- subscription.created / subscription.updated / membership.went_valid:
  activate the plan and compute the next billing date
- subscription.cancelled / membership.went_invalid: clear plan and billing fields
- payment.succeeded: activate and refresh plan and billing date
- payment.failed: flag the record, keeping plan metadata for recovery

Every delivery is claimed once before it is applied, so replaying an
identical payload leaves state exactly as a single application did.
"""

import calendar
import hashlib
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, TypeAdapter, ValidationError as PydanticValidationError

from app.domain.entitlements import as_utc
from app.domain.plans import DEFAULT_PAID_PLAN
from app.domain.usage import (
    BillingCycle,
    SubscriptionStatus,
    SubscriptionUpdate,
    UsageRecord,
)
from app.infrastructure.exceptions import (
    CommerceServiceError,
    InvalidWebhookPayload,
    StoreUnavailable,
)
from app.infrastructure.payments.whop_service import WhopService
from app.infrastructure.services.usage_service import UsageService


logger = logging.getLogger(__name__)

_datetime_adapter = TypeAdapter(datetime)

PAYMENT_EVENTS = ("payment.succeeded", "payment.failed")
FAILED_STATUSES = ("past_due", "payment_failed", "unpaid")


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    INVALID = "invalid"


class WebhookEvent(BaseModel):
    """A validated webhook delivery."""
    event_type: str
    event_key: str
    user_id: int
    data: dict[str, Any]


class ReconcileResult(BaseModel):
    outcome: ReconcileOutcome
    event_type: Optional[str] = None
    user_id: Optional[int] = None
    record: Optional[UsageRecord] = None
    message: Optional[str] = None


# =============================================================================
# Payload Parsing
# =============================================================================

def extract_event_type(payload: Any) -> str:
    """Event name from ``type``, ``event`` or ``action``."""
    if not isinstance(payload, dict):
        raise InvalidWebhookPayload("Webhook payload must be a JSON object")

    event_type = payload.get("type") or payload.get("event") or payload.get("action")
    if not event_type or not isinstance(event_type, str):
        raise InvalidWebhookPayload("Webhook payload has no event type")
    return event_type


def parse_user_id(value: Any) -> Optional[int]:
    """Numeric user id from an int or digit string; None otherwise."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def webhook_event_key(event_type: str, payload: dict[str, Any], data: dict[str, Any]) -> str:
    """
    Idempotency key for a delivery.

    Preference order: the delivery id, the payment id for payment events,
    then a digest of the canonical payload.
    """
    delivery_id = payload.get("id")
    if delivery_id:
        return f"delivery:{delivery_id}"

    if event_type in PAYMENT_EVENTS:
        payment_id = data.get("id") or data.get("payment_id")
        if payment_id:
            return f"{event_type}:{payment_id}"

    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{event_type}:sha256:{digest}"


def parse_webhook_payload(payload: Any) -> WebhookEvent:
    """
    Validate a webhook payload.

    Raises:
        InvalidWebhookPayload when the type, data object or user id is missing
    """
    event_type = extract_event_type(payload)

    data = payload.get("data")
    if not isinstance(data, dict):
        raise InvalidWebhookPayload("Webhook payload has no data object", event_type=event_type)

    raw_user_id = data.get("user_id")
    if raw_user_id is None and isinstance(data.get("metadata"), dict):
        raw_user_id = data["metadata"].get("user_id")

    user_id = parse_user_id(raw_user_id)
    if user_id is None:
        raise InvalidWebhookPayload(
            f"Webhook payload has missing or non-numeric user_id: {raw_user_id!r}",
            event_type=event_type,
        )

    return WebhookEvent(
        event_type=event_type,
        event_key=webhook_event_key(event_type, payload, data),
        user_id=user_id,
        data=data,
    )


def parse_datetime(value: Any) -> Optional[datetime]:
    """ISO-8601 string or epoch seconds to an aware UTC datetime."""
    if value in (None, ""):
        return None
    try:
        return as_utc(_datetime_adapter.validate_python(value))
    except PydanticValidationError:
        logger.warning(f"Ignoring unparseable billing date {value!r}")
        return None


def parse_billing_cycle(value: Any) -> Optional[BillingCycle]:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    aliases = {"month": "monthly", "annual": "yearly", "year": "yearly", "annually": "yearly"}
    try:
        return BillingCycle(aliases.get(normalized, normalized))
    except ValueError:
        logger.warning(f"Ignoring unknown billing cycle {value!r}")
        return None


def add_billing_period(start: datetime, cycle: BillingCycle) -> datetime:
    """
    One billing period after ``start``.

    Month arithmetic clamps to the last day of the target month
    (Jan 31 + 1 month = Feb 28/29).
    """
    months = 1 if cycle == BillingCycle.MONTHLY else 12
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


# =============================================================================
# Reconciler
# =============================================================================

class SubscriptionReconciler:
    """
    State machine over ``subscription_status`` driven by webhook events.

    Args:
        usage: Usage service used for all reads and writes
        whop: Optional Whop client for post-webhook membership sync
    """

    def __init__(self, usage: UsageService, whop: Optional[WhopService] = None):
        self._usage = usage
        self._whop = whop
        self._handlers: dict[str, Callable[[WebhookEvent], Awaitable[UsageRecord]]] = {
            "subscription.created": self._handle_activation,
            "subscription.updated": self._handle_activation,
            "membership.went_valid": self._handle_activation,
            "subscription.cancelled": self._handle_cancellation,
            "subscription.canceled": self._handle_cancellation,
            "membership.went_invalid": self._handle_cancellation,
            "payment.succeeded": self._handle_payment_succeeded,
            "payment.failed": self._handle_payment_failed,
        }

    @property
    def handled_events(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    async def apply_webhook_event(self, payload: Any) -> ReconcileResult:
        """
        Apply one webhook payload.

        Invalid payloads are logged and reported, never raised, so the
        caller can always acknowledge the delivery.

        Raises:
            StoreUnavailable if the event cannot be persisted; the claim is
            released so a redelivery is applied
        """
        try:
            event_type = extract_event_type(payload)
        except InvalidWebhookPayload as e:
            logger.warning(f"Dropping webhook payload: {e.message}")
            return ReconcileResult(outcome=ReconcileOutcome.INVALID, message=e.message)

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug(f"Unhandled webhook event type: {event_type}")
            return ReconcileResult(outcome=ReconcileOutcome.IGNORED, event_type=event_type)

        try:
            event = parse_webhook_payload(payload)
        except InvalidWebhookPayload as e:
            logger.warning(f"Dropping {event_type} webhook: {e.message}")
            return ReconcileResult(
                outcome=ReconcileOutcome.INVALID, event_type=event_type, message=e.message
            )

        if not await self._usage.claim_webhook_event(event.event_key, event.event_type):
            logger.info(f"Webhook {event.event_key} already processed, skipping")
            return ReconcileResult(
                outcome=ReconcileOutcome.DUPLICATE,
                event_type=event_type,
                user_id=event.user_id,
            )

        try:
            record = await handler(event)
        except BaseException:
            await self._release_claim(event)
            raise

        return ReconcileResult(
            outcome=ReconcileOutcome.APPLIED,
            event_type=event_type,
            user_id=event.user_id,
            record=record,
        )

    async def _release_claim(self, event: WebhookEvent) -> None:
        try:
            await self._usage.release_webhook_event(event.event_key)
        except StoreUnavailable as e:
            logger.error(
                f"Could not release claim on webhook {event.event_key} for user {event.user_id}, "
                f"replay it manually: {e.message}"
            )
        else:
            logger.warning(f"Released claim on webhook {event.event_key} after a failed apply")

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _activation_update(self, event: WebhookEvent) -> SubscriptionUpdate:
        """Fields for an active subscription, filled from payload then record."""
        data = event.data
        current = await self._usage.get_usage(event.user_id)
        now = self._usage.now()

        billing_cycle = (
            parse_billing_cycle(data.get("billing_cycle"))
            or current.billing_cycle
            or BillingCycle.MONTHLY
        )
        next_billing_date = (
            parse_datetime(data.get("next_billing_date"))
            or add_billing_period(now, billing_cycle)
        )

        update = SubscriptionUpdate(
            subscription_status=SubscriptionStatus.ACTIVE,
            plan_id=data.get("plan_id") or current.plan_id or DEFAULT_PAID_PLAN,
            billing_cycle=billing_cycle,
            next_billing_date=next_billing_date,
        )

        if current.subscription_start_date is None:
            update.subscription_start_date = now
        if data.get("payment_method_id"):
            update.payment_method_id = data["payment_method_id"]

        subscription_id = data.get("subscription_id")
        if subscription_id is None and event.event_type not in PAYMENT_EVENTS:
            subscription_id = data.get("id")
        if subscription_id:
            update.external_subscription_id = str(subscription_id)

        return update

    async def _handle_activation(self, event: WebhookEvent) -> UsageRecord:
        status = str(event.data.get("status") or "active").lower()

        if status in FAILED_STATUSES:
            return await self._handle_payment_failed(event)
        if status not in ("active", "trialing"):
            return await self._handle_cancellation(event)

        update = await self._activation_update(event)
        record = await self._usage.upsert_subscription(event.user_id, update)
        logger.info(
            f"Activated plan {record.plan_id} for user {event.user_id} "
            f"until {record.next_billing_date} ({event.event_type})"
        )
        return record

    async def _handle_cancellation(self, event: WebhookEvent) -> UsageRecord:
        status = (
            SubscriptionStatus.INACTIVE
            if event.event_type == "membership.went_invalid"
            or str(event.data.get("status") or "").lower() == "inactive"
            else SubscriptionStatus.CANCELLED
        )
        record = await self._usage.upsert_subscription(
            event.user_id,
            SubscriptionUpdate(
                subscription_status=status,
                plan_id=None,
                billing_cycle=None,
                next_billing_date=None,
            ),
        )
        logger.info(f"Subscription for user {event.user_id} set to {status.value} ({event.event_type})")
        return record

    async def _handle_payment_succeeded(self, event: WebhookEvent) -> UsageRecord:
        update = await self._activation_update(event)
        record = await self._usage.upsert_subscription(event.user_id, update)
        logger.info(
            f"Payment succeeded for user {event.user_id}: "
            f"{event.data.get('amount')} {event.data.get('currency')}, "
            f"plan {record.plan_id} active until {record.next_billing_date}"
        )
        return record

    async def _handle_payment_failed(self, event: WebhookEvent) -> UsageRecord:
        record = await self._usage.upsert_subscription(
            event.user_id,
            SubscriptionUpdate(subscription_status=SubscriptionStatus.PAYMENT_FAILED),
        )
        logger.warning(
            f"Payment failed for user {event.user_id}: "
            f"{event.data.get('amount')} {event.data.get('currency')} "
            f"({event.data.get('failure_reason', 'no reason given')})"
        )
        return record

    # =========================================================================
    # Background Work
    # =========================================================================

    async def sync_with_provider(self, user_id: int) -> Optional[UsageRecord]:
        """
        Cross-check a user's local state against Whop.

        Runs after the webhook response has been sent. Whop reporting an
        active membership the local record lacks is applied; a local active
        record Whop reports inactive is only logged, since cancellations are
        delivered by their own webhook. Errors are logged, never raised.
        """
        if self._whop is None or not self._whop.api_enabled:
            return None

        try:
            state = await self._whop.get_membership_state(user_id)
            current = await self._usage.get_usage(user_id)
        except (CommerceServiceError, StoreUnavailable) as e:
            logger.error(f"Subscription sync failed for user {user_id}: {e.message}")
            return None

        local_active = current.subscription_status == SubscriptionStatus.ACTIVE

        if state.is_active and (not local_active or (state.plan_id and state.plan_id != current.plan_id)):
            update = SubscriptionUpdate(
                subscription_status=SubscriptionStatus.ACTIVE,
                plan_id=state.plan_id or current.plan_id or DEFAULT_PAID_PLAN,
            )
            if not local_active:
                cycle = current.billing_cycle or BillingCycle.MONTHLY
                update.billing_cycle = cycle
                update.next_billing_date = add_billing_period(self._usage.now(), cycle)
            if state.subscription_id:
                update.external_subscription_id = state.subscription_id

            try:
                record = await self._usage.upsert_subscription(user_id, update)
            except StoreUnavailable as e:
                logger.error(f"Subscription sync could not persist for user {user_id}: {e.message}")
                return None
            logger.info(f"Sync: applied active Whop membership for user {user_id} (plan {record.plan_id})")
            return record

        if not state.is_active and local_active:
            logger.warning(
                f"Sync: Whop reports no active membership for user {user_id} "
                f"but local record is active on plan {current.plan_id}"
            )

        return current

    async def run_expiry_sweep(self) -> int:
        """Persist ``expired`` for active subscriptions past their billing date."""
        expired = await self._usage.expire_lapsed_subscriptions()
        logger.info(f"Expiry sweep marked {expired} subscriptions as expired")
        return expired

"""
Integration Tests for Webhooks (Whop)

Verifies:
- Signature verification failure (401)
- Successful event processing
- Idempotency (prevent double processing)
- Malformed payloads acknowledged with 200 and dropped
- Store outages answered with 503 so Whop redelivers
"""

import pytest
from unittest.mock import AsyncMock, patch

from app.domain.usage import SubscriptionStatus
from app.infrastructure.exceptions import StoreUnavailable


def payment_succeeded(user_id=7, payment_id="pay_001", plan_id="prod_xcU9zERSGgyNK"):
    return {
        "type": "payment.succeeded",
        "data": {
            "id": payment_id,
            "user_id": str(user_id),
            "plan_id": plan_id,
            "subscription_id": "sub_001",
        },
    }


class TestWebhookSignature:
    """Signature checks run before anything is parsed."""

    def test_missing_signature_rejected(self, post_webhook):
        response = post_webhook(payment_succeeded(), signature="")

        assert response.status_code == 401
        assert response.json()["error"] == "SignatureInvalid"

    def test_wrong_secret_rejected(self, post_webhook):
        response = post_webhook(payment_succeeded(), secret="not-the-secret")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_rejected_delivery_changes_nothing(self, post_webhook, container):
        post_webhook(payment_succeeded(), signature="deadbeef")

        record = await container.usage.get_usage(7)
        assert record.subscription_status == SubscriptionStatus.INACTIVE


class TestWhopWebhooks:
    """Tests for POST /api/webhooks/whop."""

    @pytest.mark.asyncio
    async def test_payment_succeeded_activates(self, post_webhook, container):
        response = post_webhook(payment_succeeded())

        assert response.status_code == 200
        assert response.json() == {"status": "success", "event": "payment.succeeded"}

        record = await container.usage.get_usage(7)
        assert record.subscription_status == SubscriptionStatus.ACTIVE
        assert record.plan_id == "prod_xcU9zERSGgyNK"
        assert record.next_billing_date is not None

    def test_duplicate_delivery_not_reapplied(self, post_webhook):
        first = post_webhook(payment_succeeded())
        second = post_webhook(payment_succeeded())

        assert first.json()["status"] == "success"
        assert second.status_code == 200
        assert second.json() == {"status": "duplicate", "event": "payment.succeeded"}

    def test_missing_user_id_ignored(self, post_webhook):
        response = post_webhook({"type": "payment.succeeded", "data": {"id": "pay_002"}})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ignored"
        assert "user" in body["reason"].lower()

    def test_invalid_json_ignored(self, post_webhook):
        response = post_webhook(b"{not json")

        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "reason": "invalid_json"}

    def test_unknown_event_ignored(self, post_webhook):
        response = post_webhook({"type": "refund.created", "data": {"user_id": "7"}})

        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "event": "refund.created"}

    def test_processing_error_acknowledged(self, post_webhook, container):
        failing = AsyncMock(side_effect=RuntimeError("store exploded"))

        with patch.object(container.reconciler, "apply_webhook_event", failing):
            response = post_webhook(payment_succeeded())

        assert response.status_code == 200
        assert response.json() == {"status": "error"}
        failing.assert_awaited_once()

    def test_store_outage_asks_for_redelivery(self, post_webhook, container):
        down = AsyncMock(side_effect=StoreUnavailable("usage store down", operation="claim_webhook_event"))

        with patch.object(container.reconciler, "apply_webhook_event", down):
            response = post_webhook(payment_succeeded())

        assert response.status_code == 503
        assert response.json() == {"status": "retry", "reason": "store_unavailable"}

    @pytest.mark.asyncio
    async def test_redelivery_after_outage_is_applied(self, post_webhook, container):
        down = AsyncMock(side_effect=StoreUnavailable("usage store down", operation="claim_webhook_event"))
        with patch.object(container.usage, "claim_webhook_event", down):
            assert post_webhook(payment_succeeded()).status_code == 503

        response = post_webhook(payment_succeeded())

        assert response.json() == {"status": "success", "event": "payment.succeeded"}
        record = await container.usage.get_usage(7)
        assert record.subscription_status == SubscriptionStatus.ACTIVE

    def test_cancellation_returns_user_to_free_tier(self, post_webhook, client):
        post_webhook(payment_succeeded(user_id=9))
        active = client.get("/api/usage/9").json()
        assert active["plan"] == "premium"
        assert active["caption_limit"] is None

        response = post_webhook({
            "type": "subscription.cancelled",
            "data": {"id": "sub_001", "user_id": 9},
        })
        assert response.json() == {"status": "success", "event": "subscription.cancelled"}

        summary = client.get("/api/usage/9").json()
        assert summary["subscription_status"] == "cancelled"
        assert summary["plan"] == "free"
        assert summary["caption_limit"] == 3

        can_generate = client.get("/api/usage/9/can-generate").json()
        assert can_generate["can_generate"] is True
        assert can_generate["remaining_free_captions"] == 3

    def test_payment_failed_marks_status(self, post_webhook, client):
        response = post_webhook({
            "type": "payment.failed",
            "data": {"id": "pay_bad", "user_id": "11"},
        })

        assert response.json()["status"] == "success"
        assert client.get("/api/usage/11").json()["subscription_status"] == "payment_failed"

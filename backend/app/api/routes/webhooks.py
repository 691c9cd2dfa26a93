"""
Whop Webhook Handler

Receives Whop subscription and payment events.

Deliveries with a bad signature are rejected with 401. A delivery that
cannot be persisted because the usage store is down gets 503 so Whop
redelivers it. Every other delivery is acknowledged with 200, including
malformed payloads, which are logged and dropped, so Whop never enters a
retry storm. Cross-checking the user's membership with the Whop API happens
after the response is sent.
"""

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Request, status
from fastapi.responses import JSONResponse

from app.api.dependencies import ReconcilerDep, SettingsDep, WhopServiceDep
from app.infrastructure.exceptions import SignatureInvalid, StoreUnavailable
from app.infrastructure.payments.whop_service import SIGNATURE_HEADER
from app.infrastructure.services.subscription_reconciler import ReconcileOutcome


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/whop")
async def whop_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    reconciler: ReconcilerDep,
    whop: WhopServiceDep,
    settings: SettingsDep,
):
    """
    Handle Whop webhook events.

    Verifies the signature, applies the event idempotently, and schedules
    a membership sync for the affected user.
    """
    payload = await request.body()

    if whop.verification_enabled:
        try:
            whop.verify_webhook_signature(payload, request.headers.get(SIGNATURE_HEADER))
        except SignatureInvalid as e:
            logger.warning(f"Webhook signature verification failed: {e.message}")
            raise
    else:
        logger.warning("WHOP_WEBHOOK_SECRET not set, accepting unsigned webhook")

    try:
        event = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Dropping webhook with unparseable body: {e}")
        return {"status": "ignored", "reason": "invalid_json"}

    try:
        result = await reconciler.apply_webhook_event(event)
    except StoreUnavailable as e:
        logger.error(f"Usage store unavailable, asking Whop to redeliver webhook: {e.message}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "retry", "reason": "store_unavailable"},
        )
    except Exception as e:
        logger.error(f"Error processing webhook: {e!r}")
        # Return 200 so Whop does not retry; the claim was released for a manual replay
        return {"status": "error"}

    if result.outcome == ReconcileOutcome.INVALID:
        return {"status": "ignored", "reason": result.message}

    if result.outcome == ReconcileOutcome.APPLIED and settings.whop_sync_enabled and whop.api_enabled:
        background_tasks.add_task(reconciler.sync_with_provider, result.user_id)

    return {
        "status": "success" if result.outcome == ReconcileOutcome.APPLIED else result.outcome.value,
        "event": result.event_type,
    }

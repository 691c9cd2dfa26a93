"""
Whop Commerce Service

Infrastructure service for the Whop commerce platform.
Handles webhook signature verification and membership lookups used to
cross-check subscription state after a webhook has been applied.
"""

import hashlib
import hmac
import logging
from typing import Any, Optional

import httpx
from pydantic import BaseModel

from app.config.settings import Settings
from app.infrastructure.exceptions import CommerceServiceError, SignatureInvalid


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-whop-signature"


class MembershipState(BaseModel):
    """Subscription state as reported by Whop for one user."""
    status: str
    plan_id: Optional[str] = None
    subscription_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class WhopService:
    """
    Whop API client.

    Stateless apart from configuration; safe to share across requests.
    """

    def __init__(
        self,
        webhook_secret: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: str = "https://api.whop.com/api/v2",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._webhook_secret = webhook_secret
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "WhopService":
        return cls(
            webhook_secret=settings.whop_webhook_secret,
            api_key=settings.whop_api_key,
            base_url=settings.whop_api_base_url,
            timeout=settings.whop_request_timeout,
        )

    @property
    def verification_enabled(self) -> bool:
        return bool(self._webhook_secret)

    @property
    def api_enabled(self) -> bool:
        return bool(self._api_key)

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def compute_signature(self, payload: bytes) -> str:
        """Hex HMAC-SHA256 of the raw request body."""
        if not self._webhook_secret:
            raise SignatureInvalid("No webhook secret configured")
        return hmac.new(
            self._webhook_secret.encode("utf-8"),
            payload,
            hashlib.sha256,
        ).hexdigest()

    def verify_webhook_signature(self, payload: bytes, signature: Optional[str]) -> None:
        """
        Verify the signature header of a webhook delivery.

        Accepts either a bare hex digest or one prefixed with ``sha256=``.

        Args:
            payload: Raw request body
            signature: Value of the X-Whop-Signature header

        Raises:
            SignatureInvalid if the header is missing or does not match
        """
        if not signature:
            raise SignatureInvalid("Missing webhook signature")

        provided = signature.strip()
        if provided.startswith("sha256="):
            provided = provided[len("sha256="):]

        expected = self.compute_signature(payload)
        if not hmac.compare_digest(expected, provided.lower()):
            raise SignatureInvalid("Webhook signature mismatch")

    # =========================================================================
    # Membership Lookup
    # =========================================================================

    async def get_membership_state(self, user_id: int) -> MembershipState:
        """
        Fetch the user's current subscription state from Whop.

        Raises:
            CommerceServiceError on transport failures or non-2xx responses
        """
        if not self._api_key:
            raise CommerceServiceError("Whop API key is not configured")

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self._api_key}"},
            ) as client:
                response = await client.get(f"/users/{user_id}/subscriptions")
                response.raise_for_status()
                data = response.json()

        except httpx.HTTPStatusError as e:
            raise CommerceServiceError(
                f"Whop membership lookup failed for user {user_id}",
                status_code=e.response.status_code,
                original_error=e,
            ) from e
        except httpx.HTTPError as e:
            raise CommerceServiceError(
                f"Whop membership lookup failed for user {user_id}: {e}",
                original_error=e,
            ) from e

        return self._parse_memberships(data)

    def _parse_memberships(self, data: Any) -> MembershipState:
        """Pick the active subscription out of a Whop list response, if any."""
        items = data.get("data", []) if isinstance(data, dict) else data
        if not isinstance(items, list):
            items = []

        for item in items:
            if isinstance(item, dict) and item.get("status") == "active":
                return MembershipState(
                    status="active",
                    plan_id=item.get("plan_id") or item.get("plan"),
                    subscription_id=item.get("id"),
                )

        return MembershipState(status="inactive")

"""
Payments Infrastructure Module

Whop webhook verification and membership lookups.
"""

from app.infrastructure.payments.whop_service import MembershipState, WhopService

__all__ = ["MembershipState", "WhopService"]

"""Mapping between users and their Stripe customers. Backend only."""
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.adapters.stripe_adapter import StripeAdapter
from marketplace.models.customer import StripeCustomer

logger = structlog.get_logger(__name__)


class CustomerService:
    """Service layer for Stripe customer records."""

    def __init__(self, db: AsyncSession, stripe_adapter: StripeAdapter):
        """Initialize customer service."""
        self.db = db
        self.stripe_adapter = stripe_adapter

    async def get_customer_id(self, user_id: str) -> Optional[str]:
        result = await self.db.execute(select(StripeCustomer).where(StripeCustomer.user_id == user_id))
        customer = result.scalar_one_or_none()
        return customer.customer_id if customer else None

    async def get_or_create_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """
        Get the user's Stripe customer, creating it on first use.

        Args:
            user_id: Authenticated user ID
            email: Email stored on a newly created customer

        Returns:
            Stripe customer ID
        """
        customer_id = await self.get_customer_id(user_id)
        if customer_id:
            return customer_id

        customer_id = await self.stripe_adapter.create_customer(email, metadata={"user_id": user_id})
        self.db.add(StripeCustomer(user_id=user_id, customer_id=customer_id, email=email))
        await self.db.flush()

        logger.info("stripe_customer_created", user_id=user_id, customer_id=customer_id)
        return customer_id

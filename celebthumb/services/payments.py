import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import stripe
from starlette.concurrency import run_in_threadpool

from celebthumb.core.exceptions import PaymentFailedError

logger = logging.getLogger(__name__)

# Statuses under which the first (or prorated) invoice has been settled
PAID_STATUSES = ("active", "trialing")


@dataclass(frozen=True)
class SubscriptionReceipt:
    """Identifiers the processor hands back for a paid subscription."""
    customer_id: str
    subscription_id: str
    status: str


class PaymentProcessor(Protocol):
    async def ensure_subscription(
        self,
        user_id: str,
        email: Optional[str],
        price_id: str,
        subscription_id: Optional[str] = None,
    ) -> SubscriptionReceipt:
        """
        Subscribe a user to a price, moving an existing subscription if given.

        Returns only once the processor reports the subscription as paid.

        Raises:
            PaymentFailedError: If the processor rejects the customer, the
                subscription or the payment.
        """
        ...

    async def cancel_subscription(self, subscription_id: str) -> None:
        """
        Stop billing a subscription immediately.

        Raises:
            PaymentFailedError: If the processor refuses the cancellation.
        """
        ...


class StripePaymentProcessor:
    """Stripe-backed processor. The API key is passed on every request."""

    def __init__(self, api_key: Optional[str]):
        self.api_key = api_key

    async def ensure_subscription(
        self,
        user_id: str,
        email: Optional[str],
        price_id: str,
        subscription_id: Optional[str] = None,
    ) -> SubscriptionReceipt:
        if not self.api_key:
            raise PaymentFailedError("Stripe API key not configured")

        try:
            return await run_in_threadpool(
                self._subscribe, user_id, email, price_id, subscription_id
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe rejected subscription for user {user_id}: {e}")
            raise PaymentFailedError(getattr(e, "user_message", None) or str(e))

    async def cancel_subscription(self, subscription_id: str) -> None:
        if not self.api_key:
            raise PaymentFailedError("Stripe API key not configured")

        try:
            await run_in_threadpool(
                stripe.Subscription.cancel, subscription_id, api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe refused to cancel subscription {subscription_id}: {e}")
            raise PaymentFailedError(getattr(e, "user_message", None) or str(e))
        logger.info(f"Canceled Stripe subscription {subscription_id}")

    def _subscribe(
        self, user_id: str, email: Optional[str], price_id: str, subscription_id: Optional[str]
    ) -> SubscriptionReceipt:
        current = None
        if subscription_id:
            current = stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
            if current.status == "canceled":
                current = None

        if current is not None:
            subscription = self._change_price(current, price_id)
            customer_id = current.customer
        else:
            customer = self._find_or_create_customer(user_id, email)
            customer_id = customer.id
            subscription = stripe.Subscription.create(
                api_key=self.api_key,
                customer=customer_id,
                items=[{"price": price_id}],
                metadata={"user_id": user_id},
                payment_behavior="error_if_incomplete",
            )

        if subscription.status not in PAID_STATUSES:
            logger.error(
                f"Stripe subscription {subscription.id} for user {user_id} "
                f"is {subscription.status}, not paid"
            )
            if current is None:
                stripe.Subscription.cancel(subscription.id, api_key=self.api_key)
            raise PaymentFailedError(f"subscription is {subscription.status}")

        logger.info(
            f"Stripe subscription {subscription.id} for user {user_id} on price {price_id} "
            f"(customer {customer_id}, status {subscription.status})"
        )
        return SubscriptionReceipt(
            customer_id=customer_id,
            subscription_id=subscription.id,
            status=subscription.status,
        )

    def _change_price(self, subscription, price_id: str):
        """Swap the single price item in place and charge the proration now."""
        item = subscription["items"]["data"][0]
        return stripe.Subscription.modify(
            subscription.id,
            api_key=self.api_key,
            items=[{"id": item["id"], "price": price_id}],
            proration_behavior="always_invoice",
            payment_behavior="error_if_incomplete",
        )

    def _find_or_create_customer(self, user_id: str, email: Optional[str]):
        if email:
            existing = stripe.Customer.list(api_key=self.api_key, email=email, limit=1)
            if existing.data:
                return existing.data[0]

        params = {"metadata": {"user_id": user_id}}
        if email:
            params["email"] = email
        return stripe.Customer.create(api_key=self.api_key, **params)

"""
Credits ledger: per-user balance and subscription plan.

Every balance change is a single conditional update of the user record.
Balance checks live in the store's filter (``credits >= amount``) so concurrent
debits are serialized by MongoDB, not by this process. Nothing is cached.
"""
import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from celebthumb.core.config import settings
from celebthumb.core.exceptions import (
    InsufficientCreditsError,
    PersistenceUnavailableError,
)
from celebthumb.db.mongo import get_users_collection
from celebthumb.schemas.user import User, utcnow
from celebthumb.services.payments import PaymentProcessor, StripePaymentProcessor
from celebthumb.services.plans import FREE_PLAN_ID, PLANS, Plan, get_plan

logger = logging.getLogger(__name__)


def _require_user_id(user_id: str) -> None:
    if not user_id:
        raise ValueError("user_id must be a non-empty string")


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount!r}")


class CreditsLedger:
    def __init__(self, users, payments: PaymentProcessor, plans: Mapping[str, Plan]):
        self.users = users
        self.payments = payments
        self.plans = plans

    async def get_balance(self, user_id: str) -> int:
        """Current balance; a user with no record has 0 credits."""
        _require_user_id(user_id)
        try:
            doc = await self.users.find_one(
                {"user_id": user_id}, projection={"credits": True, "_id": False}
            )
        except PyMongoError as e:
            logger.error(f"Failed to read balance for user {user_id}: {e}")
            raise PersistenceUnavailableError(str(e))
        if not doc:
            return 0
        return int(doc.get("credits", 0))

    async def debit(self, user_id: str, amount: int) -> int:
        """
        Atomically take ``amount`` credits, returning the balance after.

        The balance check and the decrement are one conditional update. A
        missing record never matches the filter, so it is refused like any
        other short balance.

        If the awaiting task is cancelled before the store answers, the
        debit may or may not have been applied. Callers must re-read the
        balance before issuing it again.
        """
        _require_user_id(user_id)
        _require_positive(amount)
        try:
            doc = await self.users.find_one_and_update(
                {"user_id": user_id, "credits": {"$gte": amount}},
                {"$inc": {"credits": -amount}, "$set": {"updated_at": utcnow()}},
                projection={"credits": True, "_id": False},
                return_document=ReturnDocument.AFTER,
            )
        except asyncio.CancelledError:
            logger.warning(
                f"Debit of {amount} for user {user_id} cancelled before confirmation; "
                f"outcome unknown, re-read the balance before retrying"
            )
            raise
        except PyMongoError as e:
            logger.error(f"Failed to debit {amount} credits from user {user_id}: {e}")
            raise PersistenceUnavailableError(str(e))

        if doc is None:
            logger.info(f"Refused debit of {amount} credits for user {user_id}: insufficient balance")
            raise InsufficientCreditsError(user_id, amount)

        logger.info(f"Debited {amount} credits from user {user_id}, balance now {doc['credits']}")
        return int(doc["credits"])

    async def credit(self, user_id: str, amount: int) -> int:
        """Add ``amount`` credits, creating the record on a free plan if needed."""
        _require_user_id(user_id)
        _require_positive(amount)
        now = utcnow()
        try:
            doc = await self.users.find_one_and_update(
                {"user_id": user_id},
                {
                    "$inc": {"credits": amount},
                    "$set": {"updated_at": now},
                    "$setOnInsert": {"plan": FREE_PLAN_ID, "created_at": now},
                },
                projection={"credits": True, "_id": False},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error(f"Failed to credit {amount} credits to user {user_id}: {e}")
            raise PersistenceUnavailableError(str(e))

        logger.info(f"Credited {amount} credits to user {user_id}, balance now {doc['credits']}")
        return int(doc["credits"])

    async def change_plan(self, user: User, plan_id: str) -> User:
        """
        Move a user onto ``plan_id`` and reset the balance to its allotment.

        Priced plans are paid for first: an existing subscription is moved
        to the new price, otherwise a new one is created. Moving to an
        unpriced plan cancels the existing subscription. The stored plan
        and balance are only written after the processor confirms. Unused
        credits from the previous plan are not carried over.
        """
        _require_user_id(user.id)
        plan = get_plan(self.plans, plan_id)

        account = await self.get_account(user.id)
        current_subscription = None
        if account and account.subscription_status != "canceled":
            current_subscription = account.stripe_subscription_id

        now = utcnow()
        fields: Dict[str, Any] = {
            "plan": plan.id,
            "credits": plan.credits,
            "updated_at": now,
        }
        if user.email:
            fields["email"] = user.email

        if plan.is_paid:
            receipt = await self.payments.ensure_subscription(
                user.id, user.email, plan.price_id, current_subscription
            )
            fields["stripe_customer_id"] = receipt.customer_id
            fields["stripe_subscription_id"] = receipt.subscription_id
            fields["subscription_status"] = receipt.status
        elif current_subscription:
            await self.payments.cancel_subscription(current_subscription)
            fields["subscription_status"] = "canceled"

        try:
            doc = await self.users.find_one_and_update(
                {"user_id": user.id},
                {"$set": fields, "$setOnInsert": {"created_at": now}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error(
                f"Failed to store plan {plan.id} for user {user.id} "
                f"(subscription {fields.get('stripe_subscription_id')}): {e}"
            )
            raise PersistenceUnavailableError(str(e))

        logger.info(f"User {user.id} moved to plan {plan.id} with {plan.credits} credits")
        return User.from_document(doc)

    async def get_account(self, user_id: str) -> Optional[User]:
        _require_user_id(user_id)
        try:
            doc = await self.users.find_one({"user_id": user_id})
        except PyMongoError as e:
            logger.error(f"Failed to read account for user {user_id}: {e}")
            raise PersistenceUnavailableError(str(e))
        return User.from_document(doc) if doc else None

    async def ensure_account(self, user_id: str, email: Optional[str] = None) -> User:
        """Create the ledger record with the free allotment on first sight."""
        _require_user_id(user_id)
        free = get_plan(self.plans, FREE_PLAN_ID)
        now = utcnow()
        update: Dict[str, Any] = {
            "$setOnInsert": {
                "plan": free.id,
                "credits": free.credits,
                "created_at": now,
            }
        }
        if email:
            update["$set"] = {"email": email}
        try:
            doc = await self.users.find_one_and_update(
                {"user_id": user_id},
                update,
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error(f"Failed to ensure account for user {user_id}: {e}")
            raise PersistenceUnavailableError(str(e))
        return User.from_document(doc)

    async def renew_subscription(
        self, customer_id: str, subscription_id: str, invoice_id: str
    ) -> Optional[User]:
        """
        Grant a fresh allotment for the stored plan after a paid renewal invoice.

        Only the user's current subscription renews, and each invoice is
        applied once: a redelivered invoice leaves the balance alone.
        """
        account = await self._find_by_customer(customer_id, subscription_id)
        if account is None:
            logger.warning(f"Renewal for unknown subscription {subscription_id} (customer {customer_id})")
            return None
        plan = get_plan(self.plans, account.plan)
        doc = await self._update_by_customer(
            customer_id,
            {
                "credits": plan.credits,
                "subscription_status": "active",
                "last_renewal_invoice_id": invoice_id,
            },
            stripe_subscription_id=subscription_id,
            plan=plan.id,
            last_renewal_invoice_id={"$ne": invoice_id},
        )
        if doc is None:
            logger.info(f"Invoice {invoice_id} already applied or plan changed for user {account.id}")
            return None
        logger.info(f"Renewed plan {plan.id} for user {account.id}: {plan.credits} credits")
        return User.from_document(doc)

    async def cancel_subscription(self, customer_id: str, subscription_id: str) -> Optional[User]:
        """Drop a user back to the free plan; the balance is left as is."""
        doc = await self._update_by_customer(
            customer_id,
            {"plan": FREE_PLAN_ID, "subscription_status": "canceled"},
            stripe_subscription_id=subscription_id,
        )
        if doc is None:
            logger.warning(f"Cancellation for unknown subscription {subscription_id} (customer {customer_id})")
            return None
        logger.info(f"Subscription canceled for user {doc['user_id']}, moved to free plan")
        return User.from_document(doc)

    async def mark_past_due(self, customer_id: str, subscription_id: str) -> Optional[User]:
        doc = await self._update_by_customer(
            customer_id,
            {"subscription_status": "past_due"},
            stripe_subscription_id=subscription_id,
        )
        if doc is None:
            logger.warning(f"Payment failure for unknown subscription {subscription_id} (customer {customer_id})")
            return None
        return User.from_document(doc)

    async def _find_by_customer(self, customer_id: str, subscription_id: str) -> Optional[User]:
        try:
            doc = await self.users.find_one(
                {"stripe_customer_id": customer_id, "stripe_subscription_id": subscription_id}
            )
        except PyMongoError as e:
            logger.error(f"Failed to look up Stripe customer {customer_id}: {e}")
            raise PersistenceUnavailableError(str(e))
        return User.from_document(doc) if doc else None

    async def _update_by_customer(self, customer_id: str, fields: Dict[str, Any], **match):
        fields = {**fields, "updated_at": utcnow()}
        try:
            return await self.users.find_one_and_update(
                {"stripe_customer_id": customer_id, **match},
                {"$set": fields},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error(f"Failed to update Stripe customer {customer_id}: {e}")
            raise PersistenceUnavailableError(str(e))


async def get_ledger() -> CreditsLedger:
    """FastAPI dependency wiring the ledger to MongoDB and Stripe."""
    users = await get_users_collection()
    return CreditsLedger(users, StripePaymentProcessor(settings.STRIPE_SECRET_KEY), PLANS)

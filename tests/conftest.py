import asyncio
import copy
import itertools
import os

os.environ.setdefault("TEST_MODE", "true")

import pytest
from pymongo import ReturnDocument

from celebthumb.core.exceptions import PaymentFailedError
from celebthumb.services.ledger import CreditsLedger
from celebthumb.services.payments import SubscriptionReceipt
from celebthumb.services.plans import PLANS


def _matches(doc, filter):
    for key, cond in filter.items():
        if isinstance(cond, dict):
            value = doc.get(key)
            if "$gte" in cond and (value is None or value < cond["$gte"]):
                return False
            if "$ne" in cond and value == cond["$ne"]:
                return False
        elif doc.get(key) != cond:
            return False
    return True


def _project(doc, projection):
    if doc is None or not projection:
        return doc
    keep = [key for key, wanted in projection.items() if wanted and key != "_id"]
    return {key: doc[key] for key in keep if key in doc}


class FakeUsersCollection:
    """
    In-memory stand-in for the Motor users collection.

    Each call yields to the event loop once, then matches and applies its
    update without awaiting again, the way MongoDB applies a single
    document update atomically.
    """

    def __init__(self):
        self.docs = []
        self.calls = []
        self.error = None
        self.write_error = None
        self._ids = itertools.count(1)

    def seed(self, user_id, credits, plan="free", **fields):
        doc = {"_id": next(self._ids), "user_id": user_id, "plan": plan, "credits": credits}
        doc.update(fields)
        self.docs.append(doc)
        return doc

    def get(self, user_id):
        for doc in self.docs:
            if doc["user_id"] == user_id:
                return doc
        return None

    async def find_one(self, filter, projection=None):
        self.calls.append(("find_one", filter))
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        doc = next((d for d in self.docs if _matches(d, filter)), None)
        return _project(copy.deepcopy(doc), projection)

    async def find_one_and_update(
        self, filter, update, projection=None, upsert=False,
        return_document=ReturnDocument.BEFORE
    ):
        self.calls.append(("find_one_and_update", filter, update))
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        if self.write_error:
            raise self.write_error

        doc = next((d for d in self.docs if _matches(d, filter)), None)
        inserted = False
        if doc is None:
            if not upsert:
                return None
            doc = {k: v for k, v in filter.items() if not isinstance(v, dict)}
            doc["_id"] = next(self._ids)
            self.docs.append(doc)
            inserted = True

        before = None if inserted else copy.deepcopy(doc)
        for key, value in update.get("$set", {}).items():
            doc[key] = value
        for key, value in update.get("$inc", {}).items():
            doc[key] = doc.get(key, 0) + value
        if inserted:
            for key, value in update.get("$setOnInsert", {}).items():
                doc[key] = value

        result = copy.deepcopy(doc) if return_document == ReturnDocument.AFTER else before
        return _project(result, projection)


class FakePaymentProcessor:
    def __init__(self):
        self.calls = []
        self.canceled = []
        self.decline_with = None

    async def ensure_subscription(self, user_id, email, price_id, subscription_id=None):
        self.calls.append((user_id, email, price_id, subscription_id))
        if self.decline_with:
            raise PaymentFailedError(self.decline_with)
        return SubscriptionReceipt(
            customer_id=f"cus_{user_id}",
            subscription_id=subscription_id or f"sub_{len(self.calls)}",
            status="active",
        )

    async def cancel_subscription(self, subscription_id):
        self.canceled.append(subscription_id)
        if self.decline_with:
            raise PaymentFailedError(self.decline_with)


@pytest.fixture
def users():
    return FakeUsersCollection()


@pytest.fixture
def payments():
    return FakePaymentProcessor()


@pytest.fixture
def ledger(users, payments):
    return CreditsLedger(users, payments, PLANS)

from pydantic import BaseModel, EmailStr, Field
from typing import Any, Dict, Optional
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    """Ledger view of a user: identity fields plus plan and balance."""
    id: str = Field(alias="user_id")
    email: Optional[EmailStr] = None
    plan: str = "free"  # free, pro, enterprise
    credits: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None  # active, trialing, canceled, past_due
    last_renewal_invoice_id: Optional[str] = None

    class Config:
        populate_by_name = True

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "User":
        doc = dict(doc)
        doc.pop("_id", None)
        return cls(**doc)


class AuthenticatedUser(BaseModel):
    """Identity resolved from the caller's ID token."""
    uid: str
    email: Optional[EmailStr] = None


class BalanceResponse(BaseModel):
    user_id: str
    credits: int

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: Optional[str] = None
    plan: str
    messages_used: int = 0
    messages_limit: int
    tokens_used: int = 0
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None
    billing_event_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @staticmethod
    def normalized_email(email: str) -> str:
        return email.strip().lower()


class UsageSnapshot(BaseModel):
    """Usage numbers shown to the client after each request."""
    model_config = ConfigDict(frozen=True)

    used: int
    limit: int
    plan: str

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CreateIntentRequest(BaseModel):
    plan_name: str = Field(alias="planName", min_length=1, max_length=64)

    model_config = ConfigDict(populate_by_name=True)


class PaymentIntentResponse(BaseModel):
    session_id: str
    expires_at: datetime

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SubscriptionSummary(BaseModel):
    plan_name: Optional[str] = None
    status: str
    is_trial: bool = False
    current_period_end: datetime
    card_mask: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaymentStatusResponse(BaseModel):
    status: str
    subscription: Optional[SubscriptionSummary] = None
    failure_reason: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

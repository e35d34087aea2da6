from pydantic import BaseModel
from typing import List

from celebthumb.services.plans import Plan


class CreateSubscriptionRequest(BaseModel):
    planId: str


class PlanListResponse(BaseModel):
    plans: List[Plan]

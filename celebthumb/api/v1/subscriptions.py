from fastapi import APIRouter, Depends, HTTPException, status
from celebthumb.api.v1.auth import get_current_user
from celebthumb.schemas.subscription import CreateSubscriptionRequest, PlanListResponse
from celebthumb.schemas.user import AuthenticatedUser, User
from celebthumb.services.ledger import CreditsLedger, get_ledger
from celebthumb.services.plans import PLANS
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


@router.get("/plans", response_model=PlanListResponse)
async def list_plans():
    """List the available subscription plans."""
    return PlanListResponse(plans=list(PLANS.values()))


@router.post("", response_model=User, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request: CreateSubscriptionRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    ledger: CreditsLedger = Depends(get_ledger)
):
    """
    Subscribe the caller to a plan.

    Paid plans are charged through Stripe before the plan is stored. The
    balance is reset to the plan's allotment.
    """
    logger.info(f"User {user.uid} requested plan {request.planId}")
    try:
        return await ledger.change_plan(User(id=user.uid, email=user.email), request.planId)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

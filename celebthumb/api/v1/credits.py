from fastapi import APIRouter, Depends, HTTPException
from celebthumb.api.v1.auth import get_current_user
from celebthumb.schemas.user import AuthenticatedUser, BalanceResponse, User
from celebthumb.services.ledger import CreditsLedger, get_ledger

router = APIRouter(prefix="/credits", tags=["Credits"])


@router.get("", response_model=BalanceResponse)
async def get_credits(
    user: AuthenticatedUser = Depends(get_current_user),
    ledger: CreditsLedger = Depends(get_ledger)
):
    """Get the caller's credit balance."""
    try:
        credits = await ledger.get_balance(user.uid)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return BalanceResponse(user_id=user.uid, credits=credits)


@router.post("/account", response_model=User)
async def ensure_account(
    user: AuthenticatedUser = Depends(get_current_user),
    ledger: CreditsLedger = Depends(get_ledger)
):
    """
    Create the caller's ledger record on first sign-in.

    New accounts start on the free plan with its allotment; calling this
    again returns the existing record unchanged.
    """
    try:
        return await ledger.ensure_account(user.uid, user.email)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from shared.credits import effective_balance, get_credits_per_image, grant_credits, is_privileged, load_account
from shared.models import User

from ..dependencies import get_current_user, get_db, require_admin
from ..schemas.billing import CreditBalanceResponse, CreditGrantRequest, CreditGrantResponse

router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/credits", response_model=CreditBalanceResponse)
async def get_credits(
    session: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> CreditBalanceResponse:
    def read(sync_session: Session) -> CreditBalanceResponse:
        account = load_account(sync_session, current_user.id)
        return CreditBalanceResponse(
            credits_balance=account.credits_balance,
            effective_balance=effective_balance(account.credits_balance, account.role),
            credits_per_image=get_credits_per_image(),
            privileged=is_privileged(account.role),
        )

    return await session.run_sync(read)


@router.post("/grants", response_model=CreditGrantResponse)
async def create_grant(
    payload: CreditGrantRequest,
    session: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> CreditGrantResponse:
    def grant(sync_session: Session) -> int:
        return grant_credits(sync_session, payload.user_id, payload.amount)

    balance = await session.run_sync(grant)
    return CreditGrantResponse(user_id=payload.user_id, credits_balance=balance)

from __future__ import annotations

from uuid import UUID

from pydantic import BaseModel, Field


class CreditBalanceResponse(BaseModel):
    credits_balance: int
    effective_balance: int
    credits_per_image: int
    privileged: bool = False


class CreditGrantRequest(BaseModel):
    user_id: UUID
    amount: int = Field(..., gt=0)
    reason: str | None = None


class CreditGrantResponse(BaseModel):
    user_id: UUID
    credits_balance: int

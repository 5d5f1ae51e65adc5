"""Credit ledger: estimates, reservations, refunds and grants.

Balances are integers.  Mutations lock the user row so concurrent runs for the
same user serialize on the balance; nothing else in a run needs cross-run
locking.
"""
from __future__ import annotations

import math
import uuid
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from .config import get_settings
from .errors import InsufficientCredits, ValidationError
from .models import User


DEFAULT_CREDITS_PER_IMAGE = 6
MAX_IMAGES_PER_LANGUAGE = 4
MAX_LANGUAGES = 200
PRIVILEGED_ROLES = frozenset({"developer", "admin"})


def _clamp_int(value: float, lower: int, upper: int) -> int:
    return min(max(int(math.floor(value)), lower), upper)


def _as_number(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


@dataclass(frozen=True)
class CreditEstimate:
    total_images: int
    credits_per_image: int
    credits_estimated: int
    images_per_language: int
    language_count: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class Reservation:
    """Outcome of a successful :func:`reserve` call."""

    user_id: uuid.UUID
    amount: int
    balance_before: int
    balance_after: int
    charged_at: Optional[datetime]
    stored_before: int = 0
    stored_after: int = 0

    @property
    def charged(self) -> bool:
        return self.amount > 0


def get_credits_per_image() -> int:
    configured = _as_number(get_settings().credits_per_image)
    if configured is None:
        return DEFAULT_CREDITS_PER_IMAGE
    return _clamp_int(configured, 1, 100)


def normalize_images_per_language(value: Any) -> int:
    number = _as_number(value)
    if number is None:
        return 1
    return _clamp_int(number, 1, MAX_IMAGES_PER_LANGUAGE)


def estimate(
    language_count: int,
    images_per_language: Any,
    *,
    credits_per_image: Optional[int] = None,
) -> CreditEstimate:
    """Price a run: ``language_count * images_per_language * credits_per_image``."""

    per_image = credits_per_image if credits_per_image is not None else get_credits_per_image()
    per_image = _clamp_int(per_image, 1, 100)
    languages = _clamp_int(language_count, 0, MAX_LANGUAGES)
    images = normalize_images_per_language(images_per_language)
    total_images = languages * images
    return CreditEstimate(
        total_images=total_images,
        credits_per_image=per_image,
        credits_estimated=total_images * per_image,
        images_per_language=images,
        language_count=languages,
    )


def is_privileged(role: Optional[str]) -> bool:
    return role in PRIVILEGED_ROLES


def effective_balance(balance: int, role: Optional[str]) -> int:
    """Balance used for affordability checks; privileged roles get a floor."""

    if is_privileged(role):
        return max(balance, get_settings().privileged_credits_floor)
    return balance


def load_account(session: Session, user_id: uuid.UUID, *, lock: bool = False) -> User:
    user = session.get(User, user_id, with_for_update=lock, populate_existing=True)
    if user is None:
        raise ValidationError(f"Unknown user {user_id}")
    return user


def ensure_affordable(user: User, credit_estimate: CreditEstimate) -> int:
    """Return the effective balance or raise :class:`InsufficientCredits`."""

    available = effective_balance(user.credits_balance, user.role)
    required = credit_estimate.credits_estimated
    if required > 0 and available < required:
        raise InsufficientCredits(
            required,
            available,
            credits_per_image=credit_estimate.credits_per_image,
            total_images=credit_estimate.total_images,
        )
    return available


def reserve(session: Session, user_id: uuid.UUID, amount: int) -> Reservation:
    """Debit ``amount`` from the user's stored balance and commit.

    The debit is computed from the effective balance, so a privileged user
    relying on the floor ends up with ``floor - amount`` stored.
    """

    if amount < 0:
        raise ValidationError("Reservation amount must be non-negative")
    user = load_account(session, user_id, lock=True)
    available = effective_balance(user.credits_balance, user.role)
    if amount > 0 and available < amount:
        session.rollback()
        raise InsufficientCredits(amount, available)

    stored = user.credits_balance
    if amount == 0:
        session.rollback()
        return Reservation(
            user_id=user_id,
            amount=0,
            balance_before=available,
            balance_after=available,
            charged_at=None,
            stored_before=stored,
            stored_after=stored,
        )

    now = datetime.now(UTC)
    user.credits_balance = available - amount
    user.updated_at = now
    session.commit()
    return Reservation(
        user_id=user_id,
        amount=amount,
        balance_before=available,
        balance_after=available - amount,
        charged_at=now,
        stored_before=stored,
        stored_after=available - amount,
    )


def release(session: Session, reservation: Reservation) -> int:
    """Undo ``reservation``'s effect on the stored balance and return the new balance.

    Used when run creation fails after the debit.  The stored delta is
    reversed rather than ``amount`` so a privileged user charged from the
    floor goes back to the balance they had before.
    """

    user = load_account(session, reservation.user_id, lock=True)
    user.credits_balance = user.credits_balance + (
        reservation.stored_before - reservation.stored_after
    )
    user.updated_at = datetime.now(UTC)
    session.commit()
    return user.credits_balance


def grant_credits(session: Session, user_id: uuid.UUID, amount: int) -> int:
    """Add credits to a user's stored balance and return the new balance."""

    if amount < 0:
        raise ValidationError("Credit grants must be non-negative")
    user = load_account(session, user_id, lock=True)
    user.credits_balance = user.credits_balance + amount
    user.updated_at = datetime.now(UTC)
    session.commit()
    return user.credits_balance


def billing_snapshot(credit_estimate: CreditEstimate, reservation: Reservation) -> Dict[str, Any]:
    """Immutable billing record stored on the run recipe."""

    return {
        "credits_per_image": credit_estimate.credits_per_image,
        "credits_estimated": credit_estimate.credits_estimated,
        "credits_charged": reservation.amount,
        "images_per_language": credit_estimate.images_per_language,
        "total_images": credit_estimate.total_images,
        "credits_balance_before": reservation.balance_before,
        "credits_balance_after": reservation.balance_after,
        "charged_at": reservation.charged_at.isoformat() if reservation.charged_at else None,
    }

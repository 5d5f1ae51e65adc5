"""Password hashing and bearer-token sessions."""
from __future__ import annotations

import secrets
import uuid
from typing import Optional

from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import SessionToken, User

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_session_token(session: Session, user: User) -> SessionToken:
    token = SessionToken(id=uuid.uuid4(), user_id=user.id, token=secrets.token_urlsafe(32))
    session.add(token)
    session.commit()
    return token


def get_user_by_token(session: Session, token: str) -> Optional[User]:
    stmt = (
        select(User)
        .join(SessionToken, SessionToken.user_id == User.id)
        .where(SessionToken.token == token)
    )
    return session.scalars(stmt).one_or_none()

"""
User Directory - Buyer lookup, creation and one-time access tokens.
"""

import secrets
from datetime import UTC, datetime, timedelta
from typing import Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import User
from app.exceptions import PersistenceError, WriteVerificationError
from app.models.domain import UserData

logger = get_logger(__name__)

MIN_TOKEN_TTL = timedelta(seconds=60)


class UserDirectory(Protocol):
    """Buyer accounts keyed by email."""

    async def find_by_email(self, email: str) -> UserData | None:
        ...

    async def get_user(self, user_id: int) -> UserData | None:
        ...

    async def create_user(self, email: str, name: str | None) -> UserData:
        ...

    async def update_name(self, user_id: int, name: str) -> None:
        ...

    async def issue_access_token(self, user_id: int, ttl: timedelta) -> str:
        ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _to_user_data(user: User, is_new: bool = False) -> UserData:
    return UserData(user_id=user.id, email=user.email, name=user.name, is_new=is_new)


class SqlUserDirectory:
    """UserDirectory backed by the users table."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _find_row(self, email: str) -> User | None:
        result = await self.session.execute(
            select(User).where(func.lower(User.email) == normalize_email(email))
        )
        return result.scalar_one_or_none()

    async def find_by_email(self, email: str) -> UserData | None:
        user = await self._find_row(email)
        return _to_user_data(user) if user is not None else None

    async def get_user(self, user_id: int) -> UserData | None:
        user = await self.session.get(User, user_id)
        return _to_user_data(user) if user is not None else None

    async def create_user(self, email: str, name: str | None) -> UserData:
        """
        Create a buyer account.

        A concurrent insert of the same email resolves to the existing row.
        """
        user = User(email=normalize_email(email), name=name)
        try:
            async with self.session.begin_nested():
                self.session.add(user)
                await self.session.flush()
        except IntegrityError as e:
            logger.warning("user_create_race", email=email, error=str(e))
            existing = await self._find_row(email)
            if existing is None:
                raise PersistenceError(f"User creation failed for {email}: {e}") from e
            return _to_user_data(existing)

        verified = await self.session.get(User, user.id)
        if verified is None:
            raise WriteVerificationError(f"User {email} not found after insert")

        logger.info("user_created", user_id=verified.id)
        return _to_user_data(verified, is_new=True)

    async def update_name(self, user_id: int, name: str) -> None:
        user = await self.session.get(User, user_id)
        if user is None or user.name == name:
            return
        user.name = name
        await self.session.flush()

    async def issue_access_token(self, user_id: int, ttl: timedelta) -> str:
        """Store a fresh random token (hex, 64 chars) valid for at least a minute."""
        user = await self.session.get(User, user_id)
        if user is None:
            raise PersistenceError(f"Cannot issue access token, user {user_id} missing", user_id=user_id)

        token = secrets.token_hex(32)
        user.access_token = token
        user.access_expires = datetime.now(UTC) + max(ttl, MIN_TOKEN_TTL)
        await self.session.flush()

        logger.info("access_token_issued", user_id=user_id, expires=user.access_expires.isoformat())
        return token

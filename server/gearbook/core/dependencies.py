"""FastAPI dependencies for database sessions, time and the acting identity."""

from dataclasses import dataclass, field
from typing import AsyncGenerator, Optional
from uuid import UUID

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from .clock import Clock, system_clock
from .database import get_async_session
from .exceptions import ForbiddenError, ValidationError


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Database dependency that provides async database sessions.

    Yields:
        AsyncSession: Database session
    """
    async for session in get_async_session():
        yield session


def get_clock() -> Clock:
    """Time source for request handlers. Tests override this with a FrozenClock."""
    return system_clock


@dataclass(frozen=True)
class Actor:
    """User id, role ids and admin standing of the caller, already resolved upstream."""

    user_id: int
    role_ids: list[int] = field(default_factory=list)
    is_admin: bool = False

    def require_admin(self, action: str) -> None:
        if not self.is_admin:
            raise ForbiddenError(f"Only guild admins may {action}", self.user_id)


def _parse_role_ids(raw: Optional[str]) -> list[int]:
    if not raw:
        return []
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise ValidationError(
            detail="X-Role-Ids must be a comma separated list of integers",
            errors={"X-Role-Ids": raw},
        )


async def get_actor(
    user_id: Optional[str] = Header(None, alias="X-User-Id"),
    role_ids: Optional[str] = Header(None, alias="X-Role-Ids"),
    is_admin: bool = Header(False, alias="X-Admin"),
) -> Actor:
    """
    Read the acting identity from request headers.

    Authentication happens in front of this service; the headers are trusted.
    ``X-Admin: true`` marks a caller with guild admin permissions.
    """
    if not user_id:
        raise ValidationError(detail="X-User-Id header is required")
    try:
        parsed_user_id = int(user_id)
    except ValueError:
        raise ValidationError(detail="X-User-Id must be an integer", errors={"X-User-Id": user_id})

    return Actor(user_id=parsed_user_id, role_ids=_parse_role_ids(role_ids), is_admin=is_admin)


DatabaseSession = Depends(get_db)
CurrentClock = Depends(get_clock)
CurrentActor = Depends(get_actor)


def parse_uuid(value: str, field_name: str = "id") -> UUID:
    """Parse an ID from a request, answering 400 instead of 500 on garbage."""
    try:
        return UUID(str(value))
    except ValueError:
        raise ValidationError(detail=f"{field_name} is not a valid ID", errors={field_name: value})

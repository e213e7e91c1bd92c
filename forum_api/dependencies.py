from typing import Annotated

from fastapi import Depends, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from forum_api.config import settings
from forum_api.database import get_db
from forum_api.exceptions import Forbidden, Unauthorized
from forum_api.models import User, UserRole
from forum_api.security import decode_access_token

# auto_error=False so a missing header reaches get_current_user and is
# reported as 401 in the forum's error envelope instead of FastAPI's 403.
bearer_scheme = HTTPBearer(auto_error=False)

SessionDep = Annotated[AsyncSession, Depends(get_db)]


async def get_current_user(
    db: SessionDep,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> User:
    """
    Resolve the bearer token to an active ``User``.

    Raises ``Unauthorized`` when the token is missing, invalid or expired,
    or when its user no longer exists or has been deactivated.
    """
    if credentials is None:
        raise Unauthorized("Access token required")

    user_id = decode_access_token(credentials.credentials)
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None:
        raise Unauthorized("User not found")
    if not user.is_active:
        raise Unauthorized("Your account has been deactivated")
    return user


CurrentUserDep = Annotated[User, Depends(get_current_user)]


def require_role(*roles: UserRole):
    """
    Build a dependency that admits only users holding one of *roles*.

    Usage in a router::

        @router.delete("/{post_id}")
        async def delete_post(admin: User = Depends(require_role(UserRole.ADMIN))):
            ...
    """

    async def _checker(user: CurrentUserDep) -> User:
        if user.role not in roles:
            raise Forbidden("Insufficient permissions")
        return user

    return _checker


class PaginationParams:
    """
    Page / limit query parameters for listing endpoints.

    The ceiling on ``limit`` is ``settings.MAX_PAGE_SIZE``; larger values
    are rejected as a bad request.
    """

    def __init__(
        self,
        page: int = Query(1, ge=1, description="Page number (1-based)."),
        limit: int = Query(
            settings.DEFAULT_PAGE_SIZE,
            ge=1,
            le=settings.MAX_PAGE_SIZE,
            description=f"Number of posts returned per page (max {settings.MAX_PAGE_SIZE}).",
        ),
    ) -> None:
        self.page = page
        self.limit = limit

"""
User service: registration, login and the admin-only account operations.

Username and email uniqueness is checked up front so callers get a clear
``Conflict``; the database unique constraints remain the final word and a
lost race at flush time is reported the same way.

Deleting a user is a destructive cascade run as one ``atomic`` unit:
their votes, the votes on their content, their comments, their posts (with
everything under them) and finally the account.  Targets that lost one of
the user's votes have their tallies recomputed inside the same unit so no
counter is left pointing at deleted ledger rows.
"""
import logging
from urllib.parse import quote_plus

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from forum_api.cache import cache
from forum_api.database import atomic
from forum_api.exceptions import BadRequest, Conflict, NotFound, Unauthorized
from forum_api.models import Comment, Post, User, UserRole
from forum_api.schemas import LoginRequest, PasswordReset, RegisterRequest, UserCreate, UserUpdate
from forum_api.security import create_access_token, hash_password, verify_password
from forum_api.services import comment_service, post_service, vote_service
from forum_api.services.vote_service import TargetKind

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role,
        "is_active": user.is_active,
        "avatar": user.avatar,
        "created_at": user.created_at.isoformat() if user.created_at else None,
        "updated_at": user.updated_at.isoformat() if user.updated_at else None,
    }


def avatar_url(full_name: str) -> str:
    return (
        f"https://ui-avatars.com/api/?name={quote_plus(full_name)}"
        "&background=52c41a&color=fff"
    )


async def _get_user(db: AsyncSession, user_id: int) -> User:
    user = (await db.execute(select(User).where(User.id == user_id))).scalar_one_or_none()
    if user is None:
        raise NotFound("User not found")
    return user


async def _ensure_unique(
    db: AsyncSession,
    username: str | None,
    email: str | None,
    exclude_id: int | None = None,
) -> None:
    clauses = []
    if username:
        clauses.append(User.username == username)
    if email:
        clauses.append(User.email == email)
    if not clauses:
        return
    q = select(User.id).where(or_(*clauses))
    if exclude_id is not None:
        q = q.where(User.id != exclude_id)
    if (await db.execute(q.limit(1))).scalar_one_or_none() is not None:
        raise Conflict("A user with this username or email already exists")


async def _insert_user(
    db: AsyncSession,
    *,
    username: str,
    email: str,
    password: str,
    full_name: str,
    role: UserRole,
) -> User:
    await _ensure_unique(db, username, email)
    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        full_name=full_name,
        role=role,
        is_active=True,
        avatar=avatar_url(full_name),
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError as exc:
        raise Conflict("A user with this username or email already exists") from exc
    await db.refresh(user)
    return user


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def register(db: AsyncSession, data: RegisterRequest) -> dict:
    """Create a student or teacher account and return ``{"user", "token"}``."""
    user = await _insert_user(
        db,
        username=data.username,
        email=data.email,
        password=data.password,
        full_name=data.full_name,
        role=UserRole(data.role),
    )
    logger.info("Registered user %s (%s)", user.id, user.role.value)
    return {"user": serialize_user(user), "token": create_access_token(user.id)}


async def login(db: AsyncSession, data: LoginRequest) -> dict:
    """
    Exchange email and password for a token.

    Unknown email and wrong password give the same ``Unauthorized`` so the
    response does not reveal which accounts exist.
    """
    user = (await db.execute(select(User).where(User.email == data.email))).scalar_one_or_none()
    if user is None or not verify_password(data.password, user.password_hash):
        raise Unauthorized("Invalid credentials")
    if not user.is_active:
        raise Unauthorized(
            "Your account has been deactivated. Please contact the administrator for assistance."
        )
    return {"user": serialize_user(user), "token": create_access_token(user.id)}


# ---------------------------------------------------------------------------
# Admin operations
# ---------------------------------------------------------------------------

async def get_users(db: AsyncSession) -> list[dict]:
    q = select(User).order_by(User.created_at.desc(), User.id.desc())
    return [serialize_user(u) for u in (await db.execute(q)).scalars().all()]


async def create_user(db: AsyncSession, data: UserCreate) -> dict:
    user = await _insert_user(
        db,
        username=data.username,
        email=data.email,
        password=data.password,
        full_name=data.full_name,
        role=data.role,
    )
    return serialize_user(user)


async def update_user(db: AsyncSession, user_id: int, data: UserUpdate) -> dict:
    """Apply the fields set in *data* to *user_id*."""
    user = await _get_user(db, user_id)
    changes = data.model_dump(exclude_unset=True, exclude_none=True)

    await _ensure_unique(
        db,
        changes.get("username") if changes.get("username") != user.username else None,
        changes.get("email") if changes.get("email") != user.email else None,
        exclude_id=user.id,
    )
    for field, value in changes.items():
        setattr(user, field, value)
    try:
        await db.flush()
    except IntegrityError as exc:
        raise Conflict("A user with this username or email already exists") from exc
    await db.refresh(user)
    return serialize_user(user)


async def toggle_status(db: AsyncSession, actor: User, user_id: int) -> dict:
    if user_id == actor.id:
        raise BadRequest("Cannot deactivate your own account")
    user = await _get_user(db, user_id)
    user.is_active = not user.is_active
    await db.flush()
    await db.refresh(user)
    state = "activated" if user.is_active else "deactivated"
    logger.info("User %s %s by admin %s", user.id, state, actor.id)
    return serialize_user(user)


async def reset_password(db: AsyncSession, user_id: int, data: PasswordReset) -> None:
    user = await _get_user(db, user_id)
    user.password_hash = hash_password(data.new_password)
    await db.flush()


async def delete_user(db: AsyncSession, actor: User, user_id: int) -> None:
    """Remove *user_id* and everything they authored or cast, atomically."""
    if user_id == actor.id:
        raise BadRequest("Cannot delete your own account")

    async with atomic(db):
        await _get_user(db, user_id)

        post_ids = (
            await db.execute(select(Post.id).where(Post.author_id == user_id))
        ).scalars().all()
        comment_ids = (
            await db.execute(select(Comment.id).where(Comment.author_id == user_id))
        ).scalars().all()

        voted_posts = await vote_service.delete_votes_by(db, TargetKind.POST, user_id)
        voted_comments = await vote_service.delete_votes_by(db, TargetKind.COMMENT, user_id)

        await comment_service.purge_comments(db, comment_ids)
        await post_service.purge_posts(db, post_ids)

        # Targets that survive lost this user's vote; bring their tallies back
        # in line with the ledger before the unit commits.
        await vote_service.recompute_tallies(
            db, TargetKind.POST, set(voted_posts) - set(post_ids)
        )
        await vote_service.recompute_tallies(
            db, TargetKind.COMMENT, set(voted_comments) - set(comment_ids)
        )

        await db.execute(
            delete(User).where(User.id == user_id).execution_options(synchronize_session="fetch")
        )

    logger.info(
        "Deleted user %s with %d post(s), %d comment(s) and %d vote(s)",
        user_id, len(post_ids), len(comment_ids), len(voted_posts) + len(voted_comments),
    )
    await cache.invalidate_posts()

"""
Comment service: threaded comments on posts.

A reply names its parent through ``parent_comment_id``; the parent must
belong to the same post.  Comments are never edited through the API and
only disappear through the post or user delete cascades.
"""
from collections.abc import Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from forum_api.cache import cache
from forum_api.exceptions import BadRequest, NotFound
from forum_api.models import Comment, Post, User
from forum_api.schemas import CommentCreate
from forum_api.services import vote_service
from forum_api.services.vote_service import TargetKind


def _comment_to_dict(
    comment: Comment,
    voters: dict[str, list[int]],
    author: User | None = None,
) -> dict:
    author = author or comment.author
    return {
        "id": comment.id,
        "content": comment.content,
        "post_id": comment.post_id,
        "author_id": comment.author_id,
        "author_name": author.full_name if author else None,
        "author_role": author.role if author else None,
        "parent_comment_id": comment.parent_comment_id,
        "votes": comment.vote_count,
        "upvoted_by": voters["upvoted_by"],
        "downvoted_by": voters["downvoted_by"],
        "created_at": comment.created_at.isoformat() if comment.created_at else None,
        "updated_at": comment.updated_at.isoformat() if comment.updated_at else None,
    }


async def _ensure_post(db: AsyncSession, post_id: int) -> None:
    found = (await db.execute(select(Post.id).where(Post.id == post_id))).scalar_one_or_none()
    if found is None:
        raise NotFound("Post not found")


async def add_comment(
    db: AsyncSession,
    post_id: int,
    author: User,
    data: CommentCreate,
) -> dict:
    """
    Add a comment (or a reply, when ``parent_comment_id`` is set) to
    *post_id* and return it serialised.

    Raises ``NotFound`` for a missing post and ``BadRequest`` when the
    parent comment is missing or sits under a different post.
    """
    await _ensure_post(db, post_id)

    if data.parent_comment_id is not None:
        parent_post_id = (
            await db.execute(
                select(Comment.post_id).where(Comment.id == data.parent_comment_id)
            )
        ).scalar_one_or_none()
        if parent_post_id != post_id:
            raise BadRequest("Invalid parent comment")

    comment = Comment(
        content=data.content,
        post_id=post_id,
        author_id=author.id,
        parent_comment_id=data.parent_comment_id,
    )
    db.add(comment)
    await db.flush()
    await db.refresh(comment, ["created_at", "updated_at", "vote_count"])

    # Listing pages carry comment_count.
    await cache.invalidate_posts()
    return _comment_to_dict(comment, {"upvoted_by": [], "downvoted_by": []}, author=author)


async def get_comments(db: AsyncSession, post_id: int) -> list[dict]:
    """Return every comment on *post_id*, oldest first."""
    await _ensure_post(db, post_id)

    q = (
        select(Comment)
        .where(Comment.post_id == post_id)
        .options(joinedload(Comment.author))
        .order_by(Comment.created_at.asc(), Comment.id.asc())
        .execution_options(populate_existing=True)
    )
    comments = list((await db.execute(q)).unique().scalars().all())
    voters = await vote_service.get_voters(db, TargetKind.COMMENT, [c.id for c in comments])
    return [_comment_to_dict(c, voters[c.id]) for c in comments]


async def purge_comments(db: AsyncSession, comment_ids: Iterable[int]) -> None:
    """
    Delete the given comments and the votes on them in the caller's
    transaction.  Replies that are not themselves being deleted are
    detached to top level.
    """
    ids = list(comment_ids)
    if not ids:
        return
    await vote_service.delete_votes_on(db, TargetKind.COMMENT, ids)
    await db.execute(
        update(Comment)
        .where(Comment.parent_comment_id.in_(ids), Comment.id.not_in(ids))
        .values(parent_comment_id=None)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        delete(Comment).where(Comment.id.in_(ids)).execution_options(synchronize_session=False)
    )

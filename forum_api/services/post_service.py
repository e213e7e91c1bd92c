"""
Post service: creation, listing, search, detail and the delete cascade.

Design notes
------------
- The paginated listing goes through the cache-aside layer, with vote
  fields re-read on each hit.  Detail and search reads always hit the
  database so the tally they show is current.
- Author is joined (many-to-one) and tags are select-in loaded; comment
  counts and voter lists are fetched with one batched query each, so a
  page costs a fixed number of statements regardless of its size.
- Tags live in a normalized many-to-many relation.  Search matches tag
  names exactly, so filtering on "java" never returns posts tagged
  "javascript".
- Deleting a post is one ``atomic`` unit that removes children before
  parents: votes on the post, votes on its comments, the comments, the
  tag links, then the post.
"""
import math
from collections.abc import Iterable

from sqlalchemy import delete, desc, asc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload, selectinload

from forum_api.cache import cache
from forum_api.database import atomic
from forum_api.exceptions import NotFound
from forum_api.models import Comment, Post, Tag, User, post_tags
from forum_api.schemas import PostCreate
from forum_api.services import vote_service
from forum_api.services.vote_service import TargetKind

_SORT_ORDERS = {
    "newest": (desc(Post.created_at), desc(Post.id)),
    "oldest": (asc(Post.created_at), asc(Post.id)),
    "most_votes": (desc(Post.vote_count), desc(Post.created_at), desc(Post.id)),
}


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _post_to_dict(
    post: Post,
    tag_names: list[str],
    voters: dict[str, list[int]],
    comment_count: int,
    author: User | None = None,
) -> dict:
    author = author or post.author
    return {
        "id": post.id,
        "title": post.title,
        "content": post.content,
        "tags": tag_names,
        "author_id": post.author_id,
        "author_name": author.full_name if author else None,
        "author_role": author.role if author else None,
        "votes": post.vote_count,
        "upvoted_by": voters["upvoted_by"],
        "downvoted_by": voters["downvoted_by"],
        "comment_count": comment_count,
        "created_at": post.created_at.isoformat() if post.created_at else None,
        "updated_at": post.updated_at.isoformat() if post.updated_at else None,
    }


async def _comment_counts(db: AsyncSession, post_ids: list[int]) -> dict[int, int]:
    if not post_ids:
        return {}
    rows = await db.execute(
        select(Comment.post_id, func.count(Comment.id))
        .where(Comment.post_id.in_(post_ids))
        .group_by(Comment.post_id)
    )
    return {post_id: count for post_id, count in rows.all()}


async def _render(db: AsyncSession, posts: list[Post]) -> list[dict]:
    ids = [p.id for p in posts]
    counts = await _comment_counts(db, ids)
    voters = await vote_service.get_voters(db, TargetKind.POST, ids)
    return [
        _post_to_dict(p, [t.name for t in p.tags], voters[p.id], counts.get(p.id, 0))
        for p in posts
    ]


async def _overlay_votes(db: AsyncSession, items: list[dict]) -> None:
    """Replace the vote fields of serialised posts with current store values."""
    ids = [item["id"] for item in items]
    if not ids:
        return
    rows = await db.execute(select(Post.id, Post.vote_count).where(Post.id.in_(ids)))
    tallies = dict(rows.all())
    voters = await vote_service.get_voters(db, TargetKind.POST, ids)
    for item in items:
        item["votes"] = tallies.get(item["id"], item["votes"])
        item.update(voters[item["id"]])


def _with_relations(q):
    # populate_existing: tallies move through Core UPDATEs, so identity-map
    # copies of a post may hold an old vote_count.
    return q.options(joinedload(Post.author), selectinload(Post.tags)).execution_options(
        populate_existing=True
    )


# ---------------------------------------------------------------------------
# Tag resolution helper
# ---------------------------------------------------------------------------

def _clean_tags(tag_names: Iterable[str]) -> list[str]:
    """Strip blanks and duplicates while keeping the caller's order."""
    seen: dict[str, None] = {}
    for name in tag_names:
        name = name.strip()
        if name:
            seen.setdefault(name, None)
    return list(seen)


async def _resolve_tags(db: AsyncSession, tag_names: list[str]) -> list[Tag]:
    """Return a Tag per name, creating missing ones in the caller's transaction."""
    tags: list[Tag] = []
    for name in tag_names:
        tag = (await db.execute(select(Tag).where(Tag.name == name))).scalar_one_or_none()
        if tag is None:
            tag = Tag(name=name)
            db.add(tag)
            await db.flush()
        tags.append(tag)
    return tags


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def create_post(db: AsyncSession, author: User, data: PostCreate) -> dict:
    tags = await _resolve_tags(db, _clean_tags(data.tags))
    post = Post(title=data.title, content=data.content, author_id=author.id)
    post.tags.extend(tags)
    db.add(post)
    await db.flush()
    await db.refresh(post, ["created_at", "updated_at", "vote_count"])
    await cache.invalidate_posts()
    return _post_to_dict(
        post, [t.name for t in tags], {"upvoted_by": [], "downvoted_by": []}, 0, author=author
    )


async def get_posts(db: AsyncSession, page: int = 1, limit: int = 10) -> dict:
    """
    Return one page of posts, newest first, as
    ``{"items", "total", "page", "limit", "pages"}``.

    Served from Redis when the page is cached.  Tallies and voters are
    always re-read for a cached page, since a page rendered before a vote
    commits may be stored after that vote invalidated the cache.
    """
    cached = await cache.get_post_page(page, limit)
    if cached:
        await _overlay_votes(db, cached["items"])
        return cached

    total: int = (await db.execute(select(func.count()).select_from(Post))).scalar_one()
    q = _with_relations(
        select(Post).order_by(*_SORT_ORDERS["newest"]).offset((page - 1) * limit).limit(limit)
    )
    posts = list((await db.execute(q)).unique().scalars().all())

    payload = {
        "items": await _render(db, posts),
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if total > 0 else 0,
    }
    await cache.set_post_page(page, limit, payload)
    return payload


async def search_posts(
    db: AsyncSession,
    keyword: str = "",
    tags: list[str] | None = None,
    sort_by: str = "newest",
) -> list[dict]:
    """
    Return posts whose title or content contains *keyword* and that carry
    at least one of *tags* (exact name match).  Both filters are optional.

    ``sort_by`` is one of newest, oldest, most_votes or most_comments;
    anything else falls back to newest.
    """
    q = select(Post)
    if keyword:
        pattern = f"%{keyword}%"
        q = q.where(or_(Post.title.ilike(pattern), Post.content.ilike(pattern)))
    tag_names = _clean_tags(tags or [])
    if tag_names:
        q = q.where(Post.tags.any(Tag.name.in_(tag_names)))

    if sort_by == "most_comments":
        comment_total = (
            select(func.count(Comment.id)).where(Comment.post_id == Post.id).scalar_subquery()
        )
        q = q.order_by(desc(comment_total), desc(Post.created_at), desc(Post.id))
    else:
        q = q.order_by(*_SORT_ORDERS.get(sort_by, _SORT_ORDERS["newest"]))

    posts = list((await db.execute(_with_relations(q))).unique().scalars().all())
    return await _render(db, posts)


async def get_post(db: AsyncSession, post_id: int) -> dict:
    q = _with_relations(select(Post).where(Post.id == post_id))
    post = (await db.execute(q)).unique().scalar_one_or_none()
    if post is None:
        raise NotFound("Post not found")
    return (await _render(db, [post]))[0]


async def purge_posts(db: AsyncSession, post_ids: Iterable[int]) -> None:
    """
    Delete the given posts and everything hanging off them, children
    first.  Runs in the caller's transaction.
    """
    ids = list(post_ids)
    if not ids:
        return
    comment_ids = (
        await db.execute(select(Comment.id).where(Comment.post_id.in_(ids)))
    ).scalars().all()

    await vote_service.delete_votes_on(db, TargetKind.POST, ids)
    await vote_service.delete_votes_on(db, TargetKind.COMMENT, comment_ids)
    await db.execute(
        delete(Comment)
        .where(Comment.post_id.in_(ids))
        .execution_options(synchronize_session=False)
    )
    await db.execute(delete(post_tags).where(post_tags.c.post_id.in_(ids)))
    await db.execute(
        delete(Post).where(Post.id.in_(ids)).execution_options(synchronize_session=False)
    )


async def delete_post(db: AsyncSession, post_id: int) -> None:
    """Delete *post_id* with its comments and every vote on either, atomically."""
    async with atomic(db):
        exists = (
            await db.execute(select(Post.id).where(Post.id == post_id))
        ).scalar_one_or_none()
        if exists is None:
            raise NotFound("Post not found")
        await purge_posts(db, [post_id])
    await cache.invalidate_posts()

"""
Post endpoints: creation, listing, search, detail, voting, reconciliation
and the admin delete cascade.
"""
import pytest
from httpx import AsyncClient
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from forum_api.config import settings
from forum_api.models import Comment, CommentVote, Post, PostVote, UserRole
from forum_api.services import vote_service
from forum_api.services.vote_service import TargetKind, VoteChoice


async def _create(client: AsyncClient, headers: dict, title: str, tags: list[str], content="Body"):
    resp = await client.post(
        "/api/v1/posts",
        json={"title": title, "content": content, "tags": tags},
        headers=headers,
    )
    assert resp.status_code == 201
    return resp.json()["data"]


# ---------------------------------------------------------------------------
# Create / list / detail
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_post(async_client: AsyncClient, make_user, headers_for):
    alice = await make_user("alice", UserRole.TEACHER)
    post = await _create(
        async_client, headers_for(alice), "Midterm schedule", ["exams", " exams ", "", "guide"]
    )
    assert post["votes"] == 0
    assert post["tags"] == ["exams", "guide"]
    assert post["author_id"] == alice.id
    assert post["author_role"] == "teacher"
    assert post["upvoted_by"] == [] and post["downvoted_by"] == []
    assert post["comment_count"] == 0
    assert post["created_at"] is not None


@pytest.mark.asyncio
async def test_create_post_requires_auth(async_client: AsyncClient):
    resp = await async_client.post("/api/v1/posts", json={"title": "T", "content": "C"})
    assert resp.status_code == 401
    assert resp.json() == {"success": False, "message": "Access token required"}


@pytest.mark.asyncio
async def test_create_post_validation(async_client: AsyncClient, make_user, headers_for):
    alice = await make_user("alice")
    resp = await async_client.post(
        "/api/v1/posts", json={"title": "", "content": "C"}, headers=headers_for(alice)
    )
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert resp.json()["message"].startswith("title")


@pytest.mark.asyncio
async def test_list_posts_paginated(async_client: AsyncClient, make_user, make_post):
    alice = await make_user("alice")
    for i in range(5):
        await make_post(alice, title=f"Post {i}")

    resp = await async_client.get("/api/v1/posts?page=2&limit=2")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["total"] == 5
    assert body["pages"] == 3
    assert body["page"] == 2
    assert len(body["data"]) == 2

    # Newest first; ties on created_at fall back to id.
    first_page = (await async_client.get("/api/v1/posts?limit=5")).json()["data"]
    ids = [p["id"] for p in first_page]
    assert ids == sorted(ids, reverse=True)


@pytest.mark.asyncio
async def test_list_posts_rejects_bad_limit(async_client: AsyncClient):
    resp = await async_client.get("/api/v1/posts?limit=0")
    assert resp.status_code == 400

    too_many = await async_client.get(f"/api/v1/posts?limit={settings.MAX_PAGE_SIZE + 1}")
    assert too_many.status_code == 400
    assert too_many.json()["message"].startswith("limit")

    at_ceiling = await async_client.get(f"/api/v1/posts?limit={settings.MAX_PAGE_SIZE}")
    assert at_ceiling.status_code == 200
    assert at_ceiling.json()["limit"] == settings.MAX_PAGE_SIZE


@pytest.mark.asyncio
async def test_get_post_detail_and_missing(async_client: AsyncClient, make_user, make_post):
    alice = await make_user("alice")
    post = await make_post(alice, title="Detail", comments=3)

    resp = await async_client.get(f"/api/v1/posts/{post.id}")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["title"] == "Detail"
    assert data["comment_count"] == 3
    assert data["author_name"] == "Alice"
    assert "x-query-count" in resp.headers
    assert "x-response-time-ms" in resp.headers

    missing = await async_client.get("/api/v1/posts/999")
    assert missing.status_code == 404
    assert missing.json() == {"success": False, "message": "Post not found"}


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_search_by_keyword(async_client: AsyncClient, make_user, headers_for):
    alice = await make_user("alice")
    headers = headers_for(alice)
    await _create(async_client, headers, "Graph algorithms", [], content="BFS and DFS")
    await _create(async_client, headers, "Dorm rules", [], content="Quiet hours after ten")

    resp = await async_client.get("/api/v1/posts/search", params={"keyword": "bfs"})
    titles = [p["title"] for p in resp.json()["data"]]
    assert titles == ["Graph algorithms"]

    everything = await async_client.get("/api/v1/posts/search")
    assert everything.json()["total"] == 2


@pytest.mark.asyncio
async def test_search_tags_match_exactly(async_client: AsyncClient, make_user, headers_for):
    """Filtering on "java" must not return posts tagged "javascript"."""
    alice = await make_user("alice")
    headers = headers_for(alice)
    await _create(async_client, headers, "JVM tuning", ["java"])
    await _create(async_client, headers, "Closures", ["javascript"])
    await _create(async_client, headers, "Both worlds", ["java", "javascript"])

    resp = await async_client.get("/api/v1/posts/search", params={"tags": "java"})
    titles = sorted(p["title"] for p in resp.json()["data"])
    assert titles == ["Both worlds", "JVM tuning"]

    resp = await async_client.get("/api/v1/posts/search", params={"tags": "script"})
    assert resp.json()["total"] == 0

    resp = await async_client.get("/api/v1/posts/search", params={"tags": "java,javascript"})
    assert resp.json()["total"] == 3


@pytest.mark.asyncio
async def test_search_sort_orders(
    async_client: AsyncClient, db_session: AsyncSession, make_user, make_post
):
    alice = await make_user("alice")
    bob = await make_user("bob")
    quiet = await make_post(alice, title="Quiet", comments=0)
    await make_post(alice, title="Busy", comments=4)
    loved = await make_post(alice, title="Loved", comments=1)

    for voter in (alice, bob):
        await vote_service.vote(db_session, voter.id, loved.id, TargetKind.POST, VoteChoice.UP)
    await vote_service.vote(db_session, bob.id, quiet.id, TargetKind.POST, VoteChoice.DOWN)

    async def titles(sort_by: str) -> list[str]:
        resp = await async_client.get("/api/v1/posts/search", params={"sort_by": sort_by})
        return [p["title"] for p in resp.json()["data"]]

    assert await titles("most_votes") == ["Loved", "Busy", "Quiet"]
    assert await titles("most_comments") == ["Busy", "Loved", "Quiet"]
    assert await titles("oldest") == ["Quiet", "Busy", "Loved"]
    assert await titles("newest") == ["Loved", "Busy", "Quiet"]
    # Unknown orders fall back to newest.
    assert await titles("random") == ["Loved", "Busy", "Quiet"]


# ---------------------------------------------------------------------------
# Voting through the API
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_vote_endpoint_shape_and_voters(
    async_client: AsyncClient, make_user, make_post, headers_for
):
    alice = await make_user("alice")
    bob = await make_user("bob")
    post = await make_post(alice)
    url = f"/api/v1/posts/{post.id}/vote"

    resp = await async_client.post(url, json={"type": "upvote"}, headers=headers_for(alice))
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "votes": 1}

    resp = await async_client.post(url, json={"type": "downvote"}, headers=headers_for(bob))
    assert resp.json() == {"success": True, "votes": 0}

    detail = (await async_client.get(f"/api/v1/posts/{post.id}")).json()["data"]
    assert detail["votes"] == 0
    assert detail["upvoted_by"] == [alice.id]
    assert detail["downvoted_by"] == [bob.id]

    resp = await async_client.post(url, json={"type": "remove"}, headers=headers_for(bob))
    assert resp.json() == {"success": True, "votes": 1}


@pytest.mark.asyncio
async def test_vote_endpoint_errors(async_client: AsyncClient, make_user, make_post, headers_for):
    alice = await make_user("alice")
    post = await make_post(alice)

    unauth = await async_client.post(f"/api/v1/posts/{post.id}/vote", json={"type": "upvote"})
    assert unauth.status_code == 401

    missing = await async_client.post(
        "/api/v1/posts/999/vote", json={"type": "upvote"}, headers=headers_for(alice)
    )
    assert missing.status_code == 404
    assert missing.json() == {"success": False, "message": "Post not found"}

    bad = await async_client.post(
        f"/api/v1/posts/{post.id}/vote", json={"type": "meh"}, headers=headers_for(alice)
    )
    assert bad.status_code == 400
    assert bad.json()["success"] is False

    no_body = await async_client.post(
        f"/api/v1/posts/{post.id}/vote", json={}, headers=headers_for(alice)
    )
    assert no_body.status_code == 400


@pytest.mark.asyncio
async def test_vote_store_failure_returns_500_and_applies_nothing(
    async_client: AsyncClient,
    db_session: AsyncSession,
    make_user,
    make_post,
    headers_for,
    monkeypatch,
):
    alice = await make_user("alice")
    post = await make_post(alice)

    async def _broken_shift(*args, **kwargs):
        raise OperationalError("UPDATE posts", {}, Exception("database is locked"))

    monkeypatch.setattr(vote_service, "_shift_tally", _broken_shift)

    resp = await async_client.post(
        f"/api/v1/posts/{post.id}/vote", json={"type": "upvote"}, headers=headers_for(alice)
    )
    assert resp.status_code == 500
    assert resp.json()["success"] is False

    rows = (
        await db_session.execute(
            select(func.count()).select_from(PostVote).where(PostVote.post_id == post.id)
        )
    ).scalar_one()
    tally = (await db_session.execute(select(Post.vote_count).where(Post.id == post.id))).scalar_one()
    assert rows == 0
    assert tally == 0


# ---------------------------------------------------------------------------
# Reconciliation endpoints
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_reconcile_post_endpoint(
    async_client: AsyncClient, db_session: AsyncSession, make_user, make_post, headers_for
):
    admin = await make_user("root", UserRole.ADMIN)
    alice = await make_user("alice")
    post = await make_post(alice)
    await vote_service.vote(db_session, alice.id, post.id, TargetKind.POST, VoteChoice.UP)
    await db_session.execute(update(Post).where(Post.id == post.id).values(vote_count=-9))
    await db_session.commit()

    forbidden = await async_client.post(
        f"/api/v1/posts/{post.id}/reconcile", headers=headers_for(alice)
    )
    assert forbidden.status_code == 403

    resp = await async_client.post(f"/api/v1/posts/{post.id}/reconcile", headers=headers_for(admin))
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "votes": 1}

    missing = await async_client.post("/api/v1/posts/999/reconcile", headers=headers_for(admin))
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_maintenance_reconcile_and_metrics(
    async_client: AsyncClient, db_session: AsyncSession, make_user, make_post, headers_for
):
    admin = await make_user("root", UserRole.ADMIN)
    alice = await make_user("alice")
    post = await make_post(alice, comments=2)
    await vote_service.vote(db_session, alice.id, post.id, TargetKind.POST, VoteChoice.DOWN)
    await db_session.execute(update(Comment).values(vote_count=5))
    await db_session.commit()

    resp = await async_client.post("/api/v1/maintenance/reconcile", headers=headers_for(admin))
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "posts": 0, "comments": 2}

    metrics = (await async_client.get("/api/v1/metrics")).json()
    assert metrics["total_users"] == 2
    assert metrics["total_posts"] == 1
    assert metrics["total_comments"] == 2
    assert metrics["total_post_votes"] == 1
    assert metrics["total_comment_votes"] == 0
    assert metrics["avg_comments_per_post"] == 2.0


# ---------------------------------------------------------------------------
# Delete cascade
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_delete_post_requires_admin(
    async_client: AsyncClient, make_user, make_post, headers_for
):
    alice = await make_user("alice")
    post = await make_post(alice)
    resp = await async_client.delete(f"/api/v1/posts/{post.id}", headers=headers_for(alice))
    assert resp.status_code == 403
    assert (await async_client.get(f"/api/v1/posts/{post.id}")).status_code == 200


@pytest.mark.asyncio
async def test_delete_post_cascades(
    async_client: AsyncClient, db_session: AsyncSession, make_user, make_post, headers_for
):
    """Five post votes and two votes on each of three comments all go with the post."""
    admin = await make_user("root", UserRole.ADMIN)
    voters = [await make_user(f"voter{i}") for i in range(5)]
    post = await make_post(admin, comments=3)
    keeper = await make_post(admin, title="Keeper")
    comment_ids = (
        await db_session.execute(select(Comment.id).where(Comment.post_id == post.id))
    ).scalars().all()

    for voter in voters:
        await vote_service.vote(db_session, voter.id, post.id, TargetKind.POST, VoteChoice.UP)
    for comment_id in comment_ids:
        for voter in voters[:2]:
            await vote_service.vote(
                db_session, voter.id, comment_id, TargetKind.COMMENT, VoteChoice.DOWN
            )
    await vote_service.vote(db_session, voters[0].id, keeper.id, TargetKind.POST, VoteChoice.UP)

    resp = await async_client.delete(f"/api/v1/posts/{post.id}", headers=headers_for(admin))
    assert resp.status_code == 200
    assert resp.json()["success"] is True

    async def count(model, *where):
        q = select(func.count()).select_from(model).where(*where)
        return (await db_session.execute(q)).scalar_one()

    assert await count(Post, Post.id == post.id) == 0
    assert await count(Comment, Comment.post_id == post.id) == 0
    assert await count(PostVote, PostVote.post_id == post.id) == 0
    assert await count(CommentVote) == 0
    assert await count(PostVote, PostVote.post_id == keeper.id) == 1

    again = await async_client.delete(f"/api/v1/posts/{post.id}", headers=headers_for(admin))
    assert again.status_code == 404

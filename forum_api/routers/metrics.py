from fastapi import APIRouter, Depends
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from forum_api.cache import cache
from forum_api.database import get_db
from forum_api.dependencies import require_role
from forum_api.models import Comment, CommentVote, Post, PostVote, User, UserRole
from forum_api.schemas import MetricsResponse, ReconcileReport
from forum_api.services import vote_service

router = APIRouter(prefix="/api/v1", tags=["metrics"])


async def _count(db: AsyncSession, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics(db: AsyncSession = Depends(get_db)):
    total_posts = await _count(db, Post)
    total_comments = await _count(db, Comment)
    avg_comments = total_comments / total_posts if total_posts > 0 else 0

    return MetricsResponse(
        total_users=await _count(db, User),
        total_posts=total_posts,
        total_comments=total_comments,
        total_post_votes=await _count(db, PostVote),
        total_comment_votes=await _count(db, CommentVote),
        avg_comments_per_post=round(avg_comments, 2),
        cache_info=cache.stats,
    )


@router.post("/maintenance/reconcile", response_model=ReconcileReport)
async def reconcile_all(
    admin: User = Depends(require_role(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
):
    """Recompute every tally from the ledgers; reports how many had drifted."""
    report = await vote_service.reconcile_all(db)
    return ReconcileReport(**report)

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from forum_api.database import get_db
from forum_api.dependencies import get_current_user, require_role
from forum_api.models import User, UserRole
from forum_api.schemas import VoteRequest, VoteResponse
from forum_api.services import vote_service
from forum_api.services.vote_service import TargetKind

router = APIRouter(prefix="/api/v1/comments", tags=["comments"])


@router.post("/{comment_id}/vote", response_model=VoteResponse)
async def vote_on_comment(
    comment_id: int,
    data: VoteRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    votes = await vote_service.vote(db, user.id, comment_id, TargetKind.COMMENT, data.type)
    return VoteResponse(votes=votes)


@router.post("/{comment_id}/reconcile", response_model=VoteResponse)
async def reconcile_comment(
    comment_id: int,
    admin: User = Depends(require_role(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
):
    votes = await vote_service.reconcile(db, comment_id, TargetKind.COMMENT)
    return VoteResponse(votes=votes)

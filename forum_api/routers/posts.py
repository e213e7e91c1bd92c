from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from forum_api.database import get_db
from forum_api.dependencies import PaginationParams, get_current_user, require_role
from forum_api.models import User, UserRole
from forum_api.schemas import CommentCreate, PostCreate, VoteRequest, VoteResponse
from forum_api.services import comment_service, post_service, vote_service
from forum_api.services.vote_service import TargetKind

router = APIRouter(prefix="/api/v1/posts", tags=["posts"])


@router.post("", status_code=201)
async def create_post(
    data: PostCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    post = await post_service.create_post(db, user, data)
    return {"success": True, "message": "Post created successfully", "data": post}


@router.get("")
async def list_posts(
    pagination: PaginationParams = Depends(),
    db: AsyncSession = Depends(get_db),
):
    page = await post_service.get_posts(db, pagination.page, pagination.limit)
    return {
        "success": True,
        "data": page["items"],
        "total": page["total"],
        "page": page["page"],
        "limit": page["limit"],
        "pages": page["pages"],
    }


@router.get("/search")
async def search_posts(
    keyword: str = Query("", description="Substring matched against title and content."),
    tags: str = Query("", description="Comma-separated tag names; any exact match."),
    sort_by: str = Query("newest", description="newest, oldest, most_votes or most_comments."),
    db: AsyncSession = Depends(get_db),
):
    tag_list = tags.split(",") if tags else []
    posts = await post_service.search_posts(db, keyword, tag_list, sort_by)
    return {"success": True, "data": posts, "total": len(posts)}


@router.get("/{post_id}")
async def get_post(post_id: int, db: AsyncSession = Depends(get_db)):
    return {"success": True, "data": await post_service.get_post(db, post_id)}


@router.delete("/{post_id}")
async def delete_post(
    post_id: int,
    admin: User = Depends(require_role(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
):
    await post_service.delete_post(db, post_id)
    return {"success": True, "message": "Post deleted successfully"}


@router.post("/{post_id}/comments", status_code=201)
async def add_comment(
    post_id: int,
    data: CommentCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    comment = await comment_service.add_comment(db, post_id, user, data)
    return {"success": True, "message": "Comment created successfully", "data": comment}


@router.get("/{post_id}/comments")
async def list_comments(post_id: int, db: AsyncSession = Depends(get_db)):
    comments = await comment_service.get_comments(db, post_id)
    return {"success": True, "data": comments, "total": len(comments)}


@router.post("/{post_id}/vote", response_model=VoteResponse)
async def vote_on_post(
    post_id: int,
    data: VoteRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    votes = await vote_service.vote(db, user.id, post_id, TargetKind.POST, data.type)
    return VoteResponse(votes=votes)


@router.post("/{post_id}/reconcile", response_model=VoteResponse)
async def reconcile_post(
    post_id: int,
    admin: User = Depends(require_role(UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
):
    votes = await vote_service.reconcile(db, post_id, TargetKind.POST)
    return VoteResponse(votes=votes)

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from forum_api.database import get_db
from forum_api.dependencies import require_role
from forum_api.models import User, UserRole
from forum_api.schemas import PasswordReset, UserCreate, UserUpdate
from forum_api.services import user_service

# Every account operation is admin-only.
router = APIRouter(prefix="/api/v1/users", tags=["users"])

admin_only = require_role(UserRole.ADMIN)


@router.get("")
async def list_users(admin: User = Depends(admin_only), db: AsyncSession = Depends(get_db)):
    users = await user_service.get_users(db)
    return {"success": True, "data": users, "total": len(users)}


@router.post("", status_code=201)
async def create_user(
    data: UserCreate,
    admin: User = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    user = await user_service.create_user(db, data)
    return {"success": True, "message": "User created successfully", "data": user}


@router.put("/{user_id}")
async def update_user(
    user_id: int,
    data: UserUpdate,
    admin: User = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    user = await user_service.update_user(db, user_id, data)
    return {"success": True, "message": "User updated successfully", "data": user}


@router.delete("/{user_id}")
async def delete_user(
    user_id: int,
    admin: User = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    await user_service.delete_user(db, admin, user_id)
    return {"success": True, "message": "User deleted successfully"}


@router.post("/{user_id}/toggle-status")
async def toggle_status(
    user_id: int,
    admin: User = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    user = await user_service.toggle_status(db, admin, user_id)
    state = "activated" if user["is_active"] else "deactivated"
    return {"success": True, "message": f"User {state} successfully", "data": user}


@router.post("/{user_id}/reset-password")
async def reset_password(
    user_id: int,
    data: PasswordReset,
    admin: User = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    await user_service.reset_password(db, user_id, data)
    return {"success": True, "message": "Password reset successfully"}

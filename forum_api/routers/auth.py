from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from forum_api.database import get_db
from forum_api.dependencies import get_current_user
from forum_api.models import User
from forum_api.schemas import LoginRequest, RegisterRequest
from forum_api.services import user_service

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post("/register", status_code=201)
async def register(data: RegisterRequest, db: AsyncSession = Depends(get_db)):
    result = await user_service.register(db, data)
    return {"success": True, "message": "Registration successful", "data": result}


@router.post("/login")
async def login(data: LoginRequest, db: AsyncSession = Depends(get_db)):
    result = await user_service.login(db, data)
    return {"success": True, "message": "Login successful", "data": result}


@router.get("/me")
async def me(user: User = Depends(get_current_user)):
    return {"success": True, "data": user_service.serialize_user(user)}

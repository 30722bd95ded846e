from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import RecentPostsParams
from app.errors import BadRequestError, NotFoundError
from app.schemas import UserCreate, UserDetail, UserResponse, UserStats, UserUpdate
from app.services import user_service

router = APIRouter(prefix="/users", tags=["users"])

@router.post("", status_code=201, response_model=UserResponse)
async def create_user(data: UserCreate, db: AsyncSession = Depends(get_db)):
    return await user_service.create_user(db, data)

@router.get("", response_model=list[UserDetail])
async def list_users(db: AsyncSession = Depends(get_db)):
    return await user_service.get_users(db)

# Static paths are registered before "/{user_id}" so they are not captured by it.
@router.get("/search", response_model=UserDetail)
async def find_user_by_email(
    email: str | None = Query(None, description="Email to look up (case-insensitive)."),
    db: AsyncSession = Depends(get_db),
):
    if not email or not email.strip():
        raise BadRequestError("Email query parameter is required")
    user = await user_service.get_user_by_email(db, email)
    if user is None:
        raise NotFoundError(f"User with email {email.strip().lower()} not found")
    return user

@router.get("/recent-posts", response_model=list[UserDetail])
async def users_with_recent_posts(
    params: RecentPostsParams = Depends(),
    db: AsyncSession = Depends(get_db),
):
    return await user_service.get_users_with_recent_posts(db, params.days)

@router.get("/{user_id}", response_model=UserDetail)
async def get_user(user_id: int, db: AsyncSession = Depends(get_db)):
    return await user_service.get_user(db, user_id)

@router.get("/{user_id}/stats", response_model=UserStats)
async def get_user_stats(user_id: int, db: AsyncSession = Depends(get_db)):
    return await user_service.get_user_stats(db, user_id)

@router.patch("/{user_id}", response_model=UserDetail)
async def update_user(user_id: int, data: UserUpdate, db: AsyncSession = Depends(get_db)):
    return await user_service.update_user(db, user_id, data)

@router.delete("/{user_id}", status_code=204)
async def delete_user(user_id: int, db: AsyncSession = Depends(get_db)):
    await user_service.delete_user(db, user_id)

@router.patch("/{user_id}/deactivate", response_model=UserResponse)
async def deactivate_user(user_id: int, db: AsyncSession = Depends(get_db)):
    return await user_service.deactivate_user(db, user_id)

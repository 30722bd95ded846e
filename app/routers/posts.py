from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.dependencies import get_acting_user_id
from app.schemas import PostCreate, PostResponse, PostUpdate, ToggleLikeRequest
from app.services import post_service

router = APIRouter(prefix="/posts", tags=["posts"])

@router.post("", status_code=201, response_model=PostResponse)
async def create_post(data: PostCreate, db: AsyncSession = Depends(get_db)):
    return await post_service.create_post(db, data)

@router.post("/toggleLike", response_model=PostResponse)
async def toggle_like(data: ToggleLikeRequest, db: AsyncSession = Depends(get_db)):
    return await post_service.toggle_like(db, data.post_id, data.user_id)

@router.get("", response_model=list[PostResponse])
async def list_posts(db: AsyncSession = Depends(get_db)):
    return await post_service.get_posts(db)

@router.get("/{post_id}", response_model=PostResponse)
async def get_post(post_id: int, db: AsyncSession = Depends(get_db)):
    return await post_service.get_post(db, post_id)

@router.patch("/{post_id}", response_model=PostResponse)
async def update_post(
    post_id: int,
    data: PostUpdate,
    acting_user_id: int = Depends(get_acting_user_id),
    db: AsyncSession = Depends(get_db),
):
    return await post_service.update_post(db, post_id, data, acting_user_id)

@router.delete("/{post_id}", status_code=204)
async def delete_post(
    post_id: int,
    acting_user_id: int = Depends(get_acting_user_id),
    db: AsyncSession = Depends(get_db),
):
    await post_service.delete_post(db, post_id, acting_user_id)

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.cache import cache
from app.database import get_db
from app.models import Post, User, post_likes
from app.schemas import MetricsResponse

router = APIRouter(prefix="/metrics", tags=["metrics"])

@router.get("", response_model=MetricsResponse)
async def get_metrics(db: AsyncSession = Depends(get_db)):

    total_users = (await db.execute(select(func.count()).select_from(User))).scalar_one()

    active_users = (
        await db.execute(select(func.count()).select_from(User).where(User.is_active.is_(True)))
    ).scalar_one()

    status_rows = (await db.execute(select(Post.status, func.count()).group_by(Post.status))).all()
    posts_by_status = {status: count for status, count in status_rows}

    total_likes = (await db.execute(select(func.count()).select_from(post_likes))).scalar_one()

    return MetricsResponse(
        total_users=total_users,
        active_users=active_users,
        total_posts=sum(posts_by_status.values()),
        posts_by_status=posts_by_status,
        total_likes=total_likes,
        cache_info=cache.stats,
    )

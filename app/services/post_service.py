"""
Post service — business logic for the Post aggregate.

Design notes
------------
- List/detail reads go through the cache-aside helper under ``posts:all``
  and ``post:<id>``; every entry expires after ``settings.CACHE_TTL``.
- ``author`` and ``likes`` are resolved with ``selectinload`` (one extra
  query each, regardless of the number of posts).  Reloads after a write
  use ``populate_existing`` so objects already in the session identity
  map pick up the new relationship state.
- Mutations are only allowed to the post's author; the check is a plain
  id comparison with no role-based override.
- ``toggle_like`` is a read-then-write on the ``post_likes`` association
  table and is not atomic: two concurrent toggles by the same user can
  race, and the loser of a duplicate insert surfaces as a 409.
- Service functions flush but do not commit; the transaction boundary
  is owned by the ``get_db`` dependency in the router layer.
- Invalidation runs after the flush but before that commit.  A read
  from another request in between can re-cache the pre-commit state,
  which then lives until its TTL expires.
"""
import logging
from datetime import datetime

from sqlalchemy import delete, insert, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.cache import POSTS_ALL_KEY, cache, post_key
from app.errors import BadRequestError, ForbiddenError, NotFoundError
from app.models import Post, PostStatus, User, post_likes
from app.schemas import PostCreate, PostUpdate

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _serialize_author(author: User | None) -> dict | None:
    if author is None:
        return None
    return {
        "id": author.id,
        "name": author.name,
        "email": author.email,
        "role": author.role,
        "is_active": author.is_active,
        "schema_version": author.schema_version,
    }


def _post_to_dict(post: Post) -> dict:
    """Serialise a Post ORM instance with its resolved author and likes."""
    return {
        "id": post.id,
        "title": post.title,
        "content": post.content,
        "author_id": post.author_id,
        "tags": list(post.tags or []),
        "status": post.status,
        "views": post.views,
        "schema_version": post.schema_version,
        "created_at": _isoformat(post.created_at),
        "updated_at": _isoformat(post.updated_at),
        "author": _serialize_author(post.author),
        "likes": [{"id": u.id, "name": u.name, "email": u.email} for u in post.likes],
    }


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------

def _resolved_posts_query():
    return (
        select(Post)
        .options(selectinload(Post.author), selectinload(Post.likes))
        .execution_options(populate_existing=True)
    )


async def _load_post(db: AsyncSession, post_id: int) -> Post | None:
    result = await db.execute(_resolved_posts_query().where(Post.id == post_id))
    return result.scalar_one_or_none()


async def _get_post_or_404(db: AsyncSession, post_id: int) -> Post:
    post = await _load_post(db, post_id)
    if post is None:
        raise NotFoundError(f"Post with ID {post_id} not found")
    return post


async def _has_liked(db: AsyncSession, post_id: int, user_id: int) -> bool:
    result = await db.execute(
        select(post_likes.c.user_id).where(
            post_likes.c.post_id == post_id, post_likes.c.user_id == user_id
        )
    )
    return result.first() is not None


def _ensure_author(post: Post, acting_user_id: int, action: str) -> None:
    if post.author_id != acting_user_id:
        logger.warning(
            "User id=%s refused to %s post id=%s owned by id=%s",
            acting_user_id, action, post.id, post.author_id,
        )
        raise ForbiddenError(f"You can only {action} your own posts")


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def get_posts(db: AsyncSession) -> list[dict]:
    """Return every non-archived post, newest first, with author and likes."""

    async def load() -> list[dict]:
        q = (
            _resolved_posts_query()
            .where(Post.status != PostStatus.ARCHIVED.value)
            .order_by(Post.created_at.desc(), Post.id.desc())
        )
        result = await db.execute(q)
        return [_post_to_dict(p) for p in result.scalars().all()]

    return await cache.get_or_load(POSTS_ALL_KEY, load)


async def get_post(db: AsyncSession, post_id: int) -> dict:
    """Return the post with author and likes; NotFoundError when absent."""

    async def load() -> dict:
        return _post_to_dict(await _get_post_or_404(db, post_id))

    return await cache.get_or_load(post_key(post_id), load)


async def create_post(db: AsyncSession, data: PostCreate) -> dict:
    """
    Create a post for an existing author and return it resolved.

    Raises BadRequestError when ``author_id`` references no user.
    """
    author = await db.get(User, data.author_id)
    if author is None:
        raise BadRequestError(f"Author with ID {data.author_id} does not exist")

    post = Post(
        title=data.title,
        content=data.content,
        author_id=author.id,
        tags=list(data.tags),
        status=data.status.value,
    )
    db.add(post)
    await db.flush()

    await cache.invalidate_post(post.id, author.id, author.email)
    logger.info("Created post id=%s author_id=%s", post.id, author.id)
    return _post_to_dict(await _get_post_or_404(db, post.id))


async def update_post(
    db: AsyncSession, post_id: int, data: PostUpdate, acting_user_id: int
) -> dict:
    """
    Partially update a post on behalf of its author and bump its
    ``schema_version``.

    Raises NotFoundError for an unknown id and ForbiddenError when
    *acting_user_id* is not the author; nothing is written in either case.
    """
    post = await _get_post_or_404(db, post_id)
    _ensure_author(post, acting_user_id, "update")

    changes = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        if value is None:
            continue
        if field == "status":
            value = value.value
        setattr(post, field, value)
    post.schema_version += 1
    await db.flush()

    author = post.author
    await cache.invalidate_post(post_id, post.author_id, author.email if author else None)
    logger.info("Updated post id=%s fields=%s schema_version=%s", post_id, sorted(changes), post.schema_version)
    return _post_to_dict(await _get_post_or_404(db, post_id))


async def delete_post(db: AsyncSession, post_id: int, acting_user_id: int) -> None:
    """
    Hard-delete a post (and its like rows) on behalf of its author.

    Raises NotFoundError / ForbiddenError like ``update_post``.
    """
    post = await _get_post_or_404(db, post_id)
    _ensure_author(post, acting_user_id, "delete")
    author_id = post.author_id
    author_email = post.author.email if post.author else None

    # post.likes is loaded, so the ORM removes the association rows itself.
    await db.delete(post)
    await db.flush()

    await cache.invalidate_post(post_id, author_id, author_email)
    logger.info("Deleted post id=%s", post_id)


async def toggle_like(db: AsyncSession, post_id: int, user_id: int) -> dict:
    """
    Add *user_id* to the post's likes, or remove it if already present.

    A user appears at most once in a post's likes.  Raises NotFoundError
    when either the post or the user does not exist.  Returns the post
    with its updated author and likes.
    """
    post = await db.get(Post, post_id)
    if post is None:
        raise NotFoundError(f"Post with ID {post_id} not found")
    if await db.get(User, user_id) is None:
        raise NotFoundError(f"User with ID {user_id} not found")

    if not await _has_liked(db, post_id, user_id):
        await db.execute(insert(post_likes).values(post_id=post_id, user_id=user_id))
        liked = True
    else:
        await db.execute(
            delete(post_likes).where(
                post_likes.c.post_id == post_id, post_likes.c.user_id == user_id
            )
        )
        liked = False
    await db.flush()

    # Likes are not embedded in user payloads, so only post keys go stale.
    await cache.invalidate_post(post_id)
    logger.info("User id=%s %s post id=%s", user_id, "liked" if liked else "unliked", post_id)
    return _post_to_dict(await _get_post_or_404(db, post_id))

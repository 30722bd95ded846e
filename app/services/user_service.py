"""
User service — CRUD and derived queries for the User aggregate.

Every read goes through the cache-aside helper (``cache.get_or_load``)
under the ``user:*`` / ``users:*`` key namespace.  Writes flush, then drop
every key whose payload embeds the user: its own detail / stats / email
entries, the user lists, and the detail entries of posts that resolve the
user as author or liker.

A user's posts are a back-reference (``Post.author_id``), so they are
fetched with one extra ``IN`` query per call rather than per user.
"""
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.cache import (
    USERS_ALL_KEY,
    cache,
    recent_posts_key,
    user_email_key,
    user_key,
    user_stats_key,
)
from app.errors import ConflictError, NotFoundError
from app.models import Post, PostStatus, User, post_likes
from app.schemas import UserCreate, UserUpdate

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _user_to_dict(user: User) -> dict:
    """Serialise a User ORM instance to a plain dict (no posts)."""
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "age": user.age,
        "role": user.role,
        "is_active": user.is_active,
        "schema_version": user.schema_version,
        "created_at": _isoformat(user.created_at),
        "updated_at": _isoformat(user.updated_at),
    }


def _post_summary_to_dict(post: Post) -> dict:
    """
    Serialise a Post for embedding under its author.

    Author and likes are omitted to avoid circular nesting.
    """
    return {
        "id": post.id,
        "title": post.title,
        "content": post.content,
        "status": post.status,
        "views": post.views,
        "tags": list(post.tags or []),
        "created_at": _isoformat(post.created_at),
    }


def _user_with_posts(user: User, posts: list[Post]) -> dict:
    data = _user_to_dict(user)
    data["posts"] = [_post_summary_to_dict(p) for p in posts]
    return data


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------

async def _get_user_or_404(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User with ID {user_id} not found")
    return user


async def _posts_by_author(
    db: AsyncSession, author_ids: list[int], *criteria
) -> dict[int, list[Post]]:
    """
    Return ``{author_id: [Post, ...]}`` newest first for *author_ids*,
    restricted by any extra SQL *criteria*.
    """
    grouped: dict[int, list[Post]] = defaultdict(list)
    if not author_ids:
        return grouped
    q = (
        select(Post)
        .where(Post.author_id.in_(author_ids), *criteria)
        .order_by(Post.created_at.desc(), Post.id.desc())
    )
    result = await db.execute(q)
    for post in result.scalars().all():
        grouped[post.author_id].append(post)
    return grouped


async def _active_users(db: AsyncSession) -> list[User]:
    q = select(User).where(User.is_active.is_(True)).order_by(User.created_at.desc(), User.id.desc())
    result = await db.execute(q)
    return list(result.scalars().all())


async def _email_taken(db: AsyncSession, email: str, exclude_id: int | None = None) -> bool:
    q = select(User.id).where(User.email == email)
    if exclude_id is not None:
        q = q.where(User.id != exclude_id)
    return (await db.execute(q)).first() is not None


async def _related_post_ids(db: AsyncSession, user_id: int) -> set[int]:
    """Ids of posts whose resolved payload embeds *user_id* (authored or liked)."""
    authored = await db.execute(select(Post.id).where(Post.author_id == user_id))
    liked = await db.execute(select(post_likes.c.post_id).where(post_likes.c.user_id == user_id))
    return set(authored.scalars().all()) | set(liked.scalars().all())


async def _invalidate_user_everywhere(
    db: AsyncSession, user_id: int, emails: list[str]
) -> None:
    post_ids = await _related_post_ids(db, user_id)
    await cache.invalidate_user(user_id, emails)
    await cache.invalidate_posts(post_ids)


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def get_users(db: AsyncSession) -> list[dict]:
    """Return active users (newest first), each with their non-archived posts."""

    async def load() -> list[dict]:
        users = await _active_users(db)
        posts = await _posts_by_author(
            db, [u.id for u in users], Post.status != PostStatus.ARCHIVED.value
        )
        return [_user_with_posts(u, posts[u.id]) for u in users]

    return await cache.get_or_load(USERS_ALL_KEY, load)


async def get_user(db: AsyncSession, user_id: int) -> dict:
    """
    Return the detail dict for *user_id* with its non-archived posts,
    newest first.  Raises NotFoundError when the user does not exist.
    """

    async def load() -> dict:
        user = await _get_user_or_404(db, user_id)
        posts = await _posts_by_author(db, [user.id], Post.status != PostStatus.ARCHIVED.value)
        return _user_with_posts(user, posts[user.id])

    return await cache.get_or_load(user_key(user_id), load)


async def get_user_by_email(db: AsyncSession, email: str) -> dict | None:
    """
    Case-insensitive lookup by email, with all of the user's posts.

    Returns None when no user has that email; misses are not cached.
    """
    normalised = email.strip().lower()

    async def load() -> dict | None:
        result = await db.execute(select(User).where(User.email == normalised))
        user = result.scalar_one_or_none()
        if user is None:
            return None
        posts = await _posts_by_author(db, [user.id])
        return _user_with_posts(user, posts[user.id])

    return await cache.get_or_load(user_email_key(normalised), load)


async def create_user(db: AsyncSession, data: UserCreate) -> dict:
    """
    Create a new user and return its serialised dict.

    Raises ConflictError when the (lowercased) email is already registered.
    The unique index on ``users.email`` backs the check against races.
    """
    email = data.email.strip().lower()
    if await _email_taken(db, email):
        raise ConflictError(f"A user with email {email} already exists")

    user = User(
        name=data.name,
        email=email,
        age=data.age,
        role=data.role.value,
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError as exc:
        raise ConflictError(f"A user with email {email} already exists") from exc

    await cache.invalidate_user(user.id, [email])
    logger.info("Created user id=%s email=%s", user.id, email)
    return _user_to_dict(user)


async def update_user(db: AsyncSession, user_id: int, data: UserUpdate) -> dict:
    """
    Partially update a user and bump its ``schema_version`` by one.

    Only fields explicitly present in the payload are applied.  Raises
    NotFoundError for an unknown id and ConflictError when the new email
    belongs to another user; in both cases nothing is written.
    """
    user = await _get_user_or_404(db, user_id)
    old_email = user.email

    changes = data.model_dump(exclude_unset=True)
    if changes.get("email") is not None:
        changes["email"] = changes["email"].strip().lower()
        if changes["email"] != old_email and await _email_taken(db, changes["email"], user_id):
            raise ConflictError(f"A user with email {changes['email']} already exists")
    if changes.get("role") is not None:
        changes["role"] = changes["role"].value

    for field, value in changes.items():
        if value is None and field != "age":
            continue
        setattr(user, field, value)
    user.schema_version += 1

    try:
        await db.flush()
    except IntegrityError as exc:
        raise ConflictError(f"A user with email {user.email} already exists") from exc

    await _invalidate_user_everywhere(db, user_id, [old_email, user.email])
    logger.info("Updated user id=%s fields=%s schema_version=%s", user_id, sorted(changes), user.schema_version)

    posts = await _posts_by_author(db, [user.id], Post.status != PostStatus.ARCHIVED.value)
    return _user_with_posts(user, posts[user.id])


async def delete_user(db: AsyncSession, user_id: int) -> None:
    """
    Hard-delete a user together with its posts and every like row that
    references the user or those posts.  Raises NotFoundError (without
    touching the cache) when the user does not exist.
    """
    user = await _get_user_or_404(db, user_id)
    email = user.email

    # Collected before the rows disappear.
    related_post_ids = await _related_post_ids(db, user_id)
    authored_ids = select(Post.id).where(Post.author_id == user_id).scalar_subquery()

    await db.execute(
        delete(post_likes).where(
            or_(post_likes.c.user_id == user_id, post_likes.c.post_id.in_(authored_ids))
        )
    )
    await db.execute(delete(Post).where(Post.author_id == user_id))
    await db.delete(user)
    await db.flush()

    await cache.invalidate_user(user_id, [email])
    await cache.invalidate_posts(related_post_ids)
    logger.info("Deleted user id=%s", user_id)


async def deactivate_user(db: AsyncSession, user_id: int) -> dict:
    """
    Soft-delete: flip ``is_active`` off and bump ``schema_version``.

    Raises NotFoundError (without touching the cache) for an unknown id.
    """
    user = await _get_user_or_404(db, user_id)
    user.is_active = False
    user.schema_version += 1
    await db.flush()

    await _invalidate_user_everywhere(db, user_id, [user.email])
    logger.info("Deactivated user id=%s", user_id)
    return _user_to_dict(user)


async def get_users_with_recent_posts(db: AsyncSession, days: int = 7) -> list[dict]:
    """
    Return active users, each with only the posts published within the
    trailing *days*-day window (newest first).  Users without such posts
    are still listed, with an empty ``posts`` list.
    """

    async def load() -> list[dict]:
        threshold = datetime.now(timezone.utc) - timedelta(days=days)
        users = await _active_users(db)
        posts = await _posts_by_author(
            db,
            [u.id for u in users],
            Post.status == PostStatus.PUBLISHED.value,
            Post.created_at >= threshold,
        )
        return [_user_with_posts(u, posts[u.id]) for u in users]

    return await cache.get_or_load(recent_posts_key(days), load)


async def get_user_stats(db: AsyncSession, user_id: int) -> dict:
    """
    Aggregate a user's posts (all statuses) into counts and summed views,
    alongside a snapshot of the user's identity fields.
    """

    async def load() -> dict:
        user = await _get_user_or_404(db, user_id)
        posts = (await _posts_by_author(db, [user.id]))[user.id]
        return {
            "total_posts": len(posts),
            "published_posts": sum(1 for p in posts if p.status == PostStatus.PUBLISHED.value),
            "draft_posts": sum(1 for p in posts if p.status == PostStatus.DRAFT.value),
            "total_views": sum(p.views or 0 for p in posts),
            "user_info": {
                "name": user.name,
                "email": user.email,
                "role": user.role,
                "schema_version": user.schema_version,
                "member_since": _isoformat(user.created_at),
            },
        }

    return await cache.get_or_load(user_stats_key(user_id), load)

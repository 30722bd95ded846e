from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from app.models import PostStatus, UserRole


def _normalise_tags(value: list[str] | None) -> list[str] | None:
    """Strip blanks and drop duplicates while keeping first-seen order."""
    if value is None:
        return None
    seen: dict[str, None] = {}
    for tag in value:
        tag = tag.strip()
        if tag:
            seen.setdefault(tag, None)
    return list(seen)


# --- User ---

class UserCreate(BaseModel):
    name: str = Field(min_length=1, max_length=150)
    email: EmailStr
    age: int | None = Field(None, ge=18, le=120)
    role: UserRole = UserRole.USER

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("email", mode="before")
    @classmethod
    def _strip_email(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.lower()


class UserUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=150)
    email: EmailStr | None = None
    age: int | None = Field(None, ge=18, le=120)
    role: UserRole | None = None
    is_active: bool | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("email", mode="before")
    @classmethod
    def _strip_email(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str | None) -> str | None:
        return v.lower() if v is not None else v


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    age: int | None = None
    role: UserRole
    is_active: bool
    schema_version: int
    created_at: datetime
    updated_at: datetime | None = None
    model_config = ConfigDict(from_attributes=True)


class PostSummary(BaseModel):
    """A post as embedded under its author (no author / likes nesting)."""
    id: int
    title: str
    content: str
    status: PostStatus
    views: int
    tags: list[str] = []
    created_at: datetime


class UserDetail(UserResponse):
    posts: list[PostSummary] = []


class UserInfo(BaseModel):
    name: str
    email: str
    role: UserRole
    schema_version: int
    member_since: datetime


class UserStats(BaseModel):
    total_posts: int
    published_posts: int
    draft_posts: int
    total_views: int
    user_info: UserInfo


# --- Post ---

class PostAuthor(BaseModel):
    id: int
    name: str
    email: str
    role: UserRole
    is_active: bool
    schema_version: int


class PostLiker(BaseModel):
    id: int
    name: str
    email: str


class PostCreate(BaseModel):
    title: str = Field(min_length=1, max_length=300)
    content: str = Field(min_length=1)
    author_id: int
    tags: list[str] = []
    status: PostStatus = PostStatus.DRAFT

    @field_validator("title")
    @classmethod
    def _strip_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, v: list[str]) -> list[str]:
        return _normalise_tags(v)


class PostUpdate(BaseModel):
    # author_id is deliberately absent: a post's author is fixed at creation.
    title: str | None = Field(None, min_length=1, max_length=300)
    content: str | None = Field(None, min_length=1)
    tags: list[str] | None = None
    status: PostStatus | None = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("title")
    @classmethod
    def _strip_title(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, v: list[str] | None) -> list[str] | None:
        return _normalise_tags(v)


class PostResponse(BaseModel):
    id: int
    title: str
    content: str
    author_id: int
    tags: list[str] = []
    status: PostStatus
    views: int
    schema_version: int
    created_at: datetime
    updated_at: datetime | None = None
    author: PostAuthor | None = None
    likes: list[PostLiker] = []


class ToggleLikeRequest(BaseModel):
    post_id: int
    user_id: int


# --- Metrics ---

class MetricsResponse(BaseModel):
    total_users: int
    active_users: int
    total_posts: int
    posts_by_status: dict[str, int] = {}
    total_likes: int
    cache_info: dict = {}

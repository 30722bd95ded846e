from fastapi import Header, Query

from app.config import settings


def get_acting_user_id(
    x_user_id: int = Header(
        ...,
        alias="X-User-Id",
        ge=1,
        description="Id of the user performing the mutation.",
    ),
) -> int:
    """
    Resolve the user on whose behalf a post mutation is made.

    There is no authentication layer: the caller states its user id in the
    ``X-User-Id`` header and the post service checks it against the post's
    author.  A missing or non-integer header is rejected with 422.
    """
    return x_user_id


class RecentPostsParams:
    """
    Query parameters for ``GET /users/recent-posts``.

    Attributes
    ----------
    days:
        Width of the trailing window in days, between 1 and
        ``settings.RECENT_POSTS_MAX_DAYS``.  Defaults to
        ``settings.RECENT_POSTS_DEFAULT_DAYS``.
    """

    def __init__(
        self,
        days: int = Query(
            settings.RECENT_POSTS_DEFAULT_DAYS,
            ge=1,
            le=settings.RECENT_POSTS_MAX_DAYS,
            description="Only include posts published within this many days.",
        ),
    ) -> None:
        self.days = days

"""
User endpoint tests — covers creating, listing, looking up, updating,
deactivating and deleting users, the recent-posts and stats views, and
the metrics endpoint.

The metrics endpoint is tested here because it aggregates across users,
posts and likes and is simpler to exercise once user creation is
established.
"""
from unittest.mock import AsyncMock

import pytest
from httpx import AsyncClient

from app.services import user_service


async def _create_user(client: AsyncClient, name: str = "Alice", email: str = "alice@example.com", **extra) -> dict:
    resp = await client.post("/users", json={"name": name, "email": email, **extra})
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _create_post(client: AsyncClient, author_id: int, title: str = "Hello", **extra) -> dict:
    resp = await client.post("/posts", json={
        "title": title,
        "content": f"{title} body",
        "author_id": author_id,
        **extra,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Create user
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_user(async_client: AsyncClient):
    """Creating a user with all fields returns 201 and the stored data."""
    resp = await async_client.post("/users", json={
        "name": "  New User ",
        "email": "New.User@Example.COM",
        "age": 30,
        "role": "moderator",
    })
    assert resp.status_code == 201
    user = resp.json()
    assert user["name"] == "New User"
    assert user["email"] == "new.user@example.com"
    assert user["age"] == 30
    assert user["role"] == "moderator"
    assert user["is_active"] is True
    assert user["schema_version"] == 1
    assert "id" in user
    assert "created_at" in user


@pytest.mark.asyncio
async def test_create_user_defaults(async_client: AsyncClient):
    """Only name + email are required; role defaults to 'user'."""
    user = await _create_user(async_client, "Minimal", "minimal@example.com")
    assert user["role"] == "user"
    assert user["age"] is None
    assert user["is_active"] is True


@pytest.mark.asyncio
async def test_create_user_duplicate_email_case_insensitive(async_client: AsyncClient):
    """A second user whose email differs only in case is rejected with 409."""
    await _create_user(async_client, "First", "dup@example.com")
    resp = await async_client.post("/users", json={"name": "Second", "email": "DUP@Example.com"})
    assert resp.status_code == 409
    assert resp.json()["code"] == "CONFLICT"


@pytest.mark.asyncio
async def test_create_user_email_race_is_a_conflict(async_client: AsyncClient, monkeypatch):
    """A duplicate that slips past the pre-check is caught by the unique index."""
    await _create_user(async_client, "First", "race@example.com")
    monkeypatch.setattr(user_service, "_email_taken", AsyncMock(return_value=False))

    resp = await async_client.post("/users", json={"name": "Second", "email": "race@example.com"})
    assert resp.status_code == 409
    assert resp.json()["code"] == "CONFLICT"
    assert "race@example.com" in resp.json()["detail"]

    monkeypatch.undo()
    assert len((await async_client.get("/users")).json()) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    {"email": "noname@example.com"},
    {"name": "No Email"},
    {"name": "Bad Email", "email": "not-an-email"},
    {"name": "Two Ats", "email": "a@b@c"},
    {"name": "Spaced Email", "email": "not an email@x"},
    {"name": "No Domain", "email": "x@"},
    {"name": "Too Young", "email": "young@example.com", "age": 12},
    {"name": "Bad Role", "email": "role@example.com", "role": "superuser"},
])
async def test_create_user_invalid_payload(async_client: AsyncClient, payload: dict):
    resp = await async_client.post("/users", json=payload)
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# List / get users
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_list_users_empty(async_client: AsyncClient):
    resp = await async_client.get("/users")
    assert resp.status_code == 200
    assert resp.json() == []


@pytest.mark.asyncio
async def test_list_users_only_active_with_non_archived_posts(async_client: AsyncClient):
    active = await _create_user(async_client, "Active", "active@example.com")
    inactive = await _create_user(async_client, "Inactive", "inactive@example.com")
    await _create_post(async_client, active["id"], "Visible", status="published")
    await _create_post(async_client, active["id"], "Old", status="archived")
    await async_client.patch(f"/users/{inactive['id']}/deactivate")

    resp = await async_client.get("/users")
    assert resp.status_code == 200
    users = resp.json()
    assert [u["id"] for u in users] == [active["id"]]
    assert [p["title"] for p in users[0]["posts"]] == ["Visible"]


@pytest.mark.asyncio
async def test_get_user_detail_with_posts_newest_first(async_client: AsyncClient):
    user = await _create_user(async_client)
    await _create_post(async_client, user["id"], "First")
    await _create_post(async_client, user["id"], "Second")
    await _create_post(async_client, user["id"], "Archived", status="archived")

    resp = await async_client.get(f"/users/{user['id']}")
    assert resp.status_code == 200
    detail = resp.json()
    assert detail["email"] == "alice@example.com"
    assert [p["title"] for p in detail["posts"]] == ["Second", "First"]


@pytest.mark.asyncio
async def test_get_user_not_found(async_client: AsyncClient):
    resp = await async_client.get("/users/99999")
    assert resp.status_code == 404
    assert resp.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_get_user_invalid_id(async_client: AsyncClient):
    resp = await async_client.get("/users/not-a-number")
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Search by email
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_search_by_email_case_insensitive(async_client: AsyncClient):
    user = await _create_user(async_client, "Bob", "bob@example.com")
    await _create_post(async_client, user["id"], "Bob's archived", status="archived")

    resp = await async_client.get("/users/search", params={"email": "  BOB@Example.com "})
    assert resp.status_code == 200
    found = resp.json()
    assert found["id"] == user["id"]
    # Email lookups resolve every post, archived included.
    assert len(found["posts"]) == 1


@pytest.mark.asyncio
async def test_search_by_email_missing_param(async_client: AsyncClient):
    resp = await async_client.get("/users/search")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Email query parameter is required"


@pytest.mark.asyncio
async def test_search_by_email_not_found(async_client: AsyncClient):
    resp = await async_client.get("/users/search", params={"email": "ghost@example.com"})
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Update / deactivate / delete
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_update_user_bumps_schema_version(async_client: AsyncClient):
    user = await _create_user(async_client, "A", "a@x.com")
    assert user["schema_version"] == 1

    resp = await async_client.patch(f"/users/{user['id']}", json={"email": "B@X.com"})
    assert resp.status_code == 200
    updated = resp.json()
    assert updated["email"] == "b@x.com"
    assert updated["schema_version"] == 2

    resp = await async_client.patch(f"/users/{user['id']}", json={"name": "A2", "age": 40})
    assert resp.json()["schema_version"] == 3
    assert resp.json()["age"] == 40


@pytest.mark.asyncio
async def test_update_user_email_conflict_leaves_version(async_client: AsyncClient):
    await _create_user(async_client, "Taken", "taken@example.com")
    user = await _create_user(async_client, "Mover", "mover@example.com")

    resp = await async_client.patch(f"/users/{user['id']}", json={"email": "TAKEN@example.com"})
    assert resp.status_code == 409

    after = (await async_client.get(f"/users/{user['id']}")).json()
    assert after["email"] == "mover@example.com"
    assert after["schema_version"] == 1


@pytest.mark.asyncio
async def test_update_user_not_found(async_client: AsyncClient):
    resp = await async_client.patch("/users/99999", json={"name": "Ghost"})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_deactivate_user(async_client: AsyncClient):
    user = await _create_user(async_client)
    resp = await async_client.patch(f"/users/{user['id']}/deactivate")
    assert resp.status_code == 200
    body = resp.json()
    assert body["is_active"] is False
    assert body["schema_version"] == 2

    # Still reachable by id, but gone from the active list.
    assert (await async_client.get(f"/users/{user['id']}")).status_code == 200
    assert (await async_client.get("/users")).json() == []


@pytest.mark.asyncio
async def test_deactivate_user_not_found(async_client: AsyncClient):
    resp = await async_client.patch("/users/99999/deactivate")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_delete_user_removes_posts_and_likes(async_client: AsyncClient):
    author = await _create_user(async_client, "Author", "author@example.com")
    fan = await _create_user(async_client, "Fan", "fan@example.com")
    own_post = await _create_post(async_client, author["id"], "Mine")
    fan_post = await _create_post(async_client, fan["id"], "Fan post")
    await async_client.post("/posts/toggleLike", json={"post_id": fan_post["id"], "user_id": author["id"]})

    resp = await async_client.delete(f"/users/{author['id']}")
    assert resp.status_code == 204

    assert (await async_client.get(f"/users/{author['id']}")).status_code == 404
    assert (await async_client.get(f"/posts/{own_post['id']}")).status_code == 404
    remaining = (await async_client.get(f"/posts/{fan_post['id']}")).json()
    assert remaining["likes"] == []


@pytest.mark.asyncio
async def test_delete_user_not_found(async_client: AsyncClient):
    resp = await async_client.delete("/users/99999")
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Recent posts / stats
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_recent_posts_only_published(async_client: AsyncClient):
    user = await _create_user(async_client)
    other = await _create_user(async_client, "Quiet", "quiet@example.com")
    await _create_post(async_client, user["id"], "Live", status="published")
    await _create_post(async_client, user["id"], "Draft", status="draft")

    resp = await async_client.get("/users/recent-posts", params={"days": 3})
    assert resp.status_code == 200
    by_id = {u["id"]: u for u in resp.json()}
    assert [p["title"] for p in by_id[user["id"]]["posts"]] == ["Live"]
    assert by_id[other["id"]]["posts"] == []


@pytest.mark.asyncio
@pytest.mark.parametrize("days", [0, -1, 10000])
async def test_recent_posts_rejects_out_of_range_days(async_client: AsyncClient, days: int):
    resp = await async_client.get("/users/recent-posts", params={"days": days})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_user_stats(async_client: AsyncClient):
    user = await _create_user(async_client, "Stat", "stat@example.com", role="admin")
    await _create_post(async_client, user["id"], "P1", status="published")
    await _create_post(async_client, user["id"], "P2", status="published")
    await _create_post(async_client, user["id"], "D1")
    await _create_post(async_client, user["id"], "A1", status="archived")

    resp = await async_client.get(f"/users/{user['id']}/stats")
    assert resp.status_code == 200
    stats = resp.json()
    assert stats["total_posts"] == 4
    assert stats["published_posts"] == 2
    assert stats["draft_posts"] == 1
    assert stats["total_views"] == 0
    assert stats["user_info"]["name"] == "Stat"
    assert stats["user_info"]["email"] == "stat@example.com"
    assert stats["user_info"]["role"] == "admin"
    assert stats["user_info"]["schema_version"] == 1
    assert stats["user_info"]["member_since"]


@pytest.mark.asyncio
async def test_user_stats_not_found(async_client: AsyncClient):
    resp = await async_client.get("/users/99999/stats")
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Metrics / infrastructure
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_metrics(async_client: AsyncClient):
    user = await _create_user(async_client)
    fan = await _create_user(async_client, "Fan", "fan@example.com")
    post = await _create_post(async_client, user["id"], "Counted", status="published")
    await _create_post(async_client, user["id"], "Drafted")
    await async_client.post("/posts/toggleLike", json={"post_id": post["id"], "user_id": fan["id"]})
    await async_client.patch(f"/users/{fan['id']}/deactivate")

    resp = await async_client.get("/metrics")
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_users"] == 2
    assert data["active_users"] == 1
    assert data["total_posts"] == 2
    assert data["posts_by_status"] == {"published": 1, "draft": 1}
    assert data["total_likes"] == 1
    assert set(data["cache_info"]) == {"hits", "misses", "hit_rate"}


@pytest.mark.asyncio
async def test_health_and_diagnostic_headers(async_client: AsyncClient):
    resp = await async_client.get("/health", headers={"X-Request-ID": "req-123"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert resp.headers["x-request-id"] == "req-123"
    assert "x-response-time-ms" in resp.headers


@pytest.mark.asyncio
async def test_query_count_header_present(async_client: AsyncClient):
    user = await _create_user(async_client)
    resp = await async_client.get(f"/users/{user['id']}")
    assert resp.status_code == 200
    assert int(resp.headers["x-query-count"]) >= 0

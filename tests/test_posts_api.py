"""
HTTP endpoint tests: the posts CRUD surface, error envelopes, metrics
and operator endpoints, all driven through httpx's ASGI transport.
"""
import pytest
from httpx import AsyncClient

from posthub.jobs import SqlJobQueue

from tests.conftest import ManualClock, async_session_test

ALICE = {"X-User-Id": "1"}
BOB = {"X-User-Id": "2"}


async def _create(client: AsyncClient, headers=ALICE, **fields) -> dict:
    body = {"title": "T", "content": "C", **fields}
    resp = await client.post("/api/v1/posts", json=body, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Infrastructure / health
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health_reports_cache(async_client: AsyncClient, fake_redis):
    """Health reports the cache as ok, then degraded once Redis is down."""
    resp = await async_client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["cache"] == "ok"

    fake_redis.down = True
    resp = await async_client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["cache"].startswith("degraded")


@pytest.mark.asyncio
async def test_diagnostic_headers(async_client: AsyncClient):
    """Responses carry timing and query-count headers."""
    resp = await async_client.get("/api/v1/posts")
    assert "x-response-time-ms" in resp.headers
    assert int(resp.headers["x-query-count"]) >= 0


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_and_get_post(async_client: AsyncClient):
    """A created post can be fetched by id."""
    created = await _create(async_client, title="My First Post", content="Body")
    assert created["owner_id"] == 1
    assert created["published"] is False

    resp = await async_client.get(f"/api/v1/posts/{created['id']}")
    assert resp.status_code == 200
    assert resp.json()["title"] == "My First Post"


@pytest.mark.asyncio
async def test_create_requires_principal(async_client: AsyncClient):
    """Writes without X-User-Id are rejected with 401."""
    resp = await async_client.post("/api/v1/posts", json={"title": "T", "content": "C"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_create_blank_title_is_400(async_client: AsyncClient):
    """A whitespace-only title yields a 400 validation envelope."""
    resp = await async_client.post(
        "/api/v1/posts", json={"title": "  ", "content": "C"}, headers=ALICE
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_create_missing_field_is_422(async_client: AsyncClient):
    """A body missing a required field fails schema validation."""
    resp = await async_client.post("/api/v1/posts", json={"title": "T"}, headers=ALICE)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_get_missing_post_is_404(async_client: AsyncClient):
    """Unknown ids yield a 404 envelope."""
    resp = await async_client.get("/api/v1/posts/99999")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_list_posts_newest_first(async_client: AsyncClient):
    """The list is ordered newest first."""
    first = await _create(async_client, title="First")
    second = await _create(async_client, title="Second")

    resp = await async_client.get("/api/v1/posts")
    assert resp.status_code == 200
    assert [p["id"] for p in resp.json()] == [second["id"], first["id"]]


@pytest.mark.asyncio
async def test_patch_by_owner(async_client: AsyncClient):
    """The owner's patch is applied and visible on the next read."""
    created = await _create(async_client)
    await async_client.get(f"/api/v1/posts/{created['id']}")  # warm the cache

    resp = await async_client.patch(
        f"/api/v1/posts/{created['id']}", json={"title": "T2"}, headers=ALICE
    )
    assert resp.status_code == 200
    assert resp.json()["title"] == "T2"
    assert resp.json()["content"] == "C"

    fetched = await async_client.get(f"/api/v1/posts/{created['id']}")
    assert fetched.json()["title"] == "T2"


@pytest.mark.asyncio
async def test_patch_by_other_user_is_403(async_client: AsyncClient):
    """A non-owner's patch is refused and leaves the post unchanged."""
    created = await _create(async_client)
    resp = await async_client.patch(
        f"/api/v1/posts/{created['id']}", json={"title": "X"}, headers=BOB
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "FORBIDDEN"

    fetched = await async_client.get(f"/api/v1/posts/{created['id']}")
    assert fetched.json()["title"] == "T"


@pytest.mark.asyncio
async def test_patch_cannot_change_owner(async_client: AsyncClient):
    """owner_id in a patch body is ignored."""
    created = await _create(async_client)
    resp = await async_client.patch(
        f"/api/v1/posts/{created['id']}", json={"owner_id": 2, "published": True}, headers=ALICE
    )
    assert resp.status_code == 200
    assert resp.json()["owner_id"] == 1
    assert resp.json()["published"] is True


@pytest.mark.asyncio
async def test_patch_missing_post_is_404(async_client: AsyncClient):
    """Patching an unknown id yields 404."""
    resp = await async_client.patch("/api/v1/posts/99999", json={"title": "X"}, headers=ALICE)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_delete_lifecycle(async_client: AsyncClient):
    """Only the owner may delete; afterwards the post is gone everywhere."""
    created = await _create(async_client)
    url = f"/api/v1/posts/{created['id']}"
    await async_client.get(url)

    assert (await async_client.delete(url, headers=BOB)).status_code == 403
    assert (await async_client.delete(url, headers=ALICE)).status_code == 204
    assert (await async_client.get(url)).status_code == 404
    assert (await async_client.delete(url, headers=ALICE)).status_code == 404
    assert (await async_client.get("/api/v1/posts")).json() == []


# ---------------------------------------------------------------------------
# Metrics and dead letters
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_metrics(async_client: AsyncClient, container):
    """Metrics report post count, queue counts, connections and cache stats."""
    await _create(async_client)
    await async_client.get("/api/v1/posts")
    await async_client.get("/api/v1/posts")

    resp = await async_client.get("/api/v1/metrics")
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_posts"] == 1
    assert data["queue"]["pending"] == 1
    assert data["connections"] == 0
    assert data["cache_info"]["hits"] >= 1


@pytest.mark.asyncio
async def test_dead_letter_inspection_and_retry(async_client: AsyncClient):
    """Dead letters are listed and can be requeued once."""
    clock = ManualClock()
    producer = SqlJobQueue(async_session_test, max_attempts=2, clock=clock)
    job_id = await producer.enqueue("unknown-type", {})
    for _ in range(2):
        clock.advance(60)
        job = await producer.claim("w1")
        await producer.fail(job.id, "w1", "boom")

    resp = await async_client.get("/api/v1/metrics/dead-letters")
    assert [j["id"] for j in resp.json()] == [job_id]
    assert resp.json()[0]["last_error"] == "boom"

    resp = await async_client.post(f"/api/v1/metrics/dead-letters/{job_id}/retry")
    assert resp.status_code == 200
    assert resp.json()["status"] == "pending"
    assert resp.json()["attempts"] == 0

    resp = await async_client.post(f"/api/v1/metrics/dead-letters/{job_id}/retry")
    assert resp.status_code == 404

from __future__ import annotations

import pytest

from scriptorium.tests.utils.flows import register_and_login, set_tier, upload_text


async def _upload_many(app, client, clock, titles: list[str], genre: str = "mystery") -> list[dict]:
    manuscripts = []
    for title in titles:
        response = await upload_text(client, title=title, genre=genre)
        assert response.status_code == 201, response.text
        manuscripts.append(response.json()["manuscript"])
        # Distinct upload times keep the keyset order deterministic.
        clock.advance(1)
    return manuscripts


@pytest.mark.asyncio
async def test_listing_pages_newest_first(app, client, clock) -> None:
    user_id = await register_and_login(client)
    await set_tier(app, user_id, "pro")
    uploaded = await _upload_many(app, client, clock, ["One", "Two", "Three"])

    first = await client.get("/manuscripts", params={"limit": 2})
    assert first.status_code == 200
    body = first.json()
    assert [item["title"] for item in body["manuscripts"]] == ["Three", "Two"]
    assert body["nextCursor"] is not None

    second = await client.get("/manuscripts", params={"limit": 2, "cursor": body["nextCursor"]})
    assert [item["id"] for item in second.json()["manuscripts"]] == [uploaded[0]["id"]]
    assert second.json()["nextCursor"] is None


@pytest.mark.asyncio
async def test_cached_listing_is_invalidated_by_upload(app, client, clock) -> None:
    user_id = await register_and_login(client)
    await set_tier(app, user_id, "pro")
    assert (await client.get("/manuscripts")).json()["count"] == 0

    await _upload_many(app, client, clock, ["Fresh"])
    listing = await client.get("/manuscripts")
    assert listing.json()["count"] == 1
    assert listing.json()["manuscripts"][0]["status"] == "queued"


@pytest.mark.asyncio
async def test_listing_filters_and_validates_status(app, client, clock) -> None:
    user_id = await register_and_login(client)
    await set_tier(app, user_id, "pro")
    await _upload_many(app, client, clock, ["Mystery"], genre="mystery")
    await _upload_many(app, client, clock, ["Romance"], genre="romance")

    romance = await client.get("/manuscripts", params={"genre": "romance"})
    assert [item["title"] for item in romance.json()["manuscripts"]] == ["Romance"]
    queued = await client.get("/manuscripts", params={"status": "queued"})
    assert queued.json()["count"] == 2

    invalid = await client.get("/manuscripts", params={"status": "bogus"})
    assert invalid.status_code == 400
    assert invalid.json()["field"] == "status"


@pytest.mark.asyncio
async def test_get_update_and_archive(app, client, clock) -> None:
    user_id = await register_and_login(client)
    await set_tier(app, user_id, "pro")
    [manuscript] = await _upload_many(app, client, clock, ["Draft"])
    manuscript_id = manuscript["id"]

    fetched = await client.get(f"/manuscripts/{manuscript_id}")
    assert fetched.status_code == 200
    assert fetched.json()["manuscript"]["title"] == "Draft"
    assert fetched.json()["manuscript"]["metadata"]["originalName"] == "manuscript.txt"

    # Prime the genre-filtered listing so the update has to clear it.
    assert (await client.get("/manuscripts", params={"genre": "mystery"})).json()["count"] == 1
    updated = await client.put(
        f"/manuscripts/{manuscript_id}",
        json={"title": "Final Draft", "genre": "thriller", "metadata": {"series": "Rain"}},
    )
    assert updated.status_code == 200
    assert updated.json()["manuscript"]["title"] == "Final Draft"
    assert updated.json()["manuscript"]["metadata"] == {"originalName": "manuscript.txt", "series": "Rain"}
    assert (await client.get("/manuscripts", params={"genre": "mystery"})).json()["count"] == 0
    assert (await client.get("/manuscripts", params={"genre": "thriller"})).json()["count"] == 1
    assert (await client.get(f"/manuscripts/{manuscript_id}")).json()["manuscript"]["title"] == "Final Draft"

    rejected = await client.put(f"/manuscripts/{manuscript_id}", json={"owner": "someone"})
    assert rejected.status_code == 400

    deleted = await client.delete(f"/manuscripts/{manuscript_id}")
    assert deleted.status_code == 204
    assert (await client.get("/manuscripts")).json()["count"] == 0
    archived = await client.get("/manuscripts", params={"status": "archived"})
    assert archived.json()["count"] == 1

    stats = (await client.get("/manuscripts/stats")).json()
    assert stats["total"] == 0
    assert stats["byStatus"]["archived"] == 1


@pytest.mark.asyncio
async def test_other_principals_see_not_found(app, client, clock) -> None:
    await register_and_login(client)
    [manuscript] = await _upload_many(app, client, clock, ["Private"])
    await client.post("/auth/logout")

    await register_and_login(client, email="other@b.co")
    response = await client.get(f"/manuscripts/{manuscript['id']}")
    assert response.status_code == 404
    assert (await client.delete(f"/manuscripts/{manuscript['id']}")).status_code == 404
    assert (await client.get("/manuscripts")).json()["count"] == 0


@pytest.mark.asyncio
async def test_listing_requires_a_session(client) -> None:
    response = await client.get("/manuscripts")
    assert response.status_code == 401
    assert response.json()["error"] == "unauthorized"


@pytest.mark.asyncio
async def test_stats_and_usage_track_uploads(app, client, clock) -> None:
    user_id = await register_and_login(client)
    await set_tier(app, user_id, "pro")
    await _upload_many(app, client, clock, ["A", "B"])
    await app.state.env.queue.drain(app.state.env.settings.analysis_queue_name, app.state.analysis.handle)

    stats = (await client.get("/manuscripts/stats")).json()
    assert stats["total"] == 2
    assert stats["byStatus"]["analyzed"] == 2

    usage = (await client.get("/usage")).json()
    assert usage["tier"] == "pro"
    assert usage["count"] == 2
    assert usage["limit"] == app.state.env.settings.quota_pro_monthly
    assert usage["remaining"] == usage["limit"] - 2

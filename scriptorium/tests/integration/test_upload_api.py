from __future__ import annotations

import pytest

from scriptorium.services.ingest.upload import IngestService, report_pointer_key
from scriptorium.tests.utils.flows import register_and_login, set_tier, upload_text


def _ids(*values: str):
    remaining = iter(values)
    return lambda: next(remaining)


@pytest.mark.asyncio
async def test_report_id_collisions_are_retried(app, client) -> None:
    user_id = await register_and_login(client)
    await set_tier(app, user_id, "pro")
    env = app.state.env

    app.state.ingest = IngestService(env, report_id_factory=_ids("aaaaaaaa", "aaaaaaaa", "aaaaaaaa", "bbbbbbbb"))
    first = await upload_text(client, title="First")
    assert first.json()["manuscript"]["reportId"] == "aaaaaaaa"

    # The next two candidates are live; the third is fresh.
    second = await upload_text(client, title="Second")
    assert second.status_code == 201, second.text
    assert second.json()["manuscript"]["reportId"] == "bbbbbbbb"

    first_key = await env.buckets.raw.get(report_pointer_key("aaaaaaaa"))
    second_key = await env.buckets.raw.get(report_pointer_key("bbbbbbbb"))
    assert first_key is not None and second_key is not None
    assert await first_key.text() != await second_key.text()


@pytest.mark.asyncio
async def test_report_id_allocation_gives_up_after_every_attempt_collides(app, client) -> None:
    user_id = await register_and_login(client)
    await set_tier(app, user_id, "pro")
    app.state.ingest = IngestService(app.state.env, report_id_factory=lambda: "aaaaaaaa")

    assert (await upload_text(client, title="First")).status_code == 201
    exhausted = await upload_text(client, title="Second")
    assert exhausted.status_code == 409
    assert exhausted.json()["error"] == "conflict"

    usage = await client.get("/usage")
    assert usage.json()["count"] == 1


@pytest.mark.asyncio
async def test_oversized_upload_is_refused_before_ingest(app, client) -> None:
    await register_and_login(client)
    app.state.env.settings.max_upload_bytes = 64

    response = await upload_text(client, text="x" * 65)
    assert response.status_code == 413
    assert response.json()["maxBytes"] == 64

    listing = await client.get("/manuscripts")
    assert listing.json()["count"] == 0

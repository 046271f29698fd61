from __future__ import annotations

from typing import Any

from fastapi import FastAPI
from httpx import AsyncClient

from scriptorium.services.cache import CacheKeys


DEFAULT_PASSWORD = "Passw0rd!"

# Roughly 2 KiB of prose with enough sentences for the fake line and copy agents.
SAMPLE_MANUSCRIPT = (
    "Chapter 1\n"
    "The rain had not stopped for three days when Ada found the letter. "
    "It was tucked inside the hymnal, folded twice and smelling of smoke. "
    "Nobody in the village admitted to writing it, and nobody needed to. "
    "She read it by the stove while the kettle complained.\n\n"
    "Chapter 2\n"
    "By morning the constable was at her door with questions she could not answer. "
) * 6


async def register_user(
    client: AsyncClient,
    email: str = "a@b.co",
    password: str = DEFAULT_PASSWORD,
) -> dict[str, Any]:
    response = await client.post("/auth/register", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    return response.json()


async def register_and_login(
    client: AsyncClient,
    email: str = "a@b.co",
    password: str = DEFAULT_PASSWORD,
) -> str:
    """Register, verify and log in; the client keeps the session cookie. Returns the user id."""
    registered = await register_user(client, email, password)
    verified = await client.get("/auth/verify-email", params={"token": registered["verificationToken"]})
    assert verified.status_code == 200, verified.text
    login = await client.post("/auth/login", json={"email": email, "password": password})
    assert login.status_code == 200, login.text
    return registered["userId"]


async def upload_text(
    client: AsyncClient,
    *,
    text: str = SAMPLE_MANUSCRIPT,
    title: str = "T",
    genre: str | None = "mystery",
    filename: str = "manuscript.txt",
):
    data = {"title": title}
    if genre is not None:
        data["genre"] = genre
    return await client.post(
        "/upload/manuscript",
        files={"file": (filename, text.encode("utf-8"), "text/plain")},
        data=data,
    )


async def drain_analysis(app: FastAPI) -> int:
    env = app.state.env
    return await env.queue.drain(env.settings.analysis_queue_name, app.state.analysis.handle)


async def drain_assets(app: FastAPI) -> int:
    env = app.state.env
    return await env.queue.drain(env.settings.asset_queue_name, app.state.assets.handle)


async def promote_admin(app: FastAPI, user_id: str) -> None:
    env = app.state.env
    await env.db.prepare("UPDATE users SET role = 'admin' WHERE id = ?").bind(user_id).run()
    await app.state.cache.delete(CacheKeys.user(user_id))


async def set_tier(app: FastAPI, user_id: str, tier: str) -> None:
    env = app.state.env
    await env.db.prepare("UPDATE users SET tier = ? WHERE id = ?").bind(tier, user_id).run()
    await app.state.cache.delete(CacheKeys.user(user_id))

"""Tests for the FastAPI application."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import b64
from storage_server import __version__
from storage_server.app import create_app
from storage_server.transforms import sha256_hex


@pytest.fixture
def make_client(make_settings, test_engine, clock):
    """Client factory for apps with non-default settings."""

    @asynccontextmanager
    async def _make(**overrides) -> AsyncGenerator[AsyncClient, None]:
        settings = make_settings(**overrides)
        settings.storage_path.mkdir(parents=True, exist_ok=True)
        app = create_app(settings, engine=test_engine, clock=clock, configure_logs=False)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            yield c

    return _make


async def test_health(client: AsyncClient) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "version": __version__}


async def test_ping_is_not_cached(client: AsyncClient) -> None:
    response = await client.get("/ping")
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert "no-store" in response.headers["cache-control"]
    assert response.headers["pragma"] == "no-cache"


class TestLifecycle:
    async def test_upload_download_delete(self, client: AsyncClient, clock) -> None:
        payload = b"hello over http"
        response = await client.post("/upload", json={"file": b64(payload)})
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["hash"] == sha256_hex(payload)
        assert body["size"] == len(payload)
        assert body["timestamp"] == clock.now
        assert "key" not in body
        assert "message" not in body
        object_id = body["uuid"]

        response = await client.get(f"/file/{object_id}")
        assert response.status_code == 200
        assert response.content == payload
        assert response.headers["cache-control"] == "public, max-age=2592000, immutable"

        response = await client.delete(f"/file/{object_id}")
        assert response.json() == {"success": True, "uuid": object_id}

        response = await client.get(f"/file/{object_id}")
        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "kind": "not_found",
            "cause": "This file doesn't exist!",
        }

    async def test_duplicate_upload_reports_existing(self, client: AsyncClient) -> None:
        first = (await client.post("/upload", json={"file": b64(b"same")})).json()
        second = (await client.post("/upload", json={"file": b64(b"same")})).json()
        assert second["uuid"] == first["uuid"]
        assert second["message"] == "This file already exists!"

    async def test_encrypted_download_needs_key(self, client: AsyncClient) -> None:
        body = (
            await client.post("/upload", json={"file": b64(b"secret"), "encrypt": True})
        ).json()
        object_id, key = body["uuid"], body["key"]

        response = await client.get(f"/file/{object_id}")
        assert response.status_code == 401
        assert response.json()["kind"] == "unauthorized"

        response = await client.get(f"/file/{object_id}", params={"key": key})
        assert response.status_code == 200
        assert response.content == b"secret"

    async def test_expires_sets_cache_lifetime(self, client: AsyncClient, clock) -> None:
        body = (
            await client.post("/upload", json={"file": b64(b"x"), "expires": clock.now + 120_000})
        ).json()
        assert body["expires"] == clock.now + 120_000

        response = await client.get(f"/file/{body['uuid']}")
        assert response.headers["cache-control"] == "public, max-age=120, immutable"

    async def test_file_info(self, client: AsyncClient) -> None:
        body = (await client.post("/upload", json={"file": b64(b"meta")})).json()
        response = await client.get(f"/info/{body['uuid']}")
        assert response.status_code == 200
        info = response.json()
        assert info["uuid"] == body["uuid"]
        assert info["hash"] == sha256_hex(b"meta")
        assert info["compression"] is None
        assert info["compressedHash"] is None
        assert info["encrypted"] is False
        assert info["accessed"] is None

    async def test_server_info(self, client: AsyncClient) -> None:
        await client.post("/upload", json={"file": b64(b"12345")})
        info = (await client.get("/info")).json()
        assert info["success"] is True
        assert info["version"] == __version__
        assert info["count"] == 1
        assert info["size"] == 5
        assert info["maxUploadSize"] is None


class TestErrors:
    async def test_missing_source(self, client: AsyncClient) -> None:
        response = await client.post("/upload", json={})
        assert response.status_code == 400
        assert response.json()["kind"] == "validation"

    async def test_wrongly_typed_field(self, client: AsyncClient) -> None:
        response = await client.post("/upload", json={"file": b64(b"x"), "expires": "soon"})
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["kind"] == "validation"
        assert body["cause"].startswith("expires")

    async def test_invalid_id(self, client: AsyncClient) -> None:
        response = await client.get("/file/not-a-uuid")
        assert response.status_code == 400
        assert response.json()["cause"] == "Invalid UUID"

    async def test_upload_too_large(self, make_client) -> None:
        async with make_client(max_upload_size_gb=4 / (1024**3)) as client:
            response = await client.post("/upload", json={"file": b64(b"too large")})
        assert response.status_code == 413
        assert response.json()["kind"] == "capacity_exceeded"


class TestToken:
    async def test_requests_without_token_are_rejected(self, make_client) -> None:
        async with make_client(token="s3cret") as client:
            response = await client.get("/info")
            assert response.status_code == 401
            assert response.json()["kind"] == "unauthorized"

            response = await client.get("/info", headers={"Authorization": "Bearer wrong"})
            assert response.status_code == 401

            response = await client.get("/info", headers={"Authorization": "Bearer s3cret"})
            assert response.status_code == 200

    async def test_health_is_open(self, make_client) -> None:
        async with make_client(token="s3cret") as client:
            response = await client.get("/health")
        assert response.status_code == 200


class TestRateLimit:
    async def test_limit_per_client(self, make_client) -> None:
        async with make_client(rate_limit=2) as client:
            statuses = [(await client.get("/info")).status_code for _ in range(3)]
            assert statuses == [200, 200, 429]

            response = await client.get("/info")
            assert response.json()["kind"] == "rate_limited"

            other = await client.get("/info", headers={"X-Real-IP": "203.0.113.9"})
            assert other.status_code == 200

    async def test_exempt_paths(self, make_client) -> None:
        async with make_client(rate_limit=1) as client:
            for _ in range(5):
                assert (await client.get("/health")).status_code == 200
                assert (await client.get("/ping")).status_code == 200

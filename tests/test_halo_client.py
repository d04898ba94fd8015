from __future__ import annotations

import asyncio

import httpx
import pytest

from api.services.config import Settings
from api.services.errors import APIError, AuthenticationError, NotFoundError, describe_error
from api.services.halo_client import HaloClient


def _client(settings: Settings, handler) -> HaloClient:
    return HaloClient(settings, transport=httpx.MockTransport(handler))


def _token_or(response: httpx.Response):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/token":
            return httpx.Response(200, json={"access_token": "abc", "expires_in": 3600})
        return response

    return handler


def test_token_is_cached_between_requests(fake_halo, settings) -> None:
    async def run():
        async with _client(settings, fake_halo.handle) as client:
            await client.get("/Report")
            await client.get("/Report")

    asyncio.run(run())
    assert fake_halo.auth_calls == 1


def test_token_inside_expiry_buffer_is_refreshed(settings) -> None:
    auth_calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/token":
            auth_calls.append(request)
            return httpx.Response(200, json={"access_token": "abc", "expires_in": 30})
        return httpx.Response(200, json={"id": 1})

    async def run():
        async with _client(settings, handler) as client:
            await client.get("/Report/1")
            await client.get("/Report/1")
            return client._token_expires_at

    expires_at = asyncio.run(run())
    assert expires_at.tzinfo is not None
    assert len(auth_calls) == 2


def test_bearer_token_and_tenant_are_sent() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/token":
            seen["tenant"] = request.url.params.get("tenant")
            return httpx.Response(200, json={"access_token": "abc", "expires_in": 3600})
        seen["auth"] = request.headers["Authorization"]
        seen["includedetails"] = request.url.params.get("includedetails")
        return httpx.Response(200, json={"id": 1})

    settings = Settings(
        halo_base_url="https://halo.test/",
        halo_client_id="id",
        halo_client_secret="secret",
        halo_tenant="acme",
    )

    async def run():
        async with _client(settings, handler) as client:
            return await client.get("/Report/1", {"includedetails": True, "search": None})

    assert asyncio.run(run()) == {"id": 1}
    assert seen == {"tenant": "acme", "auth": "Bearer abc", "includedetails": "true"}


def test_unconfigured_client_refuses_to_authenticate() -> None:
    async def run():
        async with HaloClient(Settings(halo_base_url="")) as client:
            await client.get("/Report")

    with pytest.raises(AuthenticationError):
        asyncio.run(run())


def test_rejected_credentials_raise_authentication_error(settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_client"})

    async def run():
        async with _client(settings, handler) as client:
            await client.authenticate()

    with pytest.raises(AuthenticationError):
        asyncio.run(run())


def test_status_codes_map_to_errors(settings) -> None:
    async def run(response: httpx.Response):
        async with _client(settings, _token_or(response)) as client:
            await client.get("/Report/9")

    with pytest.raises(AuthenticationError):
        asyncio.run(run(httpx.Response(401)))
    with pytest.raises(NotFoundError):
        asyncio.run(run(httpx.Response(404)))
    with pytest.raises(APIError) as excinfo:
        asyncio.run(run(httpx.Response(400, json={"error": "Invalid column name 'x'."})))
    assert excinfo.value.status_code == 400
    assert excinfo.value.response == "Invalid column name 'x'."


def test_describe_error_categories() -> None:
    assert describe_error(AuthenticationError("nope")).startswith("Authentication failed")
    assert describe_error(APIError("denied", status_code=403)).startswith("Access denied")
    assert describe_error(NotFoundError("/Report/1")) == "The requested resource was not found in HaloPSA."
    assert describe_error(httpx.ConnectTimeout("slow")).startswith("The request to HaloPSA timed out")
    assert describe_error(httpx.ConnectError("down")).startswith("Could not connect")
    assert describe_error(ValueError("boom")) == "Operation failed: boom"

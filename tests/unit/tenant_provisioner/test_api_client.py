"""Control-plane HTTP client, tested against a mocked httpx transport."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from tenant_provisioner.app.errors import (
    PreconditionRequiredError,
    UpstreamError,
    UpstreamNotFoundError,
)
from tenant_provisioner.app.upstream.api_client import (
    HEAD,
    ControlPlaneClient,
    UpstreamTimeoutError,
)

_SLEEP = "tenant_provisioner.app.upstream.api_client.asyncio.sleep"


def _client(handler, **kwargs) -> tuple[ControlPlaneClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = ControlPlaneClient(
        workspace_id="ws_ops",
        api_token="op-token",
        base_url="https://cp.example.com/",
        http_client=http_client,
        **kwargs,
    )
    return client, http_client


@pytest.mark.asyncio
async def test_create_change_set_posts_name_with_bearer_token():
    seen: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"changeSet": {"id": "cs_1"}})

    client, http_client = _client(handler)
    async with http_client:
        payload = await client.create_change_set("Tenant Deployment abc")

    assert payload == {"changeSet": {"id": "cs_1"}}
    assert seen["method"] == "POST"
    assert seen["url"] == "https://cp.example.com/v1/w/ws_ops/change-sets"
    assert seen["auth"] == "Bearer op-token"
    assert seen["body"] == {"changeSetName": "Tenant Deployment abc"}


@pytest.mark.asyncio
async def test_unit_scoped_paths():
    paths: list[tuple[str, str]] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        paths.append((request.method, request.url.path))
        return httpx.Response(200, json={})

    client, http_client = _client(handler)
    async with http_client:
        await client.force_apply("cs_1")
        await client.merge_status("cs_1")
        await client.get_component(HEAD, "comp_1")
        await client.list_actions("cs_1")
        await client.put_action_on_hold("cs_1", "act_9")

    assert paths == [
        ("POST", "/v1/w/ws_ops/change-sets/cs_1/force_apply"),
        ("GET", "/v1/w/ws_ops/change-sets/cs_1/merge_status"),
        ("GET", "/v1/w/ws_ops/change-sets/HEAD/components/comp_1"),
        ("GET", "/v1/w/ws_ops/change-sets/cs_1/actions"),
        ("POST", "/v1/w/ws_ops/change-sets/cs_1/actions/act_9/put_on_hold"),
    ]


@pytest.mark.asyncio
async def test_create_component_body_includes_view_name():
    seen: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"component": {"id": "comp_1"}})

    client, http_client = _client(handler)
    async with http_client:
        await client.create_component(
            "cs_1",
            schema_name="Workspace Management",
            name="acme-workspace",
            attributes={"/domain/isDefault": False},
            view_name="Tenants",
        )

    assert seen["body"] == {
        "schemaName": "Workspace Management",
        "name": "acme-workspace",
        "attributes": {"/domain/isDefault": False},
        "viewName": "Tenants",
    }


@pytest.mark.asyncio
async def test_empty_body_decodes_to_empty_dict():
    client, http_client = _client(lambda request: httpx.Response(204))
    async with http_client:
        assert await client.force_apply("cs_1") == {}


@pytest.mark.asyncio
async def test_428_maps_to_precondition_error_without_retry():
    calls = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(428, json={"message": "dependent values pending"})

    client, http_client = _client(handler)
    async with http_client:
        with pytest.raises(PreconditionRequiredError) as exc_info:
            await client.force_apply("cs_1")

    assert calls == 1
    assert exc_info.value.status_code == 428
    assert exc_info.value.message == "dependent values pending"


@pytest.mark.asyncio
async def test_404_maps_to_upstream_not_found():
    client, http_client = _client(lambda request: httpx.Response(404, text="missing"))
    async with http_client:
        with pytest.raises(UpstreamNotFoundError) as exc_info:
            await client.get_component(HEAD, "comp_1")

    assert exc_info.value.response_body == "missing"


@pytest.mark.asyncio
async def test_other_client_errors_map_to_upstream_error():
    client, http_client = _client(
        lambda request: httpx.Response(422, json={"error": "bad schema"}),
    )
    async with http_client:
        with pytest.raises(UpstreamError) as exc_info:
            await client.create_change_set("x")

    assert exc_info.value.status_code == 422
    assert "bad schema" in str(exc_info.value)


@pytest.mark.asyncio
async def test_retries_transient_5xx_then_succeeds():
    responses = iter([httpx.Response(503), httpx.Response(200, json={"ok": True})])

    client, http_client = _client(lambda request: next(responses))
    with patch(_SLEEP, new_callable=AsyncMock) as mock_sleep:
        async with http_client:
            assert await client.merge_status("cs_1") == {"ok": True}

    assert mock_sleep.await_count == 1


@pytest.mark.asyncio
async def test_retry_after_header_is_honoured():
    responses = iter([
        httpx.Response(429, headers={"Retry-After": "7"}),
        httpx.Response(200, json={}),
    ])

    client, http_client = _client(lambda request: next(responses))
    with patch(_SLEEP, new_callable=AsyncMock) as mock_sleep:
        async with http_client:
            await client.merge_status("cs_1")

    mock_sleep.assert_awaited_once_with(7.0)


@pytest.mark.asyncio
async def test_exhausted_retries_surface_last_status():
    client, http_client = _client(lambda request: httpx.Response(502), max_retries=2)
    with patch(_SLEEP, new_callable=AsyncMock) as mock_sleep:
        async with http_client:
            with pytest.raises(UpstreamError) as exc_info:
                await client.merge_status("cs_1")

    assert exc_info.value.status_code == 502
    assert mock_sleep.await_count == 2


@pytest.mark.asyncio
async def test_timeouts_raise_upstream_timeout_after_retries():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("connect timeout", request=request)

    client, http_client = _client(handler, max_retries=1)
    with patch(_SLEEP, new_callable=AsyncMock):
        async with http_client:
            with pytest.raises(UpstreamTimeoutError):
                await client.merge_status("cs_1")


def test_requires_workspace_and_token():
    with pytest.raises(ValueError):
        ControlPlaneClient(workspace_id="", api_token="t")
    with pytest.raises(ValueError):
        ControlPlaneClient(workspace_id="ws", api_token="")

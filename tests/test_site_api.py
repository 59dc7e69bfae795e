"""Tests for tenant-facing endpoints: login, users, site usage."""

import pytest
from httpx import AsyncClient

from conftest import PLATFORM_HEADERS, tenant_request
from tenantcms.core.security import create_jwt

ACME = {"Host": "acme.example.com"}


async def _provision_and_login(
    client: AsyncClient, domain: str = "acme.example.com", **overrides
) -> tuple[dict, dict]:
    """Helper: provision a tenant, log its admin in; return (headers, provision data)."""
    resp = await client.post(
        "/v1/platform/tenants?wait=true", json=tenant_request(domain, **overrides), headers=PLATFORM_HEADERS,
    )
    assert resp.status_code == 201, resp.text
    data = resp.json()

    resp = await client.post(
        "/v1/auth/login",
        json={"email": data["admin_email"], "password": data["temporary_password"]},
        headers={"Host": domain},
    )
    assert resp.status_code == 200, resp.text
    headers = {"Host": domain, "Authorization": f"Bearer {resp.json()['access_token']}"}
    return headers, data


@pytest.mark.asyncio
async def test_login_and_me(client: AsyncClient):
    headers, data = await _provision_and_login(client)

    resp = await client.get("/v1/auth/me", headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["user"]["email"] == "jane@acme.example.com"
    assert body["user"]["role"] == "super_admin"
    assert body["user"]["must_change_password"] is True
    assert body["site"]["id"] == data["tenant"]["id"]


@pytest.mark.asyncio
async def test_login_wrong_password(client: AsyncClient):
    _, data = await _provision_and_login(client)

    resp = await client.post(
        "/v1/auth/login",
        json={"email": data["admin_email"], "password": "wrong-password"},
        headers=ACME,
    )
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_unknown_host_gets_actionable_404(client: AsyncClient):
    resp = await client.post(
        "/v1/auth/login",
        json={"email": "x@nobody.example.org", "password": "whatever1"},
        headers={"Host": "nobody.example.org"},
    )
    assert resp.status_code == 404
    body = resp.json()
    assert body["code"] == "TENANT_NOT_FOUND"
    assert body["domain"] == "nobody.example.org"
    assert body["hint"]


@pytest.mark.asyncio
async def test_token_is_bound_to_its_tenant(client: AsyncClient):
    acme_headers, _ = await _provision_and_login(client, "acme.example.com")
    await _provision_and_login(client, "globex.example.com")

    stolen = {"Host": "globex.example.com", "Authorization": acme_headers["Authorization"]}
    resp = await client.get("/v1/auth/me", headers=stolen)
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_users_and_plan_limit(client: AsyncClient):
    headers, _ = await _provision_and_login(client)

    # Trial plan allows three active users; the admin is the first.
    for i in range(2):
        resp = await client.post("/v1/users", json={
            "email": f"editor{i}@acme.example.com",
            "password": "editorpass1",
            "first_name": "Ed",
            "last_name": f"Itor{i}",
            "role": "editor",
        }, headers=headers)
        assert resp.status_code == 201, resp.text

    resp = await client.post("/v1/users", json={
        "email": "one-too-many@acme.example.com",
        "password": "editorpass1",
        "first_name": "One",
        "last_name": "More",
    }, headers=headers)
    assert resp.status_code == 402
    assert resp.json()["code"] == "LIMIT_EXCEEDED"
    assert resp.json()["limit"] == 3

    resp = await client.get("/v1/users", headers=headers)
    assert len(resp.json()) == 3


@pytest.mark.asyncio
async def test_duplicate_user_email(client: AsyncClient):
    headers, data = await _provision_and_login(client)

    resp = await client.post("/v1/users", json={
        "email": data["admin_email"],
        "password": "password123",
        "first_name": "Dup",
        "last_name": "User",
    }, headers=headers)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_contributor_cannot_manage_users(client: AsyncClient):
    headers, data = await _provision_and_login(client)
    token = create_jwt(subject=data["tenant"]["id"], tenant_id=data["tenant"]["id"], role="contributor")

    resp = await client.post("/v1/users", json={
        "email": "new@acme.example.com",
        "password": "password123",
        "first_name": "New",
        "last_name": "User",
    }, headers={"Host": "acme.example.com", "Authorization": f"Bearer {token}"})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_site_usage(client: AsyncClient):
    headers, _ = await _provision_and_login(client)

    resp = await client.get("/v1/site", headers=ACME)
    assert resp.status_code == 200
    data = resp.json()
    assert data["plan"] == "trial"
    assert data["usage"]["users"] == {"used": 1, "limit": 3, "percentage": 33.33}
    assert data["usage"]["articles"]["used"] == 0
    assert data["features"]["analytics"] is False


@pytest.mark.asyncio
async def test_soft_resolution_endpoint(client: AsyncClient):
    await _provision_and_login(client)

    resp = await client.get("/v1/site/resolve", headers=ACME)
    assert resp.json() == {"resolved": True, "name": "Acme News", "domain": "acme.example.com"}

    resp = await client.get("/v1/site/resolve", headers={"Host": "nobody.example.org"})
    assert resp.status_code == 200
    assert resp.json()["resolved"] is False


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_user_export_requires_plan_feature(client: AsyncClient):
    trial_headers, _ = await _provision_and_login(client, "acme.example.com")
    resp = await client.get("/v1/users/export", headers=trial_headers)
    assert resp.status_code == 403
    assert resp.json()["code"] == "FEATURE_NOT_AVAILABLE"
    assert resp.json()["feature"] == "analytics"

    basic_headers, _ = await _provision_and_login(client, "globex.example.com", plan="basic")
    resp = await client.get("/v1/users/export", headers=basic_headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    lines = resp.text.strip().splitlines()
    assert lines[0].startswith("id,email,first_name")
    assert len(lines) == 2
    assert "jane@globex.example.com" in lines[1]
    assert "super_admin" in lines[1]

from __future__ import annotations

import json
from uuid import uuid4

from httpx import ASGITransport, AsyncClient
import pytest
from sqlalchemy.exc import OperationalError

from tenancy.apps.api.deps import get_db
from tenancy.apps.api.main import create_app
from tenancy.services.tenants.billing import SIGNATURE_HEADER, build_billing_signature
from tenancy.tests.utils.factories import ADMIN_PASSWORD, SETUP_KEY, SUPER_ADMIN_EMAIL, SUPER_ADMIN_PASSWORD


def _client(app, host: str = "test") -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url=f"http://{host}")


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def _bootstrap_and_login(client: AsyncClient) -> str:
    response = await client.post(
        "/v1/setup/bootstrap",
        json={"name": "Root", "email": SUPER_ADMIN_EMAIL, "password": SUPER_ADMIN_PASSWORD},
        headers={"X-Setup-Key": SETUP_KEY},
    )
    assert response.status_code == 201
    response = await client.post(
        "/v1/admin/auth/login",
        json={"email": SUPER_ADMIN_EMAIL, "password": SUPER_ADMIN_PASSWORD},
    )
    assert response.status_code == 200
    return response.json()["data"]["token"]


async def _register(client: AsyncClient, admin_email: str) -> dict:
    response = await client.post(
        "/v1/tenants/register",
        json={
            "name": f"Acme {uuid4().hex[:8]}",
            "admin_email": admin_email,
            "admin_name": "Tenant Admin",
            "admin_password": ADMIN_PASSWORD,
        },
    )
    assert response.status_code == 201
    return response.json()["data"]


@pytest.mark.asyncio
async def test_register_activate_and_login_on_tenant_host() -> None:
    app = create_app()
    admin_email = f"admin-{uuid4().hex[:8]}@example.com"
    async with _client(app) as client:
        root_token = await _bootstrap_and_login(client)
        registered = await _register(client, admin_email)
        assert registered["status"] == "pending"
        assert registered["domain"] == f"{registered['slug']}.localhost"

        response = await client.post(
            f"/v1/admin/tenants/{registered['tenant_id']}/activate", headers=_bearer(root_token)
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "active"

    async with _client(app, registered["domain"]) as tenant_client:
        response = await tenant_client.post(
            "/v1/auth/login", json={"email": admin_email, "password": ADMIN_PASSWORD}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["meta"]["request_id"]
        token = body["data"]["token"]
        assert token.startswith("tnss_")

        response = await tenant_client.get("/v1/auth/me", headers=_bearer(token))
        assert response.status_code == 200
        me = response.json()["data"]
        assert me["email"] == admin_email
        assert me["tenant_id"] == registered["tenant_id"]
        assert me["role"] == "admin"
        assert me["scope"] == "tenant"
        assert me["is_super_admin"] is False


@pytest.mark.asyncio
async def test_tenant_session_is_bound_to_its_own_host() -> None:
    app = create_app()
    first_email = f"admin-{uuid4().hex[:8]}@example.com"
    second_email = f"admin-{uuid4().hex[:8]}@example.com"
    async with _client(app) as client:
        root_token = await _bootstrap_and_login(client)
        first = await _register(client, first_email)
        second = await _register(client, second_email)
        for tenant in (first, second):
            response = await client.post(
                f"/v1/admin/tenants/{tenant['tenant_id']}/activate", headers=_bearer(root_token)
            )
            assert response.status_code == 200

    async with _client(app, first["domain"]) as first_client:
        response = await first_client.post(
            "/v1/auth/login", json={"email": first_email, "password": ADMIN_PASSWORD}
        )
        token = response.json()["data"]["token"]

    # Presenting tenant A's session on tenant B's host is rejected.
    async with _client(app, second["domain"]) as second_client:
        response = await second_client.get("/v1/auth/me", headers=_bearer(token))
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_pending_tenant_cannot_log_in() -> None:
    app = create_app()
    admin_email = f"admin-{uuid4().hex[:8]}@example.com"
    async with _client(app) as client:
        registered = await _register(client, admin_email)

    async with _client(app, registered["domain"]) as tenant_client:
        response = await tenant_client.post(
            "/v1/auth/login", json={"email": admin_email, "password": ADMIN_PASSWORD}
        )
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "TENANT_INACTIVE"


@pytest.mark.asyncio
async def test_error_envelopes() -> None:
    app = create_app()
    async with _client(app) as client:
        response = await client.get("/v1/auth/me")
        assert response.status_code == 401
        body = response.json()
        assert body["error"]["code"] == "AUTH_UNAUTHORIZED"
        assert body["meta"]["request_id"]
        assert response.headers["WWW-Authenticate"] == "Bearer"

        response = await client.post("/v1/tenants/register", json={"name": "x"})
        assert response.status_code == 422
        fields = response.json()["error"]["details"]["fields"]
        assert "admin_email" in fields

    async with _client(app, "nobody.localhost") as client:
        response = await client.post("/v1/auth/login", json={"email": "a@example.com", "password": "pw"})
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "TENANT_NOT_FOUND"


@pytest.mark.asyncio
async def test_tenant_admin_cannot_reach_super_admin_routes() -> None:
    app = create_app()
    admin_email = f"admin-{uuid4().hex[:8]}@example.com"
    async with _client(app) as client:
        root_token = await _bootstrap_and_login(client)
        registered = await _register(client, admin_email)
        await client.post(f"/v1/admin/tenants/{registered['tenant_id']}/activate", headers=_bearer(root_token))

    async with _client(app, registered["domain"]) as tenant_client:
        response = await tenant_client.post(
            "/v1/auth/login", json={"email": admin_email, "password": ADMIN_PASSWORD}
        )
        token = response.json()["data"]["token"]
        response = await tenant_client.get("/v1/admin/tenants", headers=_bearer(token))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "CENTRAL_SCOPE_REQUIRED"


@pytest.mark.asyncio
async def test_signed_billing_event_suspends_tenant() -> None:
    app = create_app()
    admin_email = f"admin-{uuid4().hex[:8]}@example.com"
    async with _client(app) as client:
        root_token = await _bootstrap_and_login(client)
        registered = await _register(client, admin_email)
        await client.post(f"/v1/admin/tenants/{registered['tenant_id']}/activate", headers=_bearer(root_token))

        body = json.dumps({"type": "subscription_cancelled", "tenant_id": registered["tenant_id"]}).encode("utf-8")

        # Unsigned deliveries are refused before the payload is read.
        response = await client.post(
            "/v1/billing/events", content=body, headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "BILLING_SIGNATURE_INVALID"

        response = await client.post(
            "/v1/billing/events",
            content=body,
            headers={
                "Content-Type": "application/json",
                SIGNATURE_HEADER: build_billing_signature("test-billing-secret", body),
            },
        )
        assert response.status_code == 200
        assert response.json()["data"] == {
            "tenant_id": registered["tenant_id"],
            "event": "subscription_cancelled",
            "status": "suspended",
        }

        response = await client.get(f"/v1/admin/tenants/{registered['tenant_id']}", headers=_bearer(root_token))
        assert response.json()["data"]["status"] == "suspended"


async def _impersonation_session(app, allowed_actions: list[str]) -> tuple[str, dict, str, str]:
    admin_email = f"admin-{uuid4().hex[:8]}@example.com"
    async with _client(app) as client:
        root_token = await _bootstrap_and_login(client)
        registered = await _register(client, admin_email)
        await client.post(f"/v1/admin/tenants/{registered['tenant_id']}/activate", headers=_bearer(root_token))

    async with _client(app, registered["domain"]) as tenant_client:
        response = await tenant_client.post(
            "/v1/auth/login", json={"email": admin_email, "password": ADMIN_PASSWORD}
        )
        token = response.json()["data"]["token"]
        user_id = (await tenant_client.get("/v1/auth/me", headers=_bearer(token))).json()["data"]["user_id"]

    async with _client(app) as client:
        response = await client.post(
            "/v1/admin/impersonation",
            json={
                "tenant_id": registered["tenant_id"],
                "target_user_id": user_id,
                "reason": "Support ticket",
                "allowed_actions": allowed_actions,
            },
            headers=_bearer(root_token),
        )
        assert response.status_code == 201
        issued = response.json()["data"]

    async with _client(app, registered["domain"]) as tenant_client:
        response = await tenant_client.post("/v1/impersonation/redeem", json={"token": issued["token"]})
        assert response.status_code == 200
        session_token = response.json()["data"]["session_token"]
    return root_token, registered, issued["token_id"], session_token


@pytest.mark.asyncio
async def test_impersonated_session_cannot_touch_credentials() -> None:
    app = create_app()
    _, registered, _, session_token = await _impersonation_session(app, ["tenant.users.view"])

    async with _client(app, registered["domain"]) as tenant_client:
        response = await tenant_client.post("/v1/auth/2fa/enroll", headers=_bearer(session_token))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "IMPERSONATION_FORBIDDEN"

        response = await tenant_client.post(
            "/v1/auth/password/change",
            json={"current_password": ADMIN_PASSWORD, "new_password": "An0ther-Secret-Pass!"},
            headers=_bearer(session_token),
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "IMPERSONATION_FORBIDDEN"

        # Reads inside the allowed set still work.
        response = await tenant_client.get("/v1/tenant/users", headers=_bearer(session_token))
        assert response.status_code == 200


@pytest.mark.asyncio
async def test_mutations_under_impersonation_are_logged_on_the_token() -> None:
    app = create_app()
    root_token, registered, token_id, session_token = await _impersonation_session(app, [])

    async with _client(app, registered["domain"]) as tenant_client:
        response = await tenant_client.post(
            "/v1/tenant/users",
            json={"name": "Helper", "email": f"helper-{uuid4().hex[:8]}@example.com", "role": "user"},
            headers=_bearer(session_token),
        )
        assert response.status_code == 201
        response = await tenant_client.get("/v1/tenant/users", headers=_bearer(session_token))
        assert response.status_code == 200
        response = await tenant_client.post(
            "/v1/tenant/domains", json={"domain": "not a domain"}, headers=_bearer(session_token)
        )
        assert response.status_code == 422

    async with _client(app) as client:
        response = await client.get(f"/v1/admin/impersonation/{token_id}", headers=_bearer(root_token))
    audit_log = response.json()["data"]["audit_log"]
    # Only the completed write is recorded; reads and rejected requests are not.
    assert [entry["action"] for entry in audit_log] == ["issued", "redeemed", "action"]
    assert audit_log[-1]["performed"] == "POST /v1/tenant/users"


@pytest.mark.asyncio
async def test_store_outage_is_reported_as_retryable() -> None:
    app = create_app()

    async def unreachable_db():
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

    app.dependency_overrides[get_db] = unreachable_db
    async with _client(app) as client:
        response = await client.get("/v1/setup/status", headers={"X-Request-Id": "req-outage-1"})
    assert response.status_code == 503
    body = response.json()
    assert body["error"]["code"] == "SERVICE_UNAVAILABLE"
    # Driver text never reaches the client; the request id correlates the server log.
    assert "connection refused" not in body["error"]["message"]
    assert body["error"]["details"] == {"correlation_id": "req-outage-1"}

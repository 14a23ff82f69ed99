"""Integration tests for admin operations.

Tests admin-only functionality including:
- Role enforcement on admin routes
- Pre-registering users
- Role and active-state updates
- Deletion and "log out everywhere"
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from kvauth import app as app_module
from kvauth.service.runtime import get_runtime
from kvauth.service.sessions import generate_session_token


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _login(client, username, role="reader"):
    runtime = get_runtime()

    async def _setup():
        user = await runtime.users.create_user(
            f"ext-{username}", f"{username}@example.com", username, role
        )
        token = generate_session_token()
        await runtime.sessions.create_session(token, user.id)
        return user, token

    user, token = asyncio.run(_setup())
    client.cookies.set("session", token)
    return user


@pytest.fixture
def admin_user(client):
    return _login(client, "root", role="admin")


class TestAdminAccess:
    def test_anonymous_gets_401(self, client):
        response = client.get("/v1/admin/users")

        assert response.status_code == 401
        assert response.json()["status"] == "error"
        assert response.json()["error"]["code"] == "unauthorized"

    def test_reader_gets_403(self, client):
        _login(client, "reader1")

        response = client.get("/v1/admin/users")

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_deactivated_admin_gets_403(self, client, admin_user):
        asyncio.run(get_runtime().users.set_active(admin_user.id, False))

        response = client.get("/v1/admin/users")

        assert response.status_code == 403


class TestAdminUserManagement:
    def test_admin_can_list_users_without_sessions(self, client, admin_user):
        response = client.get("/v1/admin/users")

        assert response.status_code == 200
        users = response.json()["data"]["users"]
        assert [user["username"] for user in users] == ["root"]
        assert "sessions" not in users[0]
        assert users[0]["role"] == "admin"

    def test_create_pre_registered_user(self, client, admin_user):
        response = client.post(
            "/v1/admin/users",
            json={"username": "dave", "email": "dave@example.com", "role": "editor", "auth_source": "google"},
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["username"] == "dave"
        assert data["role"] == "editor"
        assert data["auth_source"] == "google"
        assert data["external_id"] is None
        assert data["is_active"] is True

    def test_duplicate_username_conflicts(self, client, admin_user):
        body = {"username": "erin", "email": "erin@example.com"}
        assert client.post("/v1/admin/users", json=body).status_code == 201

        response = client.post("/v1/admin/users", json={**body, "username": "ERIN"})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "body",
        [
            {"username": "x", "email": "not-an-email"},
            {"username": "x", "email": "x@example.com", "role": "owner"},
            {"username": "x", "email": "x@example.com", "auth_source": "gitlab"},
            {"username": "bad:name", "email": "x@example.com"},
        ],
    )
    def test_invalid_create_payloads(self, client, admin_user, body):
        response = client.post("/v1/admin/users", json=body)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_update_role(self, client, admin_user):
        target = asyncio.run(
            get_runtime().users.create_pre_registered_user("fay", "fay@example.com", "reader", "github")
        )

        response = client.post(
            "/v1/admin/users/update-role", json={"user_id": target.id, "role": "editor"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["role"] == "editor"

    def test_update_role_unknown_user(self, client, admin_user):
        response = client.post(
            "/v1/admin/users/update-role", json={"user_id": "missing", "role": "editor"}
        )

        assert response.status_code == 404

    def test_toggle_active(self, client, admin_user):
        target = asyncio.run(
            get_runtime().users.create_pre_registered_user("gus", "gus@example.com", "reader", "github")
        )

        response = client.post(
            "/v1/admin/users/toggle-active", json={"user_id": target.id, "is_active": False}
        )

        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False

    def test_admin_cannot_delete_self(self, client, admin_user):
        response = client.post("/v1/admin/users/delete", json={"user_id": admin_user.id})

        assert response.status_code == 400
        assert asyncio.run(get_runtime().users.lookup_by_id(admin_user.id)) is not None

    def test_delete_user(self, client, admin_user):
        runtime = get_runtime()
        target = asyncio.run(
            runtime.users.create_pre_registered_user("hank", "hank@example.com", "reader", "github")
        )

        response = client.post("/v1/admin/users/delete", json={"user_id": target.id})

        assert response.status_code == 200
        assert response.json()["data"] == {"deleted": True, "user_id": target.id}
        assert asyncio.run(runtime.users.lookup_by_username("hank")) is None
        again = client.post("/v1/admin/users/delete", json={"user_id": target.id})
        assert again.status_code == 404

    def test_invalidate_all_sessions_for_user(self, client, admin_user):
        runtime = get_runtime()

        async def _setup():
            user = await runtime.users.create_user("ext-ivy", "ivy@example.com", "ivy")
            tokens = [generate_session_token() for _ in range(2)]
            for token in tokens:
                await runtime.sessions.create_session(token, user.id)
            return user, tokens

        target, tokens = asyncio.run(_setup())

        response = client.delete(f"/v1/admin/users/{target.id}/sessions")

        assert response.status_code == 200
        assert response.json()["data"] == {"user_id": target.id, "invalidated": 2}
        for token in tokens:
            assert asyncio.run(runtime.sessions.validate_token(token)).user is None

"""HTTP tests for the client registry and the per-client OAuth surface."""

import pytest
from fastapi.testclient import TestClient

from oauthabl import app as app_module
from oauthabl.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def tenant(client):
    response = client.post("/clients", json={"name": "acme", "plan": "pro"})
    assert response.status_code == 201
    return response.json()["data"]


@pytest.fixture
def auth(tenant):
    return {"Authorization": f"Bearer {tenant['secret']}"}


def _register(client, tenant, auth, **body):
    body.setdefault("password", "hunter22")
    return client.post(f"/oauth/{tenant['id']}/users", json=body, headers=auth)


class TestClientRegistry:
    def test_create_and_fetch(self, client, tenant):
        assert tenant["name"] == "acme"
        assert tenant["attributes"] == {"plan": "pro"}

        response = client.get(f"/clients/{tenant['id']}")
        assert response.status_code == 200
        assert response.json()["data"]["secret"] == tenant["secret"]

        listed = client.get("/clients").json()["data"]
        assert [c["id"] for c in listed] == [tenant["id"]]

    def test_update_and_delete(self, client, tenant):
        response = client.patch(f"/clients/{tenant['id']}", json={"name": "acme2"})
        assert response.json()["data"]["name"] == "acme2"

        assert client.delete(f"/clients/{tenant['id']}").status_code == 200
        response = client.get(f"/clients/{tenant['id']}")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_reserved_fields_rejected(self, client):
        response = client.post("/clients", json={"name": "acme", "secret": "mine"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_admin_key_enforced_when_configured(self, client):
        get_runtime().settings.admin_api_key = "admin-key-123"

        assert client.get("/clients").status_code == 401
        wrong = client.get("/clients", headers={"X-Admin-Key": "nope"})
        assert wrong.json()["error"]["code"] == "unauthorized"
        ok = client.get("/clients", headers={"X-Admin-Key": "admin-key-123"})
        assert ok.status_code == 200


class TestClientAuthentication:
    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "Basic abc"}],
    )
    def test_bad_credentials_rejected(self, client, tenant, headers):
        response = client.get(f"/oauth/{tenant['id']}/users", headers=headers)
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "unauthorized",
            "message": "invalid client credentials",
            "details": None,
        }

    def test_unknown_client_looks_the_same(self, client, auth):
        response = client.get("/oauth/no-such-client/users", headers=auth)
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid client credentials"


class TestUsers:
    def test_register_returns_session(self, client, tenant, auth):
        response = _register(client, tenant, auth, username="alice")

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["username"] == "alice"
        assert data["session"]["user_id"] == data["user"]["id"]
        assert data["code"] is None

    def test_register_with_verify_email_returns_code(self, client, tenant, auth):
        response = _register(
            client, tenant, auth, email="bob@example.com", verify_email=True
        )

        data = response.json()["data"]
        assert data["session"] is None
        assert len(data["code"]) == 8

    def test_register_validation(self, client, tenant, auth):
        assert _register(client, tenant, auth).status_code == 400
        assert _register(client, tenant, auth, email="not-an-email").status_code == 400
        response = _register(client, tenant, auth, username="bob", verify_email=True)
        assert response.status_code == 400

    def test_duplicate_username_conflicts(self, client, tenant, auth):
        _register(client, tenant, auth, username="alice")
        response = _register(client, tenant, auth, username="alice")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_lookup_list_and_delete(self, client, tenant, auth):
        user = _register(
            client, tenant, auth, username="alice", email="a@example.com"
        ).json()["data"]["user"]
        base = f"/oauth/{tenant['id']}/users"

        for prop, ident in (("id", user["id"]), ("username", "alice"), ("email", "a@example.com")):
            response = client.get(f"{base}/{prop}/{ident}", headers=auth)
            assert response.status_code == 200
            assert response.json()["data"]["id"] == user["id"]

        assert client.get(f"{base}/username/nobody", headers=auth).status_code == 404
        assert client.get(f"{base}/phone/555", headers=auth).status_code == 400
        assert [u["id"] for u in client.get(base, headers=auth).json()["data"]] == [user["id"]]

        deleted = client.delete(f"{base}/{user['id']}", headers=auth).json()["data"]
        assert deleted["sessions"] == {"archived": 1, "failed": 0, "complete": True}
        assert client.get(base, headers=auth).json()["data"] == []

    def test_lookup_reports_session_count(self, client, tenant, auth):
        user_id = _register(client, tenant, auth, username="alice").json()["data"]["user"]["id"]
        client.post(
            f"/oauth/{tenant['id']}/login",
            json={"identifier": "alice", "password": "hunter22"},
            headers=auth,
        )

        found = client.get(f"/oauth/{tenant['id']}/users/id/{user_id}", headers=auth)
        assert found.json()["data"]["sessions"] == 2
        listed = client.get(f"/oauth/{tenant['id']}/users", headers=auth).json()["data"]
        assert listed[0]["sessions"] is None

    def test_username_sessions_is_a_plain_lookup(self, client, tenant, auth):
        user_id = _register(client, tenant, auth, username="sessions").json()["data"]["user"]["id"]

        response = client.get(f"/oauth/{tenant['id']}/users/username/sessions", headers=auth)

        assert response.status_code == 200
        assert response.json()["data"]["id"] == user_id
        assert response.json()["data"]["username"] == "sessions"


class TestFlows:
    def test_login(self, client, tenant, auth):
        _register(client, tenant, auth, username="alice")
        url = f"/oauth/{tenant['id']}/login"

        ok = client.post(url, json={"identifier": "alice", "password": "hunter22"}, headers=auth)
        assert ok.status_code == 200
        assert ok.json()["data"]["id"]

        bad = client.post(url, json={"identifier": "alice", "password": "nope"}, headers=auth)
        assert bad.status_code == 401
        assert bad.json()["error"]["message"] == "invalid credentials"

    def test_verify_email(self, client, tenant, auth):
        code = _register(
            client, tenant, auth, email="a@example.com", verify_email=True
        ).json()["data"]["code"]
        base = f"/oauth/{tenant['id']}"

        resent = client.post(
            f"{base}/resend-email-verification", json={"email": "a@example.com"}, headers=auth
        ).json()["data"]["code"]
        assert resent

        stale = client.post(
            f"{base}/verify-email", json={"email": "a@example.com", "code": code}, headers=auth
        )
        if code != resent:
            assert stale.status_code == 400
            assert stale.json()["error"]["message"] == "invalid code"

        response = client.post(
            f"{base}/verify-email", json={"email": "a@example.com", "code": resent}, headers=auth
        )
        assert response.status_code == 200
        user = client.get(f"{base}/users/email/a@example.com", headers=auth).json()["data"]
        assert user["email_verified"] is True

    def test_forgot_and_reset_password(self, client, tenant, auth):
        _register(client, tenant, auth, username="alice")
        base = f"/oauth/{tenant['id']}"

        code = client.post(
            f"{base}/forgot-password", json={"identifier": "alice"}, headers=auth
        ).json()["data"]["code"]
        unknown = client.post(
            f"{base}/forgot-password", json={"identifier": "nobody"}, headers=auth
        )
        assert unknown.status_code == 200
        assert unknown.json()["data"]["code"] is None

        response = client.post(
            f"{base}/reset-password",
            json={"identifier": "alice", "code": code, "new_password": "correct horse"},
            headers=auth,
        )
        assert response.status_code == 200
        assert response.json()["data"]["revoked"]["archived"] == 1

        login = client.post(
            f"{base}/login",
            json={"identifier": "alice", "password": "correct horse"},
            headers=auth,
        )
        assert login.status_code == 200

    def test_change_password(self, client, tenant, auth):
        user = _register(client, tenant, auth, username="alice").json()["data"]["user"]
        url = f"/oauth/{tenant['id']}/users/{user['id']}/password"

        denied = client.post(
            url, json={"current_password": "nope", "new_password": "n3w"}, headers=auth
        )
        assert denied.status_code == 401

        ok = client.post(
            url, json={"current_password": "hunter22", "new_password": "n3w"}, headers=auth
        )
        assert ok.status_code == 200


class TestSessions:
    def test_list_refresh_archive(self, client, tenant, auth):
        registered = _register(client, tenant, auth, username="alice").json()["data"]
        user_id = registered["user"]["id"]
        session_id = registered["session"]["id"]
        base = f"/oauth/{tenant['id']}/sessions/{user_id}"

        listed = client.get(base, headers=auth).json()["data"]
        assert [s["id"] for s in listed] == [session_id]

        refreshed = client.post(f"{base}/{session_id}/refresh", headers=auth).json()["data"]
        assert refreshed["id"] == session_id
        assert refreshed["rotations"] == 1

        assert client.delete(f"{base}/{session_id}", headers=auth).status_code == 200
        assert client.delete(f"{base}/{session_id}", headers=auth).status_code == 404
        missing = client.post(f"{base}/{session_id}/refresh", headers=auth)
        assert missing.status_code == 404

    def test_archive_all(self, client, tenant, auth):
        user_id = _register(client, tenant, auth, username="alice").json()["data"]["user"]["id"]
        client.post(
            f"/oauth/{tenant['id']}/login",
            json={"identifier": "alice", "password": "hunter22"},
            headers=auth,
        )
        base = f"/oauth/{tenant['id']}/sessions/{user_id}"

        result = client.delete(base, headers=auth).json()["data"]

        assert result == {"archived": 2, "failed": 0, "complete": True}
        assert client.get(base, headers=auth).json()["data"] == []


def test_request_id_is_echoed(client):
    response = client.get("/clients", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert response.json()["request_id"] == "req-123"


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["store"] == "ok"

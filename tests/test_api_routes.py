"""
tests/test_api_routes.py -- Integration tests for the auth and admin routes.

These tests exercise the full stack: FastAPI routing -> auth dependency injection
-> AuthorizationFacade -> CredentialStore -> response model serialization. Unit
testing individual route functions would miss middleware, dependency injection,
exception handlers, and response model validation.

Coverage:
  - Auth failures: 401 envelope without a token; uniform invalid_credentials
  - Login / refresh (rotation and reuse) / logout / logout-all / password
  - GET /me, GET /sessions, DELETE /sessions/{id} (IDOR guard)
  - POST /authorize always answers 200 with a decision
  - Admin routes: 403 without role.manage / user.manage, 404 for unknown
    targets, 409 hierarchy_cycle, self-deactivation blocked, and changes
    visible to the very next authorize call

Fixtures used (from conftest.py):
  - api_client: (client, facade, admin_id) over a shared in-memory store seeded
    with users admin / nina / sam, roles admin / nurse.

The TestClient keeps login cookies, and the cookie wins over a Bearer header,
so _login() clears the jar and tests authenticate explicitly.
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from auth.facade import AuthorizationFacade
from conftest import PASSWORD, make_role, make_user

ApiClient = tuple[TestClient, AuthorizationFacade, int]


def _login(client: TestClient, username: str, password: str = PASSWORD) -> dict:
    resp = client.post("/api/v1/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    client.cookies.clear()
    return resp.json()


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _role_id(facade: AuthorizationFacade, name: str) -> int:
    return facade.store.get_role_by_name(name).id


# ---------------------------------------------------------------------------
# Authentication failures
# ---------------------------------------------------------------------------


class TestAuthFailures:
    def test_me_without_token(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_invalid_credentials_envelope(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        wrong = client.post("/api/v1/auth/login", json={"username": "nina", "password": "nope"})
        unknown = client.post("/api/v1/auth/login", json={"username": "ghost", "password": "nope"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["code"] == "invalid_credentials"

    def test_login_validation_error(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        resp = client.post("/api/v1/auth/login", json={"username": "nina"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_admin_route_without_token(self, api_client: ApiClient) -> None:
        client, _facade, admin_id = api_client
        resp = client.get(f"/api/v1/admin/users/{admin_id}/permissions")
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Login, refresh, logout
# ---------------------------------------------------------------------------


class TestLoginFlow:
    def test_login_sets_cookies_and_no_store(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        resp = client.post("/api/v1/auth/login", json={"username": "nina", "password": PASSWORD})
        client.cookies.clear()
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        assert "access_token" in resp.cookies
        assert "refresh_token" in resp.cookies
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["permissions"] == ["device.read"]
        assert data["anomaly"]["risk_level"] in ("low", "medium", "high")

    def test_me_with_bearer(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        data = _login(client, "nina")
        resp = client.get("/api/v1/auth/me", headers=_bearer(data["access_token"]))
        assert resp.status_code == 200
        me = resp.json()
        assert me["username"] == "nina"
        assert me["roles"] == ["nurse"]
        assert me["permissions"] == ["device.read"]
        assert me["session_id"] == data["session_id"]

    def test_me_with_cookie(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        client.post("/api/v1/auth/login", json={"username": "sam", "password": PASSWORD})
        resp = client.get("/api/v1/auth/me")
        client.cookies.clear()
        assert resp.status_code == 200
        assert resp.json()["username"] == "sam"
        assert resp.json()["permissions"] == []

    def test_refresh_rotates_and_detects_reuse(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        data = _login(client, "nina")

        first = client.post("/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        client.cookies.clear()
        assert first.status_code == 200
        rotated = first.json()
        assert rotated["session_id"] == data["session_id"]
        assert rotated["refresh_token"] != data["refresh_token"]

        replay = client.post("/api/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "invalid_refresh_token"

        # The replay revoked the whole session, including the rotated secret.
        after = client.post("/api/v1/auth/refresh", json={"refresh_token": rotated["refresh_token"]})
        assert after.status_code == 401
        me = client.get("/api/v1/auth/me", headers=_bearer(rotated["access_token"]))
        assert me.status_code == 401
        assert me.json()["error"]["code"] == "session_expired"

    def test_refresh_without_secret(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        resp = client.post("/api/v1/auth/refresh")
        assert resp.status_code == 401
        assert resp.headers["cache-control"] == "no-store"

    def test_logout_ends_session(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        data = _login(client, "nina")
        resp = client.post("/api/v1/auth/logout", headers=_bearer(data["access_token"]))
        assert resp.status_code == 200
        assert client.get("/api/v1/auth/me", headers=_bearer(data["access_token"])).status_code == 401

    def test_logout_by_refresh_secret(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        data = _login(client, "nina")
        resp = client.post("/api/v1/auth/logout", json={"refresh_token": data["refresh_token"]})
        assert resp.status_code == 200
        assert client.get("/api/v1/auth/me", headers=_bearer(data["access_token"])).status_code == 401

    def test_logout_without_credentials_is_ok(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        assert client.post("/api/v1/auth/logout").status_code == 200

    def test_logout_all(self, api_client: ApiClient) -> None:
        client, facade, _admin = api_client
        make_user(facade.store, "lou")
        first = _login(client, "lou")
        _login(client, "lou")
        resp = client.post("/api/v1/auth/logout-all", headers=_bearer(first["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["count"] == 2

    def test_change_password(self, api_client: ApiClient) -> None:
        client, facade, _admin = api_client
        make_user(facade.store, "pat")
        current = _login(client, "pat")
        other = _login(client, "pat")
        headers = _bearer(current["access_token"])

        wrong = client.post(
            "/api/v1/auth/password",
            json={"current_password": "wrong", "new_password": "brand-new-pass"},
            headers=headers,
        )
        assert wrong.status_code == 401

        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": PASSWORD, "new_password": "brand-new-pass"},
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.json()["count"] == 1
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 200
        assert client.get("/api/v1/auth/me", headers=_bearer(other["access_token"])).status_code == 401
        _login(client, "pat", "brand-new-pass")

    def test_password_over_bcrypt_byte_limit(self, api_client: ApiClient) -> None:
        client, facade, _admin = api_client
        make_user(facade.store, "pia")
        headers = _bearer(_login(client, "pia")["access_token"])
        # 40 characters but 80 bytes as UTF-8.
        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": PASSWORD, "new_password": "é" * 40},
            headers=headers,
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 200


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessionRoutes:
    def test_list_and_revoke_own_sessions(self, api_client: ApiClient) -> None:
        client, facade, _admin = api_client
        make_user(facade.store, "sid")
        older = _login(client, "sid")
        current = _login(client, "sid")
        headers = _bearer(current["access_token"])

        listed = client.get("/api/v1/auth/sessions", headers=headers).json()
        assert {s["id"] for s in listed} == {older["session_id"], current["session_id"]}
        assert [s["current"] for s in listed if s["id"] == current["session_id"]] == [True]
        assert all("refresh_token" not in s and "refresh_token_hash" not in s for s in listed)

        resp = client.delete(f"/api/v1/auth/sessions/{older['session_id']}", headers=headers)
        assert resp.status_code == 204
        listed = client.get("/api/v1/auth/sessions", headers=headers).json()
        assert [s["id"] for s in listed] == [current["session_id"]]

    def test_cannot_revoke_someone_elses_session(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        ninas = _login(client, "nina")
        sams = _login(client, "sam")
        resp = client.delete(f"/api/v1/auth/sessions/{ninas['session_id']}", headers=_bearer(sams["access_token"]))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "session_not_found"
        assert client.get("/api/v1/auth/me", headers=_bearer(ninas["access_token"])).status_code == 200


# ---------------------------------------------------------------------------
# Authorization decisions
# ---------------------------------------------------------------------------


class TestAuthorizeRoute:
    def test_granted_and_denied(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        headers = _bearer(_login(client, "nina")["access_token"])
        granted = client.post("/api/v1/auth/authorize", json={"permission": "device.read"}, headers=headers)
        denied = client.post("/api/v1/auth/authorize", json={"permission": "device.write"}, headers=headers)
        assert granted.status_code == denied.status_code == 200
        assert granted.json() == {"allowed": True, "reason": "granted"}
        assert denied.json() == {"allowed": False, "reason": "missing_permission"}

    def test_without_token_is_a_deny(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        resp = client.post("/api/v1/auth/authorize", json={"permission": "device.read"})
        assert resp.status_code == 200
        assert resp.json() == {"allowed": False, "reason": "token_invalid"}

    def test_malformed_permission_name(self, api_client: ApiClient) -> None:
        client, _facade, _admin = api_client
        resp = client.post("/api/v1/auth/authorize", json={"permission": "Not A Permission"})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


class TestAdminAccess:
    def test_nurse_cannot_assign_roles(self, api_client: ApiClient) -> None:
        client, facade, admin_id = api_client
        headers = _bearer(_login(client, "nina")["access_token"])
        resp = client.post(
            f"/api/v1/admin/users/{admin_id}/roles",
            json={"role_id": _role_id(facade, "nurse")},
            headers=headers,
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "permission_denied"

    def test_unknown_user_and_role(self, api_client: ApiClient) -> None:
        client, facade, admin_id = api_client
        headers = _bearer(_login(client, "admin")["access_token"])
        resp = client.post("/api/v1/admin/users/9999/roles", json={"role_id": _role_id(facade, "nurse")}, headers=headers)
        assert resp.status_code == 404
        resp = client.post(
            f"/api/v1/admin/users/{admin_id}/roles",
            json={"role_id": 9999},
            headers=headers,
        )
        assert resp.status_code == 404

    def test_validity_window_must_be_ordered(self, api_client: ApiClient) -> None:
        client, facade, admin_id = api_client
        headers = _bearer(_login(client, "admin")["access_token"])
        resp = client.post(
            f"/api/v1/admin/users/{admin_id}/roles",
            json={
                "role_id": _role_id(facade, "nurse"),
                "valid_from": "2026-02-01T00:00:00Z",
                "valid_until": "2026-01-01T00:00:00Z",
            },
            headers=headers,
        )
        assert resp.status_code == 422


class TestAdminMutations:
    def test_assign_override_and_remove_role(self, api_client: ApiClient) -> None:
        client, facade, _admin = api_client
        target = make_user(facade.store, "tina")
        admin_headers = _bearer(_login(client, "admin")["access_token"])
        target_headers = _bearer(_login(client, "tina")["access_token"])
        nurse = _role_id(facade, "nurse")

        def allowed(permission: str) -> bool:
            resp = client.post("/api/v1/auth/authorize", json={"permission": permission}, headers=target_headers)
            return resp.json()["allowed"]

        resp = client.post(f"/api/v1/admin/users/{target}/roles", json={"role_id": nurse}, headers=admin_headers)
        assert resp.status_code == 201
        assert resp.json()["permissions"] == ["device.read"]
        assert allowed("device.read")

        resp = client.post(
            f"/api/v1/admin/users/{target}/overrides",
            json={"permission": "device.read", "polarity": "revoke", "notes": "on leave"},
            headers=admin_headers,
        )
        assert resp.status_code == 201
        assert resp.json()["permissions"] == []
        assert not allowed("device.read")

        resp = client.delete(f"/api/v1/admin/users/{target}/overrides/device.read", headers=admin_headers)
        assert resp.status_code == 204
        assert allowed("device.read")
        resp = client.delete(f"/api/v1/admin/users/{target}/overrides/device.read", headers=admin_headers)
        assert resp.status_code == 404

        resp = client.post(
            f"/api/v1/admin/users/{target}/overrides",
            json={"permission": "device.write", "polarity": "grant"},
            headers=admin_headers,
        )
        assert resp.json()["permissions"] == ["device.read", "device.write"]
        assert allowed("device.write")

        resp = client.delete(f"/api/v1/admin/users/{target}/roles/{nurse}", headers=admin_headers)
        assert resp.status_code == 204
        assert not allowed("device.read")
        resp = client.delete(f"/api/v1/admin/users/{target}/roles/{nurse}", headers=admin_headers)
        assert resp.status_code == 404

        resp = client.get(f"/api/v1/admin/users/{target}/permissions", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["permissions"] == ["device.write"]

    def test_override_unknown_permission(self, api_client: ApiClient) -> None:
        client, _facade, admin_id = api_client
        headers = _bearer(_login(client, "admin")["access_token"])
        resp = client.post(
            f"/api/v1/admin/users/{admin_id}/overrides",
            json={"permission": "no.such", "polarity": "grant"},
            headers=headers,
        )
        assert resp.status_code == 404

    def test_hierarchy_edges_and_cycle(self, api_client: ApiClient) -> None:
        client, facade, _admin = api_client
        base = make_role(facade.store, "ward_base", ["device.write"])
        lead = make_role(facade.store, "ward_lead")
        holder = make_user(facade.store, "wendy")
        facade.assign_role(holder, lead)
        headers = _bearer(_login(client, "admin")["access_token"])

        resp = client.post(f"/api/v1/admin/roles/{lead}/parents", json={"parent_id": base}, headers=headers)
        assert resp.status_code == 201
        resp = client.post(f"/api/v1/admin/roles/{lead}/parents", json={"parent_id": base}, headers=headers)
        assert resp.status_code == 200

        perms = client.get(f"/api/v1/admin/users/{holder}/permissions", headers=headers).json()
        assert perms["permissions"] == ["device.write"]
        assert perms["role_names"] == ["ward_base", "ward_lead"]

        resp = client.post(f"/api/v1/admin/roles/{base}/parents", json={"parent_id": lead}, headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "hierarchy_cycle"

        resp = client.delete(f"/api/v1/admin/roles/{lead}/parents/{base}", headers=headers)
        assert resp.status_code == 204
        resp = client.delete(f"/api/v1/admin/roles/{lead}/parents/{base}", headers=headers)
        assert resp.status_code == 404
        perms = client.get(f"/api/v1/admin/users/{holder}/permissions", headers=headers).json()
        assert perms["permissions"] == []

    def test_deactivate_user(self, api_client: ApiClient) -> None:
        client, facade, admin_id = api_client
        target = make_user(facade.store, "dora")
        target_token = _login(client, "dora")["access_token"]
        headers = _bearer(_login(client, "admin")["access_token"])

        resp = client.post(f"/api/v1/admin/users/{target}/deactivate", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["count"] == 1
        assert client.get("/api/v1/auth/me", headers=_bearer(target_token)).status_code == 401
        resp = client.post("/api/v1/auth/login", json={"username": "dora", "password": PASSWORD})
        assert resp.status_code == 401

        resp = client.post(f"/api/v1/admin/users/{admin_id}/deactivate", headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_deactivation"

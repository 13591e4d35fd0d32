"""
tests/test_e2e_dev.py -- End-to-end handshake through the real app and the dev provider.

The browser is simulated hop by hop: the app's login redirect is followed on
the dev provider's TestClient (submitting a user name), and the provider's
redirect back is followed on the app's TestClient. Code exchange, user info
and the avatar fetch happen server-side over httpx.ASGITransport.

Flow under test:
  list -> login -> authorize -> callback -> status "Logged in" -> /api/v1/auth/me
  -> avatar served -> logout -> status "not logged in"
"""

from __future__ import annotations

import base64
from urllib.parse import urlparse

from conftest import ADMIN_PASSWD
from fastapi.testclient import TestClient

from auth.tokens import hash_id


def _login(client: TestClient, dev_client: TestClient, username: str) -> dict:
    resp = client.get("/auth?action=login&using=dev")
    assert resp.status_code == 302
    authorize_url = resp.headers["location"]
    assert authorize_url.startswith("http://127.0.0.1:8084/login/oauth/authorize?")

    # without a user name the provider shows its login form
    form = dev_client.get(authorize_url)
    assert form.status_code == 200
    assert 'name="username"' in form.text

    resp = dev_client.get(authorize_url + f"&username={username}")
    assert resp.status_code == 302
    callback_url = resp.headers["location"]
    assert callback_url.startswith("http://testserver/auth?action=callback&using=dev&")

    resp = client.get(callback_url)
    assert resp.status_code == 200, resp.text
    return resp.json()


class TestDevProviderEndToEnd:
    def test_list_providers(self, api_client) -> None:
        client, _, _ = api_client
        assert client.get("/auth?action=list").json() == {"providers": ["dev"]}
        assert client.get("/api/v1/auth/providers").json() == {"providers": ["dev"]}

    def test_full_login_status_logout(self, api_client) -> None:
        client, _, dev = api_client
        dev_client = TestClient(dev.app, follow_redirects=False)

        resp = client.get("/auth?action=status")
        assert resp.status_code == 401
        assert resp.json() == {"status": "not logged in"}

        user = _login(client, dev_client, "dev_user")
        assert user["id"] == "dev_" + hash_id("dev_user")
        assert user["name"] == "dev_user"
        assert user["picture"] == f"http://testserver/avatar/{hash_id(user['id'])}.image"

        resp = client.get("/auth?action=status")
        assert resp.status_code == 200
        assert resp.json() == {"status": "Logged in", "user": "dev_user"}

        me = client.get("/api/v1/auth/me")
        assert me.status_code == 200
        assert me.json()["id"] == user["id"]
        assert me.json()["admin"] is False

        assert client.get("/auth?action=user").json()["claims"]["name"] == "dev_user"

        avatar = client.get(urlparse(user["picture"]).path)
        assert avatar.status_code == 200
        assert avatar.headers["content-type"] == "image/svg+xml"
        assert avatar.content.startswith(b"<svg")
        etag = avatar.headers["etag"]
        assert client.get(urlparse(user["picture"]).path, headers={"If-None-Match": etag}).status_code == 304

        resp = client.get("/auth?action=logout")
        assert resp.status_code == 200

        resp = client.get("/auth?action=status")
        assert resp.status_code == 401
        assert resp.json() == {"status": "not logged in"}
        assert client.get("/api/v1/auth/me").status_code == 401

    def test_whoami_is_optional(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.get("/api/v1/auth/whoami")
        assert resp.status_code == 200
        assert resp.json() is None

    def test_user_action_without_session_is_401(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.get("/auth?action=user")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "no_user_in_claim"


class TestHandshakeEndpoint:
    def test_default_action_is_login(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.get("/auth?using=dev")
        assert resp.status_code == 302
        client.cookies.clear()

    def test_missing_provider_is_400(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.get("/auth?action=login")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "malformed"

    def test_unknown_provider_is_400(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.get("/auth?action=login&using=myspace")
        assert resp.status_code == 400
        assert resp.json()["error"] == {
            "code": "provider_not_found",
            "message": "provider myspace not found",
            "provider": "myspace",
        }

    def test_unknown_action_is_404(self, api_client) -> None:
        client, _, _ = api_client
        assert client.get("/auth?action=dance&using=dev").status_code == 404

    def test_other_methods_are_405(self, api_client) -> None:
        client, _, _ = api_client
        assert client.put("/auth?action=login&using=dev").status_code == 405
        assert client.delete("/auth?action=logout").status_code == 405

    def test_admin_route_requires_admin(self, api_client) -> None:
        client, _, _ = api_client
        raw = base64.b64encode(f"admin:{ADMIN_PASSWD}".encode()).decode()
        resp = client.get("/api/v1/auth/admin", headers={"Authorization": f"Basic {raw}"})
        assert resp.status_code == 200
        assert resp.json()["admin"] is True
        assert client.get("/api/v1/auth/admin").status_code == 401


class TestDevOAuthServer:
    def test_avatar_is_stable_svg(self, dev_client) -> None:
        first = dev_client.get("/avatar?user=bob")
        assert first.status_code == 200
        assert first.headers["content-type"] == "image/svg+xml"
        assert first.content.startswith(b"<svg")
        assert dev_client.get("/avatar?user=bob").content == first.content
        assert dev_client.get("/avatar?user=carol").content != first.content

    def test_unknown_code_is_invalid_grant(self, dev_client) -> None:
        resp = dev_client.post("/login/oauth/access_token", data={"code": "nope"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "invalid_grant"}

    def test_user_requires_bearer_token(self, dev_client) -> None:
        assert dev_client.get("/user").status_code == 401

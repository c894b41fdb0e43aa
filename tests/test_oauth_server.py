import base64
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from config import Config
from main import create_app
from models import AuthorizationCode, utcnow
from tests.conftest import CLIENT_ID, CLIENT_SECRET, REDIRECT_URI


def basic_auth(client_id: str, client_secret: str) -> dict:
    encoded = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()
    return {"Authorization": f"Basic {encoded}"}


def authorize(client, **overrides):
    data = {
        "client_id": CLIENT_ID,
        "redirect_uri": REDIRECT_URI,
        "response_type": "code",
        "state": "xyz",
        "scope": "read write",
        "approve": "true",
    }
    data.update(overrides)
    return client.post("/oauth/authorize", data=data, follow_redirects=False)


def obtain_code(client, **overrides) -> str:
    response = authorize(client, **overrides)
    assert response.status_code == 302, response.text
    query = parse_qs(urlparse(response.headers["location"]).query)
    return query["code"][0]


def exchange_code(client, code: str, redirect_uri: str = REDIRECT_URI, **extra):
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": CLIENT_ID,
        "client_secret": CLIENT_SECRET,
    }
    data.update(extra)
    return client.post("/oauth/token", data=data)


class TestClientCredentialsGrant:
    def test_issues_token_with_requested_scope(self, client):
        response = client.post(
            "/oauth/token",
            data={
                "grant_type": "client_credentials",
                "client_id": "c1",
                "client_secret": "s1",
                "scope": "read write",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["access_token"]
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 3600
        assert body["scope"] == "read write"
        assert body["refresh_token"]
        assert response.headers["cache-control"] == "no-store"

    def test_default_scope_when_none_requested(self, client):
        response = client.post(
            "/oauth/token",
            data={"grant_type": "client_credentials", "client_id": CLIENT_ID, "client_secret": CLIENT_SECRET},
        )

        assert response.status_code == 200
        assert response.json()["scope"] == "customer:read customer:write"

    def test_accepts_json_body(self, client):
        response = client.post(
            "/oauth/token",
            json={"grant_type": "client_credentials", "client_id": CLIENT_ID, "client_secret": CLIENT_SECRET},
        )

        assert response.status_code == 200

    def test_basic_auth_credentials(self, client):
        response = client.post(
            "/oauth/token",
            data={"grant_type": "client_credentials"},
            headers=basic_auth(CLIENT_ID, CLIENT_SECRET),
        )

        assert response.status_code == 200

    def test_body_and_header_must_agree(self, client):
        response = client.post(
            "/oauth/token",
            data={"grant_type": "client_credentials", "client_id": CLIENT_ID, "client_secret": "other"},
            headers=basic_auth(CLIENT_ID, CLIENT_SECRET),
        )

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"

    def test_credentials_in_query_string_are_ignored(self, client):
        response = client.post(
            "/oauth/token?client_secret=s1",
            data={"grant_type": "client_credentials", "client_id": CLIENT_ID},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"

    def test_wrong_secret(self, client):
        response = client.post(
            "/oauth/token",
            data={"grant_type": "client_credentials", "client_id": CLIENT_ID, "client_secret": "wrong"},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"
        assert "error_description" in response.json()

    def test_wrong_basic_secret_advertises_basic_auth(self, client):
        response = client.post(
            "/oauth/token",
            data={"grant_type": "client_credentials"},
            headers=basic_auth(CLIENT_ID, "wrong"),
        )

        assert response.status_code == 401
        assert response.headers["www-authenticate"].startswith("Basic")

    def test_secret_is_required(self, client):
        response = client.post("/oauth/token", data={"grant_type": "client_credentials", "client_id": CLIENT_ID})

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"

    def test_unknown_client(self, client):
        response = client.post(
            "/oauth/token",
            data={"grant_type": "client_credentials", "client_id": "ghost", "client_secret": "s1"},
        )

        assert response.status_code == 401

    def test_second_token_evicts_first(self, client, issue_token):
        first = issue_token()
        second = issue_token()

        assert client.get("/oauth/validate", headers={"Authorization": f"Bearer {first['access_token']}"}).status_code == 401
        assert client.get("/oauth/validate", headers={"Authorization": f"Bearer {second['access_token']}"}).status_code == 200

    def test_service_account_user_is_per_client(self, client, issue_token):
        token = issue_token()

        body = client.get("/oauth/validate", headers={"Authorization": f"Bearer {token['access_token']}"}).json()

        assert body["user_id"] == f"client_user:{CLIENT_ID}"


class TestGrantValidation:
    def test_missing_grant_type(self, client):
        response = client.post("/oauth/token", data={"client_id": CLIENT_ID, "client_secret": CLIENT_SECRET})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_unsupported_grant_type(self, client):
        response = client.post(
            "/oauth/token",
            data={"grant_type": "password", "client_id": CLIENT_ID, "client_secret": CLIENT_SECRET},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    def test_grant_not_registered_for_client(self, monkeypatch, env, upstream):
        monkeypatch.setenv("OAUTH2_GRANTS", "client_credentials")
        client = TestClient(create_app(Config(), upstream_transport=upstream.transport))

        response = client.post(
            "/oauth/token",
            data={"grant_type": "refresh_token", "refresh_token": "x", "client_id": CLIENT_ID, "client_secret": CLIENT_SECRET},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "unauthorized_client"

    def test_no_refresh_token_without_refresh_grant(self, monkeypatch, env, upstream):
        monkeypatch.setenv("OAUTH2_GRANTS", "client_credentials")
        client = TestClient(create_app(Config(), upstream_transport=upstream.transport))

        response = client.post(
            "/oauth/token",
            data={"grant_type": "client_credentials", "client_id": CLIENT_ID, "client_secret": CLIENT_SECRET},
        )

        assert response.status_code == 200
        assert "refresh_token" not in response.json()

    def test_scope_allow_list(self, monkeypatch, env, upstream):
        monkeypatch.setenv("OAUTH2_SCOPES", "read write")
        client = TestClient(create_app(Config(), upstream_transport=upstream.transport))

        response = client.post(
            "/oauth/token",
            data={
                "grant_type": "client_credentials",
                "client_id": CLIENT_ID,
                "client_secret": CLIENT_SECRET,
                "scope": "read admin",
            },
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_scope"


class TestAuthorizationCodeGrant:
    def test_consent_page(self, client):
        response = client.get(
            "/oauth/authorize",
            params={"client_id": CLIENT_ID, "redirect_uri": REDIRECT_URI, "response_type": "code", "state": "xyz"},
        )

        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        assert 'name="deny"' in response.text
        assert 'value="xyz"' in response.text

    def test_consent_page_rejects_unregistered_redirect(self, client):
        response = client.get(
            "/oauth/authorize",
            params={"client_id": CLIENT_ID, "redirect_uri": "https://evil.example", "response_type": "code"},
        )

        assert response.status_code == 400

    def test_consent_page_rejects_other_response_types(self, client):
        response = client.get(
            "/oauth/authorize",
            params={"client_id": CLIENT_ID, "redirect_uri": REDIRECT_URI, "response_type": "token"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_response_type"

    def test_denial_redirects_with_error(self, client):
        response = client.post(
            "/oauth/authorize",
            json={"deny": True, "redirect_uri": "https://cb", "state": "xyz"},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == "https://cb?error=access_denied&state=xyz"

    def test_denial_does_not_create_code(self, app, client):
        authorize(client, deny="true")

        assert app.state.auth_manager.authorization_codes == {}

    def test_approval_redirects_with_code_and_state(self, client):
        response = authorize(client)

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert f"{location.scheme}://{location.netloc}" == REDIRECT_URI
        query = parse_qs(location.query)
        assert query["state"] == ["xyz"]
        assert query["code"][0]

    def test_exchange_issues_token_for_resolved_user(self, client):
        code = obtain_code(client)

        response = exchange_code(client, code)

        assert response.status_code == 200
        body = response.json()
        assert body["scope"] == "read write"
        assert body["refresh_token"]

        validated = client.get("/oauth/validate", headers={"Authorization": f"Bearer {body['access_token']}"}).json()
        assert validated["user_id"] == "demo-user"

    def test_public_client_may_omit_secret(self, client):
        code = obtain_code(client)

        response = client.post(
            "/oauth/token",
            data={"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI, "client_id": CLIENT_ID},
        )

        assert response.status_code == 200

    def test_code_is_single_use(self, client):
        code = obtain_code(client)

        assert exchange_code(client, code).status_code == 200
        replay = exchange_code(client, code)

        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

    def test_redirect_uri_must_match(self, client):
        code = obtain_code(client)

        response = exchange_code(client, code, redirect_uri="https://app.example.com/callback")

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_expired_code(self, app, client):
        auth_manager = app.state.auth_manager
        auth_manager.authorization_codes["stale"] = AuthorizationCode(
            code="stale",
            expires_at=utcnow() - timedelta(seconds=1),
            redirect_uri=REDIRECT_URI,
            scope="read",
            client_id=CLIENT_ID,
            user_id="demo-user",
        )

        response = exchange_code(client, "stale")

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_custom_authenticator_supplies_user(self, env, upstream):
        from auth import UserAuthenticator
        from models import User

        class HeaderAuthenticator(UserAuthenticator):
            async def authenticate(self, request):
                return User(id=request.headers["X-User"])

        client = TestClient(create_app(Config(), upstream_transport=upstream.transport, authenticator=HeaderAuthenticator()))
        response = client.post(
            "/oauth/authorize",
            data={"client_id": CLIENT_ID, "redirect_uri": REDIRECT_URI, "state": "s"},
            headers={"X-User": "carol"},
            follow_redirects=False,
        )
        code = parse_qs(urlparse(response.headers["location"]).query)["code"][0]
        token = exchange_code(client, code).json()

        validated = client.get("/oauth/validate", headers={"Authorization": f"Bearer {token['access_token']}"}).json()
        assert validated["user_id"] == "carol"


class TestRefreshTokenGrant:
    def refresh(self, client, refresh_token, **extra):
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        data.update(extra)
        return client.post("/oauth/token", data=data, headers=basic_auth(CLIENT_ID, CLIENT_SECRET))

    def test_refresh_issues_new_pair_and_evicts_old(self, client, issue_token):
        original = issue_token("read write")

        response = self.refresh(client, original["refresh_token"])

        assert response.status_code == 200
        body = response.json()
        assert body["access_token"] != original["access_token"]
        assert body["refresh_token"] != original["refresh_token"]
        assert body["scope"] == "read write"

        old = client.get("/oauth/validate", headers={"Authorization": f"Bearer {original['access_token']}"})
        assert old.status_code == 401
        assert self.refresh(client, original["refresh_token"]).json()["error"] == "invalid_grant"

    def test_refresh_can_narrow_scope(self, client, issue_token):
        original = issue_token("read write")

        response = self.refresh(client, original["refresh_token"], scope="read")

        assert response.status_code == 200
        assert response.json()["scope"] == "read"

    def test_refresh_cannot_widen_scope(self, client, issue_token):
        original = issue_token("read")

        response = self.refresh(client, original["refresh_token"], scope="read admin")

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_scope"

    def test_unknown_refresh_token(self, client):
        response = self.refresh(client, "nope")

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_refresh_requires_client_secret(self, client, issue_token):
        original = issue_token()

        response = client.post(
            "/oauth/token",
            data={"grant_type": "refresh_token", "refresh_token": original["refresh_token"], "client_id": CLIENT_ID},
        )

        assert response.status_code == 401

    def test_expired_refresh_token(self, app, client, issue_token):
        original = issue_token()
        app.state.token_store.clock = lambda: utcnow() + timedelta(days=2)

        response = self.refresh(client, original["refresh_token"])

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"


class TestRevocation:
    def test_revoking_refresh_token_disables_access_token(self, client, issue_token):
        token = issue_token()

        response = client.post(
            "/oauth/revoke",
            data={"token": token["refresh_token"], "client_id": CLIENT_ID, "client_secret": CLIENT_SECRET},
        )

        assert response.status_code == 200
        assert response.json() == {"revoked": True}
        validated = client.get("/oauth/validate", headers={"Authorization": f"Bearer {token['access_token']}"})
        assert validated.status_code == 401
        assert validated.json()["active"] is False

    def test_revoking_twice_is_not_an_error(self, client, issue_token):
        token = issue_token()
        data = {"token": token["refresh_token"], "client_id": CLIENT_ID, "client_secret": CLIENT_SECRET}

        client.post("/oauth/revoke", data=data)
        response = client.post("/oauth/revoke", data=data)

        assert response.status_code == 200
        assert response.json() == {"revoked": False}

    def test_revoke_access_token_with_hint(self, client, issue_token):
        token = issue_token()

        response = client.post(
            "/oauth/revoke",
            data={"token": token["access_token"], "token_type_hint": "access_token"},
            headers=basic_auth(CLIENT_ID, CLIENT_SECRET),
        )

        assert response.json() == {"revoked": True}

    def test_revoke_requires_known_client(self, client, issue_token):
        token = issue_token()

        response = client.post("/oauth/revoke", data={"token": token["refresh_token"], "client_id": "ghost"})

        assert response.status_code == 401


class TestMetadata:
    def test_authorization_server_metadata(self, client):
        body = client.get("/.well-known/oauth-authorization-server").json()

        assert body["token_endpoint"].endswith("/oauth/token")
        assert set(body["grant_types_supported"]) == {"authorization_code", "client_credentials", "refresh_token"}

    @pytest.mark.parametrize("path", ["/health", "/api/health"])
    def test_health_endpoints_need_no_token(self, client, path):
        assert client.get(path).status_code == 200


class TestRateLimiting:
    @pytest.fixture
    def limited_client(self, monkeypatch, env, upstream):
        monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
        monkeypatch.setenv("RATE_LIMIT_REQUESTS", "2")
        return TestClient(create_app(Config(), upstream_transport=upstream.transport))

    def test_body_credentials_are_limited(self, limited_client):
        statuses = [
            limited_client.post(
                "/oauth/token",
                data={"grant_type": "client_credentials", "client_id": CLIENT_ID, "client_secret": CLIENT_SECRET},
            ).status_code
            for _ in range(4)
        ]

        assert statuses == [200, 200, 429, 429]

    def test_basic_credentials_are_limited(self, limited_client):
        statuses = [
            limited_client.post(
                "/oauth/token",
                data={"grant_type": "client_credentials"},
                headers=basic_auth(CLIENT_ID, CLIENT_SECRET),
            ).status_code
            for _ in range(4)
        ]

        assert statuses == [200, 200, 429, 429]

    def test_limit_is_shared_across_credential_styles(self, limited_client):
        limited_client.post(
            "/oauth/token",
            data={"grant_type": "client_credentials", "client_id": CLIENT_ID, "client_secret": CLIENT_SECRET},
        )
        limited_client.post(
            "/oauth/token",
            data={"grant_type": "client_credentials"},
            headers=basic_auth(CLIENT_ID, CLIENT_SECRET),
        )

        response = limited_client.post(
            "/oauth/token",
            data={"grant_type": "client_credentials"},
            headers=basic_auth(CLIENT_ID, CLIENT_SECRET),
        )

        assert response.status_code == 429
        assert response.json()["error"] == "rate_limit_exceeded"

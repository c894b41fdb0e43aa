import json
from datetime import timedelta

from fastapi.testclient import TestClient

from models import utcnow
from tests.conftest import CLIENT_ID


class TestValidateEndpoint:
    def test_active_token_details(self, client, issue_token):
        token = issue_token("read write")

        response = client.get("/oauth/validate", headers={"Authorization": f"Bearer {token['access_token']}"})

        assert response.status_code == 200
        body = response.json()
        assert body["active"] is True
        assert body["client_id"] == CLIENT_ID
        assert body["scope"] == "read write"
        assert body["token_type"] == "Bearer"
        assert isinstance(body["exp"], int)
        assert isinstance(body["iat"], int)
        assert body["exp"] - body["iat"] == 3600
        assert 3590 <= body["expires_in"] <= 3600

    def test_token_in_post_body(self, client, issue_token):
        token = issue_token()

        response = client.post("/oauth/validate", data={"token": token["access_token"]})

        assert response.status_code == 200
        assert response.json()["active"] is True

    def test_missing_token(self, client):
        response = client.get("/oauth/validate")

        assert response.status_code == 401
        body = response.json()
        assert body["active"] is False
        assert body["error"]

    def test_unknown_token(self, client):
        response = client.get("/oauth/validate", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401
        assert response.json() == {"active": False, "error": "invalid_token"}

    def test_expired_token(self, app, client, issue_token):
        token = issue_token()
        app.state.token_store.clock = lambda: utcnow() + timedelta(seconds=3601)

        response = client.get("/oauth/validate", headers={"Authorization": f"Bearer {token['access_token']}"})

        assert response.status_code == 401
        assert response.json()["active"] is False

    def test_damaged_record_is_a_server_error(self, env, tokens_file, upstream):
        tokens_file.write_text(json.dumps([{"accessToken": "damaged", "clientId": CLIENT_ID, "userId": "u"}]))
        from config import Config
        from main import create_app

        client = TestClient(create_app(Config(), upstream_transport=upstream.transport))

        response = client.get("/oauth/validate", headers={"Authorization": "Bearer damaged"})

        assert response.status_code == 500
        assert response.json()["active"] is False

    def test_unexpected_failure_returns_error_message(self, app, monkeypatch):
        async def explode(access_token):
            raise RuntimeError("boom")

        monkeypatch.setattr(app.state.auth_manager, "introspect_token", explode)
        client = TestClient(app, raise_server_exceptions=False)

        response = client.get("/oauth/validate", headers={"Authorization": "Bearer anything"})

        assert response.status_code == 500
        assert response.json() == {"error": "boom"}

"""
HTTP tests for the Vipps login service, with the Vipps API faked by an httpx
mock transport.

Run: pytest test_vipps_login.py
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from vipps_auth import ConfigurationError, VippsClient, VippsConfig
from vipps_login import create_app, load_config_from_env, port_from_env

test_env = {
    "VIPPS_API_URL": "https://apitest.vipps.no",
    "VIPPS_CLIENT_ID": "test-client-id-12345",
    "VIPPS_CLIENT_SECRET": "test-client-secret-67890",
    "VIPPS_REDIRECT_URI": "https://relay.example.com/auth/vipps/callback",
    "VIPPS_OCP_APIM_SUBSCRIPTION_KEY": "sub-key-abcd1234",
    "VIPPS_MERCHANT_SERIAL_NUMBER": "123456",
    "APP_REDIRECT_SCHEME": "vippstest",
}

USER_INFO = {"sub": "user-sub-1", "name": "Ola Nordmann", "email": "ola@example.com"}


def fake_vipps(token_status=200, userinfo_status=200):
    def handler(request):
        if request.url.path.endswith("/oauth2/token"):
            if token_status != 200:
                return httpx.Response(token_status, json={
                    "error": "invalid_grant",
                    "error_description": "Code already used",
                })
            return httpx.Response(200, json={"access_token": "at-1", "token_type": "Bearer"})
        if request.url.path == "/vipps-userinfo-api/userinfo":
            if userinfo_status != 200:
                return httpx.Response(userinfo_status)
            return httpx.Response(200, json=USER_INFO)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.fixture
def config():
    return load_config_from_env(test_env)


@pytest.fixture
def client(config):
    app = create_app(config, client=VippsClient(config, transport=fake_vipps()))
    with TestClient(app) as test_client:
        yield test_client


def state_of(auth_url):
    return parse_qs(urlparse(auth_url).query)["state"][0]


def callback(client, **params):
    return client.get("/auth/vipps/callback", params=params, follow_redirects=False)


# ============================================================================
# Configuration
# ============================================================================

def test_load_config_from_env(config):
    assert isinstance(config, VippsConfig)
    assert config.client_id == "test-client-id-12345"
    assert config.merchant_serial_number == "123456"
    assert config.app_redirect_scheme == "vippstest"
    assert config.session_ttl_sec == 600


def test_load_config_from_env_overrides():
    env = dict(test_env, SESSION_TTL_SEC="120", VIPPS_HTTP_TIMEOUT="2.5")
    config = load_config_from_env(env)
    assert config.session_ttl_sec == 120
    assert config.http_timeout == 2.5


def test_load_config_without_secret_fails():
    env = dict(test_env)
    del env["VIPPS_CLIENT_SECRET"]
    with pytest.raises(ConfigurationError):
        load_config_from_env(env)


def test_load_config_empty_secret_fails():
    with pytest.raises(ConfigurationError):
        load_config_from_env(dict(test_env, VIPPS_CLIENT_SECRET=""))


def test_load_port_from_env():
    assert port_from_env({}) == 3001
    assert port_from_env({"PORT": "8080"}) == 8080


@pytest.mark.parametrize("value", ["http", "80.5", "0", "70000"])
def test_load_port_from_env_invalid(value):
    with pytest.raises(ConfigurationError, match="PORT"):
        port_from_env({"PORT": value})


# ============================================================================
# Endpoints
# ============================================================================

def test_health(client):
    response = client.get("/auth/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "vipps-login"}


def test_login(client):
    response = client.get("/auth/vipps/login")
    assert response.status_code == 200

    body = response.json()
    assert set(body) == {"authUrl", "sessionId"}
    assert body["authUrl"].startswith(
        "https://apitest.vipps.no/access-management-1.0/access/oauth2/auth?"
    )
    query = parse_qs(urlparse(body["authUrl"]).query)
    assert query["client_id"] == ["test-client-id-12345"]
    assert query["response_type"] == ["code"]
    assert query["redirect_uri"] == [test_env["VIPPS_REDIRECT_URI"]]
    assert len(query["state"][0]) >= 22


def test_login_sessions_are_distinct(client):
    logins = [client.get("/auth/vipps/login").json() for _ in range(20)]
    assert len({login["sessionId"] for login in logins}) == 20
    assert len({state_of(login["authUrl"]) for login in logins}) == 20


def test_pending_session_is_unauthorized(client):
    login = client.get("/auth/vipps/login").json()
    response = client.get(f"/auth/session/{login['sessionId']}")
    assert response.status_code == 401


def test_unknown_session_not_found(client):
    response = client.get("/auth/session/never-created")
    assert response.status_code == 404
    assert response.json() == {"detail": "Session not found"}


def test_login_callback_and_session_check(client):
    login = client.get("/auth/vipps/login").json()
    session_id = login["sessionId"]

    response = callback(client, code="abc", state=state_of(login["authUrl"]))
    assert response.status_code == 302
    assert response.headers["location"] == (
        f"vippstest://auth/callback?success=true&sessionId={session_id}"
    )

    response = client.get(f"/auth/session/{session_id}")
    assert response.status_code == 200
    assert response.json() == {
        "sessionId": session_id,
        "status": "authenticated",
        "userInfo": USER_INFO,
    }


def test_callback_unknown_state(client):
    response = callback(client, code="abc", state="unknown")
    assert response.status_code == 302
    assert response.headers["location"] == (
        "vippstest://auth/callback?success=false&error=invalid_state"
    )


def test_callback_without_parameters(client):
    response = callback(client)
    assert response.status_code == 302
    assert response.headers["location"].endswith("success=false&error=invalid_state")


def test_callback_replay_rejected(client):
    login = client.get("/auth/vipps/login").json()
    state = state_of(login["authUrl"])

    assert "success=true" in callback(client, code="abc", state=state).headers["location"]
    replay = callback(client, code="abc", state=state)
    assert replay.headers["location"] == (
        "vippstest://auth/callback?success=false&error=invalid_state"
    )
    assert client.get(f"/auth/session/{login['sessionId']}").status_code == 200


def test_callback_user_cancelled(client):
    login = client.get("/auth/vipps/login").json()
    response = callback(
        client,
        state=state_of(login["authUrl"]),
        error="access_denied",
        error_description="User cancelled the login",
    )
    assert response.headers["location"] == (
        f"vippstest://auth/callback?success=false&sessionId={login['sessionId']}"
        "&error=provider_error"
    )
    assert client.get(f"/auth/session/{login['sessionId']}").status_code == 401


@pytest.mark.parametrize("token_status,userinfo_status,error", [
    (400, 200, "token_exchange_failed"),
    (200, 500, "userinfo_failed"),
])
def test_callback_provider_failures(config, token_status, userinfo_status, error):
    vipps = VippsClient(config, transport=fake_vipps(token_status, userinfo_status))
    with TestClient(create_app(config, client=vipps)) as client:
        login = client.get("/auth/vipps/login").json()
        response = callback(client, code="abc", state=state_of(login["authUrl"]))

        assert response.status_code == 302
        location = response.headers["location"]
        assert location == (
            f"vippstest://auth/callback?success=false&sessionId={login['sessionId']}&error={error}"
        )
        # provider error bodies never reach the app
        assert "Code already used" not in location

        assert client.get(f"/auth/session/{login['sessionId']}").status_code == 401


def test_callback_non_ascii_access_token(config):
    def handler(request):
        if request.url.path.endswith("/oauth2/token"):
            return httpx.Response(200, json={"access_token": "tøken", "token_type": "Bearer"})
        return httpx.Response(200, json=USER_INFO)

    vipps = VippsClient(config, transport=httpx.MockTransport(handler))
    with TestClient(create_app(config, client=vipps)) as client:
        login = client.get("/auth/vipps/login").json()
        response = callback(client, code="abc", state=state_of(login["authUrl"]))

        assert response.status_code == 302
        assert response.headers["location"] == (
            f"vippstest://auth/callback?success=false&sessionId={login['sessionId']}"
            "&error=userinfo_failed"
        )
        assert client.get(f"/auth/session/{login['sessionId']}").status_code == 401


def test_metrics(client):
    login = client.get("/auth/vipps/login").json()
    callback(client, code="abc", state=state_of(login["authUrl"]))
    callback(client, code="abc", state="unknown")

    metrics = client.get("/auth/metrics").json()
    assert metrics["logins_started"] == 1
    assert metrics["logins_success"] == 1
    assert metrics["failed_invalid_state"] == 1
    assert metrics["active_sessions"] == 1


def test_lifespan_starts_and_stops_cleanup(config):
    app = create_app(config, client=VippsClient(config, transport=fake_vipps()))
    auth = app.state.vipps_auth
    with TestClient(app):
        assert auth._initialized is True
        assert auth.store._cleanup_task is not None
    assert auth._initialized is False
    assert auth.store._cleanup_task is None

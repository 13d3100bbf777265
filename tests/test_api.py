from __future__ import annotations

import logging
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from account_service.main import create_app

API = "/api/v1/users"
PASSWORD = "Secret123"


def _register(client: TestClient, email: str = "ada@lovelace.dev", name: str = "Ada Lovelace", password: str = PASSWORD):
    return client.post(f"{API}/register", json={"email": email, "name": name, "password": password})


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_register_returns_account_and_token_pair(client, repository):
    response = _register(client, email="Ada@Lovelace.dev")
    assert response.status_code == 201
    body = response.json()
    assert body["status"] is True
    assert body["message"] == "User created successfully"

    data = body["data"]
    assert data["account"]["email"] == "ada@lovelace.dev"
    assert data["account"]["name"] == "Ada Lovelace"
    assert data["account"]["isActive"] is True
    assert data["accessToken"]
    assert data["refreshToken"]
    assert data["tokenType"] == "bearer"
    assert "passwordHash" not in data["account"]
    assert "password" not in data["account"]

    stored = repository.by_email("ada@lovelace.dev")
    assert stored.password_hash != PASSWORD
    assert stored.access_token == data["accessToken"]
    assert [event.event_type for event in repository.audit_log] == ["account.registered"]


def test_register_duplicate_email_conflicts(client):
    assert _register(client).status_code == 201
    response = _register(client, email="ADA@lovelace.dev")
    assert response.status_code == 409
    assert response.json() == {"status": False, "message": "User already exists"}


def test_register_reports_every_validation_error(client):
    response = client.post(f"{API}/register", json={"email": "not-an-email", "name": "A", "password": "short"})
    assert response.status_code == 400
    body = response.json()
    assert body["status"] is False
    assert body["message"] == "Validation error"
    assert "email must be a valid email address" in body["errors"]
    assert "name: Must be at least 2 characters" in body["errors"]
    assert "password: Password must be at least 8 characters long" in body["errors"]
    assert "password: Password must contain at least one uppercase letter" in body["errors"]
    assert "password: Password must contain at least one number" in body["errors"]


def test_register_missing_fields(client):
    response = client.post(f"{API}/register", json={"email": "ada@lovelace.dev"})
    assert response.status_code == 400
    assert "Missing required fields: name, password" in response.json()["errors"]


def test_register_strips_markup_from_values(client):
    response = _register(client, name="Ada<>")
    assert response.status_code == 201
    assert response.json()["data"]["account"]["name"] == "Ada"


def test_profile_flow_and_logout_revokes_token(client):
    token = _register(client).json()["data"]["accessToken"]

    profile = client.get(f"{API}/profile", headers=_auth(token))
    assert profile.status_code == 200
    assert profile.json()["data"]["email"] == "ada@lovelace.dev"

    logout = client.post(f"{API}/logout", headers=_auth(token))
    assert logout.status_code == 200
    assert logout.json() == {"status": True, "message": "Logout successful"}

    after = client.get(f"{API}/profile", headers=_auth(token))
    assert after.status_code == 401
    assert after.json()["message"] == "Invalid or expired token"


def test_login_revokes_previous_token(client):
    first = _register(client).json()["data"]["accessToken"]

    login = client.post(f"{API}/login", json={"email": "ada@lovelace.dev", "password": PASSWORD})
    assert login.status_code == 200
    assert login.json()["message"] == "Login successful"
    second = login.json()["data"]["accessToken"]
    assert second != first
    assert login.json()["data"]["account"]["lastLogin"] is not None

    assert client.get(f"{API}/profile", headers=_auth(first)).status_code == 401
    assert client.get(f"{API}/profile", headers=_auth(second)).status_code == 200


def test_wrong_password_and_unknown_email_are_indistinguishable(client):
    _register(client)
    wrong_password = client.post(f"{API}/login", json={"email": "ada@lovelace.dev", "password": "Wrong1234"})
    unknown_email = client.post(f"{API}/login", json={"email": "nobody@lovelace.dev", "password": PASSWORD})
    assert wrong_password.status_code == unknown_email.status_code == 401
    assert wrong_password.json() == unknown_email.json() == {
        "status": False,
        "message": "Invalid email or password",
    }


def test_login_deactivated_account_is_forbidden(client, repository):
    _register(client)
    stored = repository.by_email("ada@lovelace.dev")
    repository.accounts[stored.account_id] = replace(stored, is_active=False)

    response = client.post(f"{API}/login", json={"email": "ada@lovelace.dev", "password": PASSWORD})
    assert response.status_code == 403
    assert response.json()["message"] == "User account is deactivated"


def test_protected_route_without_token(client):
    response = client.get(f"{API}/profile")
    assert response.status_code == 401
    assert response.json()["message"] == "Authentication token required"


def test_protected_route_with_garbage_token(client):
    response = client.get(f"{API}/profile", headers=_auth("not-a-jwt"))
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid or expired token"


def test_update_profile_ignores_protected_fields(client, repository):
    token = _register(client).json()["data"]["accessToken"]
    response = client.put(
        f"{API}/profile",
        headers=_auth(token),
        json={"name": "Countess Ada", "email": "evil@lovelace.dev", "password": "Hacked123", "isDeleted": True},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["name"] == "Countess Ada"
    assert data["email"] == "ada@lovelace.dev"
    assert data["isUpdated"] is True
    assert data["lastUpdatedAt"] is not None

    login = client.post(f"{API}/login", json={"email": "ada@lovelace.dev", "password": PASSWORD})
    assert login.status_code == 200
    assert repository.by_email("ada@lovelace.dev").is_deleted is False


def test_update_profile_validates_name(client):
    token = _register(client).json()["data"]["accessToken"]
    response = client.put(f"{API}/profile", headers=_auth(token), json={"name": "Ada!"})
    assert response.status_code == 400
    assert "name must contain only alphanumeric characters and spaces" in response.json()["errors"]


def test_delete_account_blocks_further_access(client):
    token = _register(client).json()["data"]["accessToken"]

    deleted = client.delete(f"{API}/account", headers=_auth(token))
    assert deleted.status_code == 200
    assert deleted.json()["message"] == "User deleted successfully"
    assert deleted.json()["data"]["email"] == "ada@lovelace.dev"
    assert deleted.json()["data"]["deletedAt"]

    assert client.delete(f"{API}/account", headers=_auth(token)).status_code == 401
    login = client.post(f"{API}/login", json={"email": "ada@lovelace.dev", "password": PASSWORD})
    assert login.status_code == 401


def test_email_can_be_reused_after_deletion(client):
    token = _register(client).json()["data"]["accessToken"]
    client.delete(f"{API}/account", headers=_auth(token))
    assert _register(client).status_code == 201


def test_operator_shaped_login_is_rejected(client):
    _register(client)
    response = client.post(f"{API}/login", json={"email": {"$ne": ""}, "password": {"$gt": ""}})
    assert response.status_code == 400
    errors = response.json()["errors"]
    assert "email must be of type string" in errors
    assert "password must be of type string" in errors


def test_invalid_json_body(client):
    response = client.post(
        f"{API}/login", content="{not json", headers={"Content-Type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json()["errors"] == ["Request body must be valid JSON"]


def test_audit_endpoint_lists_own_events(client):
    _register(client)
    login = client.post(f"{API}/login", json={"email": "ada@lovelace.dev", "password": PASSWORD})
    token = login.json()["data"]["accessToken"]

    response = client.get(f"{API}/audit", headers=_auth(token), params={"limit": 1})
    assert response.status_code == 200
    data = response.json()["data"]
    assert [item["eventType"] for item in data["items"]] == ["account.logged_in"]
    assert data["nextCursor"]

    older = client.get(f"{API}/audit", headers=_auth(token), params={"limit": 1, "cursor": data["nextCursor"]})
    assert [item["eventType"] for item in older.json()["data"]["items"]] == ["account.registered"]


def test_audit_endpoint_rejects_bad_limit(client):
    token = _register(client).json()["data"]["accessToken"]
    response = client.get(f"{API}/audit", headers=_auth(token), params={"limit": 0})
    assert response.status_code == 400
    assert response.json()["status"] is False


def test_auth_rate_limit_returns_retry_after(client):
    for _ in range(5):
        response = client.post(f"{API}/login", json={"email": "ada@lovelace.dev", "password": PASSWORD})
        assert response.status_code == 401

    blocked = client.post(f"{API}/login", json={"email": "ada@lovelace.dev", "password": PASSWORD})
    assert blocked.status_code == 429
    assert blocked.json()["message"] == "Too many authentication attempts, please try again later."
    assert int(blocked.headers["Retry-After"]) >= 1
    assert blocked.json()["retry_after"] == int(blocked.headers["Retry-After"])


def test_global_rate_limit_skips_health_check(repository, settings):
    app = create_app(replace(settings, rate_limit_requests=2), repository=repository)
    with TestClient(app) as client:
        for _ in range(5):
            assert client.get("/healthz").status_code == 200

        first = client.get(f"{API}/profile")
        assert first.status_code == 401
        assert first.headers["RateLimit-Limit"] == "2"
        assert first.headers["RateLimit-Remaining"] == "1"
        assert client.get(f"{API}/profile").status_code == 401

        blocked = client.get(f"{API}/profile")
        assert blocked.status_code == 429
        assert blocked.json()["message"] == "Too many requests, please slow down."
        assert "Retry-After" in blocked.headers


def test_health_reports_database_state(client, repository):
    healthy = client.get("/healthz")
    assert healthy.status_code == 200
    assert healthy.json()["data"]["database"] == "connected"

    repository.healthy = False
    degraded = client.get("/healthz")
    assert degraded.status_code == 503
    assert degraded.json()["data"]["database"] == "disconnected"


def test_request_id_is_echoed_or_generated(client):
    echoed = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert echoed.headers["X-Request-ID"] == "req-123"
    generated = client.get("/healthz")
    assert generated.headers["X-Request-ID"]


def test_unknown_route_uses_envelope(client):
    response = client.get("/api/v1/nothing-here")
    assert response.status_code == 404
    assert response.json() == {"status": False, "message": "Resource not found"}


def test_metrics_endpoint_exposes_counters(client):
    _register(client)
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "account_operations_total" in response.text


@pytest.mark.parametrize("method,path", [("get", "/profile"), ("post", "/logout"), ("delete", "/account")])
def test_protected_routes_reject_refresh_token(client, method, path):
    refresh = _register(client).json()["data"]["refreshToken"]
    response = getattr(client, method)(f"{API}{path}", headers=_auth(refresh))
    assert response.status_code == 401


def test_forwarded_client_is_limited_separately_when_proxy_trusted(repository, settings):
    app = create_app(replace(settings, trust_proxy=True, auth_rate_limit_requests=1), repository=repository)
    with TestClient(app) as client:
        body = {"email": "ada@lovelace.dev", "password": PASSWORD}
        first = client.post(f"{API}/login", json=body, headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
        assert first.status_code == 401
        again = client.post(f"{API}/login", json=body, headers={"X-Forwarded-For": "203.0.113.7"})
        assert again.status_code == 429
        other = client.post(f"{API}/login", json=body, headers={"X-Forwarded-For": "198.51.100.4"})
        assert other.status_code == 401


def test_null_name_leaves_profile_unchanged(client, repository):
    token = _register(client).json()["data"]["accessToken"]
    response = client.put(f"{API}/profile", headers=_auth(token), json={"name": None})
    assert response.status_code == 200
    assert response.json()["data"]["name"] == "Ada Lovelace"
    assert repository.by_email("ada@lovelace.dev").name == "Ada Lovelace"


def test_unhandled_error_is_enveloped_and_keeps_request_id(client, monkeypatch):
    token = _register(client).json()["data"]["accessToken"]

    async def explode(account_id):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(client.app.state.account_service, "get_by_id", explode)
    response = client.get(f"{API}/profile", headers={**_auth(token), "X-Request-ID": "req-500"})
    assert response.status_code == 500
    assert response.json() == {"status": False, "message": "Internal server error"}
    assert response.headers["X-Request-ID"] == "req-500"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_oversized_body_is_rejected(client, repository):
    response = _register(client, name="a" * 20_000)
    assert response.status_code == 413
    body = response.json()
    assert body["status"] is False
    assert body["message"] == "Request entity too large"
    assert body["errors"] == ["Request body must be at most 10240 bytes"]
    assert repository.accounts == {}


def test_oversized_streamed_body_is_rejected(repository, settings):
    app = create_app(replace(settings, max_body_bytes=64), repository=repository)
    chunks = [b'{"email": "ada@lovelace.dev", "name": "', b"a" * 100, b'", "password": "Secret123"}']
    with TestClient(app) as client:
        response = client.post(f"{API}/register", content=iter(chunks), headers={"Content-Type": "application/json"})
    assert response.status_code == 413
    assert repository.accounts == {}


@pytest.mark.parametrize("path", ["/healthz", f"{API}/profile"])
def test_security_headers_on_every_response(client, path):
    response = client.get(path)
    assert response.headers["Content-Security-Policy"].startswith("default-src 'self'")
    assert response.headers["Strict-Transport-Security"] == "max-age=31536000; includeSubDomains; preload"
    assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "SAMEORIGIN"


def test_access_log_records_method_path_and_status(client, caplog):
    caplog.set_level(logging.INFO, logger="account_service.api.middleware")
    client.get("/healthz")
    client.get(f"{API}/profile")
    messages = [(record.levelno, record.getMessage()) for record in caplog.records if record.name == "account_service.api.middleware"]
    assert any(level == logging.INFO and message.startswith("GET /healthz 200 ") for level, message in messages)
    assert any(level == logging.WARNING and message.startswith(f"GET {API}/profile 401 ") for level, message in messages)

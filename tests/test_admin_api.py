import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from keypool_app.routers import admin_router
from keypool_app.upstream import GeminiUpstream
from keypool_library import KeyPoolEngine

ADMIN_KEY = "unit-test-admin-key"
AUTH = {"Authorization": f"Bearer {ADMIN_KEY}"}


def _upstream_handler(request: httpx.Request) -> httpx.Response:
    secret = request.headers.get("x-goog-api-key")
    if request.url.path.endswith("/v1beta/models"):
        return httpx.Response(
            200,
            json={
                "models": [
                    {"name": "models/gemini-2.0-flash", "displayName": "Gemini 2.0 Flash"},
                    {"name": "tunedModels/ignored"},
                ]
            },
        )
    if secret == "revoked-secret":
        return httpx.Response(403, json={"error": {"message": "API key revoked"}})
    if secret == "flaky-secret":
        raise httpx.ConnectError("connection refused", request=request)
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "Hello"}]}}]})


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, clock):
    monkeypatch.setenv("ADMIN_API_KEY", ADMIN_KEY)
    monkeypatch.delenv("CF_GATEWAY", raising=False)

    app = FastAPI()
    app.include_router(admin_router)
    app.state.engine = KeyPoolEngine(clock=clock)
    app.state.upstream = GeminiUpstream(
        httpx.AsyncClient(transport=httpx.MockTransport(_upstream_handler))
    )
    with TestClient(app) as test_client:
        yield test_client


def _add_key(client: TestClient, secret: str, name: str = "") -> str:
    response = client.post("/api/admin/gemini-keys", json={"key": secret, "name": name}, headers=AUTH)
    assert response.status_code == 201
    return response.json()["id"]


def test_admin_routes_require_bearer_key(client: TestClient) -> None:
    assert client.get("/api/admin/gemini-keys").status_code == 401
    assert (
        client.get("/api/admin/gemini-keys", headers={"Authorization": "Bearer wrong"}).status_code
        == 401
    )
    assert client.get("/api/admin/gemini-keys", headers=AUTH).status_code == 200


def test_key_lifecycle(client: TestClient) -> None:
    key_id = _add_key(client, "good-secret", "primary")

    duplicate = client.post("/api/admin/gemini-keys", json={"key": "good-secret"}, headers=AUTH)
    assert duplicate.status_code == 409
    empty = client.post("/api/admin/gemini-keys", json={"key": "  "}, headers=AUTH)
    assert empty.status_code == 400

    listing = client.get("/api/admin/gemini-keys", headers=AUTH).json()
    assert [item["name"] for item in listing] == ["primary"]
    assert "good-secret" not in str(listing)

    disabled = client.post(f"/api/admin/gemini-keys/{key_id}/disable", headers=AUTH)
    assert disabled.json() == {"success": True, "id": key_id, "enabled": False}

    quota = client.post(
        f"/api/admin/gemini-keys/{key_id}/quota", json={"dailyQuota": "25"}, headers=AUTH
    )
    assert quota.json()["dailyQuota"] == 25

    assert client.delete(f"/api/admin/gemini-keys/{key_id}", headers=AUTH).status_code == 200
    assert client.delete(f"/api/admin/gemini-keys/{key_id}", headers=AUTH).status_code == 404


def test_test_key_counts_usage_on_success(client: TestClient) -> None:
    client.post(
        "/api/admin/models",
        json={"id": "gemini-2.0-flash", "category": "Flash", "individualQuota": 10},
        headers=AUTH,
    )
    key_id = _add_key(client, "good-secret")

    response = client.post(
        "/api/admin/test-gemini-key",
        json={"keyId": key_id, "modelId": "gemini-2.0-flash"},
        headers=AUTH,
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    (item,) = client.get("/api/admin/gemini-keys", headers=AUTH).json()
    assert item["usage"] == {"Flash": 1}
    assert item["remaining"] == {"gemini-2.0-flash": 9}


def test_test_key_auth_failure_marks_key_until_cleared(client: TestClient) -> None:
    key_id = _add_key(client, "revoked-secret", "revoked")

    response = client.post(
        "/api/admin/test-gemini-key",
        json={"keyId": key_id, "modelId": "gemini-2.0-flash"},
        headers=AUTH,
    )
    assert response.status_code == 403
    assert response.json()["success"] is False

    errored = client.get("/api/admin/error-keys", headers=AUTH).json()
    assert [(e["id"], e["name"], e["status"]) for e in errored] == [(key_id, "revoked", 403)]

    cleared = client.post("/api/admin/clear-key-error", json={"keyId": key_id}, headers=AUTH)
    assert cleared.status_code == 200
    assert client.get("/api/admin/error-keys", headers=AUTH).json() == []


def test_test_key_transport_error_is_transient(client: TestClient) -> None:
    key_id = _add_key(client, "flaky-secret")

    response = client.post(
        "/api/admin/test-gemini-key",
        json={"keyId": key_id, "modelId": "gemini-2.0-flash"},
        headers=AUTH,
    )

    assert response.status_code == 500
    assert response.json()["content"]["error"].startswith("Fetch error:")
    assert client.get("/api/admin/error-keys", headers=AUTH).json() == []


def test_test_key_validation(client: TestClient) -> None:
    missing = client.post("/api/admin/test-gemini-key", json={"keyId": "x"}, headers=AUTH)
    unknown = client.post(
        "/api/admin/test-gemini-key", json={"keyId": "x", "modelId": "m"}, headers=AUTH
    )
    bad_clear = client.post("/api/admin/clear-key-error", json={"keyId": 5}, headers=AUTH)
    unknown_clear = client.post("/api/admin/clear-key-error", json={"keyId": "x"}, headers=AUTH)

    assert missing.status_code == 400
    assert unknown.status_code == 404
    assert bad_clear.status_code == 400
    assert unknown_clear.status_code == 404


def test_model_listing_does_not_take_a_turn(client: TestClient) -> None:
    assert client.get("/api/admin/gemini-models", headers=AUTH).json() == []
    _add_key(client, "good-secret")

    models = client.get("/api/admin/gemini-models", headers=AUTH).json()

    assert models == [
        {"id": "gemini-2.0-flash", "name": "Gemini 2.0 Flash", "description": None}
    ]
    assert client.app.state.engine.pool.cursor.position == -1


def test_model_and_category_quota_config(client: TestClient) -> None:
    created = client.post(
        "/api/admin/models",
        json={"id": "tunedModels/custom-1", "category": "Custom", "dailyQuota": "", "individualQuota": "3"},
        headers=AUTH,
    )
    assert created.json() == {
        "success": True,
        "id": "tunedModels/custom-1",
        "category": "Custom",
        "individualQuota": 3,
        "dailyQuota": None,
    }

    bad_category = client.post("/api/admin/models", json={"id": "m", "category": "Ultra"}, headers=AUTH)
    negative = client.post(
        "/api/admin/models", json={"id": "m", "category": "Pro", "individualQuota": -1}, headers=AUTH
    )
    assert bad_category.status_code == 400
    assert negative.status_code == 400

    listed = client.get("/api/admin/models", headers=AUTH).json()
    assert [m["id"] for m in listed] == ["tunedModels/custom-1"]

    assert client.delete("/api/admin/models/tunedModels/custom-1", headers=AUTH).status_code == 200
    assert client.delete("/api/admin/models/tunedModels/custom-1", headers=AUTH).status_code == 404

    quotas = client.post(
        "/api/admin/category-quotas", json={"proQuota": 100, "flashQuota": None}, headers=AUTH
    )
    assert quotas.json() == {"success": True, "proQuota": 100, "flashQuota": None}
    assert client.get("/api/admin/category-quotas", headers=AUTH).json() == {
        "proQuota": 100,
        "flashQuota": None,
    }
    fractional = client.post("/api/admin/category-quotas", json={"proQuota": 1.5}, headers=AUTH)
    assert fractional.status_code == 400

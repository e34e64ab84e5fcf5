from __future__ import annotations

from typing import Any

from fastapi.testclient import TestClient


def _register(client: TestClient, username: str, password: str = "secret1") -> dict[str, Any]:
    res = client.post("/api/auth/register", json={"username": username, "password": password})
    assert res.status_code == 200, res.text
    return res.json()


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _rpc(method: str, params: dict[str, Any] | None = None, req_id: int = 1) -> dict[str, Any]:
    body: dict[str, Any] = {"jsonrpc": "2.0", "id": req_id, "method": method}
    if params is not None:
        body["params"] = params
    return body


def test_health_ok(api_client: TestClient) -> None:
    res = api_client.get("/health")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert "timestamp" in body
    assert body["connections"] == 0


def test_register_login_me(api_client: TestClient) -> None:
    registered = _register(api_client, "alice")
    assert registered["success"] is True
    assert registered["user"]["username"] == "alice"

    res = api_client.post("/api/auth/login", json={"username": "alice", "password": "secret1"})
    assert res.status_code == 200
    token = res.json()["token"]

    res = api_client.get("/api/auth/me", headers=_bearer(token))
    assert res.status_code == 200
    assert res.json() == {"user": registered["user"], "isAdmin": False}


def test_register_rejects_duplicates_and_short_passwords(api_client: TestClient) -> None:
    _register(api_client, "alice")
    res = api_client.post("/api/auth/register", json={"username": "alice", "password": "secret1"})
    assert res.status_code == 400
    res = api_client.post("/api/auth/register", json={"username": "bob", "password": "123"})
    assert res.status_code == 400


def test_login_with_wrong_password(api_client: TestClient) -> None:
    _register(api_client, "alice")
    res = api_client.post("/api/auth/login", json={"username": "alice", "password": "nope-nope"})
    assert res.status_code == 401


def test_logout_invalidates_token(api_client: TestClient) -> None:
    token = _register(api_client, "alice")["token"]
    res = api_client.post("/api/auth/logout", headers=_bearer(token))
    assert res.json() == {"success": True}
    assert api_client.get("/api/auth/me", headers=_bearer(token)).status_code == 401


def test_mcp_requires_auth(api_client: TestClient) -> None:
    res = api_client.post("/api/mcp", json=_rpc("tools/list"))
    assert res.status_code == 401
    res = api_client.post("/api/mcp", json=_rpc("tools/list"), headers=_bearer("bogus"))
    assert res.status_code == 401


def test_mcp_with_bearer_token(api_client: TestClient) -> None:
    token = _register(api_client, "alice")["token"]
    res = api_client.post(
        "/api/mcp",
        json=_rpc("tools/call", {"name": "create_room", "arguments": {"name": "general"}}),
        headers=_bearer(token),
    )
    assert res.status_code == 200
    body = res.json()
    assert body["id"] == 1
    assert body["result"]["isError"] is False


def test_mcp_with_header_credentials(api_client: TestClient) -> None:
    _register(api_client, "alice")
    headers = {"X-Username": "alice", "X-Password": "secret1"}
    res = api_client.post("/api/mcp", json=_rpc("tools/list"), headers=headers)
    assert res.status_code == 200
    assert len(res.json()["result"]["tools"]) == 18

    bad = {"X-Username": "alice", "X-Password": "wrong-one"}
    assert api_client.post("/api/mcp", json=_rpc("tools/list"), headers=bad).status_code == 401


def test_mcp_parse_error_and_batches(api_client: TestClient) -> None:
    token = _register(api_client, "alice")["token"]
    headers = {**_bearer(token), "Content-Type": "application/json"}

    res = api_client.post("/api/mcp", content=b"{not json", headers=headers)
    assert res.json()["error"]["code"] == -32700
    assert res.json()["id"] is None

    res = api_client.post("/api/mcp", json=[_rpc("ping")], headers=_bearer(token))
    assert res.json()["error"]["code"] == -32600


def test_mcp_notification_returns_no_content(api_client: TestClient) -> None:
    token = _register(api_client, "alice")["token"]
    res = api_client.post(
        "/api/mcp",
        json={"jsonrpc": "2.0", "method": "notifications/initialized"},
        headers=_bearer(token),
    )
    assert res.status_code == 204
    assert res.content == b""


def test_events_require_auth(api_client: TestClient) -> None:
    assert api_client.get("/api/events").status_code == 401
    assert api_client.get("/api/events", params={"token": "bogus"}).status_code == 401


def test_registration_is_broadcast(api_client: TestClient) -> None:
    alice = _register(api_client, "alice")
    services = api_client.app.state.services
    watcher = services.registry.open(alice["user"]["id"], "alice")

    bob = _register(api_client, "bob")

    patch = watcher.queue.get_nowait()
    assert patch["op"] == "add"
    assert patch["path"] == f"/users/{bob['user']['id']}"
    assert patch["value"] == {"name": "bob", "messages": {}}
    services.registry.remove(watcher)


def test_register_enforces_username_format(api_client: TestClient) -> None:
    for bad in ("a2", "has space", "bad!chars", "x" * 40):
        res = api_client.post("/api/auth/register", json={"username": bad, "password": "secret1"})
        assert res.status_code == 400, bad
    assert _register(api_client, "ok_name-3")["user"]["username"] == "ok_name-3"

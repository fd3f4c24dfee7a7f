from unittest.mock import patch

import audit
import db
from conftest import BASE, bearer, store_passkey
from errors import AuthProviderError


def test_list_requires_session(client):
    assert client.get(f"{BASE}/me").json() == {"error": "unauthorized"}
    r = client.get(f"{BASE}/me", headers=bearer("expired"))
    assert r.status_code == 401
    assert r.json() == {"error": "invalid_session"}


def test_session_failures_are_audited(client, auth_provider):
    auth_provider.add_user("token-a", "user-a", "ana@example.com")

    client.get(f"{BASE}/me")
    client.request("DELETE", f"{BASE}/me", headers=bearer("expired"), json={"id": 1})
    client.request("DELETE", f"{BASE}/me", headers=bearer("token-a"), json={"id": "1"})

    entries = db.list_audit_logs(audit.MANAGE_REJECTED)
    assert sorted(e["metadata"]["reason"] for e in entries) == [
        "invalid_id",
        "invalid_session",
        "unauthorized",
    ]
    assert all(e["metadata"]["endpoint"] == "me" for e in entries)
    [invalid] = [e for e in entries if e["metadata"]["reason"] == "invalid_id"]
    assert invalid["user_id"] == "user-a"


def test_provider_outage_is_not_an_invalid_session(client, auth_provider):
    auth_provider.lookup_error = AuthProviderError("auth provider timed out")

    r = client.get(f"{BASE}/me", headers=bearer("token-a"))

    assert r.status_code == 500
    assert r.json() == {"error": "auth_provider_unavailable", "message": "auth provider timed out"}
    [entry] = db.list_audit_logs(audit.MANAGE_REJECTED)
    assert entry["metadata"]["reason"] == "auth_provider_unavailable"


def test_unexpected_error_is_audited(client, auth_provider):
    auth_provider.add_user("token-a", "user-a", "ana@example.com")

    with patch("webauthn_routes.db.list_passkey_summaries", side_effect=RuntimeError("boom")):
        r = client.get(f"{BASE}/me", headers=bearer("token-a"))

    assert r.status_code == 500
    assert r.json() == {"error": "internal_error"}
    [entry] = db.list_audit_logs(audit.MANAGE_REJECTED)
    assert entry["metadata"]["reason"] == "internal_error"


def test_list_only_own_active_passkeys(client, auth_provider):
    auth_provider.add_user("token-a", "user-a", "ana@example.com")
    auth_provider.add_user("token-b", "user-b", "bea@example.com")
    store_passkey("user-a", b"laptop", device_name="Laptop")
    store_passkey("user-a", b"phone", device_name="Phone")
    store_passkey("user-b", b"bea-key", device_name="Bea")

    r = client.get(f"{BASE}/me", headers=bearer("token-a"))

    assert r.status_code == 200
    assert [c["device_name"] for c in r.json()["credentials"]] == ["Phone", "Laptop"]


def test_delete_revokes_softly(client, auth_provider):
    auth_provider.add_user("token-a", "user-a", "ana@example.com")
    cred_id = store_passkey("user-a", b"laptop")
    [summary] = db.list_passkey_summaries("user-a")

    r = client.request("DELETE", f"{BASE}/me", headers=bearer("token-a"), json={"id": summary.id})

    assert r.status_code == 200
    assert r.json() == {"success": True}
    assert client.get(f"{BASE}/me", headers=bearer("token-a")).json() == {"credentials": []}
    assert db.find_active_credential(cred_id, "user-a") is None
    [entry] = db.list_audit_logs(audit.REVOKED)
    assert entry["metadata"]["passkey_id"] == summary.id
    assert entry["metadata"]["revoked"] is True


def test_delete_cannot_touch_other_users_passkeys(client, auth_provider):
    auth_provider.add_user("token-a", "user-a", "ana@example.com")
    auth_provider.add_user("token-b", "user-b", "bea@example.com")
    cred_id = store_passkey("user-b", b"bea-key")
    [summary] = db.list_passkey_summaries("user-b")

    r = client.request("DELETE", f"{BASE}/me", headers=bearer("token-a"), json={"id": summary.id})

    assert r.status_code == 200
    assert db.find_active_credential(cred_id, "user-b") is not None


def test_delete_rejects_invalid_id(client, auth_provider):
    auth_provider.add_user("token-a", "user-a", "ana@example.com")

    for body in ({}, {"id": "1"}, {"id": 0}, {"id": True}, {"id": 1.5}):
        r = client.request("DELETE", f"{BASE}/me", headers=bearer("token-a"), json=body)
        assert r.status_code == 400
        assert r.json() == {"error": "invalid_id"}


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}

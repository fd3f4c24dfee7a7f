from typing import Optional

import pytest
from fastapi.testclient import TestClient
from webauthn.helpers import bytes_to_base64url

import db
from dependencies import get_auth_provider, get_rate_limiter
from errors import AuthProviderError
from main import app
from models import AuthUser
from rate_limit import RateLimiter

BASE = "/api/auth/passkeys"


class FakeAuthProvider:
    def __init__(self):
        self.users: dict[str, AuthUser] = {}
        self.otp: Optional[str] = "482915"
        self.link_error: Optional[AuthProviderError] = None
        self.lookup_error: Optional[AuthProviderError] = None
        self.magic_link_calls: list[tuple[str, str]] = []

    def add_user(self, token: str, user_id: str, email: Optional[str], active=True) -> AuthUser:
        user = AuthUser(id=user_id, email=email)
        self.users[token] = user
        db.upsert_profile(user_id, email, active)
        return user

    async def get_user(self, access_token: str) -> Optional[AuthUser]:
        if self.lookup_error:
            raise self.lookup_error
        return self.users.get(access_token)

    async def generate_magic_link_otp(self, email: str, redirect_to: str) -> Optional[str]:
        self.magic_link_calls.append((email, redirect_to))
        if self.link_error:
            raise self.link_error
        return self.otp


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def store_passkey(user_id: str, raw_id: bytes, counter: int = 0, device_name=None) -> str:
    credential_id = bytes_to_base64url(raw_id)
    db.save_credential(
        user_id=user_id,
        credential_id=credential_id,
        public_key=bytes_to_base64url(b"pk-" + raw_id),
        counter=counter,
        transports=["internal"],
        device_name=device_name,
        aaguid=None,
        used_at=db.utcnow_iso(),
    )
    return credential_id


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = str(tmp_path / "passkeys.sqlite3")
    monkeypatch.setattr(db, "DB_PATH", path)
    db.init_db()
    return path


@pytest.fixture
def auth_provider(db_path):
    return FakeAuthProvider()


@pytest.fixture
def limiter():
    return RateLimiter()


@pytest.fixture
def client(db_path, auth_provider, limiter):
    app.dependency_overrides[get_auth_provider] = lambda: auth_provider
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    with TestClient(app, base_url="https://padel.test") as c:
        yield c
    app.dependency_overrides.clear()

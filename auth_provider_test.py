import asyncio
import json

import httpx
import pytest

from auth_provider import AuthProvider
from errors import AuthProviderError


def _provider(handler) -> AuthProvider:
    return AuthProvider(
        base_url="https://project.supabase.test/",
        anon_key="anon",
        service_role_key="service",
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


def test_get_user_resolves_token():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/auth/v1/user"
        assert request.headers["authorization"] == "Bearer user-token"
        assert request.headers["apikey"] == "anon"
        return httpx.Response(
            200,
            json={"id": "user-a", "email": "ana@example.com", "user_metadata": {"full_name": "Ana"}},
        )

    user = asyncio.run(_provider(handler).get_user("user-token"))

    assert user.id == "user-a"
    assert user.email == "ana@example.com"
    assert user.full_name == "Ana"


def test_get_user_rejected_token():
    provider = _provider(lambda request: httpx.Response(401, json={"msg": "invalid JWT"}))

    assert asyncio.run(provider.get_user("bad")) is None


def test_get_user_transport_failure_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(AuthProviderError, match="unreachable"):
        asyncio.run(_provider(handler).get_user("token"))


def test_get_user_timeout_raises():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(AuthProviderError, match="timed out"):
        asyncio.run(_provider(handler).get_user("token"))


def test_magic_link_returns_email_otp():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/auth/v1/admin/generate_link"
        assert request.headers["authorization"] == "Bearer service"
        assert json.loads(request.content) == {
            "type": "magiclink",
            "email": "ana@example.com",
            "redirect_to": "https://padel.test/login",
        }
        return httpx.Response(200, json={"action_link": "https://...", "email_otp": "731942"})

    otp = asyncio.run(
        _provider(handler).generate_magic_link_otp("ana@example.com", "https://padel.test/login")
    )

    assert otp == "731942"


def test_magic_link_without_otp():
    provider = _provider(lambda request: httpx.Response(200, json={"action_link": "https://..."}))

    assert asyncio.run(provider.generate_magic_link_otp("a@b.c", "https://x/login")) is None


def test_magic_link_error_response():
    provider = _provider(lambda request: httpx.Response(422, json={"msg": "User not found"}))

    with pytest.raises(AuthProviderError, match="User not found"):
        asyncio.run(provider.generate_magic_link_otp("a@b.c", "https://x/login"))


def test_magic_link_timeout():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(AuthProviderError, match="timed out"):
        asyncio.run(_provider(handler).generate_magic_link_otp("a@b.c", "https://x/login"))

"""
Client for the hosted auth provider (Supabase GoTrue).

Two calls are needed by the passkey endpoints: resolving the user behind a
bearer access token, and minting a one-time magic-link OTP that the browser
exchanges through the normal login path to get a session.
"""

import logging
from typing import Optional

import httpx

from config import (
    AUTH_PROVIDER_TIMEOUT_SECONDS,
    SUPABASE_ANON_KEY,
    SUPABASE_SERVICE_ROLE_KEY,
    SUPABASE_URL,
)
from errors import AuthProviderError
from models import AuthUser

logger = logging.getLogger(__name__)


class AuthProvider:
    def __init__(
        self,
        base_url: str = SUPABASE_URL,
        anon_key: str = SUPABASE_ANON_KEY,
        service_role_key: str = SUPABASE_SERVICE_ROLE_KEY,
        timeout: float = AUTH_PROVIDER_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.service_role_key = service_role_key
        self.timeout = timeout
        self.transport = transport

    async def get_user(self, access_token: str) -> Optional[AuthUser]:
        """
        Return the user owning ``access_token``, or None if the token is not valid.

        Raises:
            AuthProviderError: the provider could not be reached or timed out
        """
        headers = {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {access_token}",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.get(f"{self.base_url}/auth/v1/user", headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"Auth provider user lookup timed out: {e}")
            raise AuthProviderError("auth provider timed out") from e
        except httpx.HTTPError as e:
            logger.warning(f"Auth provider user lookup failed: {e}")
            raise AuthProviderError(f"auth provider unreachable: {e}") from e

        if resp.status_code != 200:
            return None

        data = resp.json()
        user_id = data.get("id")
        if not user_id:
            return None
        metadata = data.get("user_metadata") or {}
        return AuthUser(
            id=str(user_id),
            email=data.get("email") or None,
            full_name=metadata.get("full_name") or None,
        )

    async def generate_magic_link_otp(self, email: str, redirect_to: str) -> Optional[str]:
        """
        Generate a magic link for ``email`` and return its email OTP.

        Returns None when the provider answered but did not include an OTP.

        Raises:
            AuthProviderError: transport failure, timeout or non-2xx response
        """
        headers = {
            "apikey": self.service_role_key,
            "Authorization": f"Bearer {self.service_role_key}",
        }
        body = {"type": "magiclink", "email": email, "redirect_to": redirect_to}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(
                    f"{self.base_url}/auth/v1/admin/generate_link",
                    json=body,
                    headers=headers,
                )
        except httpx.TimeoutException as e:
            raise AuthProviderError("auth provider timed out") from e
        except httpx.HTTPError as e:
            raise AuthProviderError(str(e)) from e

        if resp.is_error:
            try:
                payload = resp.json()
            except ValueError:
                payload = None
            detail = None
            if isinstance(payload, dict):
                detail = payload.get("msg") or payload.get("message")
            raise AuthProviderError(detail or f"generate_link returned {resp.status_code}")

        data = resp.json()
        # GoTrue flattens the link properties into the top-level object.
        otp = data.get("email_otp") or (data.get("properties") or {}).get("email_otp")
        return otp or None

"""
Challenge cookies for WebAuthn ceremonies.

The pending challenge never lives on the server: it is serialized into an
HttpOnly cookie as ``base64url(json).base64url(hmac_sha256(json))`` and read
back by the matching ``/verify`` call. The MAC means a client can neither
forge a challenge nor rebind one to another user, rp id or origin.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from fastapi import Request, Response
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url

from config import CHALLENGE_COOKIE_SECRET, CHALLENGE_COOKIE_SECURE, CHALLENGE_TTL_SECONDS

logger = logging.getLogger(__name__)

REGISTER_COOKIE = "passkey_reg_challenge"
AUTH_COOKIE = "passkey_auth_challenge"


@dataclass(frozen=True)
class ChallengePayload:
    challenge: str
    user_id: str
    rp_id: str
    origin: str
    expires_at: int  # epoch milliseconds
    email: Optional[str] = None

    def to_json(self) -> dict:
        data = {
            "challenge": self.challenge,
            "userId": self.user_id,
            "rpID": self.rp_id,
            "origin": self.origin,
            "expiresAt": self.expires_at,
        }
        if self.email:
            data["email"] = self.email
        return data


def _now_ms() -> int:
    return int(time.time() * 1000)


def _sign(data: bytes, key: bytes) -> bytes:
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(data)
    return h.finalize()


def _verify(data: bytes, signature: bytes, key: bytes) -> bool:
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(data)
    try:
        h.verify(signature)
    except InvalidSignature:
        return False
    return True


def encode_challenge(payload: ChallengePayload, key: bytes = CHALLENGE_COOKIE_SECRET) -> str:
    body = json.dumps(payload.to_json(), separators=(",", ":")).encode("utf-8")
    return f"{bytes_to_base64url(body)}.{bytes_to_base64url(_sign(body, key))}"


def decode_challenge(
    value: Optional[str],
    now: Optional[int] = None,
    key: bytes = CHALLENGE_COOKIE_SECRET,
) -> Optional[ChallengePayload]:
    """Return the payload, or None if the cookie is missing, tampered with or expired."""
    if not value or "." not in value:
        return None

    body_b64, _, sig_b64 = value.partition(".")
    try:
        body = base64url_to_bytes(body_b64)
        signature = base64url_to_bytes(sig_b64)
    except ValueError:
        return None

    if not _verify(body, signature, key):
        logger.warning("Rejected challenge cookie with invalid signature")
        return None

    try:
        data = json.loads(body.decode("utf-8"))
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    required = ("challenge", "userId", "rpID", "origin")
    if not all(isinstance(data.get(field), str) and data.get(field) for field in required):
        return None

    expires_at = data.get("expiresAt")
    if not isinstance(expires_at, int):
        return None
    if expires_at < (now if now is not None else _now_ms()):
        return None

    email = data.get("email")
    return ChallengePayload(
        challenge=data["challenge"],
        user_id=data["userId"],
        rp_id=data["rpID"],
        origin=data["origin"],
        expires_at=expires_at,
        email=email if isinstance(email, str) and email else None,
    )


def set_challenge_cookie(
    response: Response,
    cookie_name: str,
    challenge: str,
    user_id: str,
    rp_id: str,
    origin: str,
    email: Optional[str] = None,
    ttl_seconds: int = CHALLENGE_TTL_SECONDS,
) -> ChallengePayload:
    payload = ChallengePayload(
        challenge=challenge,
        user_id=user_id,
        rp_id=rp_id,
        origin=origin,
        expires_at=_now_ms() + ttl_seconds * 1000,
        email=email,
    )
    response.set_cookie(
        key=cookie_name,
        value=encode_challenge(payload),
        max_age=ttl_seconds,
        path="/",
        secure=CHALLENGE_COOKIE_SECURE,
        httponly=True,
        samesite="lax",
    )
    return payload


def read_challenge_cookie(request: Request, cookie_name: str) -> Optional[ChallengePayload]:
    return decode_challenge(request.cookies.get(cookie_name))


def clear_challenge_cookie(response: Response, cookie_name: str) -> None:
    response.set_cookie(
        key=cookie_name,
        value="",
        max_age=0,
        path="/",
        secure=CHALLENGE_COOKIE_SECURE,
        httponly=True,
        samesite="lax",
    )

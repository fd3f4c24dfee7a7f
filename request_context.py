import re
from typing import Optional

from fastapi import Request

from config import PASSKEY_ORIGIN, PASSKEY_RP_ID

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


def extract_bearer_token(request: Request) -> Optional[str]:
    match = _BEARER_RE.match(request.headers.get("authorization", ""))
    if not match:
        return None
    token = match.group(1).strip()
    return token or None


def _request_host(request: Request) -> str:
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or ""
    return host.split(",")[0].strip()


def resolve_rp_id(request: Request) -> str:
    if PASSKEY_RP_ID:
        return PASSKEY_RP_ID

    host = _request_host(request).split(":")[0].strip()
    if not host:
        raise ValueError("Could not resolve RP ID from request host")
    return host


def resolve_origin(request: Request) -> str:
    if PASSKEY_ORIGIN:
        return PASSKEY_ORIGIN

    origin = (request.headers.get("origin") or "").strip()
    if origin:
        return origin

    proto = (request.headers.get("x-forwarded-proto") or "https").split(",")[0].strip()
    host = _request_host(request)
    if not host:
        raise ValueError("Could not resolve passkey origin from request headers")
    return f"{proto}://{host}"


def get_user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "unknown")


def normalize_email(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    email = value.strip().lower()
    return email or None

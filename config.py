import os
import secrets


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name, "").strip().lower()
    if not value:
        return default
    return value in {"1", "true", "yes", "on"}


# Local dev defaults
DB_PATH = os.getenv("DB_PATH", "passkeys.sqlite3")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Empty means "resolve from the request host/origin headers".
PASSKEY_RP_ID = os.getenv("PASSKEY_RP_ID", "").strip()
PASSKEY_ORIGIN = os.getenv("PASSKEY_ORIGIN", "").strip()
PASSKEY_RP_NAME = os.getenv("PASSKEY_RP_NAME", "").strip() or "PadelX"

CHALLENGE_TTL_SECONDS = int(os.getenv("CHALLENGE_TTL_SECONDS", "300"))
CHALLENGE_COOKIE_SECURE = _env_bool("CHALLENGE_COOKIE_SECURE", True)

# HMAC key for challenge cookies.
CHALLENGE_COOKIE_SECRET = os.getenv("CHALLENGE_COOKIE_SECRET", "").strip().encode("utf-8")
if not CHALLENGE_COOKIE_SECRET:
    # Dev fallback: volatile key; in-flight ceremonies break on restart. Not for prod.
    CHALLENGE_COOKIE_SECRET = secrets.token_bytes(32)

SUPABASE_URL = os.getenv("SUPABASE_URL", "http://localhost:54321").rstrip("/")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
AUTH_PROVIDER_TIMEOUT_SECONDS = float(os.getenv("AUTH_PROVIDER_TIMEOUT_SECONDS", "10"))

RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
RATE_LIMIT_IP_MAX = int(os.getenv("RATE_LIMIT_IP_MAX", "30"))
RATE_LIMIT_USER_MAX = int(os.getenv("RATE_LIMIT_USER_MAX", "10"))
RATE_LIMIT_EMAIL_MAX = int(os.getenv("RATE_LIMIT_EMAIL_MAX", "10"))

import json
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse, Response

from webauthn import (
    base64url_to_bytes,
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import bytes_to_base64url
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

import audit
import db
from audit import AuditSink
from auth_provider import AuthProvider
from challenge_store import (
    AUTH_COOKIE,
    REGISTER_COOKIE,
    clear_challenge_cookie,
    read_challenge_cookie,
    set_challenge_cookie,
)
from config import (
    PASSKEY_RP_NAME,
    RATE_LIMIT_EMAIL_MAX,
    RATE_LIMIT_IP_MAX,
    RATE_LIMIT_USER_MAX,
    RATE_LIMIT_WINDOW_SECONDS,
)
from dependencies import get_audit_sink, get_auth_provider, get_rate_limiter
from errors import AuthProviderError, CredentialAlreadyBound, PasskeyError, StorageError, error_response
from models import AuthUser, StoredPasskey
from rate_limit import RateLimiter, get_client_ip, rate_limit_key
from request_context import extract_bearer_token, normalize_email, resolve_origin, resolve_rp_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth/passkeys", tags=["passkeys"])

DEVICE_NAME_MAX_LENGTH = 120


async def _read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _enforce_rate_limit(
    limiter: RateLimiter,
    scope: str,
    qualifier: str,
    identifier: str,
    max_requests: int,
    user_id: Optional[str] = None,
    user_email: Optional[str] = None,
) -> None:
    decision = limiter.check(
        rate_limit_key(scope, qualifier, identifier),
        max_requests,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    if not decision.allowed:
        raise PasskeyError(
            "too_many_attempts",
            429,
            headers={"Retry-After": str(decision.retry_after)},
            user_id=user_id,
            user_email=user_email,
        )


async def _authenticated_user(request: Request, auth_provider: AuthProvider) -> AuthUser:
    token = extract_bearer_token(request)
    if not token:
        raise PasskeyError("unauthorized", 401)
    try:
        user = await auth_provider.get_user(token)
    except AuthProviderError as e:
        raise PasskeyError("auth_provider_unavailable", 500, str(e)) from e
    if user is None:
        raise PasskeyError("invalid_session", 401)
    return user


def _reject(
    exc: PasskeyError,
    request: Request,
    background_tasks: BackgroundTasks,
    audit_sink: AuditSink,
    endpoint: str,
    action: str,
) -> JSONResponse:
    logger.info(f"passkeys {endpoint} rejected: {exc.code}")
    audit_sink.enqueue(
        background_tasks,
        request,
        audit.RATE_LIMITED if exc.status_code == 429 else action,
        endpoint,
        user_id=exc.user_id,
        user_email=exc.user_email,
        reason=exc.code,
    )
    return exc.to_response()


def _internal_error(
    request: Request,
    background_tasks: BackgroundTasks,
    audit_sink: AuditSink,
    endpoint: str,
    action: str,
) -> JSONResponse:
    logger.exception(f"passkeys {endpoint} failed")
    audit_sink.enqueue(background_tasks, request, action, endpoint, reason="internal_error")
    return error_response("internal_error", 500)


def _descriptors(passkeys: list[StoredPasskey]) -> list[PublicKeyCredentialDescriptor]:
    descriptors = []
    for p in passkeys:
        try:
            cred_id = base64url_to_bytes(p.credential_id)
        except ValueError:
            logger.warning(f"Skipping passkey {p.id} with undecodable credential id")
            continue
        transports = []
        for value in p.transports:
            try:
                transports.append(AuthenticatorTransport(value))
            except ValueError:
                continue
        descriptors.append(PublicKeyCredentialDescriptor(id=cred_id, transports=transports or None))
    return descriptors


def _sanitize_device_name(value) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()[:DEVICE_NAME_MAX_LENGTH]


# =============================================================================
# Registration (authenticated users adding a passkey)
# =============================================================================


@router.post("/register/options")
async def register_options(
    request: Request,
    background_tasks: BackgroundTasks,
    limiter: RateLimiter = Depends(get_rate_limiter),
    auth_provider: AuthProvider = Depends(get_auth_provider),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    endpoint = "register/options"
    try:
        _enforce_rate_limit(
            limiter, "passkey_register_options", "ip", get_client_ip(request), RATE_LIMIT_IP_MAX
        )
        user = await _authenticated_user(request, auth_provider)
        _enforce_rate_limit(
            limiter, "passkey_register_options", "user", user.id, RATE_LIMIT_USER_MAX,
            user_id=user.id,
        )

        if not user.email:
            raise PasskeyError(
                "missing_email", 400, "User has no email address.", user_id=user.id
            )

        try:
            profile = db.get_profile_by_id(user.id)
        except StorageError as e:
            raise PasskeyError("profile_lookup_failed", 500, str(e), user_id=user.id) from e
        if profile and profile.is_inactive:
            raise PasskeyError("user_inactive", 403, user_id=user.id, user_email=user.email)

        try:
            existing = db.list_active_credentials(user.id)
        except StorageError as e:
            raise PasskeyError("storage_error", 500, str(e), user_id=user.id) from e

        rp_id = resolve_rp_id(request)
        origin = resolve_origin(request)

        options = generate_registration_options(
            rp_id=rp_id,
            rp_name=PASSKEY_RP_NAME,
            user_id=user.id.encode("utf-8"),
            user_name=user.email,
            user_display_name=user.full_name or user.email,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.REQUIRED,
            ),
            exclude_credentials=_descriptors(existing),
        )

        response = JSONResponse(content={"options": json.loads(options_to_json(options))})
        set_challenge_cookie(
            response,
            REGISTER_COOKIE,
            challenge=bytes_to_base64url(options.challenge),
            user_id=user.id,
            rp_id=rp_id,
            origin=origin,
            email=user.email,
        )
        audit_sink.enqueue(
            background_tasks, request, audit.REGISTER_OPTIONS_ISSUED, endpoint,
            user_id=user.id, user_email=user.email, rp_id=rp_id,
        )
        return response
    except PasskeyError as exc:
        return _reject(exc, request, background_tasks, audit_sink, endpoint, audit.REGISTER_REJECTED)
    except Exception:
        return _internal_error(request, background_tasks, audit_sink, endpoint, audit.REGISTER_REJECTED)


@router.post("/register/verify")
async def register_verify(
    request: Request,
    background_tasks: BackgroundTasks,
    limiter: RateLimiter = Depends(get_rate_limiter),
    auth_provider: AuthProvider = Depends(get_auth_provider),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    endpoint = "register/verify"
    response: Response
    try:
        _enforce_rate_limit(
            limiter, "passkey_register_verify", "ip", get_client_ip(request), RATE_LIMIT_IP_MAX
        )
        user = await _authenticated_user(request, auth_provider)
        _enforce_rate_limit(
            limiter, "passkey_register_verify", "user", user.id, RATE_LIMIT_USER_MAX,
            user_id=user.id,
        )

        challenge = read_challenge_cookie(request, REGISTER_COOKIE)
        if challenge is None:
            raise PasskeyError("challenge_expired", 400, user_id=user.id)
        if challenge.user_id != user.id:
            raise PasskeyError("challenge_user_mismatch", 403, user_id=user.id, user_email=user.email)

        body = await _read_json(request)
        credential = body.get("credential")
        if not isinstance(credential, dict) or not credential:
            raise PasskeyError("missing_credential", 400, user_id=user.id)

        try:
            verification = verify_registration_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(challenge.challenge),
                expected_rp_id=challenge.rp_id,
                expected_origin=challenge.origin,
                require_user_verification=True,
            )
        except Exception as e:
            logger.info(f"Registration verification failed for user {user.id}: {e}")
            raise PasskeyError("verification_failed", 401, user_id=user.id) from e

        credential_id = bytes_to_base64url(verification.credential_id)
        response_part = credential.get("response")
        raw_transports = response_part.get("transports") if isinstance(response_part, dict) else None
        transports = [t for t in raw_transports or [] if isinstance(t, str)]

        try:
            passkey_id = db.save_credential(
                user_id=user.id,
                credential_id=credential_id,
                public_key=bytes_to_base64url(verification.credential_public_key),
                counter=verification.sign_count,
                transports=transports,
                device_name=_sanitize_device_name(body.get("deviceName")),
                aaguid=getattr(verification, "aaguid", None),
                used_at=db.utcnow_iso(),
            )
        except CredentialAlreadyBound as e:
            raise PasskeyError("credential_already_bound", 409, user_id=user.id) from e
        except StorageError as e:
            raise PasskeyError("save_failed", 500, str(e), user_id=user.id) from e

        logger.info(f"Passkey registered for user {user.id}: {passkey_id}")
        response = JSONResponse(content={"success": True, "passkeyId": passkey_id})
        audit_sink.enqueue(
            background_tasks, request, audit.REGISTER_VERIFIED, endpoint,
            user_id=user.id, user_email=user.email, credential_id=credential_id,
        )
    except PasskeyError as exc:
        response = _reject(exc, request, background_tasks, audit_sink, endpoint, audit.REGISTER_REJECTED)
    except Exception:
        response = _internal_error(
            request, background_tasks, audit_sink, endpoint, audit.REGISTER_REJECTED
        )

    clear_challenge_cookie(response, REGISTER_COOKIE)
    return response


# =============================================================================
# Authentication (passwordless login)
# =============================================================================


@router.post("/authenticate/options")
async def authenticate_options(
    request: Request,
    background_tasks: BackgroundTasks,
    limiter: RateLimiter = Depends(get_rate_limiter),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    endpoint = "authenticate/options"
    try:
        _enforce_rate_limit(
            limiter, "passkey_auth_options", "ip", get_client_ip(request), RATE_LIMIT_IP_MAX
        )
        body = await _read_json(request)
        email = normalize_email(body.get("email"))
        if not email:
            raise PasskeyError("missing_email", 400)
        _enforce_rate_limit(
            limiter, "passkey_auth_options", "email", email, RATE_LIMIT_EMAIL_MAX,
            user_email=email,
        )

        try:
            profile = db.find_profile_by_email(email)
        except StorageError as e:
            raise PasskeyError("profile_lookup_failed", 500, str(e), user_email=email) from e

        # Unknown and inactive accounts look the same from here.
        if profile is None or profile.is_inactive:
            raise PasskeyError("passkey_unavailable", 404, user_email=email)

        try:
            passkeys = db.list_active_credentials(profile.id)
        except StorageError as e:
            raise PasskeyError(
                "passkey_lookup_failed", 500, str(e), user_id=profile.id, user_email=email
            ) from e
        if not passkeys:
            raise PasskeyError("no_passkeys_registered", 404, user_id=profile.id, user_email=email)

        rp_id = resolve_rp_id(request)
        origin = resolve_origin(request)

        options = generate_authentication_options(
            rp_id=rp_id,
            allow_credentials=_descriptors(passkeys),
            user_verification=UserVerificationRequirement.REQUIRED,
        )

        response = JSONResponse(content={"options": json.loads(options_to_json(options))})
        set_challenge_cookie(
            response,
            AUTH_COOKIE,
            challenge=bytes_to_base64url(options.challenge),
            user_id=profile.id,
            rp_id=rp_id,
            origin=origin,
            email=email,
        )
        audit_sink.enqueue(
            background_tasks, request, audit.AUTH_OPTIONS_ISSUED, endpoint,
            user_id=profile.id, user_email=email, rp_id=rp_id,
        )
        return response
    except PasskeyError as exc:
        return _reject(exc, request, background_tasks, audit_sink, endpoint, audit.AUTH_REJECTED)
    except Exception:
        return _internal_error(request, background_tasks, audit_sink, endpoint, audit.AUTH_REJECTED)


@router.post("/authenticate/verify")
async def authenticate_verify(
    request: Request,
    background_tasks: BackgroundTasks,
    limiter: RateLimiter = Depends(get_rate_limiter),
    auth_provider: AuthProvider = Depends(get_auth_provider),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    endpoint = "authenticate/verify"
    response: Response
    try:
        _enforce_rate_limit(
            limiter, "passkey_auth_verify", "ip", get_client_ip(request), RATE_LIMIT_IP_MAX
        )
        challenge = read_challenge_cookie(request, AUTH_COOKIE)
        if challenge is None:
            raise PasskeyError("challenge_expired", 400)

        # Keyed on the challenge's user, never on anything the caller sends.
        _enforce_rate_limit(
            limiter, "passkey_auth_verify", "user", challenge.user_id, RATE_LIMIT_USER_MAX,
            user_id=challenge.user_id, user_email=challenge.email,
        )

        body = await _read_json(request)
        credential = body.get("credential")
        email = normalize_email(body.get("email"))
        if not isinstance(credential, dict) or not credential:
            raise PasskeyError("missing_credential", 400, user_id=challenge.user_id)
        if challenge.email and email and challenge.email != email:
            raise PasskeyError(
                "email_mismatch", 403, user_id=challenge.user_id, user_email=challenge.email
            )

        credential_id = credential.get("id")
        if not isinstance(credential_id, str) or not credential_id:
            raise PasskeyError("missing_credential", 400, user_id=challenge.user_id)

        try:
            stored = db.find_active_credential(credential_id, challenge.user_id)
        except StorageError as e:
            raise PasskeyError(
                "credential_lookup_failed", 500, str(e), user_id=challenge.user_id
            ) from e
        if stored is None:
            raise PasskeyError("credential_not_found", 404, user_id=challenge.user_id)

        try:
            verification = verify_authentication_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(challenge.challenge),
                expected_rp_id=challenge.rp_id,
                expected_origin=challenge.origin,
                credential_public_key=base64url_to_bytes(stored.public_key),
                credential_current_sign_count=stored.counter,
                require_user_verification=True,
            )
        except Exception as e:
            logger.info(f"Assertion verification failed for user {stored.user_id}: {e}")
            raise PasskeyError("verification_failed", 401, user_id=stored.user_id) from e

        try:
            db.update_credential_counter(
                stored.credential_id, stored.user_id, verification.new_sign_count, db.utcnow_iso()
            )
        except StorageError as e:
            raise PasskeyError("storage_error", 500, str(e), user_id=stored.user_id) from e

        resolved_email = challenge.email or email
        if not resolved_email:
            try:
                profile = db.get_profile_by_id(stored.user_id)
            except StorageError as e:
                raise PasskeyError(
                    "profile_lookup_failed", 500, str(e), user_id=stored.user_id
                ) from e
            resolved_email = profile.email if profile else None
        if not resolved_email:
            raise PasskeyError("email_not_found_for_user", 500, user_id=stored.user_id)

        redirect_to = f"{challenge.origin.rstrip('/')}/login"
        try:
            otp_token = await auth_provider.generate_magic_link_otp(resolved_email, redirect_to)
        except AuthProviderError as e:
            raise PasskeyError(
                "magiclink_generation_failed", 500, str(e),
                user_id=stored.user_id, user_email=resolved_email,
            ) from e
        if not otp_token:
            raise PasskeyError(
                "otp_not_available", 500, user_id=stored.user_id, user_email=resolved_email
            )

        logger.info(f"Passkey authentication successful for user {stored.user_id}")
        response = JSONResponse(
            content={
                "success": True,
                "email": resolved_email,
                "otpToken": otp_token,
                "otpType": "magiclink",
            }
        )
        audit_sink.enqueue(
            background_tasks, request, audit.AUTH_VERIFIED, endpoint,
            user_id=stored.user_id, user_email=resolved_email,
            credential_id=stored.credential_id,
        )
    except PasskeyError as exc:
        response = _reject(exc, request, background_tasks, audit_sink, endpoint, audit.AUTH_REJECTED)
    except Exception:
        response = _internal_error(
            request, background_tasks, audit_sink, endpoint, audit.AUTH_REJECTED
        )

    clear_challenge_cookie(response, AUTH_COOKIE)
    return response


# =============================================================================
# Management (listing and revoking one's own passkeys)
# =============================================================================


@router.get("/me")
async def list_my_passkeys(
    request: Request,
    background_tasks: BackgroundTasks,
    auth_provider: AuthProvider = Depends(get_auth_provider),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    endpoint = "me"
    try:
        user = await _authenticated_user(request, auth_provider)
        try:
            summaries = db.list_passkey_summaries(user.id)
        except StorageError as e:
            raise PasskeyError("storage_error", 500, str(e), user_id=user.id) from e
        return JSONResponse(content={"credentials": [s.to_dict() for s in summaries]})
    except PasskeyError as exc:
        return _reject(exc, request, background_tasks, audit_sink, endpoint, audit.MANAGE_REJECTED)
    except Exception:
        return _internal_error(request, background_tasks, audit_sink, endpoint, audit.MANAGE_REJECTED)


@router.delete("/me")
async def revoke_my_passkey(
    request: Request,
    background_tasks: BackgroundTasks,
    auth_provider: AuthProvider = Depends(get_auth_provider),
    audit_sink: AuditSink = Depends(get_audit_sink),
):
    endpoint = "me"
    try:
        user = await _authenticated_user(request, auth_provider)

        body = await _read_json(request)
        passkey_id = body.get("id")
        if not isinstance(passkey_id, int) or isinstance(passkey_id, bool) or passkey_id <= 0:
            raise PasskeyError("invalid_id", 400, user_id=user.id)

        try:
            revoked = db.revoke_credential(passkey_id, user.id, db.utcnow_iso())
        except StorageError as e:
            raise PasskeyError("revoke_failed", 500, str(e), user_id=user.id) from e

        audit_sink.enqueue(
            background_tasks, request, audit.REVOKED, endpoint,
            user_id=user.id, user_email=user.email, passkey_id=passkey_id, revoked=revoked,
        )
        return JSONResponse(content={"success": True})
    except PasskeyError as exc:
        return _reject(exc, request, background_tasks, audit_sink, endpoint, audit.MANAGE_REJECTED)
    except Exception:
        return _internal_error(request, background_tasks, audit_sink, endpoint, audit.MANAGE_REJECTED)

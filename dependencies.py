from fastapi import Request

from audit import AuditSink
from auth_provider import AuthProvider
from rate_limit import RateLimiter


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_auth_provider(request: Request) -> AuthProvider:
    return request.app.state.auth_provider


def get_audit_sink(request: Request) -> AuditSink:
    return request.app.state.audit_sink

"""
Best-effort audit trail for passkey ceremonies.

Events are handed to FastAPI ``BackgroundTasks`` so they are written after the
response has gone out. A failed write is logged and dropped; it never changes
the outcome of the request that produced it.
"""

import logging
from typing import Optional

from fastapi import BackgroundTasks, Request

import db
from rate_limit import get_client_ip
from request_context import get_user_agent

logger = logging.getLogger(__name__)

REGISTER_OPTIONS_ISSUED = "passkey.register.options_issued"
REGISTER_VERIFIED = "passkey.register.verified"
REGISTER_REJECTED = "passkey.register.rejected"
AUTH_OPTIONS_ISSUED = "passkey.authenticate.options_issued"
AUTH_VERIFIED = "passkey.authenticate.verified"
AUTH_REJECTED = "passkey.authenticate.rejected"
MANAGE_REJECTED = "passkey.manage.rejected"
RATE_LIMITED = "passkey.rate_limited"
REVOKED = "passkey.revoked"


class AuditSink:
    def record(
        self,
        action: str,
        metadata: dict,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
    ) -> None:
        try:
            logger.info(
                f"audit {action}",
                extra={"audit_action": action, "user_id": user_id, "audit": metadata},
            )
            db.insert_audit_log(action, user_id, user_email, metadata)
        except Exception as e:
            logger.warning(f"Dropped audit event {action}: {e}")

    def enqueue(
        self,
        background_tasks: BackgroundTasks,
        request: Request,
        action: str,
        endpoint: str,
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        reason: Optional[str] = None,
        **extra,
    ) -> None:
        metadata = {
            "endpoint": endpoint,
            "ip": get_client_ip(request),
            "user_agent": get_user_agent(request),
        }
        if reason:
            metadata["reason"] = reason
        metadata.update(extra)
        background_tasks.add_task(self.record, action, metadata, user_id, user_email)

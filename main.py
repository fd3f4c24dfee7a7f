import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

import db
from audit import AuditSink
from auth_provider import AuthProvider
from config import LOG_LEVEL
from rate_limit import RateLimiter
from webauthn_routes import router as webauthn_router

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db.init_db()
    yield


app = FastAPI(title="PadelX Passkeys", lifespan=lifespan)

app.state.rate_limiter = RateLimiter()
app.state.auth_provider = AuthProvider()
app.state.audit_sink = AuditSink()

app.include_router(webauthn_router)


@app.get("/api/health")
def health():
    return {"ok": True}

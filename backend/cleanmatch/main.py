import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from cleanmatch.config import CORS_ORIGINS, KAKAO_REST_API_KEY, LOG_LEVEL, TRUSTED_HOSTS
from cleanmatch.routers import admin, auth, engagements, notifications, offers, providers, requests, subscriptions
from cleanmatch.services.database import database
from cleanmatch.services.push_sender import push_sender
from cleanmatch.services.settings_store import settings_store

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(title="CleanMatch API", version="0.1.0")

allow_any_origin = len(CORS_ORIGINS) == 1 and CORS_ORIGINS[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

if not (len(TRUSTED_HOSTS) == 1 and TRUSTED_HOSTS[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=TRUSTED_HOSTS)

app.include_router(auth.router)
app.include_router(requests.router)
app.include_router(offers.router)
app.include_router(engagements.router)
app.include_router(providers.router)
app.include_router(subscriptions.router)
app.include_router(notifications.router)
app.include_router(admin.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    with database.read() as conn:
        conn.execute("SELECT 1").fetchone()
    return {
        "status": "ready",
        "geocoder_configured": bool(KAKAO_REST_API_KEY),
        "push_enabled": push_sender.enabled,
        "settings_loaded": len(settings_store.snapshot()),
    }

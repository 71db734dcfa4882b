from __future__ import annotations

from datetime import datetime, timezone
from dotenv import load_dotenv
import logging
import os
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from .routers.chat import router as chat_router
from .routers.poster import router as poster_router
from .routers.recipes import router as recipes_router
from .routers.sessions import router as sessions_router
from ..infrastructure.record_store import get_record_store
from ..observability.metrics import metrics_middleware_factory

load_dotenv()  # Load COZE_API_TOKEN, COZE_BOT_ID*, JWT_SECRET from .env if present

API_NAME = "Health Advisor Gateway"
API_VERSION = "0.1.0"

app = FastAPI(title=API_NAME, version=API_VERSION)

logging.getLogger("advisor").setLevel((os.getenv("ADVISOR_LOG_LEVEL") or "INFO").upper())

# Observability: request latency histogram
app.middleware("http")(metrics_middleware_factory())

# Routers, exposed bare and under /api
for _router in (chat_router, poster_router, recipes_router, sessions_router):
    app.include_router(_router)
    app.include_router(_router, prefix="/api")

_origins = [o.strip() for o in os.getenv("ADVISOR_CORS_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials="*" not in _origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _health() -> dict:
    store = get_record_store()
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "components": {
            "api": "ok",
            "records": type(store).__name__,
            "upstream_token": "configured" if os.getenv("COZE_API_TOKEN") else "missing",
        },
    }


@app.get("/")
def root():
    return {"name": API_NAME, "version": API_VERSION}


@app.get("/health")
def health():
    return _health()


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest(REGISTRY)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


# API-prefixed convenience routes (kept alongside non-prefixed routes)
@app.get("/api")
def api_root():
    return {"name": API_NAME, "version": API_VERSION, "status": "running"}


@app.get("/api/health")
def api_health():
    return _health()

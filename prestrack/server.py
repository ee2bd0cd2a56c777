"""FastAPI server for the Prestrack WhatsApp agent.

Run with:
    uvicorn prestrack.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from prestrack.api.routes import router
from prestrack.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from prestrack.runtime import build_runtime
from prestrack.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the runtime once, run the expiry sweeper while serving."""
    logger.info("Building Prestrack runtime…")
    runtime = build_runtime()
    application.state.runtime = runtime
    runtime.sweeper.start()
    logger.info("Agent ready.")
    yield
    await runtime.aclose()
    metrics.flush()
    logger.info("Runtime closed.")


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Prestrack Agent",
    description=(
        "WhatsApp assistant for a maternal health clinic: scoped answers, "
        "escalations and provider-approved consultations."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID to every request for log correlation.

    Returned as ``X-Request-ID`` and passed into the per-message context
    so every log line for one webhook delivery can be traced.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Prestrack Agent",
        "version": "1.0.0",
        "webhook": "/api/webhooks/whatsapp",
        "health": "/api/health",
    }


if __name__ == "__main__":
    logger.info("Starting Prestrack API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run("prestrack.server:app", host=SERVER_HOST, port=SERVER_PORT)

"""
main.py
=======
FastAPI application entry point for the clinical records RAG service.

Run locally:
  uvicorn backend.main:app --reload --port 8000

The lifespan handler builds the vector store, document repository and
completion provider once at startup and flushes pending vector writes on
shutdown.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv  # type: ignore
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.api.chat import router as chat_router
from backend.api.documents import router as documents_router
from backend.api.health import router as health_router
from backend.api.search import router as search_router
from backend.services import Services, build_services
from rag_pipeline.settings import Settings

# Load .env from project root (one level above this file's package)
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan: startup / shutdown
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise singletons before first request."""
    logger.info("Clinical RAG backend starting up…")

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(Settings.from_env())
    services: Services = app.state.services
    await services.startup()

    logger.info("All components initialised. Ready.")
    yield

    await services.shutdown()
    logger.info("Clinical RAG backend shutting down.")


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(services: Optional[Services] = None) -> FastAPI:
    app = FastAPI(
        title       = "Clinical Records RAG API",
        description = (
            "Local-first vector search over a patient's clinical records and "
            "retrieval-augmented answers, blocking or streamed."
        ),
        version     = "1.0.0",
        docs_url    = "/docs",
        redoc_url   = "/redoc",
        lifespan    = lifespan,
    )
    app.state.services = services

    # ── CORS ──────────────────────────────────────────────────────────────
    origins = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        os.getenv("FRONTEND_URL", "http://localhost:4200"),
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins     = origins,
        allow_credentials = True,
        allow_methods     = ["*"],
        allow_headers     = ["*"],
    )

    # ── Routers ───────────────────────────────────────────────────────────
    app.include_router(health_router)
    app.include_router(documents_router)
    app.include_router(search_router)
    app.include_router(chat_router)

    return app


app = create_app()

"""
Sales CRM Hub — API Server
============================

API layer over the Supabase CRM tables: derived metrics, SPIN scoring,
task follow-ups, and a per-user realtime notifications socket.

Route groups:
  /api/health          - Health check
  /api/metrics/*       - Summary, pipeline and task metrics
  /api/spin/*          - SPIN content and completion score
  /api/tasks/*         - Task listing and overdue tasks
  /ws/notifications    - WebSocket alert feed
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# ─── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app):
    """Application startup and shutdown."""
    logger.info("Starting Sales CRM Hub...")

    # Supabase connection check
    try:
        from scripts.lib.supabase_client import get_client
        get_client()
        logger.info("Supabase connected")
    except Exception as e:
        logger.warning("Supabase not available: %s", e)

    logger.info("Sales CRM Hub ready")
    yield
    logger.info("Shutting down Sales CRM Hub...")


# ─── App Setup ────────────────────────────────────────────────

cors_origins = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:8001"
).split(",")

app = FastAPI(
    title="Sales CRM Hub",
    version=VERSION,
    description="CRM metrics, SPIN scoring and realtime sales notifications",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Include Routers ──────────────────────────────────────────

from dashboard.api.routers.metrics import router as metrics_router
from dashboard.api.routers.spin import router as spin_router
from dashboard.api.routers.tasks import router as tasks_router

app.include_router(metrics_router)
app.include_router(spin_router)
app.include_router(tasks_router)


# ─── WebSocket ────────────────────────────────────────────────

from dashboard.api.websocket import notifications_endpoint, ws_manager

app.add_api_websocket_route("/ws/notifications", notifications_endpoint)


# ─── Health ───────────────────────────────────────────────────

@app.get("/api/health", tags=["system"])
async def health():
    """Health check with service status."""
    supabase_ok = False
    try:
        from scripts.lib.supabase_client import get_client
        get_client()
        supabase_ok = True
    except Exception as e:
        logger.debug("Supabase health check failed: %s", e)

    return {
        "status": "healthy",
        "service": "Sales CRM Hub",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "integrations": {"supabase": supabase_ok},
        "websocket_connections": ws_manager.connection_count,
    }

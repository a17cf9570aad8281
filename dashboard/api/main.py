"""
Location Stats — API Server
=============================

JSON API serving per-location CRM metrics (leads, appointments, shows,
no-shows, wins, cold) to the dashboard front end.

Route groups:
  /api/health              - Health check
  /locations               - Configured locations
  /stats/*                 - Per-location and multi-location metrics

Startup builds the location directory from the CRM and the credential CSV.
A missing GHL_API_KEY (or an unusable directory source) aborts startup.
"""
from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from integrations.ghl import GHLClient
from scripts.lib.cache import build_cache
from scripts.lib.errors import (
    BadRequestError,
    LocationNotConfigured,
    StatsError,
    UpstreamFatalFailure,
)
from scripts.lib.logger import setup_logger
from scripts.lib.settings import Settings
from scripts.stats.aggregator import StatsAggregator
from scripts.stats.classifier import build_classifier
from scripts.stats.directory import LocationDirectory

load_dotenv()

logger = setup_logger("api_server")

VERSION = "1.0.0"


async def build_aggregator(settings: Settings, client: GHLClient) -> StatsAggregator:
    """Directory + classifier + cache wired into an aggregator."""
    directory = await LocationDirectory.initialize(client, settings)
    return StatsAggregator(
        directory,
        client,
        build_classifier(settings.strategy),
        cache=build_cache(settings.cache_ttl_seconds),
        location_concurrency=settings.location_concurrency,
        subfetch_concurrency=settings.subfetch_concurrency,
    )


# ─── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    if getattr(app.state, "aggregator", None) is not None:
        # Pre-wired (tests, CLI); nothing to initialize.
        yield
        return

    logger.info("Starting location stats API...")
    settings = app.state.settings or Settings.from_env()
    app.state.settings = settings
    client = GHLClient(settings)
    try:
        app.state.aggregator = await build_aggregator(settings, client)
        logger.info(
            "Location stats ready: %d location(s), strategy=%s",
            len(app.state.aggregator.directory), settings.strategy,
        )
        yield
    finally:
        logger.info("Shutting down location stats API...")
        await client.aclose()


# ─── Error Handlers ───────────────────────────────────────────

def _error_response(status_code: int, error: str, details=None) -> JSONResponse:
    body = {"error": error}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(BadRequestError)
    async def _bad_request(request: Request, exc: BadRequestError):
        return _error_response(400, exc.message, exc.details)

    @app.exception_handler(LocationNotConfigured)
    async def _not_found(request: Request, exc: LocationNotConfigured):
        return _error_response(404, "Location not found")

    @app.exception_handler(UpstreamFatalFailure)
    async def _upstream_fatal(request: Request, exc: UpstreamFatalFailure):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _error_response(500, exc.message, exc.details)

    @app.exception_handler(StatsError)
    async def _stats_error(request: Request, exc: StatsError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return _error_response(500, exc.message, exc.details)


# ─── App Setup ────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    aggregator: Optional[StatsAggregator] = None,
) -> FastAPI:
    """
    Build the API.

    With no arguments settings come from the environment at startup. Passing
    an ``aggregator`` skips CRM initialization entirely.
    """
    app = FastAPI(
        title="Location Stats",
        version=VERSION,
        description="Per-location CRM funnel metrics for the dashboard",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.aggregator = aggregator

    if settings is not None:
        cors_origins = list(settings.cors_origins)
    else:
        cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials="*" not in cors_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    from dashboard.api.routers.locations import router as locations_router
    from dashboard.api.routers.stats import router as stats_router

    app.include_router(locations_router)
    app.include_router(stats_router)
    register_error_handlers(app)

    @app.get("/api/health", tags=["system"])
    async def health():
        """Health check with directory and cache status."""
        agg = app.state.aggregator
        return {
            "status": "healthy" if agg is not None else "starting",
            "service": "Location Stats",
            "version": VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "locations": len(agg.directory) if agg else 0,
            "strategy": agg.classifier.name if agg else None,
            "cache": agg.cache.stats() if agg else None,
        }

    return app


app = create_app()

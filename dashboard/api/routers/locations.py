"""
Location Stats — Locations Router
===================================
Public listing of configured locations (no secrets).

Endpoints:
  GET /locations   - [{slug, displayName}] for every served location
"""
from __future__ import annotations

from fastapi import APIRouter, Request


router = APIRouter(tags=["locations"])


@router.get("/locations")
async def list_locations(request: Request):
    """Every location the stats endpoints will answer for."""
    directory = request.app.state.aggregator.directory
    return [loc.public_view() for loc in directory.list_all()]

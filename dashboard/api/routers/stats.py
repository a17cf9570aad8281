"""
Location Stats — Stats Router
===============================
Metric aggregation endpoints backed by live CRM reads (cached briefly).

Endpoints:
  GET /stats/{location}   - One location: combined + per-pipeline/per-calendar
  GET /stats              - Several locations (?locations=all|a,b) summed

Both accept ?startDate=YYYY-MM-DD&endDate=YYYY-MM-DD; without them the
window is the trailing DEFAULT_WINDOW_DAYS ending now.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Query, Request

from scripts.stats.aggregator import parse_selection
from scripts.stats.dates import resolve_date_window

router = APIRouter(prefix="/stats", tags=["stats"])


def _window(request: Request, start_date: Optional[str], end_date: Optional[str]):
    settings = request.app.state.settings
    if settings is None:
        return resolve_date_window(start_date, end_date)
    return resolve_date_window(
        start_date,
        end_date,
        default_days=settings.default_window_days,
        require_range=settings.require_date_range,
    )


@router.get("")
async def multi_location_stats(
    request: Request,
    locations: Optional[str] = Query(None, description="'all' or comma-separated slugs"),
    start_date: Optional[str] = Query(None, alias="startDate", description="YYYY-MM-DD"),
    end_date: Optional[str] = Query(None, alias="endDate", description="YYYY-MM-DD"),
):
    """Summed stats over a selection of locations."""
    window = _window(request, start_date, end_date)
    result = await request.app.state.aggregator.compute_many(parse_selection(locations), window)
    return result.to_response()


@router.get("/{location}")
async def location_stats(
    request: Request,
    location: str,
    start_date: Optional[str] = Query(None, alias="startDate", description="YYYY-MM-DD"),
    end_date: Optional[str] = Query(None, alias="endDate", description="YYYY-MM-DD"),
):
    """Stats for a single location."""
    aggregator = request.app.state.aggregator
    # Unknown slugs are rejected before the dates are even looked at.
    aggregator.directory.resolve(location)
    window = _window(request, start_date, end_date)
    result = await aggregator.compute_one(location, window)
    return result.to_response()

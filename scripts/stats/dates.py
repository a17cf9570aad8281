"""
Date window resolution for stats requests.

``startDate``/``endDate`` are calendar dates (``YYYY-MM-DD``, UTC). The end
date is extended to its last millisecond. With neither supplied the window is
the trailing ``default_days`` ending at the close of the current minute.
"""
from __future__ import annotations

import re
import time
from datetime import date
from typing import Optional

from models.stats_models import DAY_MS, EPOCH, DateWindow
from scripts.lib.errors import BadRequestError

DATE_RULE = "date_format:YYYY-MM-DD"
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
MINUTE_MS = 60_000


def _format_error(field: str) -> BadRequestError:
    return BadRequestError.for_field(
        field, f"{field} must be a calendar date in YYYY-MM-DD format", DATE_RULE,
    )


def _parse_day_start_ms(value: str, field: str) -> int:
    text = value.strip()
    if not DATE_PATTERN.match(text):
        raise _format_error(field)
    try:
        day = date.fromisoformat(text)
    except ValueError:
        raise _format_error(field)
    return (day - EPOCH.date()).days * DAY_MS


def resolve_date_window(
    start_date: Optional[str],
    end_date: Optional[str],
    *,
    now_ms: Optional[int] = None,
    default_days: int = 30,
    require_range: bool = False,
) -> DateWindow:
    """
    Build the inclusive window for a request.

    Raises:
        BadRequestError: one date without the other, an unparseable date,
            start after end, or no dates while ``require_range`` is set.
    """
    start_date = start_date or None
    end_date = end_date or None

    if start_date is None and end_date is None:
        if require_range:
            raise BadRequestError(
                "startDate and endDate are required",
                fields={
                    "startDate": {"message": "startDate is required", "rule": "required"},
                    "endDate": {"message": "endDate is required", "rule": "required"},
                },
            )
        now = now_ms if now_ms is not None else int(time.time() * 1000)
        # Last millisecond of the current minute.
        end_ms = (now // MINUTE_MS + 1) * MINUTE_MS - 1
        return DateWindow(start_ms=end_ms - default_days * DAY_MS, end_ms=end_ms)

    if start_date is None:
        raise BadRequestError.for_field(
            "startDate", "startDate is required when endDate is given", "required_with:endDate",
        )
    if end_date is None:
        raise BadRequestError.for_field(
            "endDate", "endDate is required when startDate is given", "required_with:startDate",
        )

    start_ms = _parse_day_start_ms(start_date, "startDate")
    end_ms = _parse_day_start_ms(end_date, "endDate") + DAY_MS - 1
    if start_ms > end_ms:
        raise BadRequestError.for_field(
            "startDate", "startDate must not be after endDate", "before_or_equal:endDate",
        )
    return DateWindow(start_ms=start_ms, end_ms=end_ms)

"""
GoHighLevel CRM Client
=======================

Read-only access to the GHL v1 REST API for the stats service:
- Sub-account (location) listing with the agency key
- Pipeline + stage metadata per sub-account
- Contacts, pipeline opportunities and calendar appointments

Every call is scoped by the API key passed in (agency key or the
sub-account's own key). List endpoints are read page by page through one
paginator; transient failures (429, 5xx, dropped connections) are retried
per page with exponential backoff.
"""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from models.stats_models import (
    Appointment,
    Contact,
    DateWindow,
    LocationConfig,
    Opportunity,
)
from scripts.lib.errors import (
    APIAuthError,
    APIError,
    APIRateLimitError,
    APITimeoutError,
)
from scripts.lib.logger import setup_logger
from scripts.lib.settings import Settings

logger = setup_logger("ghl_client")

# Upper bound on a server-requested Retry-After pause, in seconds.
MAX_RETRY_AFTER = 30


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, APIError) and exc.is_transient


def _extract_items(payload: Any, list_key: str) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        items = payload.get(list_key)
        if isinstance(items, list):
            return items
    return []


def _error_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]


class GHLClient:
    """
    Async GHL API client.

    Usage:
        async with GHLClient(settings) as client:
            contacts = await client.fetch_contacts(location)
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self._http = httpx.AsyncClient(
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            transport=transport,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Version": settings.api_version,
            },
        )
        self._backoff = wait_exponential(multiplier=settings.retry_backoff, max=10)

    async def __aenter__(self) -> "GHLClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ─── Transport ──────────────────────────────────────────

    async def _get_once(self, path: str, api_key: str, params: Mapping[str, Any]) -> Any:
        try:
            response = await self._http.get(
                path,
                params=dict(params),
                headers={"Authorization": f"Bearer {api_key}"},
            )
        except httpx.TimeoutException:
            logger.warning("GET %s timed out", path)
            raise APITimeoutError(path, "timeout")
        except httpx.TransportError as e:
            logger.warning("GET %s connection error: %s", path, e)
            raise APITimeoutError(path, f"connection error: {e}")

        status = response.status_code
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            logger.warning("GET %s rate limited (429)", path)
            raise APIRateLimitError(
                path, int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status in (401, 403):
            logger.error("GET %s returned %d (check the API key scope)", path, status)
            raise APIAuthError(path, status_code=status, body=_error_body(response))
        if status >= 400:
            body = _error_body(response)
            logger.error("GET %s returned %d: %s", path, status, body)
            raise APIError(
                f"GHL API GET {path} returned {status}",
                status_code=status, url=path, body=body,
            )

        try:
            return response.json()
        except ValueError:
            raise APIError(
                f"GHL API GET {path} returned invalid JSON",
                status_code=status, url=path,
            )

    def _retry_wait(self, retry_state) -> float:
        """Honor a 429's Retry-After, otherwise back off exponentially."""
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, APIRateLimitError) and exc.retry_after is not None:
            return float(min(exc.retry_after, MAX_RETRY_AFTER))
        return self._backoff(retry_state)

    async def _get(self, path: str, api_key: str, params: Mapping[str, Any] = None) -> Any:
        """GET with per-request retry on transient failures."""
        params = params or {}
        payload = None
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.max_retries),
            wait=self._retry_wait,
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                payload = await self._get_once(path, api_key, params)
        return payload

    async def paginate(
        self,
        path: str,
        api_key: str,
        list_key: str,
        params: Mapping[str, Any] = None,
    ) -> List[Dict[str, Any]]:
        """
        Read every page of a list endpoint.

        Requests ``page`` 1, 2, ... with a fixed ``limit`` and stops on the
        first short or empty page. Records are kept once per id, and a page that
        brings no unseen id also ends the read.
        """
        limit = self.settings.page_size
        base_params = dict(params or {})
        results: List[Dict[str, Any]] = []
        seen_ids = set()
        page = 1
        while True:
            payload = await self._get(path, api_key, {**base_params, "limit": limit, "page": page})
            items = _extract_items(payload, list_key)
            fresh = []
            for item in items:
                item_id = item.get("id") if isinstance(item, dict) else None
                if item_id is not None:
                    if item_id in seen_ids:
                        continue
                    seen_ids.add(item_id)
                fresh.append(item)
            results.extend(fresh)
            if len(items) < limit:
                break
            if not fresh:
                logger.warning(
                    "Page %d of %s repeated earlier records; the endpoint ignores paging, "
                    "stopping at %d records", page, path, len(results),
                )
                break
            if page >= self.settings.max_pages:
                logger.warning(
                    "Reached max_pages=%d for %s; stopping pagination at %d records",
                    self.settings.max_pages, path, len(results),
                )
                break
            page += 1
        logger.debug("GET %s — %d records over %d page(s)", path, len(results), page)
        return results

    # ─── Directory Metadata ─────────────────────────────────

    async def list_sub_accounts(self, agency_api_key: str) -> List[Dict[str, Any]]:
        """Every sub-account visible to the agency key: ``[{id, name}, ...]``."""
        payload = await self._get("/v1/locations/", agency_api_key)
        return [
            {"id": str(loc["id"]), "name": str(loc.get("name") or "")}
            for loc in _extract_items(payload, "locations")
            if loc.get("id")
        ]

    async def list_pipelines(self, sub_account_id: str, api_key: str) -> List[Dict[str, Any]]:
        """Pipelines of one sub-account with their stages."""
        payload = await self._get(
            "/v1/pipelines/", api_key, {"locationId": sub_account_id},
        )
        return _extract_items(payload, "pipelines")

    # ─── Collections ────────────────────────────────────────

    async def fetch_contacts(self, location: LocationConfig) -> List[Contact]:
        raw = await self.paginate(
            "/v1/contacts/", location.api_key, "contacts",
            {"locationId": location.sub_account_id},
        )
        return [Contact.from_api(item) for item in raw]

    async def fetch_pipeline_opportunities(
        self,
        location: LocationConfig,
        pipeline_id: str,
        window: Optional[DateWindow] = None,
    ) -> List[Opportunity]:
        """Opportunities of one pipeline; ``window`` narrows server-side when given."""
        params: Dict[str, Any] = {"locationId": location.sub_account_id}
        if window is not None:
            params.update(startDate=window.start_ms, endDate=window.end_ms)
        raw = await self.paginate(
            f"/v1/pipelines/{pipeline_id}/opportunities", location.api_key,
            "opportunities", params,
        )
        return [Opportunity.from_api(item, pipeline_id=pipeline_id) for item in raw]

    async def fetch_calendar_appointments(
        self,
        location: LocationConfig,
        calendar_id: str,
        window: DateWindow,
    ) -> List[Appointment]:
        raw = await self.paginate(
            "/v1/appointments/", location.api_key, "appointments",
            {
                "locationId": location.sub_account_id,
                "calendarId": calendar_id,
                "startDate": window.start_ms,
                "endDate": window.end_ms,
                "includeAll": "true",
            },
        )
        return [Appointment.from_api(item, calendar_id=calendar_id) for item in raw]

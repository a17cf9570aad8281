"""
Stats Aggregator
=================

Per-location fetch, classify and fold, plus multi-location roll-ups.

Lifecycle of one location computation:
    Pending -> FetchingCollections -> Classifying -> Folded -> Cached | Errored

Failure policy:
- A pipeline or calendar fetch that fails degrades only its own breakdown
  bucket to an ``ErrorMarker``; the result is still returned.
- A contacts failure (when the strategy needs contacts) or a location whose
  pipeline discovery failed at startup raises ``UpstreamFatalFailure``.
- In ``compute_many`` a failed location becomes an error entry and is left
  out of every summed total.

Usage:
    aggregator = StatsAggregator(directory, client, build_classifier("tag"), cache)
    result = await aggregator.compute_one("portland", window)
"""
from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from models.stats_models import (
    AggregationResult,
    Breakdown,
    Contact,
    DateWindow,
    ErrorMarker,
    LocationConfig,
    MetricBucket,
    MultiLocationResult,
    Opportunity,
)
from scripts.lib.cache import NullCache, ResultCache
from scripts.lib.concurrency import bounded_gather
from scripts.lib.errors import (
    BadRequestError,
    StatsError,
    UpstreamFatalFailure,
    UpstreamPartialFailure,
)
from scripts.lib.logger import setup_logger
from scripts.stats.classifier import (
    APPOINTMENT_METRICS,
    ClassificationStrategy,
    classify_appointment,
)
from scripts.stats.directory import LocationDirectory

logger = setup_logger("stats_aggregator")

ALL_LOCATIONS = "all"


def parse_selection(raw: Optional[str]) -> List[str]:
    """``"all"`` / ``"a, b"`` query value -> list of requested slugs."""
    if raw is None or not raw.strip():
        return [ALL_LOCATIONS]
    return [part.strip().lower() for part in raw.split(",") if part.strip()]


class StatsAggregator:
    """Computes ``AggregationResult``s for locations in a directory."""

    def __init__(
        self,
        directory: LocationDirectory,
        client,
        classifier: ClassificationStrategy,
        cache: ResultCache = None,
        location_concurrency: int = 6,
        subfetch_concurrency: int = 8,
    ):
        self.directory = directory
        self.client = client
        self.classifier = classifier
        self.cache = cache if cache is not None else NullCache()
        self.location_concurrency = location_concurrency
        self.subfetch_concurrency = subfetch_concurrency

    # ─── Single location ────────────────────────────────────

    async def compute_one(self, slug: str, window: DateWindow) -> AggregationResult:
        """
        Stats for one location.

        Raises:
            LocationNotConfigured: slug not in the directory (no upstream calls).
            UpstreamFatalFailure: contacts failed or pipelines were never discovered.
        """
        location = self.directory.resolve(slug)
        if location.discovery_error:
            raise UpstreamFatalFailure(location.slug, location.discovery_error)

        key = (location.slug, window.start_ms, window.end_ms)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("[%s] cache hit", location.slug)
            return cached

        logger.debug("[%s] FetchingCollections", location.slug)
        opportunities, appointments, contacts, failures = await self._fetch_collections(
            location, window,
        )

        logger.debug("[%s] Classifying", location.slug)
        result = self._fold(location, window, opportunities, appointments, contacts, failures)
        logger.debug("[%s] Folded", location.slug)

        self.cache.set(key, result)
        if failures:
            logger.warning(
                "[%s] returned partial stats; failed buckets: %s",
                location.slug, ", ".join(sorted(failures)),
            )
        return result

    async def _fetch_collections(self, location: LocationConfig, window: DateWindow):
        """
        Fan out every sub-fetch for one location.

        Returns (opportunities by pipeline, appointments by calendar, contacts,
        failures by bucket name).
        """
        opp_window = window if self.classifier.window_filters_opportunities else None
        jobs: List[Tuple[str, str]] = []
        coros = []
        for pipeline in location.pipelines:
            jobs.append(("pipeline", pipeline.name))
            coros.append(self.client.fetch_pipeline_opportunities(
                location, pipeline.pipeline_id, opp_window,
            ))
        for calendar in location.calendars:
            jobs.append(("calendar", calendar.name))
            coros.append(self.client.fetch_calendar_appointments(
                location, calendar.calendar_id, window,
            ))
        if self.classifier.needs_contacts:
            jobs.append(("contacts", "contacts"))
            coros.append(self.client.fetch_contacts(location))

        outcomes = await bounded_gather(
            coros, limit=self.subfetch_concurrency, return_exceptions=True,
        )

        opportunities: Dict[str, List[Opportunity]] = {}
        appointments: Dict[str, list] = {}
        contacts: Optional[List[Contact]] = None
        failures: Dict[str, UpstreamPartialFailure] = {}
        for (kind, name), outcome in zip(jobs, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                if kind == "contacts":
                    logger.error("[%s] contacts fetch failed: %s", location.slug, outcome)
                    raise UpstreamFatalFailure(location.slug, "Contacts fetch failed", outcome)
                failure = UpstreamPartialFailure(kind, name, outcome)
                logger.error("[%s] %s", location.slug, failure.message)
                failures[f"{kind}:{name}"] = failure
                continue
            if kind == "pipeline":
                opportunities[name] = outcome
            elif kind == "calendar":
                appointments[name] = outcome
            else:
                contacts = outcome
        return opportunities, appointments, contacts, failures

    def _fold(
        self,
        location: LocationConfig,
        window: DateWindow,
        opportunities: Dict[str, List[Opportunity]],
        appointments: Dict[str, list],
        contacts: Optional[List[Contact]],
        failures: Dict[str, UpstreamPartialFailure],
    ) -> AggregationResult:
        pipelines: Breakdown = {}
        for ref in location.pipelines:
            failure = failures.get(f"pipeline:{ref.name}")
            pipelines[ref.name] = (
                ErrorMarker(details=failure.message) if failure else MetricBucket()
            )
        calendars: Breakdown = {}
        for ref in location.calendars:
            failure = failures.get(f"calendar:{ref.name}")
            calendars[ref.name] = (
                ErrorMarker(details=failure.message) if failure else MetricBucket()
            )

        combined = MetricBucket()
        # With calendars configured they are the source of appointment metrics.
        calendar_owned = APPOINTMENT_METRICS if location.calendars else ()

        for contribution in self.classifier.classify(location, window, opportunities, contacts):
            if contribution.metric not in calendar_owned:
                combined.add(contribution.metric)
            for name in contribution.buckets:
                bucket = pipelines.get(name)
                if isinstance(bucket, MetricBucket):
                    bucket.add(contribution.metric)

        for name, records in appointments.items():
            bucket = calendars[name]
            for appointment in records:
                for metric in classify_appointment(appointment, window):
                    bucket.add(metric)
                    combined.add(metric)

        return AggregationResult(
            location_slug=location.slug,
            display_name=location.display_name,
            window=window,
            strategy=self.classifier.name,
            combined=combined,
            pipelines=pipelines,
            calendars=calendars,
        )

    # ─── Many locations ─────────────────────────────────────

    def resolve_selection(self, requested: Sequence[str]) -> List[str]:
        """
        Expand ``all`` and drop unknown slugs.

        Raises:
            BadRequestError: nothing left to compute.
        """
        if any(slug == ALL_LOCATIONS for slug in requested):
            selection = self.directory.slugs()
        else:
            selection = []
            for slug in requested:
                if slug in self.directory and slug not in selection:
                    selection.append(self.directory.resolve(slug).slug)
        if not selection:
            raise BadRequestError.for_field(
                "locations", "No configured locations match the selection", "exists:location",
            )
        return selection

    async def compute_many(
        self,
        requested: Sequence[str],
        window: DateWindow,
    ) -> MultiLocationResult:
        selection = self.resolve_selection(requested)
        outcomes = await bounded_gather(
            [self.compute_one(slug, window) for slug in selection],
            limit=self.location_concurrency,
            return_exceptions=True,
        )

        result = MultiLocationResult(selection=selection, window=window)
        for slug, outcome in zip(selection, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                if isinstance(outcome, StatsError):
                    reason = outcome.message
                else:
                    reason = str(outcome) or type(outcome).__name__
                    logger.error("[%s] unexpected failure: %s", slug, outcome, exc_info=outcome)
                result.by_location[slug] = ErrorMarker(details=reason)
                continue

            result.by_location[slug] = outcome
            result.combined.merge(outcome.combined)
            _sum_breakdown(result.by_pipeline, outcome.pipelines)
            _sum_breakdown(result.by_calendar, outcome.calendars)

        failed = [slug for slug, e in result.by_location.items() if isinstance(e, ErrorMarker)]
        logger.info(
            "Computed %d location(s), %d failed%s",
            len(selection), len(failed), f": {', '.join(failed)}" if failed else "",
        )
        return result


def _sum_breakdown(totals: Dict[str, MetricBucket], breakdown: Breakdown) -> None:
    """Add a location's healthy buckets into ``totals`` without touching the source."""
    for name, bucket in breakdown.items():
        if not isinstance(bucket, MetricBucket):
            continue
        if name not in totals:
            totals[name] = MetricBucket()
        totals[name].merge(bucket)

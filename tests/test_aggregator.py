"""Tests for StatsAggregator: folding, partial failures, caching and roll-ups."""

import pytest

from models.stats_models import (
    Appointment,
    Contact,
    ErrorMarker,
    LocationConfig,
    MetricBucket,
    Opportunity,
)
from scripts.lib.cache import InMemoryTTLCache
from scripts.lib.errors import (
    APIError,
    APITimeoutError,
    BadRequestError,
    LocationNotConfigured,
    UpstreamFatalFailure,
)
from scripts.stats.aggregator import StatsAggregator, parse_selection
from scripts.stats.classifier import StageClassifier, TagClassifier
from scripts.stats.directory import LocationDirectory

IN_WINDOW = 1704412800000      # 2024-01-05
AFTER_WINDOW = 1706745600000   # 2024-02-01


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def make_aggregator(crm, *locations, classifier=None, cache=None):
    return StatsAggregator(
        LocationDirectory(locations),
        crm,
        classifier or TagClassifier(),
        cache=cache,
        location_concurrency=2,
        subfetch_concurrency=2,
    )


def seed_portland(crm):
    crm.opportunities["pl_adult"] = [
        Opportunity(id="o1", tags=("adult", "won"), created_at=IN_WINDOW),
        Opportunity(id="o2", tags=("adult",), created_at=IN_WINDOW),
    ]
    crm.opportunities["pl_youth"] = []
    crm.contacts["loc_pdx"] = []


class TestSingleLocation:
    @pytest.mark.asyncio
    async def test_tag_strategy_counts(self, crm, portland, window):
        seed_portland(crm)
        result = await make_aggregator(crm, portland).compute_one("portland", window)

        assert result.combined.leads == 2
        assert result.combined.wins == 1
        assert result.pipelines["adult"].leads == 2
        assert result.pipelines["adult"].wins == 1
        assert result.pipelines["youth"] == MetricBucket()
        assert result.failed_buckets == []

    @pytest.mark.asyncio
    async def test_stage_strategy_skips_contacts_and_window(self, crm, portland, window):
        seed_portland(crm)
        result = await make_aggregator(
            crm, portland, classifier=StageClassifier(),
        ).compute_one("portland", window)

        assert result.combined.leads == 0
        assert result.combined.wins == 1
        assert result.strategy == "stage"
        assert not any(call[0] == "contacts" for call in crm.calls)
        assert all(call[3] is None for call in crm.calls if call[0] == "opportunities")

    @pytest.mark.asyncio
    async def test_stage_headcount_includes_old_leads(self, crm, portland, window):
        crm.opportunities["pl_adult"] = [
            Opportunity(id="o1", stage_id="st_lead", created_at=AFTER_WINDOW),
            Opportunity(id="o2", stage_id="st_lead", created_at=IN_WINDOW),
        ]
        result = await make_aggregator(
            crm, portland, classifier=StageClassifier(),
        ).compute_one("portland", window)
        assert result.pipelines["adult"].leads == 2
        assert result.combined.leads == 2

    @pytest.mark.asyncio
    async def test_combined_counts_multi_pipeline_record_once(self, crm, portland, window):
        crm.opportunities["pl_adult"] = [
            Opportunity(id="o1", tags=("adult", "youth", "show"), created_at=IN_WINDOW),
        ]
        crm.contacts["loc_pdx"] = []
        result = await make_aggregator(crm, portland).compute_one("portland", window)

        assert result.combined.leads == 1
        assert result.pipelines["adult"].leads == 1
        assert result.pipelines["youth"].leads == 1
        assert result.pipelines["youth"].shows == 1

    @pytest.mark.asyncio
    async def test_unknown_slug_makes_no_upstream_calls(self, crm, portland, window):
        with pytest.raises(LocationNotConfigured):
            await make_aggregator(crm, portland).compute_one("atlantis", window)
        assert crm.calls == []

    @pytest.mark.asyncio
    async def test_discovery_error_is_fatal(self, crm, portland, window):
        broken = portland.model_copy(update={"discovery_error": "Pipeline discovery failed"})
        with pytest.raises(UpstreamFatalFailure):
            await make_aggregator(crm, broken).compute_one("portland", window)
        assert crm.calls == []


class TestPartialFailures:
    @pytest.mark.asyncio
    async def test_failed_pipeline_degrades_only_its_bucket(self, crm, portland, window):
        seed_portland(crm)
        crm.failures["pl_youth"] = APIError("boom", status_code=500, url="/v1/pipelines")

        result = await make_aggregator(crm, portland).compute_one("portland", window)

        assert isinstance(result.pipelines["youth"], ErrorMarker)
        assert result.pipelines["adult"].leads == 2
        assert result.combined.leads == 2
        assert result.failed_buckets == ["youth"]
        response = result.to_response()
        assert response["pipelines"]["youth"]["error"] is True

    @pytest.mark.asyncio
    async def test_contact_tagged_into_failed_pipeline_still_counts(self, crm, portland, window):
        seed_portland(crm)
        crm.contacts["loc_pdx"] = [Contact(id="c1", tags=("youth",), created_at=IN_WINDOW)]
        crm.failures["pl_youth"] = APITimeoutError("/v1/pipelines")

        result = await make_aggregator(crm, portland).compute_one("portland", window)
        assert result.combined.leads == 3
        assert isinstance(result.pipelines["youth"], ErrorMarker)

    @pytest.mark.asyncio
    async def test_contacts_failure_is_fatal(self, crm, portland, window):
        seed_portland(crm)
        crm.failures["loc_pdx"] = APIError("down", status_code=503, url="/v1/contacts/")

        with pytest.raises(UpstreamFatalFailure) as exc_info:
            await make_aggregator(crm, portland).compute_one("portland", window)
        assert exc_info.value.details["location"] == "portland"

    @pytest.mark.asyncio
    async def test_failed_calendar_degrades_only_its_bucket(self, crm, salem, window):
        crm.failures["cal_sal"] = APIError("boom", status_code=500, url="/v1/appointments/")
        result = await make_aggregator(crm, salem).compute_one("salem", window)
        assert isinstance(result.calendars["main"], ErrorMarker)
        assert isinstance(result.pipelines["adult"], MetricBucket)


class TestCalendars:
    @pytest.mark.asyncio
    async def test_calendars_own_appointment_metrics(self, crm, salem, window):
        crm.opportunities["pl_sal_adult"] = [
            Opportunity(id="o1", tags=("adult", "show", "appointment"), created_at=IN_WINDOW),
        ]
        crm.appointments["cal_sal"] = [
            Appointment(id="a1", start_time=IN_WINDOW, status="showed"),
            Appointment(id="a2", start_time=IN_WINDOW, status="noshow"),
            Appointment(id="a3", start_time=IN_WINDOW, status="cancelled"),
        ]
        crm.contacts["loc_sal"] = []

        result = await make_aggregator(crm, salem).compute_one("salem", window)

        assert result.calendars["main"].appointments == 2
        assert result.calendars["main"].shows == 1
        assert result.calendars["main"].no_shows == 1
        assert result.combined.appointments == 2
        assert result.combined.shows == 1
        assert result.combined.leads == 1
        # Pipeline breakdowns still carry their own tag-derived counts.
        assert result.pipelines["adult"].shows == 1
        assert result.pipelines["adult"].appointments == 1


class TestCaching:
    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, crm, portland, window):
        seed_portland(crm)
        clock = FakeClock()
        aggregator = make_aggregator(crm, portland, cache=InMemoryTTLCache(120, clock=clock))

        first = await aggregator.compute_one("portland", window)
        calls_after_first = len(crm.calls)
        second = await aggregator.compute_one("portland", window)

        assert len(crm.calls) == calls_after_first
        assert second.to_response() == first.to_response()

        clock.now = 121
        await aggregator.compute_one("portland", window)
        assert len(crm.calls) == calls_after_first * 2

    @pytest.mark.asyncio
    async def test_fatal_failures_are_not_cached(self, crm, portland, window):
        seed_portland(crm)
        crm.failures["loc_pdx"] = APIError("down", status_code=503, url="/v1/contacts/")
        cache = InMemoryTTLCache(120)
        aggregator = make_aggregator(crm, portland, cache=cache)

        with pytest.raises(UpstreamFatalFailure):
            await aggregator.compute_one("portland", window)
        assert len(cache) == 0

        del crm.failures["loc_pdx"]
        result = await aggregator.compute_one("portland", window)
        assert result.combined.leads == 2


class TestMultiLocation:
    @pytest.mark.asyncio
    async def test_sums_across_locations(self, crm, portland, salem, window):
        seed_portland(crm)
        crm.opportunities["pl_sal_adult"] = [
            Opportunity(id="s1", tags=("adult", "cold"), created_at=IN_WINDOW),
        ]
        crm.contacts["loc_sal"] = []

        result = await make_aggregator(crm, portland, salem).compute_many(["all"], window)

        assert result.selection == ["portland", "salem"]
        assert result.combined.leads == 3
        assert result.combined.cold == 1
        assert result.by_pipeline["adult"].leads == 3
        assert set(result.by_pipeline) == {"youth", "adult", "leagues"}
        assert set(result.by_calendar) == {"main"}
        assert result.by_location["portland"].combined.leads == 2

    @pytest.mark.asyncio
    async def test_failed_location_excluded_from_sums(self, crm, portland, salem, window):
        seed_portland(crm)
        crm.contacts["loc_sal"] = []
        crm.failures["loc_pdx"] = APIError("down", status_code=503, url="/v1/contacts/")

        result = await make_aggregator(crm, portland, salem).compute_many(["all"], window)

        assert isinstance(result.by_location["portland"], ErrorMarker)
        assert result.combined.leads == 0
        assert result.to_response()["byLocation"]["portland"]["error"] is True

    @pytest.mark.asyncio
    async def test_sums_do_not_mutate_cached_results(self, crm, portland, salem, window):
        seed_portland(crm)
        crm.contacts["loc_sal"] = []
        aggregator = make_aggregator(crm, portland, salem, cache=InMemoryTTLCache(120))

        single = await aggregator.compute_one("portland", window)
        await aggregator.compute_many(["portland", "salem"], window)
        await aggregator.compute_many(["portland", "salem"], window)

        assert single.pipelines["adult"].leads == 2
        assert (await aggregator.compute_one("portland", window)).combined.leads == 2

    @pytest.mark.asyncio
    async def test_unknown_slugs_are_dropped(self, crm, portland, salem, window):
        seed_portland(crm)
        result = await make_aggregator(crm, portland, salem).compute_many(
            ["portland", "atlantis"], window,
        )
        assert result.selection == ["portland"]

    @pytest.mark.asyncio
    async def test_empty_selection_is_bad_request(self, crm, portland, window):
        with pytest.raises(BadRequestError) as exc_info:
            await make_aggregator(crm, portland).compute_many(["atlantis"], window)
        assert "locations" in exc_info.value.details
        assert crm.calls == []


class TestSelectionParsing:
    def test_defaults_to_all(self):
        assert parse_selection(None) == ["all"]
        assert parse_selection("  ") == ["all"]

    def test_comma_separated(self):
        assert parse_selection("Portland, salem,") == ["portland", "salem"]


class TestDirectoryLookup:
    def test_entries_without_keys_are_excluded(self, portland):
        keyless = LocationConfig(
            slug="eugene", display_name="Eugene", sub_account_id="", api_key="",
        )
        directory = LocationDirectory([portland, keyless])
        assert directory.slugs() == ["portland"]
        assert "Portland" in directory

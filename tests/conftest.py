"""
Shared fixtures for the location stats tests.

Provides fabricated locations, a fixed January 2024 window and an in-memory
CRM client double so the aggregator and API can be tested without network.
"""
from pathlib import Path
from typing import Dict, List

import pytest

from models.stats_models import (
    Appointment,
    CalendarRef,
    Contact,
    DateWindow,
    LocationConfig,
    Opportunity,
    PipelineRef,
)
from scripts.lib.settings import Settings

JAN_1_MS = 1704067200000           # 2024-01-01T00:00:00.000Z
JAN_31_END_MS = 1706745599999      # 2024-01-31T23:59:59.999Z

STAGES = {
    "lead": "st_lead",
    "appointment": "st_appt",
    "show": "st_show",
    "no-show": "st_noshow",
    "cold": "st_cold",
}


class FakeCRMClient:
    """
    In-memory stand-in for ``GHLClient``.

    Records keyed by pipeline id / calendar id / sub-account id. ``failures``
    maps any of those ids to an exception raised instead of returning data.
    """

    def __init__(self):
        self.opportunities: Dict[str, List[Opportunity]] = {}
        self.appointments: Dict[str, List[Appointment]] = {}
        self.contacts: Dict[str, List[Contact]] = {}
        self.sub_accounts: List[dict] = []
        self.pipelines: Dict[str, List[dict]] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[tuple] = []

    def _maybe_fail(self, key: str):
        if key in self.failures:
            raise self.failures[key]

    async def list_sub_accounts(self, agency_api_key):
        self.calls.append(("sub_accounts", agency_api_key))
        self._maybe_fail("sub_accounts")
        return list(self.sub_accounts)

    async def list_pipelines(self, sub_account_id, api_key):
        self.calls.append(("pipelines", sub_account_id))
        self._maybe_fail(f"pipelines:{sub_account_id}")
        return list(self.pipelines.get(sub_account_id, []))

    async def fetch_contacts(self, location):
        self.calls.append(("contacts", location.slug))
        self._maybe_fail(location.sub_account_id)
        return list(self.contacts.get(location.sub_account_id, []))

    async def fetch_pipeline_opportunities(self, location, pipeline_id, window=None):
        self.calls.append(("opportunities", location.slug, pipeline_id, window))
        self._maybe_fail(pipeline_id)
        return list(self.opportunities.get(pipeline_id, []))

    async def fetch_calendar_appointments(self, location, calendar_id, window):
        self.calls.append(("appointments", location.slug, calendar_id, window))
        self._maybe_fail(calendar_id)
        return list(self.appointments.get(calendar_id, []))


@pytest.fixture
def window():
    return DateWindow(start_ms=JAN_1_MS, end_ms=JAN_31_END_MS)


@pytest.fixture
def crm():
    return FakeCRMClient()


@pytest.fixture
def portland():
    return LocationConfig(
        slug="portland",
        display_name="Portland",
        sub_account_id="loc_pdx",
        api_key="pk_pdx",
        pipelines=(
            PipelineRef(name="youth", pipeline_id="pl_youth", stage_ids=STAGES),
            PipelineRef(name="adult", pipeline_id="pl_adult", stage_ids=STAGES),
        ),
    )


@pytest.fixture
def salem():
    return LocationConfig(
        slug="salem",
        display_name="Salem",
        sub_account_id="loc_sal",
        api_key="pk_sal",
        pipelines=(
            PipelineRef(name="adult", pipeline_id="pl_sal_adult", stage_ids=STAGES),
            PipelineRef(name="leagues", pipeline_id="pl_sal_leagues", stage_ids=STAGES),
        ),
        calendars=(CalendarRef(name="main", calendar_id="cal_sal"),),
    )


@pytest.fixture
def settings(tmp_path: Path):
    return Settings(
        agency_api_key="agency-key",
        base_url="https://crm.test",
        retry_backoff=0,
        max_retries=3,
        page_size=2,
        max_pages=10,
        credentials_csv=tmp_path / "api_keys.csv",
        location_name_prefix="Shoot 360 - ",
    )

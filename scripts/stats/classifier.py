"""
Metric classification for CRM records.

Pure functions deciding which metrics a record contributes to and which
breakdown buckets receive them. Two strategies exist and a deployment runs
exactly one (``CLASSIFICATION_STRATEGY``):

tag
    Opportunities plus standalone contacts. Outcomes come from literal tags
    (``appointment``, ``show``, ``no-show``, ``won``, ``cold``); pipeline
    membership from tags naming a pipeline plus the pipeline the opportunity
    was read from. A record in several pipelines counts once per bucket and
    once in ``combined``.

stage
    Opportunities only. Outcomes come from the pipeline stage the
    opportunity sits in; leads are a live headcount of the ``lead`` stage
    and ignore the date window. Wins stay tag based.

Calendar appointments are classified by status under both strategies.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from models.stats_models import (
    Appointment,
    Contact,
    DateWindow,
    LocationConfig,
    Opportunity,
    PipelineRef,
)

TAG_METRICS = {
    "appointment": "appointments",
    "show": "shows",
    "no-show": "no_shows",
    "won": "wins",
    "cold": "cold",
}

STAGE_METRICS = {
    "appointment": "appointments",
    "show": "shows",
    "no-show": "no_shows",
    "cold": "cold",
}

# Metrics a calendar reports on; calendars own them in ``combined`` when configured.
APPOINTMENT_METRICS = ("appointments", "shows", "no_shows")

CANCELLED_STATUSES = {"cancelled", "canceled", "invalid"}
SHOW_STATUSES = {"showed", "show"}
NO_SHOW_STATUSES = {"noshow", "no-show", "no_show"}


@dataclass(frozen=True)
class Contribution:
    """One metric increment: once in ``combined`` and once per named bucket."""
    metric: str
    buckets: Tuple[str, ...] = ()


# ─── Tag strategy ───────────────────────────────────────────

def tagged_pipelines(tags: Iterable[str], pipeline_names: Sequence[str]) -> List[str]:
    tag_set = set(tags)
    return [name for name in pipeline_names if name in tag_set]


def _tag_outcomes(tags: Iterable[str]) -> List[str]:
    tag_set = set(tags)
    return [metric for tag, metric in TAG_METRICS.items() if tag in tag_set]


def classify_contact_by_tags(
    contact: Contact,
    window: DateWindow,
    pipeline_names: Sequence[str],
) -> List[Contribution]:
    """Leads by ``created_at``, tag outcomes by ``updated_at``."""
    buckets = tuple(tagged_pipelines(contact.tags, pipeline_names))
    contributions = []
    if window.contains(contact.created_at):
        contributions.append(Contribution("leads", buckets))
    if window.contains(contact.updated_at):
        contributions.extend(Contribution(m, buckets) for m in _tag_outcomes(contact.tags))
    return contributions


def classify_opportunity_by_tags(
    opportunity: Opportunity,
    window: DateWindow,
    home_pipeline: Optional[str],
    pipeline_names: Sequence[str],
) -> List[Contribution]:
    """Every in-window opportunity is a lead; outcomes come from its tags."""
    if not window.contains(opportunity.created_at):
        return []
    names = tagged_pipelines(opportunity.tags, pipeline_names)
    if home_pipeline and home_pipeline not in names:
        names.insert(0, home_pipeline)
    buckets = tuple(names)
    contributions = [Contribution("leads", buckets)]
    contributions.extend(Contribution(m, buckets) for m in _tag_outcomes(opportunity.tags))
    return contributions


# ─── Stage strategy ─────────────────────────────────────────

def is_headcount_lead(opportunity: Opportunity, pipeline: PipelineRef) -> bool:
    """Currently sitting in the pipeline's lead stage. Not date-filtered."""
    lead_stage = pipeline.stage_id("lead")
    return lead_stage is not None and opportunity.stage_id == lead_stage


def count_headcount_leads(opportunities: Iterable[Opportunity], pipeline: PipelineRef) -> int:
    return sum(1 for opp in opportunities if is_headcount_lead(opp, pipeline))


def classify_opportunity_by_stage(
    opportunity: Opportunity,
    window: DateWindow,
    pipeline: PipelineRef,
) -> List[Contribution]:
    """Date-scoped stage outcomes plus tag-based wins. Leads are handled separately."""
    if not window.contains(opportunity.created_at):
        return []
    buckets = (pipeline.name,)
    contributions = [
        Contribution(metric, buckets)
        for stage_name, metric in STAGE_METRICS.items()
        if opportunity.stage_id is not None
        and opportunity.stage_id == pipeline.stage_id(stage_name)
    ]
    if "won" in opportunity.tags:
        contributions.append(Contribution("wins", buckets))
    return contributions


# ─── Calendars ──────────────────────────────────────────────

def classify_appointment(appointment: Appointment, window: DateWindow) -> List[str]:
    if not window.contains(appointment.start_time):
        return []
    status = appointment.status or ""
    if status in CANCELLED_STATUSES:
        return []
    metrics = ["appointments"]
    if status in SHOW_STATUSES:
        metrics.append("shows")
    elif status in NO_SHOW_STATUSES:
        metrics.append("no_shows")
    return metrics


# ─── Strategies ─────────────────────────────────────────────

class ClassificationStrategy(ABC):
    """Turns one location's fetched collections into contributions."""

    name: str = ""
    needs_contacts: bool = False
    window_filters_opportunities: bool = True

    @abstractmethod
    def classify(
        self,
        location: LocationConfig,
        window: DateWindow,
        opportunities: Dict[str, List[Opportunity]],
        contacts: Optional[List[Contact]] = None,
    ) -> Iterator[Contribution]:
        """``opportunities`` maps pipeline name to the records read from it."""


class TagClassifier(ClassificationStrategy):
    name = "tag"
    needs_contacts = True
    window_filters_opportunities = True

    def classify(self, location, window, opportunities, contacts=None):
        pipeline_names = [p.name for p in location.pipelines]
        seen = set()
        linked_contacts = set()
        for pipeline_name, records in opportunities.items():
            for opp in records:
                if opp.id in seen:
                    continue
                seen.add(opp.id)
                if opp.contact_id:
                    linked_contacts.add(opp.contact_id)
                yield from classify_opportunity_by_tags(opp, window, pipeline_name, pipeline_names)

        # Each contact counts once, and not at all when an opportunity already represents it.
        for contact in contacts or ():
            if contact.id in linked_contacts:
                continue
            linked_contacts.add(contact.id)
            yield from classify_contact_by_tags(contact, window, pipeline_names)


class StageClassifier(ClassificationStrategy):
    name = "stage"
    needs_contacts = False
    # Headcount leads need every open opportunity, not just the window.
    window_filters_opportunities = False

    def classify(self, location, window, opportunities, contacts=None):
        refs = {p.name: p for p in location.pipelines}
        for pipeline_name, records in opportunities.items():
            pipeline = refs[pipeline_name]
            seen = set()
            for opp in records:
                if opp.id in seen:
                    continue
                seen.add(opp.id)
                if is_headcount_lead(opp, pipeline):
                    yield Contribution("leads", (pipeline_name,))
                yield from classify_opportunity_by_stage(opp, window, pipeline)


STRATEGIES = {
    TagClassifier.name: TagClassifier,
    StageClassifier.name: StageClassifier,
}


def build_classifier(strategy: str) -> ClassificationStrategy:
    try:
        return STRATEGIES[strategy]()
    except KeyError:
        raise ValueError(f"Unknown classification strategy: {strategy}")

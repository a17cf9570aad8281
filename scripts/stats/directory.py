"""
Location Directory
===================

Maps a location slug to its CRM sub-account, scoped API key, pipelines and
calendars. Built once at startup by merging two external lists:

1. Sub-accounts visible to the agency key (remote CRM).
2. Per-location credential rows from a local CSV:

       location,api_key,location_id,pipelines,calendars
       Portland,pk_123,,,main:cal_abc
       Lake Oswego,pk_456,loc_789,adult:pl_1;youth:pl_2,

   ``location_id``, ``pipelines`` and ``calendars`` are optional overrides.

Rows are matched to sub-accounts by normalized name containment (or the
explicit ``location_id``), then each location's pipelines are discovered with
its own key. The directory is immutable afterwards; restart to reload.
"""
from __future__ import annotations

import asyncio
import csv
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from models.stats_models import (
    CalendarRef,
    LocationConfig,
    PipelineRef,
    normalize_stage_name,
    slugify,
)
from scripts.lib.errors import ConfigError, LocationNotConfigured, StatsError
from scripts.lib.logger import mask_secret, setup_logger
from scripts.lib.settings import Settings

logger = setup_logger("location_directory")


# ─── Name Matching ──────────────────────────────────────────

def normalize_name(name: str) -> str:
    """Lowercase, punctuation to spaces, whitespace collapsed."""
    return " ".join(re.sub(r"[^a-z0-9]+", " ", str(name).lower()).split())


def match_by_normalized_substring(
    local_name: str,
    remote: Sequence[Mapping[str, Any]],
) -> Optional[Mapping[str, Any]]:
    """
    Find the sub-account whose name contains ``local_name``.

    An exact normalized match wins; otherwise the shortest containing name,
    so "Salem" prefers "Shoot 360 - Salem" over "Shoot 360 - West Salem".
    """
    needle = normalize_name(local_name)
    if not needle:
        return None
    candidates = []
    for sub in remote:
        haystack = normalize_name(sub.get("name", ""))
        if haystack == needle:
            return sub
        if needle in haystack:
            candidates.append((len(haystack), sub))
    if not candidates:
        return None
    candidates.sort(key=lambda pair: pair[0])
    return candidates[0][1]


def strip_prefix(name: str, prefix: str) -> str:
    if prefix and name.lower().startswith(prefix.lower()):
        return name[len(prefix):].strip()
    return name.strip()


# ─── Credential Rows ────────────────────────────────────────

@dataclass
class CredentialRow:
    location: str
    api_key: str
    location_id: Optional[str] = None
    pipeline_ids: Dict[str, str] = field(default_factory=dict)
    calendars: Dict[str, str] = field(default_factory=dict)

    @property
    def slug(self) -> str:
        return slugify(self.location)


def parse_refs(raw: Optional[str]) -> Dict[str, str]:
    """``"adult:pl_1; youth:pl_2"`` -> ``{"adult": "pl_1", "youth": "pl_2"}``."""
    refs: Dict[str, str] = {}
    for part in (raw or "").split(";"):
        if ":" not in part:
            continue
        name, ref_id = part.split(":", 1)
        name, ref_id = name.strip().lower(), ref_id.strip()
        if name and ref_id:
            refs[name] = ref_id
    return refs


def load_credential_rows(path: Path) -> List[CredentialRow]:
    """Read the credential CSV. A missing file is a configuration error."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Credential file not found: {path}", config_path=str(path))

    rows: List[CredentialRow] = []
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        reader = csv.DictReader(f)
        missing = {"location", "api_key"} - set(reader.fieldnames or [])
        if missing:
            raise ConfigError(
                f"Credential file is missing columns: {', '.join(sorted(missing))}",
                config_path=str(path),
            )
        for line_no, raw in enumerate(reader, start=2):
            location = (raw.get("location") or "").strip()
            api_key = (raw.get("api_key") or "").strip()
            if not location or not api_key:
                logger.warning("Skipping credential row %d: location and api_key are required", line_no)
                continue
            rows.append(CredentialRow(
                location=location,
                api_key=api_key,
                location_id=(raw.get("location_id") or "").strip() or None,
                pipeline_ids=parse_refs(raw.get("pipelines")),
                calendars=parse_refs(raw.get("calendars")),
            ))
    logger.info("Loaded %d credential rows from %s", len(rows), path.name)
    return rows


def build_pipeline_refs(
    remote_pipelines: Iterable[Mapping[str, Any]],
    whitelist: Sequence[str],
    overrides: Mapping[str, str] = None,
) -> List[PipelineRef]:
    """
    Keep whitelisted pipelines (by lowercase name) with their stage maps.

    Override ids replace the discovered id for that logical name; stages are
    taken from whichever remote pipeline carries the override id.
    """
    overrides = overrides or {}
    by_name: Dict[str, Mapping[str, Any]] = {}
    by_id: Dict[str, Mapping[str, Any]] = {}
    for pipeline in remote_pipelines:
        name = str(pipeline.get("name", "")).strip().lower()
        by_id[str(pipeline.get("id"))] = pipeline
        if name in whitelist and name not in by_name:
            by_name[name] = pipeline

    refs = []
    for name in whitelist:
        pipeline_id = overrides.get(name)
        source = by_id.get(pipeline_id) if pipeline_id else by_name.get(name)
        if pipeline_id is None:
            if source is None:
                continue
            pipeline_id = str(source["id"])
        stages = {
            normalize_stage_name(stage.get("name", "")): str(stage.get("id"))
            for stage in (source or {}).get("stages") or []
            if stage.get("id") and stage.get("name")
        }
        refs.append(PipelineRef(name=name, pipeline_id=pipeline_id, stage_ids=stages))
    return refs


# ─── Directory ──────────────────────────────────────────────

class LocationDirectory:
    """Immutable slug -> LocationConfig registry."""

    def __init__(self, locations: Iterable[LocationConfig] = ()):
        entries: Dict[str, LocationConfig] = {}
        for loc in locations:
            if not loc.sub_account_id or not loc.api_key:
                logger.warning("Excluding '%s': sub-account id or API key missing", loc.slug)
                continue
            if loc.slug in entries:
                logger.warning("Duplicate location slug '%s'; keeping the first entry", loc.slug)
                continue
            entries[loc.slug] = loc
        self._locations = dict(sorted(entries.items()))

    def __len__(self) -> int:
        return len(self._locations)

    def __contains__(self, slug: str) -> bool:
        return slugify(slug) in self._locations

    def resolve(self, slug: str) -> LocationConfig:
        loc = self._locations.get(slugify(slug))
        if loc is None:
            raise LocationNotConfigured(slug)
        return loc

    def list_all(self) -> List[LocationConfig]:
        return list(self._locations.values())

    def slugs(self) -> List[str]:
        return list(self._locations)

    # ─── Startup ────────────────────────────────────────────

    @classmethod
    async def initialize(cls, client, settings: Settings) -> "LocationDirectory":
        """
        Build the directory from the CRM and the credential CSV.

        Raises:
            ConfigError: agency key missing, sub-account listing failed, or the
                credential file is unusable.
        """
        if not settings.agency_api_key:
            raise ConfigError("Missing GHL_API_KEY in environment")

        try:
            remote = await client.list_sub_accounts(settings.agency_api_key)
        except StatsError as e:
            raise ConfigError(
                f"Failed to list sub-accounts: {e.message}", upstream=e.details,
            ) from e
        logger.info("Agency key sees %d sub-accounts", len(remote))

        rows = load_credential_rows(settings.credentials_csv)
        remote_by_id = {sub["id"]: sub for sub in remote}

        matched = []
        for row in rows:
            if row.location_id:
                sub = remote_by_id.get(row.location_id)
            else:
                sub = match_by_normalized_substring(row.location, remote)
            if sub is None:
                logger.warning("No sub-account matches credential row '%s'; dropping it", row.location)
                continue
            matched.append((row, sub))

        locations = await asyncio.gather(*(
            cls._resolve_location(client, settings, row, sub) for row, sub in matched
        ))
        directory = cls(locations)
        logger.info("Location directory ready: %s", ", ".join(directory.slugs()) or "(empty)")
        return directory

    @staticmethod
    async def _resolve_location(
        client,
        settings: Settings,
        row: CredentialRow,
        sub: Mapping[str, Any],
    ) -> LocationConfig:
        calendars = tuple(
            CalendarRef(name=name, calendar_id=cal_id) for name, cal_id in row.calendars.items()
        )
        base = dict(
            slug=row.slug,
            display_name=strip_prefix(sub.get("name") or row.location, settings.location_name_prefix)
            or row.location,
            sub_account_id=sub["id"],
            api_key=row.api_key,
            calendars=calendars,
        )
        logger.debug(
            "Resolving '%s' -> sub-account %s (key %s)",
            row.slug, sub["id"], mask_secret(row.api_key),
        )
        try:
            remote_pipelines = await client.list_pipelines(sub["id"], row.api_key)
        except StatsError as e:
            logger.error("Pipeline discovery failed for '%s': %s", row.slug, e.message)
            return LocationConfig(**base, discovery_error=f"Pipeline discovery failed: {e.message}")

        pipelines = build_pipeline_refs(
            remote_pipelines, settings.pipeline_whitelist, row.pipeline_ids,
        )
        if settings.strategy == "stage":
            for ref in pipelines:
                if ref.stage_id("lead") is None:
                    logger.warning(
                        "Pipeline '%s' of '%s' has no 'lead' stage; headcount leads will be 0",
                        ref.name, row.slug,
                    )
        logger.info(
            "Location '%s': pipelines=%s calendars=%s",
            row.slug, [p.name for p in pipelines], [c.name for c in calendars],
        )
        return LocationConfig(**base, pipelines=tuple(pipelines))

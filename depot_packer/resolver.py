"""
Turns a finished download (the staging directory plus whatever the output
streams revealed) into the JobMetadata record written to job.json.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple

from .arguments import platform_label
from .depots import depot_name_for, select_primary_depot
from .errors import StagingError
from .extractor import MetadataAccumulator
from .lookups import SteamLookups, fallback_app_name
from .models import BuildIdSource, DepotInfo, JobMetadata, JobRequest, depot_sort_key

LOGGER = logging.getLogger(__name__)

DEPOTS_DIR_NAME = "depots"
TOOL_STATE_DIR_NAME = ".DepotDownloader"


def capitalize_first(value: str) -> str:
    return value[:1].upper() + value[1:]


def scan_depots(staging_dir: Path) -> List[Tuple[str, str]]:
    """
    (depot id, manifest id) for every `depots/<depot>/<manifest>/` directory the
    tool left behind, in numeric depot order. Depots without a manifest
    directory are skipped.
    """
    depots_dir = staging_dir / DEPOTS_DIR_NAME
    try:
        entries = [p for p in depots_dir.iterdir() if p.is_dir() and p.name != TOOL_STATE_DIR_NAME]
    except OSError as e:
        raise StagingError(f"Failed to read depots directory: {e}") from e
    entries.sort(key=lambda p: (depot_sort_key(p.name), p.name))

    found: List[Tuple[str, str]] = []
    for depot_path in entries:
        try:
            manifests = sorted(p.name for p in depot_path.iterdir() if p.is_dir())
        except OSError as e:
            raise StagingError(f"Failed to read depot {depot_path.name}: {e}") from e
        if manifests:
            found.append((depot_path.name, manifests[0]))
    return found


def resolve_build_timestamp(
    app_id: str,
    build_id: str,
    primary_depot_id: str,
    primary_manifest_id: Optional[str],
    observed: MetadataAccumulator,
    lookups: Optional[SteamLookups],
) -> Optional[datetime]:
    """Patch-notes feed first, then the timestamps seen in the tool's output."""
    if lookups is not None:
        published = lookups.fetch_build_date(app_id, build_id or None)
        if published is not None:
            LOGGER.info("Build date for app %s from patch notes: %s", app_id, published.isoformat())
            return published

    if observed.build_timestamp.value is not None:
        return observed.build_timestamp.value
    if primary_manifest_id and primary_manifest_id in observed.manifest_timestamps:
        return observed.manifest_timestamps[primary_manifest_id]
    return observed.depot_timestamps.get(primary_depot_id)


def derive_job_metadata(
    request: JobRequest,
    job_id: str,
    staging_dir: Path,
    observed: MetadataAccumulator,
    lookups: Optional[SteamLookups] = None,
) -> JobMetadata:
    """
    Builds the metadata record for a successful download. `observed` is a snapshot
    of what the stream extractors collected; names from the preflight run win
    over generated ones.
    """
    game_name = None
    if lookups is not None:
        game_name = lookups.fetch_app_name(request.app_id)
    game_name = game_name or fallback_app_name(request.app_id)

    scanned = scan_depots(staging_dir)
    if not scanned:
        raise StagingError("No depots found in download")

    primary_depot_id = select_primary_depot(depot_id for depot_id, _ in scanned)
    # Build id is the primary depot's manifest, never a shared redist's.
    build_id = dict(scanned)[primary_depot_id]

    depots = []
    for depot_id, manifest_id in scanned:
        name = observed.depot_names.get(depot_id)
        if not name:
            name = depot_name_for(depot_id, depot_id == primary_depot_id, game_name)
        depots.append(DepotInfo(depot_id=depot_id, depot_name=name, manifest_id=manifest_id))
    depots.sort(key=lambda d: depot_sort_key(d.depot_id))

    build_datetime = resolve_build_timestamp(
        request.app_id, build_id, primary_depot_id, build_id, observed, lookups
    )

    return JobMetadata(
        job_id=job_id,
        appid=request.app_id,
        branch=capitalize_first(request.branch),
        platform=platform_label(request.os),
        primary_depot_id=primary_depot_id,
        game_name=game_name,
        build_id=build_id,
        build_id_source=BuildIdSource.PRIMARY_MANIFEST_ID,
        build_datetime_utc=build_datetime,
        depots=depots,
    )

"""
Rebuilds a finished staging directory into a Steam library folder under
`<downloads>/outputs/` and promotes it with a single rename.

The layout DepotDownloader leaves behind::

    depots/<depot id>/<manifest id>/<files...>
    depots/<depot id>/<manifest id>/.DepotDownloader/<manifest id>.manifest

becomes::

    steamapps/common/<depot name>/<files...>
    steamapps/appmanifest_<appid>.acf
    depotcache/<manifest id>.manifest
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from tqdm import tqdm

from .appmanifest import AppManifestGenerator
from .conflicts import ConflictResolver
from .errors import ConflictCancelled, FinalizationError, PackerError
from .models import JobMetadata, OutputConflictChoice, depot_sort_key
from .resolver import DEPOTS_DIR_NAME, TOOL_STATE_DIR_NAME

LOGGER = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".7z"
MANIFEST_SUFFIX = ".manifest"
MAX_COPY_SUFFIX = 9999
TEMP_PREFIX = ".tmp_"
BACKUP_PREFIX = ".old_"


def sanitize_game_name(name: str) -> str:
    """
    Folder-safe game name: spaces become dots; apostrophes, colons, slashes and
    anything non-ASCII are dropped; everything else is kept as is.
    """
    kept = []
    for ch in name:
        if ch == " ":
            kept.append(".")
        elif ch in "':/\\" or not ch.isascii():
            continue
        else:
            kept.append(ch)
    return "".join(kept)


def output_folder_name(metadata: JobMetadata) -> str:
    return (
        f"{sanitize_game_name(metadata.game_name)}.Build.{metadata.build_id}"
        f".{metadata.platform}.{metadata.branch}"
    )


def compute_final_output_path(outputs_dir: Path, metadata: JobMetadata) -> Path:
    return outputs_dir / output_folder_name(metadata)


def resolve_archive_path(output_path: Path) -> Path:
    """The sibling `<folder>.7z` an output folder is compressed into."""
    return output_path.with_name(output_path.name + ARCHIVE_SUFFIX)


def resolve_copy_output_path(base_path: Path, compression_enabled: bool) -> Path:
    """First `<name> (N)` next to `base_path` with no folder (or archive, when compressing) in the way."""
    for suffix in range(1, MAX_COPY_SUFFIX + 1):
        candidate = base_path.with_name(f"{base_path.name} ({suffix})")
        if candidate.exists():
            continue
        if compression_enabled and resolve_archive_path(candidate).exists():
            continue
        return candidate
    raise FinalizationError("Unable to find available output copy name")


def validate_staging_contents(staging_dir: Path) -> None:
    depots_dir = staging_dir / DEPOTS_DIR_NAME
    if not depots_dir.is_dir():
        raise FinalizationError(f"Staging directory missing depots/: {staging_dir}")
    try:
        has_depots = any(p.is_dir() for p in depots_dir.iterdir())
    except OSError as e:
        raise FinalizationError(f"Failed to read depots/: {e}") from e
    if not has_depots:
        raise FinalizationError("No depot directories found in depots/")


def remove_existing_path(path: Path) -> None:
    if not path.exists():
        return
    try:
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()
    except OSError as e:
        raise FinalizationError(f"Failed to remove existing output {path}: {e}") from e


def _plan_copy(source: Path, target: Path) -> List[Tuple[Path, Path, int]]:
    """Every file under `source` (outside .DepotDownloader) with its destination and size."""
    plan: List[Tuple[Path, Path, int]] = []
    for root, dirs, files in os.walk(source):
        dirs[:] = sorted(d for d in dirs if d != TOOL_STATE_DIR_NAME)
        relative_root = Path(root).relative_to(source)
        for name in sorted(files):
            src = Path(root) / name
            plan.append((src, target / relative_root / name, src.stat().st_size))
    return plan


def _depot_dirs(depots_dir: Path) -> List[Path]:
    dirs = [p for p in depots_dir.iterdir() if p.is_dir() and p.name != TOOL_STATE_DIR_NAME]
    dirs.sort(key=lambda p: (depot_sort_key(p.name), p.name))
    return dirs


def _manifest_dir(depot_path: Path) -> Path:
    manifests = sorted(p for p in depot_path.iterdir() if p.is_dir())
    if not manifests:
        raise FinalizationError(f"No manifest directory found in depot {depot_path.name}")
    return manifests[0]


def transform_depots_to_steamapps(staging_dir: Path, temp_dir: Path, metadata: JobMetadata,
                                  show_progress: Optional[bool] = None) -> Dict[str, str]:
    """
    Copies every depot's content into steamapps/common/<depot name>/ and its
    manifest files into depotcache/. Returns depot id -> manifest id as read
    from the manifest file names.
    """
    depots_dir = staging_dir / DEPOTS_DIR_NAME
    common_dir = temp_dir / "steamapps" / "common"
    depotcache_dir = temp_dir / "depotcache"
    common_dir.mkdir(parents=True, exist_ok=True)
    depotcache_dir.mkdir(parents=True, exist_ok=True)

    names = {d.depot_id: d.depot_name for d in metadata.depots}
    manifest_map: Dict[str, str] = {}
    copy_plan: List[Tuple[Path, Path, int]] = []

    for depot_path in _depot_dirs(depots_dir):
        depot_id = depot_path.name
        manifest_dir = _manifest_dir(depot_path)

        tool_dir = manifest_dir / TOOL_STATE_DIR_NAME
        if tool_dir.is_dir():
            for manifest_file in sorted(tool_dir.glob(f"*{MANIFEST_SUFFIX}")):
                if not manifest_file.is_file():
                    continue
                manifest_map[depot_id] = manifest_file.name[: -len(MANIFEST_SUFFIX)]
                shutil.copy2(manifest_file, depotcache_dir / manifest_file.name)

        depot_name = names.get(depot_id) or f"depot_{depot_id}"
        target = common_dir / depot_name
        target.mkdir(parents=True, exist_ok=True)
        copy_plan.extend(_plan_copy(manifest_dir, target))

    total_bytes = sum(size for _, _, size in copy_plan)
    # None lets tqdm hide the bar when stderr is not a terminal.
    disable = None if show_progress is None else not show_progress
    with tqdm(total=total_bytes, unit='B', unit_scale=True, desc="Building output",
              disable=disable) as pbar:
        for src, dst, size in copy_plan:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)
            pbar.update(size)

    return manifest_map


def build_temp_output(outputs_dir: Path, job_id: str, staging_dir: Path, metadata: JobMetadata,
                      show_progress: Optional[bool] = None) -> Path:
    """Builds the complete library folder in `<outputs>/.tmp_<job_id>` and returns its path."""
    temp_dir = outputs_dir / f"{TEMP_PREFIX}{job_id}"
    if temp_dir.exists():
        try:
            shutil.rmtree(temp_dir)
        except OSError as e:
            raise FinalizationError(f"Failed to cleanup existing temp directory: {e}") from e

    try:
        temp_dir.mkdir(parents=True)
        manifest_map = transform_depots_to_steamapps(staging_dir, temp_dir, metadata, show_progress)
        steamapps_dir = temp_dir / "steamapps"
        generator = AppManifestGenerator(
            metadata,
            common_dir=steamapps_dir / "common",
            install_dir_name=sanitize_game_name(metadata.game_name),
            manifest_map=manifest_map,
        )
        generator.write_acf_file(steamapps_dir)
    except (OSError, PackerError) as e:
        shutil.rmtree(temp_dir, ignore_errors=True)
        if isinstance(e, PackerError):
            raise
        raise FinalizationError(f"Failed to build output: {e}") from e
    return temp_dir


def atomic_finalize(temp_path: Path, final_path: Path) -> None:
    """Promotes the temp folder with one rename. On failure the temp folder is removed."""
    try:
        final_path.parent.mkdir(parents=True, exist_ok=True)
        os.rename(temp_path, final_path)
    except OSError as e:
        shutil.rmtree(temp_path, ignore_errors=True)
        raise FinalizationError(
            f"Failed to rename temp to final output ({temp_path} -> {final_path}): {e}"
        ) from e


def finalize_job(
    staging_dir: Path,
    outputs_dir: Path,
    job_id: str,
    compression_enabled: bool,
    resolver: ConflictResolver,
    notify_conflict: Callable[[str, Path], None],
    show_progress: Optional[bool] = None,
) -> Path:
    """
    Turns the staging directory of a successful job into its final output folder
    and returns that folder. Asks `resolver` when the output (or its archive)
    already exists.
    """
    try:
        metadata = JobMetadata.read_from_dir(staging_dir)
    except (OSError, ValueError, KeyError) as e:
        raise FinalizationError(f"Failed to load job.json: {e}") from e
    validate_staging_contents(staging_dir)

    final_path = compute_final_output_path(outputs_dir, metadata)
    archive_path = resolve_archive_path(final_path) if compression_enabled else None
    overwrite = False

    output_exists = final_path.exists()
    archive_exists = archive_path is not None and archive_path.exists()
    if output_exists or archive_exists:
        conflict_path = final_path if output_exists else archive_path
        choice = resolver.request(job_id, conflict_path, notify_conflict)
        LOGGER.info("Output conflict for %s resolved as %s", job_id, choice.value)
        if choice is OutputConflictChoice.OVERWRITE:
            overwrite = True
        elif choice is OutputConflictChoice.COPY:
            final_path = resolve_copy_output_path(final_path, compression_enabled)
            archive_path = resolve_archive_path(final_path) if compression_enabled else None
        else:
            raise ConflictCancelled(f"Output already exists: {conflict_path}. Job cancelled by user.")

    temp_path = build_temp_output(outputs_dir, job_id, staging_dir, metadata, show_progress)

    backup_path = None
    if overwrite and final_path.exists():
        backup_path = outputs_dir / f"{BACKUP_PREFIX}{job_id}"
        try:
            remove_existing_path(backup_path)
            os.rename(final_path, backup_path)
        except (OSError, FinalizationError) as e:
            shutil.rmtree(temp_path, ignore_errors=True)
            raise FinalizationError(f"Failed to move existing output aside: {e}") from e

    try:
        atomic_finalize(temp_path, final_path)
    except FinalizationError as e:
        if backup_path is not None:
            try:
                os.rename(backup_path, final_path)
            except OSError as restore_error:
                raise FinalizationError(
                    f"{e}; previous output left at {backup_path}: {restore_error}"
                ) from e
        raise

    if backup_path is not None:
        try:
            remove_existing_path(backup_path)
        except FinalizationError as e:
            LOGGER.warning("%s", e)
    if overwrite and archive_path is not None:
        remove_existing_path(archive_path)
    return final_path

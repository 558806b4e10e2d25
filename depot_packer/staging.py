"""Job ids and the per-job staging directories DepotDownloader writes into."""

import logging
import secrets
import shutil
import string
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .errors import StagingError

LOGGER = logging.getLogger(__name__)

PREFLIGHT_DIR_NAME = ".preflight"
JOB_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase
JOB_SUFFIX_LENGTH = 6


def generate_job_id(now: Optional[datetime] = None) -> str:
    """`YYYY-MM-DDTHH-MM-SSZ_<6 base36 chars>`; sorts by start time."""
    now = now or datetime.now(timezone.utc)
    stamp = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%SZ")
    suffix = "".join(secrets.choice(JOB_SUFFIX_ALPHABET) for _ in range(JOB_SUFFIX_LENGTH))
    return f"{stamp}_{suffix}"


def staging_dir_for(staging_root: Path, job_id: str) -> Path:
    return staging_root / job_id


def preflight_dir_for(staging_dir: Path) -> Path:
    return staging_dir / PREFLIGHT_DIR_NAME


def create_staging_dir(staging_root: Path, job_id: str) -> Path:
    """Creates the staging directory for a new job. An existing directory is an error."""
    path = staging_dir_for(staging_root, job_id)
    try:
        staging_root.mkdir(parents=True, exist_ok=True)
        path.mkdir()
    except FileExistsError:
        raise StagingError(f"Staging directory already exists: {path}") from None
    except OSError as e:
        raise StagingError(f"Failed to create staging directory {path}: {e}") from e
    return path


def cleanup_staging_dir(path: Path) -> bool:
    """Removes a staging directory if present. Failures are logged, not raised."""
    if not path.exists():
        return False
    try:
        shutil.rmtree(path)
        return True
    except OSError as e:
        LOGGER.warning("Failed to remove staging directory %s: %s", path, e)
        return False


def cleanup_orphaned_staging(staging_root: Path) -> List[Path]:
    """
    Removes every staging directory left behind by a previous process. Jobs are
    never resumed, so anything here at startup is garbage.
    """
    if not staging_root.is_dir():
        return []
    removed: List[Path] = []
    for entry in sorted(staging_root.iterdir()):
        if entry.is_dir() and cleanup_staging_dir(entry):
            removed.append(entry)
    if removed:
        LOGGER.info("Removed %d orphaned staging director%s", len(removed), "y" if len(removed) == 1 else "ies")
    return removed

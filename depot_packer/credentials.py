"""
Credential persistence.

Two separate things live here: the per-user cache of DepotDownloader's own
session files (so "remember password" survives the per-job staging directory
being thrown away), and the operator's remembered login, kept in the OS keyring.
"""

import logging
import re
import shutil
from pathlib import Path
from typing import List, Optional, Tuple

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from .config import KEYRING_SERVICE_NAME, KEYRING_USERNAME_KEY
from .errors import PackerError

LOGGER = logging.getLogger(__name__)

AUTH_ROOT_FILES = ("sentry.bin", "config.json", "loginusers.vdf")
AUTH_CONFIG_FILES = ("loginusers.vdf", "config.vdf", "config.json", "sentry.bin")
AUTH_CONFIG_DIR = "config"
SENTRY_PREFIX = "ssfn"


def sanitize_auth_username(username: str) -> str:
    """Folder-safe form of a Steam username; never empty."""
    sanitized = re.sub(r"[^A-Za-z0-9._-]", "_", username).strip("_")
    return sanitized or "user"


def auth_cache_dir(auth_root: Path, username: str) -> Path:
    return auth_root / sanitize_auth_username(username)


def _is_root_auth_file(name: str) -> bool:
    lower = name.lower()
    return lower.startswith(SENTRY_PREFIX) or lower in AUTH_ROOT_FILES


def _is_config_auth_file(name: str) -> bool:
    return name.lower() in AUTH_CONFIG_FILES


def collect_auth_files(root: Path) -> List[Tuple[Path, Path]]:
    """(absolute source, path relative to `root`) for every allow-listed session file."""
    files: List[Tuple[Path, Path]] = []
    try:
        for path in sorted(root.iterdir()):
            if path.is_file() and _is_root_auth_file(path.name):
                files.append((path, Path(path.name)))

        config_dir = root / AUTH_CONFIG_DIR
        if config_dir.is_dir():
            for path in sorted(config_dir.iterdir()):
                if path.is_file() and _is_config_auth_file(path.name):
                    files.append((path, Path(AUTH_CONFIG_DIR) / path.name))
    except OSError as e:
        raise PackerError(f"Failed to read auth directory {root}: {e}") from e
    return files


def _copy_auth_files(source_root: Path, target_root: Path) -> List[str]:
    copied: List[str] = []
    for source, relative in collect_auth_files(source_root):
        destination = target_root / relative
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, destination)
        except OSError as e:
            raise PackerError(f"Failed to copy auth file {relative.as_posix()}: {e}") from e
        copied.append(relative.as_posix())
    return copied


def restore_auth_cache(auth_root: Path, username: Optional[str], target_dir: Path) -> List[str]:
    """
    Copies cached session files for `username` into `target_dir` before a run.
    Returns the relative paths restored; nothing happens without a username or cache.
    """
    if not username or not username.strip():
        return []
    cache_dir = auth_cache_dir(auth_root, username)
    if not cache_dir.exists():
        return []
    restored = _copy_auth_files(cache_dir, target_dir)
    if restored:
        LOGGER.debug("Restored auth files for %s: %s", cache_dir.name, restored)
    return restored


def persist_auth_cache(auth_root: Path, username: Optional[str], source_dir: Path) -> List[str]:
    """Copies session files the tool left in `source_dir` into the per-user cache."""
    if not username or not username.strip():
        return []
    if not source_dir.is_dir():
        return []
    cache_dir = auth_cache_dir(auth_root, username)
    try:
        cache_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PackerError(f"Failed to create auth cache directory: {e}") from e
    persisted = _copy_auth_files(source_dir, cache_dir)
    if persisted:
        LOGGER.debug("Persisted auth files for %s: %s", cache_dir.name, persisted)
    return persisted


def username_from_output(line: str) -> Optional[str]:
    """Picks the username out of an echoed command line that carries -remember-password."""
    if "-remember-password" not in line or "-username" not in line:
        return None
    parts = line.split()
    for index, part in enumerate(parts):
        if part == "-username":
            return parts[index + 1] if index + 1 < len(parts) else None
    return None


# Remembered login ------------------------------------------------------------

def save_login(username: str, password: str) -> None:
    """Stores the login in the OS keyring under the app's service name."""
    try:
        keyring.set_password(KEYRING_SERVICE_NAME, KEYRING_USERNAME_KEY, username)
        keyring.set_password(KEYRING_SERVICE_NAME, username, password)
    except KeyringError as e:
        raise PackerError(f"Failed to save login data: {e}") from e


def load_login() -> Optional[Tuple[str, str]]:
    """The remembered (username, password), or None if nothing usable is stored."""
    try:
        username = keyring.get_password(KEYRING_SERVICE_NAME, KEYRING_USERNAME_KEY)
        if not username:
            return None
        password = keyring.get_password(KEYRING_SERVICE_NAME, username)
    except KeyringError as e:
        LOGGER.warning("Could not read login data from keyring: %s", e)
        return None
    if password is None:
        return None
    return username, password


def clear_login() -> None:
    try:
        username = keyring.get_password(KEYRING_SERVICE_NAME, KEYRING_USERNAME_KEY)
        if username:
            try:
                keyring.delete_password(KEYRING_SERVICE_NAME, username)
            except PasswordDeleteError:
                pass
        keyring.delete_password(KEYRING_SERVICE_NAME, KEYRING_USERNAME_KEY)
    except PasswordDeleteError:
        # Nothing stored.
        return
    except KeyringError as e:
        raise PackerError(f"Failed to clear login data: {e}") from e

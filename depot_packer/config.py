import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# Constants for Keyring service to avoid magic strings
KEYRING_SERVICE_NAME = "DepotPackerApp"
KEYRING_USERNAME_KEY = "steam_username"

ENV_PREFIX = "DEPOT_PACKER_"
WRITE_TEST_FILE = ".depot_packer_write_test"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _default_tool_name(base: str) -> str:
    return f"{base}.exe" if os.name == "nt" else base


def _user_data_dir() -> Path:
    """Per-user application data directory, used when the portable location is read-only."""
    if os.name == "nt":
        root = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(root) / "DepotPacker"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "DepotPacker"
    root = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(root) / "depot-packer"


def ensure_writable_dir(path: Path) -> bool:
    """Creates `path` if needed and checks a file can be written inside it."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        marker = path / WRITE_TEST_FILE
        marker.write_bytes(b"")
        marker.unlink()
        return True
    except OSError:
        return False


def resolve_downloads_dir() -> Path:
    """
    Picks the downloads root the same way a portable build would: next to the
    executable when that location is writable, otherwise under the user data dir.
    """
    if getattr(sys, 'frozen', False):
        portable = Path(sys.executable).parent / "downloads"
        if ensure_writable_dir(portable):
            return portable

    fallback = _user_data_dir() / "downloads"
    if not ensure_writable_dir(fallback):
        raise OSError(f"Downloads directory is not writable: {fallback}")
    return fallback


@dataclass
class Settings:
    """Runtime configuration for a packer process."""
    downloads_dir: Path
    depotdownloader_path: str = _default_tool_name("DepotDownloader")
    sevenzip_path: str = _default_tool_name("7zz")
    shared_depots_file: Optional[Path] = None
    poll_interval: float = 0.1
    request_timeout: float = 15.0
    user_agent: str = "DepotPacker/1.0"
    debug: bool = False

    @property
    def staging_root(self) -> Path:
        return self.downloads_dir / "staging"

    @property
    def outputs_dir(self) -> Path:
        return self.downloads_dir / "outputs"

    @property
    def auth_root(self) -> Path:
        return self.downloads_dir / ".auth"

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "Settings":
        """Builds settings from DEPOT_PACKER_* environment variables."""
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value else None

        downloads = get("DOWNLOADS_DIR")
        settings = cls(downloads_dir=Path(downloads) if downloads else resolve_downloads_dir())
        if get("DEPOTDOWNLOADER"):
            settings.depotdownloader_path = get("DEPOTDOWNLOADER")
        if get("SEVENZIP"):
            settings.sevenzip_path = get("SEVENZIP")
        if get("SHARED_DEPOTS_FILE"):
            settings.shared_depots_file = Path(get("SHARED_DEPOTS_FILE"))
        if get("POLL_INTERVAL"):
            settings.poll_interval = float(get("POLL_INTERVAL"))
        if get("REQUEST_TIMEOUT"):
            settings.request_timeout = float(get("REQUEST_TIMEOUT"))
        settings.debug = (get("DEBUG") or "").lower() in ("1", "true", "yes")
        return settings


def configure_logging(debug: bool = False) -> None:
    """Installs a single stream handler on the root logger."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.WARNING)

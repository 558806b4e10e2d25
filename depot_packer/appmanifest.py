import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

from .depots import is_shared_depot, shared_depot_owner
from .models import DepotInfo, JobMetadata

LOGGER = logging.getLogger(__name__)

# Written for every manifest; never a real SteamID.
ANONYMOUS_OWNER = "0"
STATE_FULLY_INSTALLED = 4


class VdfBuilder:
    """Writes Valve KeyValues text: tab-indented, quoted keys and values, braces for sections."""

    def __init__(self) -> None:
        self.content_parts: List[str] = []
        self.indent_level = 0

    def _indent(self) -> str:
        return "\t" * self.indent_level

    def key_value(self, key: str, value) -> None:
        self.content_parts.append(f'{self._indent()}"{key}"\t\t"{value}"\n')

    def open_section(self, name: str) -> None:
        self.content_parts.append(f'{self._indent()}"{name}"\n')
        self.content_parts.append(f'{self._indent()}{{\n')
        self.indent_level += 1

    def close_section(self) -> None:
        self.indent_level = max(0, self.indent_level - 1)
        self.content_parts.append(f'{self._indent()}}}\n')

    def build(self) -> str:
        return "".join(self.content_parts)


def calculate_size_on_disk(path: Path) -> int:
    """Recursive byte count of every regular file under `path`; 0 when missing."""
    if not path.exists():
        return 0
    if path.is_file():
        return path.stat().st_size
    total = 0
    for entry in path.rglob("*"):
        try:
            if entry.is_file():
                total += entry.stat().st_size
        except OSError:
            continue
    return total


class AppManifestGenerator:
    """
    Generates the appmanifest_<appid>.acf for a finalized job so Steam treats the
    rebuilt library folder as an installed app.
    """

    def __init__(self, metadata: JobMetadata, common_dir: Path, install_dir_name: str,
                 manifest_map: Optional[Dict[str, str]] = None):
        self.metadata = metadata
        self.common_dir = common_dir
        self.install_dir_name = install_dir_name
        self.manifest_map: Dict[str, str] = dict(manifest_map or {})

    def _manifest_for(self, depot: DepotInfo) -> str:
        """Manifest file on disk first, then the manifest the run reported, then the scanned one."""
        return self.manifest_map.get(depot.depot_id) or depot.manifest_id_used or depot.manifest_id

    def _last_updated(self) -> int:
        if self.metadata.build_datetime_utc is not None:
            return int(self.metadata.build_datetime_utc.timestamp())
        return int(time.time())

    def generate_acf_content(self) -> str:
        LOGGER.debug("Generating ACF content for app %s", self.metadata.appid)
        meta = self.metadata
        size_on_disk = calculate_size_on_disk(self.common_dir)
        shared = [d for d in meta.depots if is_shared_depot(d.depot_id)]
        regular = [d for d in meta.depots if not is_shared_depot(d.depot_id)]

        vdf = VdfBuilder()
        vdf.open_section("AppState")
        main_kv = {
            "appid": meta.appid, "universe": 1, "name": meta.game_name,
            "StateFlags": STATE_FULLY_INSTALLED, "installdir": self.install_dir_name,
            "LastUpdated": self._last_updated(), "UpdateResult": 0,
            "SizeOnDisk": size_on_disk, "buildid": meta.build_id, "LastOwner": ANONYMOUS_OWNER,
            "BytesToDownload": 0, "BytesDownloaded": 0, "AutoUpdateBehavior": 0,
            "AllowOtherDownloadsWhileRunning": 0, "ScheduledAutoUpdate": 0,
        }
        for key, value in main_kv.items():
            vdf.key_value(key, value)

        vdf.open_section("UserConfig")
        vdf.key_value("language", "english")
        vdf.close_section()

        vdf.open_section("InstalledDepots")
        for depot in regular:
            vdf.open_section(depot.depot_id)
            vdf.key_value("manifest", self._manifest_for(depot))
            vdf.key_value("size", calculate_size_on_disk(self.common_dir / depot.depot_name))
            vdf.close_section()
        vdf.close_section()

        if shared:
            vdf.open_section("SharedDepots")
            for depot in shared:
                vdf.key_value(depot.depot_id, shared_depot_owner(depot.depot_id))
            vdf.close_section()

        vdf.open_section("MountedDepots")
        for depot in meta.depots:
            vdf.key_value(depot.depot_id, self._manifest_for(depot))
        vdf.close_section()

        vdf.close_section()
        return vdf.build()

    def write_acf_file(self, steamapps_dir: Path) -> Path:
        """Writes the generated content to steamapps/appmanifest_<appid>.acf."""
        steamapps_dir.mkdir(parents=True, exist_ok=True)
        file_path = steamapps_dir / f"appmanifest_{self.metadata.appid}.acf"
        file_path.write_text(self.generate_acf_content(), encoding="utf-8")
        LOGGER.info("Wrote %s", file_path)
        return file_path

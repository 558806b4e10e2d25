"""
Known shared/redistributable depots and the naming and primary-depot policies
that depend on them.

The table ships with the Steamworks redistributables and Steam Linux Runtime
depots. It can be replaced at startup from a JSON file of the form
``{"228989": {"name": "Steamworks Shared", "owner": "228980"}, ...}``.
"""

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

LOGGER = logging.getLogger(__name__)

STEAMWORKS_COMMON_APPID = "228980"


@dataclass(frozen=True)
class SharedDepot:
    name: str
    owner_appid: str


DEFAULT_SHARED_DEPOTS: Dict[str, SharedDepot] = {
    # Steamworks Common Redistributables
    "228980": SharedDepot("Steamworks Shared", STEAMWORKS_COMMON_APPID),
    "228989": SharedDepot("Steamworks Shared", STEAMWORKS_COMMON_APPID),
    "228990": SharedDepot("Steamworks Shared", STEAMWORKS_COMMON_APPID),
    # DirectX
    "228983": SharedDepot("DirectX", STEAMWORKS_COMMON_APPID),
    "228984": SharedDepot("DirectX", STEAMWORKS_COMMON_APPID),
    "228986": SharedDepot("DirectX", STEAMWORKS_COMMON_APPID),
    # Visual C++
    "228985": SharedDepot("VC Redist", STEAMWORKS_COMMON_APPID),
    "228987": SharedDepot("OpenAL", STEAMWORKS_COMMON_APPID),
    # Steam Linux Runtime
    "1391110": SharedDepot("SteamLinuxRuntime", "1391110"),
    "1628210": SharedDepot("SteamLinuxRuntime_soldier", "1628210"),
    "1826330": SharedDepot("SteamLinuxRuntime_sniper", "1826330"),
}

_table_lock = threading.Lock()
_shared_depots: Dict[str, SharedDepot] = dict(DEFAULT_SHARED_DEPOTS)


def load_shared_depots(path: Path) -> Dict[str, SharedDepot]:
    """Reads a replacement shared-depot table from a JSON file."""
    raw = json.loads(path.read_text(encoding="utf-8"))
    table: Dict[str, SharedDepot] = {}
    for depot_id, entry in raw.items():
        if isinstance(entry, str):
            # A bare name; the depot is its own owner.
            table[str(depot_id)] = SharedDepot(entry, str(depot_id))
            continue
        table[str(depot_id)] = SharedDepot(
            name=str(entry.get("name", f"depot_{depot_id}")),
            owner_appid=str(entry.get("owner", depot_id)),
        )
    return table


def set_shared_depots(table: Optional[Dict[str, SharedDepot]]) -> None:
    """Installs `table` as the active shared-depot table; None restores the built-in one."""
    global _shared_depots
    with _table_lock:
        _shared_depots = dict(DEFAULT_SHARED_DEPOTS if table is None else table)
    LOGGER.debug("Shared depot table now has %d entries", len(_shared_depots))


def shared_depots() -> Dict[str, SharedDepot]:
    with _table_lock:
        return dict(_shared_depots)


def is_shared_depot(depot_id: str) -> bool:
    with _table_lock:
        return depot_id in _shared_depots


def shared_depot_owner(depot_id: str) -> str:
    """The app that owns a shared depot; unknown depots own themselves."""
    with _table_lock:
        entry = _shared_depots.get(depot_id)
    return entry.owner_appid if entry else depot_id


def depot_name_for(depot_id: str, is_primary: bool, game_name: str) -> str:
    """
    Human-readable depot name when the tool did not report one:
    the game name for the primary depot, the known name for a shared depot,
    otherwise depot_<id>.
    """
    if is_primary:
        return game_name
    with _table_lock:
        entry = _shared_depots.get(depot_id)
    if entry:
        return entry.name
    return f"depot_{depot_id}"


def select_primary_depot(depot_ids: Iterable[str]) -> Optional[str]:
    """
    Best-effort primary depot choice when the tool never said which depot owns the
    install directory: the first depot that is not a shared redistributable, or
    the first depot when every one of them is shared. Order is the caller's.
    """
    ids: List[str] = list(depot_ids)
    if not ids:
        return None
    for depot_id in ids:
        if not is_shared_depot(depot_id):
            return depot_id
    return ids[0]

"""
Recognizes depot, manifest, name and build-date facts in DepotDownloader output.

A MetadataExtractor owns the "last depot mentioned" cursor for one stream of
lines and writes what it finds into a MetadataAccumulator. Several extractors
may share one accumulator (one per reader thread) as long as they share the lock
that guards it.
"""

import contextlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Callable, ContextManager, Dict, List, Optional, Pattern, Tuple

from .depots import select_primary_depot
from .models import depot_sort_key

LOGGER = logging.getLogger(__name__)

DEPOT_NAME_RE = re.compile(r'[Dd]epot\s+(\d+)\s+"([^"]+)"')
DEPOT_MANIFEST_RE = re.compile(r"[Dd]epot\s+(\d+)\s*[-–]\s*[Mm]anifest\s+(\d+)")
APPINFO_NAME_RE = re.compile(r'"name"\s+"([^"]+)"')
DEPOT_RE = re.compile(r"[Dd]epot\s+(\d+)")
MANIFEST_RE = re.compile(r"[Mm]anifest\s+(\d+)")
BUILDID_RE = re.compile(r"[Bb]uild[Ii][Dd]\s*[=:]\s*(\d+)")
TIMEUPDATED_RE = re.compile(r"(?i)timeupdated[^0-9]*(\d{9,})")
MANIFEST_DATETIME_RE = re.compile(r"(?i)Manifest\s+(\d+)\s+\((.+?)\)")
LASTUPDATED_RE = re.compile(r"(?i)last\s*updated[^0-9]*(\d{9,})")
BUILDDATE_RE = re.compile(r"(?i)build(?:_|\s)*date[^0-9]*(\d{9,})")
INSTALLDIR_RE = re.compile(r'installdir\s*[=:]\s*"?([^"\n]+)"?')

DOTNET_DATETIME_RE = re.compile(
    r"(\d{1,2})/(\d{1,2})/(\d{4})\s+(\d{1,2}):(\d{2}):(\d{2})(?:\s*([AaPp][Mm]))?"
)
ISO_DATETIME_RE = re.compile(r"(?i)(\d{4}-\d{2}-\d{2})[ T](\d{2}:\d{2}:\d{2})(?:\s*UTC|Z)?")


class TimestampPriority(IntEnum):
    """How much a build timestamp source is trusted. Higher wins."""

    PRIMARY_MANIFEST = 1
    SECONDARY_EPOCH = 2
    TIME_UPDATED = 3


def parse_epoch(value: str) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value.strip()), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None


def _parse_dotnet_datetime(text: str) -> Optional[datetime]:
    match = DOTNET_DATETIME_RE.search(text)
    if not match:
        return None
    month, day, year, hour, minute, second = (int(g) for g in match.groups()[:6])
    meridiem = match.group(7)
    if meridiem:
        if meridiem.upper() == "PM" and hour < 12:
            hour += 12
        elif meridiem.upper() == "AM" and hour == 12:
            hour = 0
    try:
        return datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_iso_datetime(text: str) -> Optional[datetime]:
    match = ISO_DATETIME_RE.search(text)
    if not match:
        return None
    try:
        parsed = datetime.strptime(f"{match.group(1)} {match.group(2)}", "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


def parse_manifest_datetime(text: str) -> Optional[datetime]:
    """Parses the date in `Manifest <id> (<date>)`: M/D/YYYY h:mm:ss [AM|PM] first, then ISO."""
    return _parse_dotnet_datetime(text) or _parse_iso_datetime(text)


@dataclass
class BuildTimestampSlot:
    """A build timestamp that only a strictly more trusted source may replace."""
    value: Optional[datetime] = None
    priority: int = 0

    def offer(self, value: datetime, priority: int) -> bool:
        if self.value is not None and priority <= self.priority:
            return False
        self.value = value
        self.priority = int(priority)
        return True

    @property
    def is_set(self) -> bool:
        return self.value is not None


@dataclass
class MetadataAccumulator:
    """Facts collected from one or more output streams."""
    depot_manifests: Dict[str, str] = field(default_factory=dict)
    manifest_depots: Dict[str, str] = field(default_factory=dict)
    depot_names: Dict[str, str] = field(default_factory=dict)
    manifest_timestamps: Dict[str, datetime] = field(default_factory=dict)
    depot_timestamps: Dict[str, datetime] = field(default_factory=dict)
    build_timestamp: BuildTimestampSlot = field(default_factory=BuildTimestampSlot)
    build_id: Optional[str] = None
    primary_candidate: Optional[str] = None
    epoch_seen: bool = False

    def record_depot_manifest(self, depot_id: str, manifest_id: str) -> None:
        self.depot_manifests[depot_id] = manifest_id
        self.manifest_depots[manifest_id] = depot_id
        # The manifest's date may have been seen first on the other stream.
        timestamp = self.manifest_timestamps.get(manifest_id)
        if timestamp is not None:
            self.depot_timestamps[depot_id] = timestamp

    def record_manifest_timestamp(self, manifest_id: str, timestamp: datetime) -> None:
        self.manifest_timestamps[manifest_id] = timestamp
        depot_id = self.manifest_depots.get(manifest_id)
        if depot_id is not None:
            self.depot_timestamps[depot_id] = timestamp

    def primary_timestamp(self, depot_id: str) -> Optional[datetime]:
        manifest_id = self.depot_manifests.get(depot_id)
        if manifest_id is not None and manifest_id in self.manifest_timestamps:
            return self.manifest_timestamps[manifest_id]
        return self.depot_timestamps.get(depot_id)


@dataclass
class DiscoveredDepot:
    depot_id: str
    manifest_id: str
    depot_name: Optional[str] = None


@dataclass
class ExtractionResult:
    """End-of-phase summary of everything an extractor found."""
    depots: List[DiscoveredDepot]
    primary_depot_id: Optional[str]
    build_id: Optional[str]
    build_datetime_utc: Optional[datetime]
    depot_names: Dict[str, str]
    build_timestamp_priority: int = 0


class MetadataExtractor:
    """Applies the recognition rules, in order, to each line it is fed."""

    def __init__(
        self,
        accumulator: Optional[MetadataAccumulator] = None,
        lock: Optional[ContextManager] = None,
        label: str = "extractor",
    ):
        self.accumulator = accumulator if accumulator is not None else MetadataAccumulator()
        self._lock = lock
        self.label = label
        self.cursor: Optional[str] = None
        # depot -> manifest pairs seen only as separate mentions; used when no explicit pair shows up.
        self._loose_manifests: Dict[str, str] = {}
        # Debug messages gathered under the lock, logged once it is released.
        self._notes: List[Tuple[Any, ...]] = []
        self._rules: List[Tuple[Pattern, Callable[[MetadataAccumulator, "re.Match"], None]]] = [
            (DEPOT_NAME_RE, self._on_depot_name),
            (DEPOT_MANIFEST_RE, self._on_depot_manifest),
            (APPINFO_NAME_RE, self._on_appinfo_name),
            (DEPOT_RE, self._on_depot_mention),
            (MANIFEST_RE, self._on_manifest_mention),
            (BUILDID_RE, self._on_build_id),
            (TIMEUPDATED_RE, self._on_time_updated),
            (MANIFEST_DATETIME_RE, self._on_manifest_datetime),
            (LASTUPDATED_RE, self._on_secondary_epoch),
            (BUILDDATE_RE, self._on_secondary_epoch),
            (INSTALLDIR_RE, self._on_installdir),
        ]

    def _guard(self) -> ContextManager:
        return self._lock if self._lock is not None else contextlib.nullcontext()

    def feed(self, line: str) -> None:
        with self._guard():
            acc = self.accumulator
            for pattern, effect in self._rules:
                match = pattern.search(line)
                if match:
                    effect(acc, match)
            notes, self._notes = self._notes, []
        for args in notes:
            LOGGER.debug(*args)

    def _note(self, *args: Any) -> None:
        self._notes.append(args)

    def feed_all(self, lines: List[str]) -> "MetadataExtractor":
        for line in lines:
            self.feed(line)
        return self

    # Rules -------------------------------------------------------------

    def _on_depot_name(self, acc: MetadataAccumulator, match: "re.Match") -> None:
        depot_id, name = match.group(1), match.group(2)
        self._note("[%s] depot name %s -> %s", self.label, depot_id, name)
        acc.depot_names[depot_id] = name
        self.cursor = depot_id

    def _on_depot_manifest(self, acc: MetadataAccumulator, match: "re.Match") -> None:
        depot_id, manifest_id = match.group(1), match.group(2)
        acc.record_depot_manifest(depot_id, manifest_id)
        self.cursor = depot_id

    def _on_appinfo_name(self, acc: MetadataAccumulator, match: "re.Match") -> None:
        if self.cursor is None:
            return
        self._note("[%s] appinfo name %s -> %s", self.label, self.cursor, match.group(1))
        acc.depot_names[self.cursor] = match.group(1)

    def _on_depot_mention(self, acc: MetadataAccumulator, match: "re.Match") -> None:
        self.cursor = match.group(1)

    def _on_manifest_mention(self, acc: MetadataAccumulator, match: "re.Match") -> None:
        if self.cursor is not None:
            self._loose_manifests[self.cursor] = match.group(1)

    def _on_build_id(self, acc: MetadataAccumulator, match: "re.Match") -> None:
        if acc.build_id is None:
            acc.build_id = match.group(1)

    def _on_time_updated(self, acc: MetadataAccumulator, match: "re.Match") -> None:
        timestamp = parse_epoch(match.group(1))
        if timestamp is not None:
            acc.epoch_seen = True
            acc.build_timestamp.offer(timestamp, TimestampPriority.TIME_UPDATED)

    def _on_manifest_datetime(self, acc: MetadataAccumulator, match: "re.Match") -> None:
        timestamp = parse_manifest_datetime(match.group(2))
        if timestamp is None:
            self._note("[%s] unparseable manifest date: %s", self.label, match.group(2))
            return
        acc.record_manifest_timestamp(match.group(1), timestamp)

    def _on_secondary_epoch(self, acc: MetadataAccumulator, match: "re.Match") -> None:
        # Only the first epoch of any kind counts; a manifest date in the slot does not block it.
        if acc.epoch_seen:
            return
        timestamp = parse_epoch(match.group(1))
        if timestamp is not None:
            acc.epoch_seen = True
            acc.build_timestamp.offer(timestamp, TimestampPriority.SECONDARY_EPOCH)

    def _on_installdir(self, acc: MetadataAccumulator, match: "re.Match") -> None:
        if acc.primary_candidate is None and self.cursor is not None:
            acc.primary_candidate = self.cursor

    # End of phase ------------------------------------------------------

    def finish(self) -> ExtractionResult:
        """Applies the end-of-phase fallbacks and returns a sorted summary."""
        with self._guard():
            acc = self.accumulator
            pairs = dict(acc.depot_manifests) or dict(self._loose_manifests)
            depots = [
                DiscoveredDepot(depot_id, manifest_id, acc.depot_names.get(depot_id))
                for depot_id, manifest_id in pairs.items()
            ]
            depots.sort(key=lambda d: depot_sort_key(d.depot_id))

            primary = acc.primary_candidate
            if primary is None:
                primary = select_primary_depot(d.depot_id for d in depots)

            if not acc.build_timestamp.is_set and primary is not None:
                fallback = acc.primary_timestamp(primary)
                if fallback is not None:
                    acc.build_timestamp.offer(fallback, TimestampPriority.PRIMARY_MANIFEST)

            return ExtractionResult(
                depots=depots,
                primary_depot_id=primary,
                build_id=acc.build_id,
                build_datetime_utc=acc.build_timestamp.value,
                depot_names=dict(acc.depot_names),
                build_timestamp_priority=acc.build_timestamp.priority,
            )


def parse_output(lines: List[str]) -> ExtractionResult:
    """One-shot extraction over a complete, ordered list of lines."""
    return MetadataExtractor(label="preflight").feed_all(lines).finish()

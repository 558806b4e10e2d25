import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

METADATA_VERSION = "1.0.0"
JOB_FILE_NAME = "job.json"


class JobStatus(str, Enum):
    """Status vocabulary published on the status feed."""

    STARTING = "starting"
    RUNNING = "running"
    FINALIZING = "finalizing"
    COMPRESSING = "compressing"
    COMPLETED = "completed"
    EXITED = "exited"
    ERROR = "error"
    FINALIZATION_FAILED = "finalization_failed"


class AuthMode(str, Enum):
    QR = "qr"
    PASSWORD = "password"
    ANONYMOUS = "anonymous"


class BuildIdSource(str, Enum):
    """Where the build id in a JobMetadata record came from."""

    APP_BUILDID = "app_buildid"
    PRIMARY_MANIFEST_ID = "primary_manifest_id"


class OutputConflictChoice(str, Enum):
    OVERWRITE = "overwrite"
    COPY = "copy"
    CANCEL = "cancel"


@dataclass(frozen=True)
class JobRequest:
    """Everything the operator asked for when submitting a download job."""
    app_id: str
    os: str = "Windows x64"
    branch: str = "public"
    username: str = ""
    password: str = ""
    qr_enabled: bool = False
    skip_compression: bool = False
    compression_password_enabled: bool = False
    compression_password: str = ""

    @property
    def auth_mode(self) -> AuthMode:
        if self.qr_enabled:
            return AuthMode.QR
        if self.username.strip():
            return AuthMode.PASSWORD
        return AuthMode.ANONYMOUS

    @property
    def effective_compression_password(self) -> Optional[str]:
        if not self.compression_password_enabled:
            return None
        password = self.compression_password
        return password if password.strip() else None


@dataclass
class DepotInfo:
    depot_id: str
    depot_name: str
    manifest_id: str
    manifest_id_used: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "depot_id": self.depot_id,
            "depot_name": self.depot_name,
            "manifest_id": self.manifest_id,
        }
        if self.manifest_id_used is not None:
            data["manifest_id_used"] = self.manifest_id_used
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DepotInfo":
        return cls(
            depot_id=str(data["depot_id"]),
            depot_name=str(data["depot_name"]),
            manifest_id=str(data["manifest_id"]),
            manifest_id_used=data.get("manifest_id_used"),
        )


def depot_sort_key(depot_id: str) -> int:
    """Numeric ordering for depot ids; anything that is not an integer sorts as zero."""
    try:
        return int(depot_id)
    except (TypeError, ValueError):
        return 0


def format_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_utc(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class JobMetadata:
    """
    The finalized description of a successful download, written to job.json in the
    staging directory. It exists so finalization is deterministic and debuggable;
    it is never used to resume a job.
    """
    job_id: str
    appid: str
    branch: str
    platform: str
    primary_depot_id: str
    game_name: str
    build_id: str
    build_id_source: BuildIdSource
    build_datetime_utc: Optional[datetime]
    depots: List[DepotInfo]
    appinfo_fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata_version: Optional[str] = METADATA_VERSION

    def __post_init__(self) -> None:
        if self.primary_depot_id and self.primary_depot_id not in {d.depot_id for d in self.depots}:
            raise ValueError(
                f"Primary depot {self.primary_depot_id} is not in the depot list"
            )

    def depot(self, depot_id: str) -> Optional[DepotInfo]:
        for depot in self.depots:
            if depot.depot_id == depot_id:
                return depot
        return None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "job_id": self.job_id,
            "appid": self.appid,
            "branch": self.branch,
            "platform": self.platform,
            "primary_depot_id": self.primary_depot_id,
            "game_name": self.game_name,
            "build_id": self.build_id,
            "build_id_source": self.build_id_source.value,
        }
        if self.build_datetime_utc is not None:
            data["build_datetime_utc"] = format_utc(self.build_datetime_utc)
        data["depots"] = [d.to_dict() for d in self.depots]
        data["appinfo_fetched_at"] = format_utc(self.appinfo_fetched_at)
        if self.metadata_version is not None:
            data["metadata_version"] = self.metadata_version
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobMetadata":
        build_dt = data.get("build_datetime_utc")
        return cls(
            job_id=data["job_id"],
            appid=data["appid"],
            branch=data["branch"],
            platform=data["platform"],
            primary_depot_id=data["primary_depot_id"],
            game_name=data["game_name"],
            build_id=data["build_id"],
            build_id_source=BuildIdSource(data["build_id_source"]),
            build_datetime_utc=parse_utc(build_dt) if build_dt else None,
            depots=[DepotInfo.from_dict(d) for d in data.get("depots", [])],
            appinfo_fetched_at=parse_utc(data["appinfo_fetched_at"]),
            metadata_version=data.get("metadata_version"),
        )

    def write_to_dir(self, staging_dir: Path) -> Path:
        """Writes job.json into `staging_dir` and returns its path."""
        path = staging_dir / JOB_FILE_NAME
        path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        return path

    @classmethod
    def read_from_dir(cls, staging_dir: Path) -> "JobMetadata":
        path = staging_dir / JOB_FILE_NAME
        return cls.from_dict(json.loads(path.read_text(encoding="utf-8")))

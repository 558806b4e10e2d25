from datetime import datetime, timezone

import pytest

from depot_packer.errors import StagingError
from depot_packer.extractor import MetadataAccumulator, MetadataExtractor
from depot_packer.models import BuildIdSource, JobRequest
from depot_packer.resolver import capitalize_first, derive_job_metadata, scan_depots

PATCH_DATE = datetime(2024, 2, 1, tzinfo=timezone.utc)


class StubLookups:
    def __init__(self, name=None, build_date=None):
        self.name = name
        self.build_date = build_date
        self.build_queries = []

    def fetch_app_name(self, app_id):
        return self.name

    def fetch_build_date(self, app_id, build_id=None):
        self.build_queries.append((app_id, build_id))
        return self.build_date


@pytest.fixture
def staging(tmp_path, depot_tree):
    return depot_tree(tmp_path / "job", {
        "228989": ("3514306556860204959", {"vcredist.exe": b"r"}),
        "47411": ("5720204498418426536", {"hl.exe": b"g"}),
    })


def test_scan_depots_numeric_order(tmp_path, depot_tree):
    depot_tree(tmp_path, {"9": ("1", {}), "100": ("2", {}), "20": ("3", {})})
    (tmp_path / "depots" / "55").mkdir()
    assert scan_depots(tmp_path) == [("9", "1"), ("20", "3"), ("100", "2")]


def test_scan_depots_without_depots_dir(tmp_path):
    with pytest.raises(StagingError):
        scan_depots(tmp_path)


def test_capitalize_first():
    assert capitalize_first("public") == "Public"
    assert capitalize_first("beta_branch") == "Beta_branch"
    assert capitalize_first("") == ""


def test_derive_job_metadata(staging):
    request = JobRequest(app_id="47410", os="Linux", branch="public")
    lookups = StubLookups(name="Half-Life")
    observed = MetadataAccumulator()
    MetadataExtractor(observed).feed_all([
        "Depot 47411 - Manifest 5720204498418426536",
        "Manifest 5720204498418426536 (1/15/2024 10:30:45 AM)",
    ])

    metadata = derive_job_metadata(request, "job", staging, observed, lookups)

    assert metadata.game_name == "Half-Life"
    assert metadata.branch == "Public"
    assert metadata.platform == "Linux64"
    assert metadata.primary_depot_id == "47411"
    assert metadata.build_id == "5720204498418426536"
    assert metadata.build_id_source is BuildIdSource.PRIMARY_MANIFEST_ID
    assert [d.depot_id for d in metadata.depots] == ["47411", "228989"]
    assert [d.depot_name for d in metadata.depots] == ["Half-Life", "Steamworks Shared"]
    assert metadata.build_datetime_utc == datetime(2024, 1, 15, 10, 30, 45, tzinfo=timezone.utc)
    assert lookups.build_queries == [("47410", "5720204498418426536")]


def test_patch_notes_date_wins_and_names_from_output_are_kept(staging):
    observed = MetadataAccumulator()
    observed.depot_names["228989"] = "Redistributables"
    observed.build_timestamp.offer(datetime(2020, 1, 1, tzinfo=timezone.utc), 3)

    metadata = derive_job_metadata(
        JobRequest(app_id="47410"), "job", staging, observed, StubLookups(build_date=PATCH_DATE)
    )

    assert metadata.game_name == "app_47410"
    assert metadata.depot("228989").depot_name == "Redistributables"
    assert metadata.depot("47411").depot_name == "app_47410"
    assert metadata.build_datetime_utc == PATCH_DATE


def test_no_lookups_and_no_timestamps(staging):
    metadata = derive_job_metadata(JobRequest(app_id="47410"), "job", staging, MetadataAccumulator())
    assert metadata.build_datetime_utc is None
    assert metadata.platform == "Win64"


def test_empty_download_is_an_error(tmp_path):
    (tmp_path / "depots").mkdir()
    with pytest.raises(StagingError, match="No depots found"):
        derive_job_metadata(JobRequest(app_id="1"), "job", tmp_path, MetadataAccumulator())


def test_build_id_comes_from_primary_depot_not_lowest_id(tmp_path, depot_tree):
    staging = depot_tree(tmp_path / "job", {
        "228989": ("3514306556860204959", {"vcredist.exe": b"r"}),
        "1245621": ("7777777777777777777", {"game.exe": b"g"}),
    })
    lookups = StubLookups(name="Elden Ring")

    metadata = derive_job_metadata(JobRequest(app_id="1245620"), "job", staging, MetadataAccumulator(), lookups)

    assert metadata.primary_depot_id == "1245621"
    assert metadata.build_id == "7777777777777777777"
    assert [d.depot_id for d in metadata.depots] == ["228989", "1245621"]
    assert lookups.build_queries == [("1245620", "7777777777777777777")]

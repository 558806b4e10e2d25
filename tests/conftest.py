import pytest

from depot_packer.config import Settings
from depot_packer.depots import set_shared_depots


@pytest.fixture(autouse=True)
def default_shared_depots():
    set_shared_depots(None)
    yield
    set_shared_depots(None)


@pytest.fixture
def settings(tmp_path):
    return Settings(downloads_dir=tmp_path / "downloads", poll_interval=0.02)


def build_depot_tree(staging_dir, depots):
    """Lays out `depots/<depot>/<manifest>/...` the way DepotDownloader leaves it."""
    for depot_id, (manifest_id, files) in depots.items():
        manifest_dir = staging_dir / "depots" / depot_id / manifest_id
        tool_dir = manifest_dir / ".DepotDownloader"
        tool_dir.mkdir(parents=True)
        (tool_dir / f"{manifest_id}.manifest").write_bytes(b"manifest")
        for relative, data in files.items():
            path = manifest_dir / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
    return staging_dir


@pytest.fixture
def depot_tree():
    return build_depot_tree

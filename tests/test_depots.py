import json

from depot_packer.depots import (
    SharedDepot,
    depot_name_for,
    is_shared_depot,
    load_shared_depots,
    select_primary_depot,
    set_shared_depots,
    shared_depot_owner,
)


def test_builtin_table_knows_steamworks_redist():
    assert is_shared_depot("228989")
    assert shared_depot_owner("228989") == "228980"
    assert not is_shared_depot("47411")


def test_unknown_depot_owns_itself():
    assert shared_depot_owner("47411") == "47411"


def test_depot_name_policy():
    assert depot_name_for("47411", True, "Half-Life") == "Half-Life"
    assert depot_name_for("228989", False, "Half-Life") == "Steamworks Shared"
    assert depot_name_for("47412", False, "Half-Life") == "depot_47412"


def test_select_primary_depot_keeps_caller_order():
    assert select_primary_depot(["228989", "50", "40"]) == "50"
    assert select_primary_depot([]) is None


def test_load_shared_depots_from_json(tmp_path):
    path = tmp_path / "shared.json"
    path.write_text(json.dumps({
        "500": {"name": "Runtime", "owner": "499"},
        "600": "Bare Name",
    }), encoding="utf-8")

    table = load_shared_depots(path)
    assert table == {"500": SharedDepot("Runtime", "499"), "600": SharedDepot("Bare Name", "600")}

    set_shared_depots(table)
    assert is_shared_depot("500")
    assert not is_shared_depot("228989")
    assert depot_name_for("600", False, "Game") == "Bare Name"


def test_none_restores_builtin_table():
    set_shared_depots({})
    assert not is_shared_depot("228989")
    set_shared_depots(None)
    assert is_shared_depot("228989")

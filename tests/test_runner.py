import json
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from depot_packer.errors import JobAlreadyRunning, NotRunning, PackerError
from depot_packer.events import RecordingSink
from depot_packer.models import JobRequest, JobStatus, OutputConflictChoice
from depot_packer.runner import DepotRunner

GAME_MANIFEST = "5720204498418426536"
REDIST_MANIFEST = "3514306556860204959"
OUTPUT_NAME = f"Half-Life.Build.{GAME_MANIFEST}.Linux64.Public"

FAKE_DEPOTDOWNLOADER = '''
import json
import os
import sys
import time
from pathlib import Path

args = sys.argv[1:]
with open(os.environ["FAKE_DD_CALLS"], "a", encoding="utf-8") as fh:
    fh.write(json.dumps({"args": args, "cwd": os.getcwd()}) + "\\n")
mode = os.environ.get("FAKE_DD_MODE", "ok")


def say(text, stream=sys.stdout):
    stream.write(text + "\\n")
    stream.flush()


if "-manifest-only" in args:
    if mode == "preflight_fail":
        say("Login failed: InvalidPassword", sys.stderr)
        sys.exit(5)
    if mode == "preflight_hang":
        say("Connecting to Steam3...")
        time.sleep(60)
        sys.exit(0)
    say("Depot 47411 - Manifest %(game)s")
    say("Manifest %(game)s (1/15/2024 10:30:45 AM)")
    say("Depot 228989 - Manifest %(redist)s")
    sys.exit(0)

if mode == "hang":
    say("Connecting to Steam3...")
    time.sleep(60)
    sys.exit(0)

if mode == "fail":
    say("Error: app not found", sys.stderr)
    sys.exit(3)

if mode == "guard":
    sys.stdout.write("STEAM GUARD! Please enter the auth code sent to the email at a***@example.com: ")
    sys.stdout.flush()
    say("Got code " + sys.stdin.readline().strip())

if "-username" in args:
    if Path("config", "config.vdf").exists():
        say("Found saved session")
    Path("config").mkdir(exist_ok=True)
    Path("config", "config.vdf").write_text("session")

for depot, manifest, relative in (
    ("47411", "%(game)s", "hl.exe"),
    ("228989", "%(redist)s", "vcredist/vcredist_x86.exe"),
):
    manifest_dir = Path("depots", depot, manifest)
    tool_dir = manifest_dir / ".DepotDownloader"
    tool_dir.mkdir(parents=True, exist_ok=True)
    (tool_dir / (manifest + ".manifest")).write_bytes(b"manifest")
    target = manifest_dir / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(b"data")
    say("Depot %%s - Manifest %%s" %% (depot, manifest))
say("Total downloaded: 8 bytes", sys.stderr)
''' % {"game": GAME_MANIFEST, "redist": REDIST_MANIFEST}


class StubLookups:
    def fetch_app_name(self, app_id):
        return "Half-Life"

    def fetch_build_date(self, app_id, build_id=None):
        return None


def wait_for(condition, timeout=20.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return
        time.sleep(0.02)
    raise AssertionError("condition not met in time")


@pytest.fixture
def calls_file(tmp_path, monkeypatch):
    path = tmp_path / "calls.jsonl"
    monkeypatch.setenv("FAKE_DD_CALLS", str(path))
    return path


@pytest.fixture
def runner(tmp_path, settings, calls_file):
    script = tmp_path / "fake_depotdownloader.py"
    script.write_text(FAKE_DEPOTDOWNLOADER, encoding="utf-8")
    runner = DepotRunner(settings, sink=RecordingSink(), lookups=StubLookups(),
                         command=[sys.executable, str(script)])
    yield runner
    if runner.is_busy():
        try:
            runner.cancel()
        except NotRunning:
            pass
    runner.wait(10)


def statuses(runner):
    return [event.status for event in runner.sink.statuses]


def linux_request(**overrides):
    fields = dict(app_id="47410", os="Linux", branch="public", skip_compression=True)
    fields.update(overrides)
    return JobRequest(**fields)


def read_calls(calls_file):
    return [json.loads(line) for line in calls_file.read_text(encoding="utf-8").splitlines()]


def test_anonymous_job_produces_library_folder(runner, settings, calls_file):
    job_id = runner.start_job(linux_request())
    assert runner.wait(30)

    assert statuses(runner) == [
        JobStatus.STARTING, JobStatus.RUNNING, JobStatus.FINALIZING, JobStatus.COMPLETED,
    ]
    assert runner.sink.statuses[-1].code == 0
    assert {event.job_id for event in runner.sink.statuses} == {job_id}

    output = settings.outputs_dir / OUTPUT_NAME
    common = output / "steamapps" / "common"
    assert (common / "Half-Life" / "hl.exe").read_bytes() == b"data"
    assert (common / "Steamworks Shared" / "vcredist" / "vcredist_x86.exe").exists()
    assert sorted(p.name for p in (output / "depotcache").iterdir()) == [
        f"{REDIST_MANIFEST}.manifest", f"{GAME_MANIFEST}.manifest",
    ]

    acf = (output / "steamapps" / "appmanifest_47410.acf").read_text(encoding="utf-8")
    installed = acf.split('"InstalledDepots"')[1].split('"SharedDepots"')[0]
    assert '"47411"' in installed
    assert "228989" not in installed
    assert '"228989"\t\t"228980"' in acf.split('"SharedDepots"')[1].split('"MountedDepots"')[0]
    mounted = acf.split('"MountedDepots"')[1]
    assert f'"47411"\t\t"{GAME_MANIFEST}"' in mounted
    assert f'"228989"\t\t"{REDIST_MANIFEST}"' in mounted
    # The preflight run reported the primary manifest's date.
    released = int(datetime(2024, 1, 15, 10, 30, 45, tzinfo=timezone.utc).timestamp())
    assert f'"LastUpdated"\t\t"{released}"' in acf

    assert f"Depot 47411 - Manifest {GAME_MANIFEST}" in runner.sink.lines("stdout")
    assert "Total downloaded: 8 bytes" in runner.sink.lines("stderr")
    assert "Job completed." in runner.sink.lines("system")
    assert not (settings.staging_root / job_id).exists()
    assert not runner.is_busy()

    preflight, download = read_calls(calls_file)
    assert preflight["args"][-1] == "-manifest-only"
    assert Path(preflight["cwd"]).name == ".preflight"
    assert download["args"] == ["-app", "47410", "-branch", "public", "-os", "linux", "-osarch", "64"]
    assert Path(download["cwd"]).name == job_id


def test_failed_download_reports_exit_code(runner, settings, monkeypatch):
    monkeypatch.setenv("FAKE_DD_MODE", "fail")
    job_id = runner.start_job(linux_request())
    assert runner.wait(30)

    assert statuses(runner) == [JobStatus.STARTING, JobStatus.RUNNING, JobStatus.EXITED]
    assert runner.sink.statuses[-1].code == 3
    assert "Error: app not found" in runner.sink.lines("stderr")
    assert "Job failed. Cleaning up staging directory." in runner.sink.lines("system")
    assert not (settings.staging_root / job_id).exists()
    assert not settings.outputs_dir.exists() or not any(settings.outputs_dir.iterdir())


def test_cancel_kills_child_and_frees_the_slot(runner, settings, monkeypatch):
    monkeypatch.setenv("FAKE_DD_MODE", "hang")
    job_id = runner.start_job(linux_request())
    wait_for(lambda: JobStatus.RUNNING in statuses(runner))

    with pytest.raises(JobAlreadyRunning):
        runner.start_job(linux_request())

    exit_code = runner.cancel()
    assert exit_code is not None and exit_code != 0
    assert statuses(runner)[-1] is JobStatus.EXITED
    assert "Job cancelled. Cleaning up staging directory." in runner.sink.lines("system")
    assert not (settings.staging_root / job_id).exists()
    assert not runner.is_busy()
    assert runner.wait(10)
    assert JobStatus.COMPLETED not in statuses(runner)

    with pytest.raises(NotRunning):
        runner.cancel()


def test_failed_preflight_does_not_stop_the_download(runner, settings, calls_file, monkeypatch):
    monkeypatch.setenv("FAKE_DD_MODE", "preflight_fail")
    job_id = runner.start_job(linux_request())
    assert runner.wait(30)

    assert statuses(runner) == [
        JobStatus.STARTING, JobStatus.RUNNING, JobStatus.FINALIZING, JobStatus.COMPLETED,
    ]
    assert "Login failed: InvalidPassword" in runner.sink.lines("stderr")
    assert "Preflight failed with exit code 5. Continuing without preflight." in runner.sink.lines("system")
    assert (settings.outputs_dir / OUTPUT_NAME / "steamapps" / "appmanifest_47410.acf").is_file()
    assert not (settings.staging_root / job_id).exists()
    assert len(read_calls(calls_file)) == 2


def test_cancel_during_preflight_reports_exited_once(runner, settings, calls_file, monkeypatch):
    monkeypatch.setenv("FAKE_DD_MODE", "preflight_hang")
    job_id = runner.start_job(linux_request())
    wait_for(lambda: "Connecting to Steam3..." in runner.sink.lines("stdout"))

    exit_code = runner.cancel()
    assert exit_code is not None and exit_code != 0
    assert runner.wait(10)

    assert statuses(runner) == [JobStatus.STARTING, JobStatus.EXITED]
    assert "Job cancelled. Cleaning up staging directory." in runner.sink.lines("system")
    assert not any(line.startswith("Preflight failed") for line in runner.sink.lines("system"))
    assert not (settings.staging_root / job_id).exists()
    assert not runner.is_busy()
    # The download run was never spawned.
    assert len(read_calls(calls_file)) == 1


def test_steam_guard_code_reaches_the_child(runner, monkeypatch):
    monkeypatch.setenv("FAKE_DD_MODE", "guard")
    runner.start_job(linux_request())
    wait_for(lambda: any("STEAM GUARD" in line for line in runner.sink.lines("stdout")))

    runner.submit_code("  ABCDE \n")
    assert runner.wait(30)

    assert "Got code ABCDE" in runner.sink.lines("stdout")
    assert statuses(runner)[-1] is JobStatus.COMPLETED


def test_code_and_cancel_need_a_running_child(runner):
    with pytest.raises(NotRunning):
        runner.submit_code("ABCDE")
    with pytest.raises(NotRunning):
        runner.cancel()
    with pytest.raises(PackerError, match="empty"):
        runner.submit_code("   ")


def test_login_session_files_survive_between_jobs(runner, settings):
    runner.start_job(linux_request(username="alice", password="hunter2"))
    assert runner.wait(30)
    assert statuses(runner)[-1] is JobStatus.COMPLETED
    assert (settings.auth_root / "alice" / "config" / "config.vdf").read_text() == "session"

    logged = runner.sink.lines("system")
    assert any("-password ********" in line for line in logged)
    assert not any("hunter2" in line for line in logged)

    runner.start_job(linux_request(os="Windows x64", username="alice"))
    assert runner.wait(30)
    assert "Found saved session" in runner.sink.lines("stdout")


def test_existing_output_waits_for_a_choice(runner, settings):
    runner.start_job(linux_request())
    assert runner.wait(30)

    second = runner.start_job(linux_request())
    wait_for(lambda: runner.sink.conflicts)
    assert runner.conflicts.is_pending(second)
    assert runner.sink.conflicts[-1].output_path == settings.outputs_dir / OUTPUT_NAME

    runner.conflicts.resolve(second, OutputConflictChoice.COPY)
    assert runner.wait(30)
    assert statuses(runner)[-1] is JobStatus.COMPLETED
    assert (settings.outputs_dir / f"{OUTPUT_NAME} (1)" / "steamapps").is_dir()


def test_missing_tool_is_an_error(tmp_path, settings):
    runner = DepotRunner(settings, sink=RecordingSink(), lookups=StubLookups(),
                         command=[str(tmp_path / "no-such-tool")])
    job_id = runner.start_job(linux_request())
    assert runner.wait(30)

    assert statuses(runner) == [JobStatus.STARTING, JobStatus.ERROR]
    assert any(line.startswith("Preflight failed:") for line in runner.sink.lines("system"))
    assert not (settings.staging_root / job_id).exists()
    assert not runner.is_busy()

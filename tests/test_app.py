import json
from pathlib import Path

from depot_packer import app
from depot_packer.config import Settings
from depot_packer.depots import is_shared_depot
from depot_packer.events import ConflictEvent, LogEvent, ProgressEvent
from depot_packer.models import JobStatus


def test_bootstrap_prepares_downloads_dir(tmp_path):
    shared = tmp_path / "shared.json"
    shared.write_text(json.dumps({"42": "Custom Runtime"}), encoding="utf-8")
    settings = Settings(downloads_dir=tmp_path / "dl", shared_depots_file=shared)
    (settings.staging_root / "old-job" / "depots").mkdir(parents=True)

    app.bootstrap(settings)

    assert settings.outputs_dir.is_dir()
    assert list(settings.staging_root.iterdir()) == []
    assert is_shared_depot("42")
    assert not is_shared_depot("228989")


def test_console_sink_points_at_menu_options(capsys):
    sink = app.ConsoleSink()
    sink.log(LogEvent("stdout", "STEAM GUARD! Please enter the auth code sent to the email at x: ", "job"))
    sink.log(LogEvent("stdout", "Downloading depot 10", "job"))
    sink.log(LogEvent("system", "Job completed.", "job"))
    sink.conflict(ConflictEvent("job", Path("outputs/Game")))
    out = capsys.readouterr().out

    assert "Use option 2" in out
    assert "Downloading depot 10" not in out
    assert "Job completed." in out
    assert str(Path("outputs/Game")) in out
    assert "Use option 4" in out
    assert len(sink.recent_lines()) == 3


def test_console_sink_prints_progress_in_steps(capsys):
    sink = app.ConsoleSink()
    for percent in (1, 5, 12, 19, 20, 100):
        sink.progress(ProgressEvent(percent, "job"))
    assert capsys.readouterr().out.count("Compressing...") == 4


def test_main_runs_menu_until_exit(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(app, "configure_logging", lambda debug: None)
    monkeypatch.setattr(app, "load_login", lambda: None)
    monkeypatch.setattr("builtins.input", lambda prompt="": "8")

    assert app.main(["--downloads-dir", str(tmp_path / "dl"), "--depotdownloader", "dd"]) == 0
    assert (tmp_path / "dl" / "outputs").is_dir()
    assert "Exiting." in capsys.readouterr().out


def test_main_reports_startup_failure(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(app, "configure_logging", lambda debug: None)
    monkeypatch.setenv("DEPOT_PACKER_SHARED_DEPOTS_FILE", str(tmp_path / "missing.json"))
    assert app.main(["--downloads-dir", str(tmp_path / "dl")]) == 1
    assert "Startup failed" in capsys.readouterr().out


def test_status_line(tmp_path):
    console = app.DepotPackerApp(Settings(downloads_dir=tmp_path))
    assert console._status_line() == "N/A"
    console.last_job_id = "job"
    console.sink.last_status["job"] = JobStatus.COMPLETED
    assert console._status_line() == "job (completed)"

import argparse
import getpass
import logging
import os
import sys
import threading
import time
from collections import deque
from pathlib import Path
from typing import Deque, Dict, List, Optional

from .arguments import OS_SELECTIONS
from .config import ENV_PREFIX, Settings, configure_logging
from .conflicts import ConflictResolver
from .credentials import clear_login, load_login, save_login
from .depots import load_shared_depots, set_shared_depots
from .errors import PackerError
from .events import SYSTEM_STREAM, ConflictEvent, EventSink, LogEvent, ProgressEvent, StatusEvent
from .models import JobRequest, JobStatus, OutputConflictChoice
from .runner import DepotRunner
from .staging import cleanup_orphaned_staging

LOGGER = logging.getLogger(__name__)

STEAM_GUARD_HINTS = ("STEAM GUARD", "Steam Guard", "2 factor auth", "two-factor")
RECENT_LOG_LINES = 40


class ConsoleSink(EventSink):
    """Prints the event feed for the interactive console."""

    def __init__(self, echo_system: bool = True):
        self.echo_system = echo_system
        self.last_status: Dict[str, JobStatus] = {}
        self.recent: Deque[str] = deque(maxlen=RECENT_LOG_LINES)
        self._last_percent = -1
        self._lock = threading.Lock()

    def status(self, event: StatusEvent) -> None:
        with self._lock:
            self.last_status[event.job_id] = event.status
        suffix = f" (code {event.code})" if event.code is not None else ""
        print(f"\n>> Job {event.job_id}: {event.status.value}{suffix}")

    def log(self, event: LogEvent) -> None:
        line = f"[{event.stream}] {event.line}"
        with self._lock:
            self.recent.append(line)
        if any(hint in event.line for hint in STEAM_GUARD_HINTS):
            print(f"\n{event.line}\n>> Steam Guard code requested. Use option 2 to submit it.")
            return
        # --debug already echoes every line.
        if self.echo_system and event.stream == SYSTEM_STREAM:
            print(f"   {event.line}")

    def conflict(self, event: ConflictEvent) -> None:
        print(f"\n>> Output already exists: {event.output_path}")
        print(">> Use option 4 to choose Overwrite, Copy or Cancel.")

    def progress(self, event: ProgressEvent) -> None:
        if event.percent // 10 != self._last_percent // 10:
            self._last_percent = event.percent
            print(f"   Compressing... {event.percent}%")

    def recent_lines(self) -> List[str]:
        with self._lock:
            return list(self.recent)


class DepotPackerApp:
    """A console application for packaging DepotDownloader downloads into Steam library folders."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.sink = ConsoleSink(echo_system=not settings.debug)
        self.conflicts = ConflictResolver()
        self.runner = DepotRunner(settings, sink=self.sink, conflicts=self.conflicts)
        self.last_job_id: Optional[str] = None

    def _yes(self, prompt: str) -> bool:
        return input(f"{prompt} (Y/N): ").strip().upper() == 'Y'

    def _choose_os(self) -> str:
        options = list(OS_SELECTIONS)
        for i, name in enumerate(options):
            print(f"  {i+1}. {name}")
        choice = input("Select a platform (number, blank for Windows x64): ").strip()
        if not choice:
            return options[0]
        try:
            index = int(choice)
            if 1 <= index <= len(options):
                return options[index - 1]
        except ValueError:
            pass
        print("Invalid selection. Using Windows x64.")
        return options[0]

    def _ask_login(self):
        """Returns (username, password, qr_enabled)."""
        if self._yes("Anonymous download?"):
            return "", "", False
        if self._yes("Log in with a QR code from the Steam mobile app?"):
            return "", "", True

        saved = load_login()
        if saved and self._yes(f"Use saved credentials for user '{saved[0]}'?"):
            return saved[0], saved[1], False

        username = input('Username: ').strip()
        password = getpass.getpass('Password (Text is invisible, blank to use a remembered session): ')
        if username and password and self._yes("Save credentials for next time?"):
            try:
                save_login(username, password)
                print("Credentials saved securely in your OS keyring.")
            except PackerError as e:
                print(f"Could not save credentials: {e}")
        return username, password, False

    def start_job_workflow(self) -> None:
        if self.runner.is_busy():
            print("A job is already running. Cancel it or wait for it to finish.")
            return
        app_id = input("Enter AppID: ").strip()
        if not app_id.isdigit():
            print("Invalid AppID.")
            return
        os_selection = self._choose_os()
        branch = input("Branch (blank for public): ").strip() or "public"
        username, password, qr_enabled = self._ask_login()

        skip_compression = not self._yes("Compress the output with 7-Zip?")
        archive_password = ""
        if not skip_compression and self._yes("Protect the archive with a password?"):
            archive_password = getpass.getpass('Archive password: ')

        request = JobRequest(
            app_id=app_id,
            os=os_selection,
            branch=branch,
            username=username,
            password=password,
            qr_enabled=qr_enabled,
            skip_compression=skip_compression,
            compression_password_enabled=bool(archive_password),
            compression_password=archive_password,
        )
        try:
            self.last_job_id = self.runner.start_job(request)
            print(f"Job {self.last_job_id} started.")
        except PackerError as e:
            print(f"Could not start job: {e}")

    def submit_code_workflow(self) -> None:
        code = input("Steam Guard code: ")
        try:
            self.runner.submit_code(code)
            print("Code submitted.")
        except PackerError as e:
            print(f"Could not submit code: {e}")

    def cancel_workflow(self) -> None:
        if not self._yes("Cancel the running job?"):
            return
        try:
            self.runner.cancel()
        except PackerError as e:
            print(f"Could not cancel: {e}")

    def resolve_conflict_workflow(self) -> None:
        pending = self.conflicts.pending_jobs()
        if not pending:
            print("No output conflicts are waiting for an answer.")
            return
        job_id = pending[0]
        choices = {"1": OutputConflictChoice.OVERWRITE, "2": OutputConflictChoice.COPY,
                   "3": OutputConflictChoice.CANCEL}
        print(f"Job {job_id}: the output folder already exists.")
        print("  1. Overwrite the existing output\n  2. Keep both (save as a numbered copy)\n  3. Cancel the job")
        choice = choices.get(input("Selection (number): ").strip())
        if choice is None:
            print("Invalid selection.")
            return
        try:
            self.conflicts.resolve(job_id, choice)
        except PackerError as e:
            print(f"Could not resolve conflict: {e}")

    def manage_login_workflow(self) -> None:
        saved = load_login()
        print(f"Remembered login: {saved[0] if saved else 'None'}")
        print("  1. Save a new login\n  2. Forget the remembered login\n  0. Back")
        choice = input("Selection (number): ").strip()
        try:
            if choice == "1":
                username = input('Username: ').strip()
                password = getpass.getpass('Password (Text is invisible): ')
                if not username or not password:
                    print("Username and password are both required.")
                    return
                save_login(username, password)
                print("Credentials saved securely in your OS keyring.")
            elif choice == "2":
                clear_login()
                print("Remembered login removed.")
        except PackerError as e:
            print(f"Keyring error: {e}")

    def show_output_folder(self) -> None:
        outputs = self.settings.outputs_dir
        print(f"Output folder: {outputs.resolve()}")
        if not outputs.is_dir():
            return
        entries = sorted(p.name for p in outputs.iterdir() if not p.name.startswith("."))
        for name in entries:
            print(f"  - {name}")

    def show_recent_log(self) -> None:
        lines = self.sink.recent_lines()
        print("\n".join(lines) if lines else "Nothing logged yet.")

    def _status_line(self) -> str:
        job_id = self.runner.current_job_id() or self.last_job_id
        if not job_id:
            return "N/A"
        status = self.sink.last_status.get(job_id)
        return f"{job_id} ({status.value if status else 'pending'})"

    def run(self) -> None:
        """The main application loop and user interface."""
        while True:
            saved = load_login()
            print(f"""
Depot Packer

Job:               {self._status_line()}
Remembered login:  {saved[0] if saved else 'None'}
Pending conflicts: {self.conflicts.pending_jobs() or 'None'}

--- Main Workflow ---
1. Start Download Job
2. Submit Steam Guard Code
3. Cancel Running Job
4. Resolve Output Conflict

--- Utilities ---
5. Manage Remembered Login
6. Show Output Folder
7. Show Recent Log
8. Exit
            """)

            try: selection = int(input('Selection (number): '))
            except ValueError: print("Invalid input."); time.sleep(1); continue

            action_map = {
                1: self.start_job_workflow,
                2: self.submit_code_workflow,
                3: self.cancel_workflow,
                4: self.resolve_conflict_workflow,
                5: self.manage_login_workflow,
                6: self.show_output_folder,
                7: self.show_recent_log,
            }

            if selection in action_map:
                action_map[selection]()
                input('Press Enter to continue...')
            elif selection == 8:
                if self.runner.is_busy() and not self._yes("A job is still running. Exit anyway?"):
                    continue
                print("Exiting.")
                return
            else:
                print("Invalid selection."); time.sleep(1)


def bootstrap(settings: Settings) -> None:
    """One-time process setup: shared depot table, output folders and leftover staging."""
    if settings.shared_depots_file:
        set_shared_depots(load_shared_depots(settings.shared_depots_file))
    settings.outputs_dir.mkdir(parents=True, exist_ok=True)
    removed = cleanup_orphaned_staging(settings.staging_root)
    if removed:
        print(f"Removed {len(removed)} orphaned staging director{'y' if len(removed) == 1 else 'ies'}.")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="depot-packer",
        description="Download Steam depots with DepotDownloader and pack them as a Steam library folder.",
    )
    parser.add_argument("--debug", action="store_true", help="echo every DepotDownloader line and log at DEBUG")
    parser.add_argument("--downloads-dir", type=Path, help="root for staging, outputs and the auth cache")
    parser.add_argument("--depotdownloader", help="path to the DepotDownloader executable")
    parser.add_argument("--sevenzip", help="path to the 7-Zip executable")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    environ = dict(os.environ)
    if args.downloads_dir:
        environ[ENV_PREFIX + "DOWNLOADS_DIR"] = str(args.downloads_dir)

    try:
        settings = Settings.from_env(environ)
        if args.depotdownloader:
            settings.depotdownloader_path = args.depotdownloader
        if args.sevenzip:
            settings.sevenzip_path = args.sevenzip
        settings.debug = settings.debug or args.debug
        configure_logging(settings.debug)
        LOGGER.debug("Settings: %s", settings)
        bootstrap(settings)
    except (OSError, ValueError, PackerError) as e:
        print(f"Startup failed: {e}")
        return 1

    app = DepotPackerApp(settings)
    try:
        app.run()
    except (KeyboardInterrupt, EOFError):
        print("\nExiting.")
    return 0


if __name__ == "__main__":
    sys.exit(main())

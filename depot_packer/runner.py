"""
Drives DepotDownloader for one job at a time: a metadata-only preflight run,
the real download, and everything that happens after the child exits.

Threads per job: the worker (staging, preflight, spawn), two stream readers
and the exit watcher. They share one RunnerState guarded by its lock.
"""

import copy
import logging
import shutil
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, List, Optional, Sequence

from .arguments import build_depot_args, build_preflight_args, redact_args
from .compression import compress_output
from .config import Settings
from .conflicts import ConflictResolver
from .credentials import persist_auth_cache, restore_auth_cache, username_from_output
from .errors import ConflictCancelled, JobAlreadyRunning, NotRunning, PackerError, SpawnError
from .events import EventSink, Emitter
from .extractor import MetadataExtractor
from .finalizer import finalize_job
from .lookups import SteamLookups
from .models import JobRequest, JobStatus
from .resolver import derive_job_metadata
from .staging import (
    cleanup_staging_dir,
    create_staging_dir,
    generate_job_id,
    preflight_dir_for,
    staging_dir_for,
)
from .state import RunnerState
from .streams import read_lines

LOGGER = logging.getLogger(__name__)

# Keeps the tool from opening a console window of its own on Windows.
CREATION_FLAGS = getattr(subprocess, "CREATE_NO_WINDOW", 0)


class DepotRunner:
    """Owns the single job slot of the process and the threads working on it."""

    def __init__(
        self,
        settings: Settings,
        sink: Optional[EventSink] = None,
        lookups: Optional[SteamLookups] = None,
        conflicts: Optional[ConflictResolver] = None,
        command: Optional[Sequence[str]] = None,
    ):
        self.settings = settings
        self.sink = sink or EventSink()
        self.lookups = lookups if lookups is not None else SteamLookups(
            user_agent=settings.user_agent, timeout=settings.request_timeout
        )
        self.conflicts = conflicts or ConflictResolver()
        self.command: List[str] = list(command) if command else [settings.depotdownloader_path]
        self.state = RunnerState()
        self._threads: List[threading.Thread] = []
        self._threads_lock = threading.Lock()

    # Public operations -----------------------------------------------------

    def start_job(self, request: JobRequest) -> str:
        """Accepts a job and returns its id; the work happens on background threads."""
        with self.state.lock:
            if self.state.job.job_id is not None:
                raise JobAlreadyRunning("DepotDownloader is already running")
            job_id = generate_job_id()
            self.state.reset(job_id)

        emitter = self._emitter(job_id)
        emitter.status(JobStatus.STARTING)
        self._spawn_thread(self._run_worker, (request, job_id, emitter), f"dd-worker-{job_id}")
        return job_id

    def cancel(self) -> Optional[int]:
        """Kills the running child, forgets the job and removes its staging directory."""
        with self.state.lock:
            job = self.state.job
            if job.child is None or job.job_id is None:
                raise NotRunning("DepotDownloader is not running")
            job_id = job.job_id
            try:
                job.child.kill()
                exit_code = job.child.wait()
            except OSError as e:
                raise SpawnError(f"Failed to terminate DepotDownloader: {e}") from e
            self.state.reset()

        emitter = self._emitter(job_id)
        emitter.status(JobStatus.EXITED, exit_code)
        emitter.log("Job cancelled. Cleaning up staging directory.")
        cleanup_staging_dir(staging_dir_for(self.settings.staging_root, job_id))
        return exit_code

    def submit_code(self, code: str) -> None:
        """Writes a Steam Guard code to the running child's stdin."""
        code = code.strip()
        if not code:
            raise PackerError("Steam Guard code is empty")
        with self.state.lock:
            job = self.state.job
            if job.child is None:
                raise NotRunning("DepotDownloader is not running")
            if job.stdin is None:
                raise NotRunning("DepotDownloader stdin is unavailable")
            try:
                job.stdin.write(code.encode("utf-8") + b"\n")
                job.stdin.flush()
            except (OSError, ValueError) as e:
                raise PackerError(f"Failed to write Steam Guard code: {e}") from e

    def current_job_id(self) -> Optional[str]:
        with self.state.lock:
            return self.state.job.job_id

    def is_busy(self) -> bool:
        return self.current_job_id() is not None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Joins every thread started so far. Returns False if any is still alive after `timeout`."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._threads_lock:
                pending = [t for t in self._threads if t.is_alive()]
            if not pending:
                return True
            for thread in pending:
                remaining = None if deadline is None else max(deadline - time.monotonic(), 0)
                thread.join(remaining)
            if deadline is not None and time.monotonic() >= deadline:
                with self._threads_lock:
                    return not any(t.is_alive() for t in self._threads)

    # Plumbing ---------------------------------------------------------------

    def _emitter(self, job_id: str) -> Emitter:
        return Emitter(self.sink, job_id, echo=self.settings.debug)

    def _spawn_thread(self, target, args, name: str) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        with self._threads_lock:
            self._threads = [t for t in self._threads if t.is_alive()]
            self._threads.append(thread)
        thread.start()
        return thread

    def _spawn(self, args: List[str], cwd: Path) -> subprocess.Popen:
        try:
            return subprocess.Popen(
                [*self.command, *args],
                cwd=str(cwd),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                creationflags=CREATION_FLAGS,
            )
        except OSError as e:
            raise SpawnError(f"Failed to spawn DepotDownloader: {e}") from e

    def _abandon(self, job_id: str, staging_dir: Optional[Path]) -> None:
        if staging_dir is not None:
            cleanup_staging_dir(staging_dir)
        self.state.clear(job_id)

    def _auth_username(self, request: JobRequest, job_id: str) -> Optional[str]:
        with self.state.lock:
            if self.state.is_current(job_id) and self.state.job.auth_username:
                return self.state.job.auth_username
        return request.username.strip() or None

    def _restore_auth(self, username: Optional[str], target: Path, emitter: Emitter) -> None:
        try:
            restored = restore_auth_cache(self.settings.auth_root, username, target)
        except PackerError as e:
            emitter.log(f"Failed to restore auth cache: {e}")
            return
        if restored:
            emitter.log(f"Auth cache restored: {', '.join(restored)}")

    def _persist_auth(self, username: Optional[str], source: Path, emitter: Emitter) -> None:
        try:
            persisted = persist_auth_cache(self.settings.auth_root, username, source)
        except PackerError as e:
            emitter.log(f"Failed to persist auth cache: {e}")
            return
        if persisted:
            emitter.log(f"Auth cache saved: {', '.join(persisted)}")

    def _start_reader(self, name: str, stream: IO[bytes], on_line, job_id: str) -> threading.Thread:
        reader = threading.Thread(
            target=read_lines, args=(stream, on_line), name=f"dd-{name}-{job_id}", daemon=True
        )
        reader.start()
        return reader

    # Worker -----------------------------------------------------------------

    def _run_worker(self, request: JobRequest, job_id: str, emitter: Emitter) -> None:
        staging_dir: Optional[Path] = None
        try:
            staging_dir = create_staging_dir(self.settings.staging_root, job_id)
        except PackerError as e:
            emitter.log(f"Failed to create staging directory: {e}")
            emitter.status(JobStatus.ERROR)
            self._abandon(job_id, None)
            return

        emitter.log(f"Job ID: {job_id}")
        emitter.log(f"Staging directory: {staging_dir}")

        with self.state.lock:
            if self.state.is_current(job_id):
                self.state.job.auth_username = request.username.strip() or None

        self._restore_auth(self._auth_username(request, job_id), staging_dir, emitter)

        try:
            self._run_preflight(request, job_id, staging_dir, emitter)
        except PackerError as e:
            emitter.log(f"Preflight failed: {e}")
            emitter.status(JobStatus.ERROR)
            self._abandon(job_id, staging_dir)
            return

        with self.state.lock:
            cancelled = not self.state.is_current(job_id)
        if cancelled:
            cleanup_staging_dir(staging_dir)
            return

        # The preflight may have refreshed the cached session files.
        self._restore_auth(self._auth_username(request, job_id), staging_dir, emitter)

        args = build_depot_args(request)
        emitter.log("Starting DepotDownloader...")
        emitter.log(f"DepotDownloader args: {' '.join(redact_args(args))}")

        try:
            child = self._spawn(args, staging_dir)
        except SpawnError as e:
            emitter.log(str(e))
            emitter.status(JobStatus.ERROR)
            self._abandon(job_id, staging_dir)
            return

        with self.state.lock:
            if not self.state.is_current(job_id):
                child.kill()
                child.wait()
                cancelled = True
            else:
                job = self.state.job
                job.child = child
                job.stdin = child.stdin
                accumulator = job.metadata
        if cancelled:
            cleanup_staging_dir(staging_dir)
            return

        emitter.status(JobStatus.RUNNING)

        readers = []
        for name, stream in (("stdout", child.stdout), ("stderr", child.stderr)):
            extractor = MetadataExtractor(accumulator, lock=self.state.lock, label=name)
            readers.append(self._start_reader(
                name, stream, self._download_line_handler(name, extractor, job_id, emitter), job_id
            ))
        with self.state.lock:
            if self.state.is_current(job_id):
                self.state.job.reader_threads = readers

        self._spawn_thread(self._watch, (request, job_id, staging_dir, emitter), f"dd-watch-{job_id}")

    def _download_line_handler(self, stream: str, extractor: MetadataExtractor, job_id: str,
                               emitter: Emitter):
        def on_line(line: str) -> None:
            emitter.log(line, stream)
            username = username_from_output(line)
            if username:
                with self.state.lock:
                    if self.state.is_current(job_id):
                        self.state.job.auth_username = username
            extractor.feed(line)
        return on_line

    # Preflight --------------------------------------------------------------

    def _run_preflight(self, request: JobRequest, job_id: str, staging_dir: Path,
                       emitter: Emitter) -> None:
        """
        Runs the tool with -manifest-only to learn depot names and the build date
        before the real download. Problems other than failing to start the tool
        are logged and the job carries on without the extra metadata.
        """
        if request.qr_enabled:
            # A QR login has to be scanned for every run; only the download run gets one.
            return

        preflight_dir = preflight_dir_for(staging_dir)
        try:
            preflight_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            emitter.log(f"Preflight skipped: {e}")
            return

        username = request.username.strip() or None
        self._restore_auth(username, preflight_dir, emitter)

        emitter.log("Running preflight to resolve depot metadata...")
        child = self._spawn(build_preflight_args(request), preflight_dir)

        with self.state.lock:
            if not self.state.is_current(job_id):
                child.kill()
                child.wait()
                shutil.rmtree(preflight_dir, ignore_errors=True)
                return
            self.state.job.child = child
            self.state.job.stdin = child.stdin

        lines: List[str] = []
        lines_lock = threading.Lock()

        def collector(stream: str):
            def on_line(line: str) -> None:
                with lines_lock:
                    lines.append(line)
                emitter.log(line, stream)
            return on_line

        readers = [
            self._start_reader("preflight-stdout", child.stdout, collector("stdout"), job_id),
            self._start_reader("preflight-stderr", child.stderr, collector("stderr"), job_id),
        ]

        while True:
            with self.state.lock:
                job = self.state.job
                if not self.state.is_current(job_id) or job.child is not child:
                    shutil.rmtree(preflight_dir, ignore_errors=True)
                    return
                exit_code = child.poll()
                if exit_code is not None:
                    job.child = None
                    job.stdin = None
                    break
            time.sleep(self.settings.poll_interval)

        for reader in readers:
            reader.join()

        with lines_lock:
            captured = list(lines)
        result = MetadataExtractor(label="preflight").feed_all(captured).finish()

        if exit_code != 0 and not result.depots:
            emitter.log(f"Preflight failed with exit code {exit_code}. Continuing without preflight.")
            shutil.rmtree(preflight_dir, ignore_errors=True)
            return

        with self.state.lock:
            if self.state.is_current(job_id):
                observed = self.state.job.metadata
                observed.depot_names.update(result.depot_names)
                if result.build_datetime_utc is not None and not observed.build_timestamp.is_set:
                    observed.build_timestamp.offer(
                        result.build_datetime_utc, max(result.build_timestamp_priority, 1)
                    )
        emitter.log(f"Preflight found {len(result.depots)} depot(s).")

        self._persist_auth(username, preflight_dir, emitter)
        shutil.rmtree(preflight_dir, ignore_errors=True)

    # Watcher ----------------------------------------------------------------

    def _watch(self, request: JobRequest, job_id: str, staging_dir: Path, emitter: Emitter) -> None:
        while True:
            with self.state.lock:
                job = self.state.job
                if not self.state.is_current(job_id) or job.child is None:
                    # Cancelled; cancel() already reported and cleaned up.
                    return
                exit_code = job.child.poll()
                if exit_code is not None:
                    job.child = None
                    job.stdin = None
                    readers = list(job.reader_threads)
                    break
            time.sleep(self.settings.poll_interval)

        if exit_code == 0:
            emitter.log("Waiting for log processing to complete...")
        for reader in readers:
            reader.join()

        self._persist_auth(self._auth_username(request, job_id), staging_dir, emitter)

        if exit_code != 0:
            emitter.status(JobStatus.EXITED, exit_code)
            emitter.log("Job failed. Cleaning up staging directory.")
            self._abandon(job_id, staging_dir)
            return

        try:
            self._complete(request, job_id, staging_dir, emitter)
        finally:
            self._abandon(job_id, staging_dir)

    def _complete(self, request: JobRequest, job_id: str, staging_dir: Path, emitter: Emitter) -> None:
        emitter.log("Deriving metadata from download output...")
        with self.state.lock:
            observed = copy.deepcopy(self.state.job.metadata)
        try:
            metadata = derive_job_metadata(request, job_id, staging_dir, observed, self.lookups)
            metadata.write_to_dir(staging_dir)
        except (PackerError, OSError, ValueError) as e:
            emitter.log(f"Failed to derive metadata: {e}")
            emitter.status(JobStatus.ERROR)
            return
        emitter.log("Metadata derived from download output")

        emitter.log("Download completed successfully. Finalizing output...")
        emitter.status(JobStatus.FINALIZING)
        compression_enabled = not request.skip_compression
        try:
            output_path = finalize_job(
                staging_dir,
                self.settings.outputs_dir,
                job_id,
                compression_enabled,
                self.conflicts,
                lambda _job_id, path: emitter.conflict(path),
                show_progress=self.settings.debug or None,
            )
        except ConflictCancelled as e:
            emitter.log(f"Finalization cancelled by user: {e}")
            emitter.status(JobStatus.FINALIZATION_FAILED)
            return
        except (PackerError, OSError) as e:
            emitter.log(f"Finalization failed: {e}")
            emitter.status(JobStatus.FINALIZATION_FAILED)
            return
        emitter.log(f"Finalization complete. Output: {output_path}")

        if not compression_enabled:
            emitter.log("Compression skipped (disabled in settings).")
        else:
            emitter.status(JobStatus.COMPRESSING)
            emitter.log("Starting compression with 7-Zip...")
            try:
                archive_path = compress_output(
                    output_path,
                    self.settings.sevenzip_path,
                    log=emitter.log,
                    on_progress=emitter.progress,
                    password=request.effective_compression_password,
                    poll_interval=self.settings.poll_interval,
                )
                emitter.log(f"Compression complete: {archive_path}")
            except PackerError as e:
                emitter.log(f"Compression failed: {e}. Uncompressed output available.")

        emitter.status(JobStatus.COMPLETED, 0)
        emitter.log("Job completed.")

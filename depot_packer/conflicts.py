"""
Hand-off between a finalizing job and whoever answers the "output already
exists" question.

The finalizer registers a single-use channel for its job id and blocks on it;
the operator side looks the channel up by job id and delivers exactly one
choice.
"""

import queue
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

from .errors import ConflictPending, PackerError
from .models import OutputConflictChoice


class ConflictResolver:
    """Process-wide registry of pending conflict prompts, keyed by job id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Dict[str, "queue.Queue[OutputConflictChoice]"] = {}

    def pending_jobs(self):
        with self._lock:
            return sorted(self._pending)

    def is_pending(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._pending

    def request(
        self,
        job_id: str,
        output_path: Path,
        notify: Callable[[str, Path], None],
        timeout: Optional[float] = None,
    ) -> OutputConflictChoice:
        """
        Registers a prompt for `job_id`, tells the operator side via `notify`, and
        blocks until one choice arrives.
        """
        channel: "queue.Queue[OutputConflictChoice]" = queue.Queue(maxsize=1)
        with self._lock:
            if job_id in self._pending:
                raise ConflictPending(f"Output conflict resolution already pending for job {job_id}")
            self._pending[job_id] = channel

        try:
            notify(job_id, output_path)
        except Exception as e:
            self._discard(job_id)
            raise PackerError(f"Failed to emit output conflict prompt: {e}") from e

        try:
            return channel.get(timeout=timeout)
        except queue.Empty:
            self._discard(job_id)
            raise PackerError("Output conflict resolution timed out") from None

    def resolve(self, job_id: str, choice: OutputConflictChoice) -> None:
        """Delivers the operator's answer; fails if nothing is waiting for it."""
        with self._lock:
            channel = self._pending.pop(job_id, None)
        if channel is None:
            raise PackerError(f"No pending output conflict for job {job_id}")
        channel.put_nowait(OutputConflictChoice(choice))

    def _discard(self, job_id: str) -> None:
        with self._lock:
            self._pending.pop(job_id, None)

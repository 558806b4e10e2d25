import subprocess
import threading
from dataclasses import dataclass, field
from typing import IO, List, Optional

from .extractor import MetadataAccumulator


@dataclass
class JobState:
    """
    The single mutable record for the running job. Shared by the worker thread,
    both stream readers and the exit watcher; every access goes through
    RunnerState.lock.
    """
    job_id: Optional[str] = None
    child: Optional[subprocess.Popen] = None
    stdin: Optional[IO[bytes]] = None
    auth_username: Optional[str] = None
    metadata: MetadataAccumulator = field(default_factory=MetadataAccumulator)
    reader_threads: List[threading.Thread] = field(default_factory=list)


class RunnerState:
    """Owns the lock and the current JobState for the process."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.job = JobState()

    def is_current(self, job_id: str) -> bool:
        """Caller must hold the lock."""
        return self.job.job_id == job_id

    def reset(self, job_id: Optional[str] = None) -> None:
        """
        Replaces the job record with an empty one. Caller must hold the lock.
        Readers still holding the old accumulator keep writing into it harmlessly.
        """
        self.job = JobState(job_id=job_id)

    def clear(self, job_id: str) -> bool:
        """Drops the job record if it still belongs to `job_id`."""
        with self.lock:
            if self.job.job_id != job_id:
                return False
            self.reset()
            return True

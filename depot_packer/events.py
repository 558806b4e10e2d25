"""
Status and log feeds published by a job.

Consumers subscribe by passing an EventSink to the runner. Sinks must return
quickly; the runner never waits on a consumer.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from .models import JobStatus

LOGGER = logging.getLogger(__name__)

SYSTEM_STREAM = "system"


@dataclass(frozen=True)
class StatusEvent:
    status: JobStatus
    code: Optional[int]
    job_id: str


@dataclass(frozen=True)
class LogEvent:
    stream: str
    line: str
    job_id: str


@dataclass(frozen=True)
class ConflictEvent:
    job_id: str
    output_path: Path

    @property
    def output_name(self) -> str:
        return self.output_path.name or "output"


@dataclass(frozen=True)
class ProgressEvent:
    percent: int
    job_id: str


class EventSink:
    """Base sink: every feed is forwarded to the module logger."""

    def status(self, event: StatusEvent) -> None:
        LOGGER.info("[%s] status=%s code=%s", event.job_id, event.status.value, event.code)

    def log(self, event: LogEvent) -> None:
        LOGGER.debug("[%s] [%s] %s", event.job_id, event.stream, event.line)

    def conflict(self, event: ConflictEvent) -> None:
        LOGGER.info("[%s] output already exists: %s", event.job_id, event.output_path)

    def progress(self, event: ProgressEvent) -> None:
        LOGGER.debug("[%s] compression %d%%", event.job_id, event.percent)


class RecordingSink(EventSink):
    """Keeps every event in memory; handy for tests and post-mortem logs."""

    def __init__(self, on_status: Optional[Callable[[StatusEvent], None]] = None):
        self._lock = threading.Lock()
        self.statuses: List[StatusEvent] = []
        self.logs: List[LogEvent] = []
        self.conflicts: List[ConflictEvent] = []
        self.progress_events: List[ProgressEvent] = []
        self._on_status = on_status

    def status(self, event: StatusEvent) -> None:
        with self._lock:
            self.statuses.append(event)
        if self._on_status:
            self._on_status(event)

    def log(self, event: LogEvent) -> None:
        with self._lock:
            self.logs.append(event)

    def conflict(self, event: ConflictEvent) -> None:
        with self._lock:
            self.conflicts.append(event)

    def progress(self, event: ProgressEvent) -> None:
        with self._lock:
            self.progress_events.append(event)

    def lines(self, stream: Optional[str] = None) -> List[str]:
        with self._lock:
            return [e.line for e in self.logs if stream is None or e.stream == stream]


class Emitter:
    """Binds a sink to a job id so callers only pass what changes."""

    def __init__(self, sink: EventSink, job_id: str, echo: bool = False):
        self.sink = sink
        self.job_id = job_id
        self.echo = echo

    def _deliver(self, method: Callable, event) -> None:
        try:
            method(event)
        except Exception:
            # Sink errors are logged and dropped.
            LOGGER.exception("Event sink raised while handling %r", event)

    def status(self, status: JobStatus, code: Optional[int] = None) -> None:
        self._deliver(self.sink.status, StatusEvent(status, code, self.job_id))

    def log(self, line: str, stream: str = SYSTEM_STREAM) -> None:
        if self.echo:
            print(f"[{stream}] {line}")
        self._deliver(self.sink.log, LogEvent(stream, line, self.job_id))

    def conflict(self, output_path: Path) -> None:
        self._deliver(self.sink.conflict, ConflictEvent(self.job_id, output_path))

    def progress(self, percent: int) -> None:
        self._deliver(self.sink.progress, ProgressEvent(percent, self.job_id))

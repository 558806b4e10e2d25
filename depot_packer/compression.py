"""
Optional 7-Zip step after finalization. Thread count and dictionary size are
tuned to the machine so compressing a large build does not starve the system.
"""

import logging
import os
import re
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import psutil

from .errors import PackerError, SpawnError
from .finalizer import resolve_archive_path
from .streams import read_lines

LOGGER = logging.getLogger(__name__)

MB = 1024 * 1024
GB = 1024 * MB

DICT_SIZES = (
    (8 * MB, "8m"),
    (16 * MB, "16m"),
    (32 * MB, "32m"),
    (64 * MB, "64m"),
    (128 * MB, "128m"),
    (256 * MB, "256m"),
)

PERCENT_RE = re.compile(r"(\d{1,3})%\s*$")
CPU_SAMPLE_SECONDS = 0.2


@dataclass(frozen=True)
class SystemResources:
    cpu_cores: int
    cpu_percent: float
    total_memory: int
    available_memory: int


@dataclass(frozen=True)
class CompressionPlan:
    threads: int
    dictionary: str


def read_system_resources() -> SystemResources:
    memory = psutil.virtual_memory()
    return SystemResources(
        cpu_cores=os.cpu_count() or 1,
        cpu_percent=psutil.cpu_percent(interval=CPU_SAMPLE_SECONDS),
        total_memory=memory.total,
        available_memory=memory.available,
    )


def _threads_for_cores(cores: int) -> int:
    if cores <= 2:
        return 1
    if cores <= 4:
        return 2
    if cores <= 8:
        return 4
    if cores <= 16:
        return 8
    return 12


def plan_compression(resources: SystemResources) -> CompressionPlan:
    """Picks -mmt and -md values from core count, current CPU load and memory pressure."""
    threads = _threads_for_cores(resources.cpu_cores)

    if resources.cpu_percent >= 80.0:
        threads = max(threads // 2, 1)
    elif resources.cpu_percent >= 60.0:
        threads = max((threads * 2) // 3, 1)

    total = resources.total_memory
    available = resources.available_memory
    used_ratio = (total - available) / total if total > 0 else 0.0

    high_pressure = used_ratio >= 0.80 or available < 3 * GB
    medium_pressure = not high_pressure and (used_ratio >= 0.60 or available < 6 * GB)

    reserved = max(512 * MB, total // 5)
    if high_pressure:
        reserved = max(reserved, available // 2)
        threads = min(threads, 2)
        min_per_thread = 1 * GB
    elif medium_pressure:
        reserved = max(reserved, available // 3)
        threads = min(threads, 4)
        min_per_thread = 768 * MB
    else:
        reserved = max(reserved, available // 4)
        min_per_thread = 512 * MB
    usable = max(available - reserved, 0)

    memory_cap = usable // min_per_thread if usable >= min_per_thread else 1
    threads = max(min(threads, max(memory_cap, 1)), 1)

    while True:
        max_dict = (usable // threads) // 3 if usable else 0
        fitting = [label for size, label in DICT_SIZES if size <= max_dict]
        if fitting:
            return CompressionPlan(threads, fitting[-1])
        if threads <= 1:
            return CompressionPlan(1, DICT_SIZES[0][1])
        threads -= 1


def build_7z_args(source_dir: Path, archive_path: Path, plan: CompressionPlan,
                  password: Optional[str] = None) -> List[str]:
    args = ["a", "-t7z", "-mx9", f"-mmt{plan.threads}", f"-md={plan.dictionary}", "-bsp1"]
    if password:
        args.append(f"-p{password}")
    args += [str(archive_path), str(source_dir)]
    return args


def redact_7z_args(args: Sequence[str]) -> List[str]:
    return ["-p********" if arg.startswith("-p") else arg for arg in args]


def extract_percent(line: str) -> Optional[int]:
    """The percentage from a 7-Zip progress line (`  42% 13 + file`), if the line ends in one."""
    match = PERCENT_RE.search(line.strip())
    if not match:
        return None
    value = int(match.group(1))
    return value if value <= 100 else None


def run_7z_blocking(
    sevenzip_path: str,
    args: Sequence[str],
    on_line: Callable[[str, str], None],
    poll_interval: float = 0.1,
) -> int:
    """Runs 7-Zip to completion, forwarding (stream, line) pairs, and returns its exit code."""
    try:
        process = subprocess.Popen(
            [sevenzip_path, *args],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise SpawnError(f"Failed to spawn 7-Zip: {e}") from e

    readers = []
    for name, stream in (("stdout", process.stdout), ("stderr", process.stderr)):
        reader = threading.Thread(
            target=read_lines,
            args=(stream, lambda line, name=name: on_line(name, line)),
            name=f"7z-{name}",
            daemon=True,
        )
        reader.start()
        readers.append(reader)

    while process.poll() is None:
        time.sleep(poll_interval)
    for reader in readers:
        reader.join()
    return process.returncode


def compress_output(
    output_path: Path,
    sevenzip_path: str,
    log: Callable[[str], None],
    on_progress: Optional[Callable[[int], None]] = None,
    password: Optional[str] = None,
    poll_interval: float = 0.1,
    resources: Optional[SystemResources] = None,
) -> Path:
    """
    Compresses `output_path` into its `.7z` sibling. On success the folder is
    removed and the archive path returned; on failure the partial archive is
    deleted and the folder is left alone.
    """
    archive_path = resolve_archive_path(output_path)
    if archive_path.exists():
        raise PackerError(f"Archive already exists: {archive_path}")

    plan = plan_compression(resources or read_system_resources())
    args = build_7z_args(output_path, archive_path, plan, password)
    log(f"7-Zip command: {Path(sevenzip_path).name} {' '.join(redact_7z_args(args))}")

    def forward(stream: str, line: str) -> None:
        percent = extract_percent(line)
        if percent is not None and on_progress is not None:
            on_progress(percent)
            return
        if line.strip():
            log(line)

    try:
        exit_code = run_7z_blocking(sevenzip_path, args, forward, poll_interval)
    except PackerError:
        archive_path.unlink(missing_ok=True)
        raise

    if exit_code != 0:
        archive_path.unlink(missing_ok=True)
        raise PackerError(f"7-Zip exited with code {exit_code}")
    if not archive_path.exists():
        raise PackerError("Archive not found after compression")

    log("Removing uncompressed folder...")
    try:
        shutil.rmtree(output_path)
        log("Uncompressed folder removed.")
    except OSError as e:
        log(f"Warning: Failed to remove folder: {e}. Archive still created successfully.")
    return archive_path

"""Command-line arguments for DepotDownloader, built from a JobRequest."""

from typing import Dict, List, Sequence, Tuple

from .models import AuthMode, JobRequest

DEFAULT_PLATFORM: Tuple[str, str] = ("windows", "64")
DEFAULT_PLATFORM_LABEL = "Win64"

# Operator-facing selector -> (-os, -osarch). Anything else maps to DEFAULT_PLATFORM.
OS_SELECTIONS: Dict[str, Tuple[str, str]] = {
    "Windows x64": ("windows", "64"),
    "Windows x86": ("windows", "32"),
    "Linux": ("linux", "64"),
    "macOS x64": ("macos", "64"),
    "macOS arm64": ("macos", "arm64"),
    "macOS": ("macos", "64"),
}

PLATFORM_LABELS: Dict[str, str] = {
    "Windows x64": "Win64",
    "Windows x86": "Win32",
    "Linux": "Linux64",
    "macOS x64": "MacOS64",
    "macOS arm64": "MacOSArm64",
    "macOS": "MacOS64",
}

UNKNOWN_APP_ID = "unknown"
MANIFEST_ONLY_FLAG = "-manifest-only"
PASSWORD_MASK = "********"


def map_os_selection(os_selection: str) -> Tuple[str, str]:
    return OS_SELECTIONS.get(os_selection, DEFAULT_PLATFORM)


def platform_label(os_selection: str) -> str:
    """Platform label used in output folder names."""
    return PLATFORM_LABELS.get(os_selection, DEFAULT_PLATFORM_LABEL)


def build_depot_args(request: JobRequest) -> List[str]:
    """Arguments for the real download run."""
    args: List[str] = []

    if request.app_id and request.app_id != UNKNOWN_APP_ID:
        args += ["-app", request.app_id]

    if request.branch:
        args += ["-branch", request.branch]

    os_name, arch = map_os_selection(request.os)
    args += ["-os", os_name, "-osarch", arch]

    mode = request.auth_mode
    if mode is AuthMode.QR:
        args.append("-qr")
    elif mode is AuthMode.PASSWORD:
        args += ["-username", request.username]
        if request.password:
            args += ["-password", request.password]
        # The tool keeps its own session files so later runs can skip the password.
        args.append("-remember-password")

    return args


def build_preflight_args(request: JobRequest) -> List[str]:
    """Arguments for the metadata-only discovery run."""
    return build_depot_args(request) + [MANIFEST_ONLY_FLAG]


def redact_args(args: Sequence[str]) -> List[str]:
    """Copy of `args` safe to print: the value after -password is masked."""
    redacted: List[str] = []
    mask_next = False
    for arg in args:
        if mask_next:
            redacted.append(PASSWORD_MASK)
            mask_next = False
            continue
        redacted.append(arg)
        if arg == "-password":
            mask_next = True
    return redacted

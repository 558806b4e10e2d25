"""
Turns a child process's raw output pipe into decoded text lines.

DepotDownloader asks for a Steam Guard code without a trailing newline, so a
partial line that carries the prompt is emitted as soon as it shows up instead of
waiting for the rest of the line.
"""

import logging
import os
from typing import BinaryIO, Callable, List, Sequence

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 1024
STEAM_GUARD_EMAIL_PROMPT = b"STEAM GUARD! Please enter the auth code sent to the email at"
LEGACY_CODE_PAGES = (437, 850, 1252)


class ConsoleDecoder:
    """Decodes console bytes with the first usable codec from an ordered list."""

    def __init__(self, encodings: Sequence[str]):
        self.encodings: List[str] = list(encodings)

    def decode(self, data: bytes) -> str:
        for encoding in self.encodings:
            try:
                return data.decode(encoding, errors="replace")
            except LookupError:
                continue
        return data.decode("utf-8", errors="replace")


def _windows_code_pages() -> List[int]:
    """Active console output code page, then the OEM code page, then legacy fallbacks."""
    import ctypes

    candidates: List[int] = []
    try:
        kernel32 = ctypes.windll.kernel32
        for lookup in (kernel32.GetConsoleOutputCP, kernel32.GetOEMCP):
            code_page = int(lookup())
            if code_page and code_page not in candidates:
                candidates.append(code_page)
    except (AttributeError, OSError) as e:
        LOGGER.debug("Could not query console code pages: %s", e)

    for code_page in LEGACY_CODE_PAGES:
        if code_page not in candidates:
            candidates.append(code_page)
    return candidates


def select_decoder() -> ConsoleDecoder:
    if os.name == "nt":
        return ConsoleDecoder([f"cp{cp}" for cp in _windows_code_pages()])
    return ConsoleDecoder(["utf-8"])


# Chosen once per process; the console encoding does not change under us.
DECODER = select_decoder()


def _finish_line(raw: bytes, decoder: ConsoleDecoder) -> str:
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    return decoder.decode(raw)


def read_lines(
    stream: BinaryIO,
    on_line: Callable[[str], None],
    decoder: ConsoleDecoder = DECODER,
    prompt_marker: bytes = STEAM_GUARD_EMAIL_PROMPT,
) -> None:
    """
    Reads `stream` until EOF or a read error, calling `on_line` for every decoded
    line. Returns once the stream is exhausted; whatever is left in the buffer is
    flushed as a final line.
    """
    read = getattr(stream, "read1", None) or stream.read
    pending = bytearray()
    prompt_emitted = False

    while True:
        try:
            chunk = read(CHUNK_SIZE)
        except (OSError, ValueError) as e:
            LOGGER.debug("Stream read stopped: %s", e)
            break
        if not chunk:
            break

        pending.extend(chunk)

        while True:
            newline = pending.find(b"\n")
            if newline < 0:
                break
            raw = bytes(pending[:newline])
            del pending[:newline + 1]
            on_line(_finish_line(raw, decoder))

        if not prompt_emitted and prompt_marker and prompt_marker in pending:
            raw = bytes(pending)
            pending.clear()
            on_line(_finish_line(raw, decoder))
            prompt_emitted = True

    if pending:
        on_line(_finish_line(bytes(pending), decoder))

import io

from depot_packer.streams import STEAM_GUARD_EMAIL_PROMPT, ConsoleDecoder, read_lines


class ChunkedStream:
    """Hands out its data a few bytes at a time, like a pipe under load."""

    def __init__(self, data: bytes, size: int):
        self.data = data
        self.size = size

    def read(self, n: int) -> bytes:
        chunk, self.data = self.data[:self.size], self.data[self.size:]
        return chunk


class FailingStream:
    def __init__(self, first: bytes):
        self.first = first

    def read(self, n: int) -> bytes:
        if self.first is not None:
            chunk, self.first = self.first, None
            return chunk
        raise OSError("pipe closed")


def collect(stream, **kwargs):
    lines = []
    read_lines(stream, lines.append, **kwargs)
    return lines


def test_splits_lines_and_strips_carriage_returns():
    assert collect(io.BytesIO(b"one\r\ntwo\nthree")) == ["one", "two", "three"]


def test_small_chunks_join_into_whole_lines():
    data = b"Depot 10 - Manifest 20\nDownloading depot 10\n"
    assert collect(ChunkedStream(data, 3)) == ["Depot 10 - Manifest 20", "Downloading depot 10"]


def test_steam_guard_prompt_is_emitted_without_newline():
    prompt = STEAM_GUARD_EMAIL_PROMPT + b" a***@example.com: "
    seen = []

    class PromptThenWait:
        def __init__(self):
            self.chunks = [b"Logging in\n", prompt]

        def read(self, n):
            if self.chunks:
                return self.chunks.pop(0)
            # By now the prompt must already have been delivered.
            seen.extend(lines)
            return b""

    lines = []
    read_lines(PromptThenWait(), lines.append)
    assert seen == ["Logging in", prompt.decode()]
    assert lines == seen


def test_prompt_is_only_emitted_once():
    data = STEAM_GUARD_EMAIL_PROMPT + b" x: "
    lines = collect(ChunkedStream(data + b"\n" + data, len(data)))
    assert lines[0] == data.decode()
    assert len(lines) == 3
    assert lines[1] == ""


def test_read_error_flushes_pending_text():
    assert collect(FailingStream(b"done\npartial")) == ["done", "partial"]


def test_decoder_skips_unknown_encodings():
    decoder = ConsoleDecoder(["no-such-codec", "cp437"])
    assert decoder.decode("é".encode("cp437")) == "é"


def test_invalid_bytes_are_replaced():
    lines = collect(io.BytesIO(b"bad \xff byte\n"), decoder=ConsoleDecoder(["utf-8"]))
    assert lines == ["bad \ufffd byte"]

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Optional
import codecs
import logging
import time

from .errors import ConfigurationError, DecodeError, ReadError
from .linebuffer import LineBuffer
from .sources.file_handle import FileHandle

logger = logging.getLogger(__name__)

MiB = 1 << 20
DEFAULT_CHUNK_SIZE = 1 * MiB
DECODE_POLICIES = ("replace", "strict")


# -------------------------
# Model
# -------------------------
@dataclass(frozen=True)
class Progress:
    bytes_read: int
    total_bytes: int
    started_at: float
    updated_at: float

    @property
    def fraction(self) -> float:
        if self.total_bytes <= 0:
            return 1.0
        return self.bytes_read / self.total_bytes

    def to_dict(self) -> Dict:
        return asdict(self)


def resolve_chunk_size(chunk_size: Optional[int]) -> int:
    """None or 0 means the default; anything else must be a positive byte count."""
    if not chunk_size:
        return DEFAULT_CHUNK_SIZE
    if chunk_size < 0:
        raise ConfigurationError(f"chunk_size must be a positive byte count, got {chunk_size}")
    return int(chunk_size)


def check_decode_policy(errors: str) -> str:
    if errors not in DECODE_POLICIES:
        raise ConfigurationError(
            f"decode_errors must be one of {', '.join(DECODE_POLICIES)}, got {errors!r}"
        )
    return errors


def new_decoder(errors: str = "replace") -> codecs.IncrementalDecoder:
    check_decode_policy(errors)
    return codecs.getincrementaldecoder("utf-8")(errors=errors)


# -------------------------
# Reader
# -------------------------
class ChunkedReader:
    """
    Reads a byte range of a FileHandle in fixed-size chunks, one at a time.

    Each chunk is decoded and pushed through a LineBuffer before the next
    slice is requested, so every line of chunk N is delivered before
    anything belonging to chunk N+1. Progress is reported once per chunk.
    """

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        *,
        decode_errors: str = "replace",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.chunk_size = resolve_chunk_size(chunk_size)
        self.decode_errors = check_decode_policy(decode_errors)
        self.clock = clock
        # end of the last slice handed to the decoder by the current pass
        self.position = 0

    def read(
        self,
        handle: FileHandle,
        range_start: int = 0,
        range_end: Optional[int] = None,
        *,
        on_line: Optional[Callable[[str], None]] = None,
        on_chunk: Optional[Callable[[int, int, float], None]] = None,
        on_done: Optional[Callable[[str], None]] = None,
        seed: str = "",
        decoder: Optional[codecs.IncrementalDecoder] = None,
        final: bool = True,
        buffer: Optional[LineBuffer] = None,
    ) -> str:
        """
        Run one pass over [range_start, range_end) and return the final pending segment.

        `range_end=None` reads up to the handle's size as sampled when the
        pass starts. `seed` is text carried over from an earlier pass and
        `decoder` an incremental decoder to continue with; with `final=False`
        an incomplete trailing character stays inside the decoder instead of
        being flushed. A caller that needs to know what is still pending when
        the pass fails passes its own `buffer` instead of `on_line`/`on_done`/`seed`.
        """
        if range_start < 0:
            raise ConfigurationError(f"range_start must not be negative, got {range_start}")
        if range_end is None:
            range_end = handle.size
        if range_end < range_start:
            raise ConfigurationError(
                f"range_end ({range_end}) must not be before range_start ({range_start})"
            )
        if decoder is None:
            decoder = new_decoder(self.decode_errors)

        buf = buffer
        if buf is None:
            if on_line is None:
                raise ConfigurationError("read() needs either on_line or a LineBuffer")
            buf = LineBuffer(on_line, on_done, seed=seed)

        total = range_end - range_start
        logger.debug("Reading %s bytes [%s, %s) in chunks of %s", total, range_start, range_end, self.chunk_size)

        offset = range_start
        self.position = offset
        while offset < range_end:
            end = min(offset + self.chunk_size, range_end)
            data = self._slice(handle, offset, end)
            self.position = offset + len(data)
            buf.push(self._decode(decoder, data, offset, final=False))
            offset += len(data)
            if on_chunk is not None:
                on_chunk(offset - range_start, total, self.clock())

        if final:
            buf.push(self._decode(decoder, b"", offset, final=True))
        return buf.done()

    def align(self, handle: FileHandle, offset: int, limit: int) -> int:
        """
        Move `offset` past UTF-8 continuation bytes so a pass that starts
        mid-file begins on a character boundary. At most 3 bytes are skipped.
        """
        if offset <= 0 or offset >= limit:
            return offset
        head = self._slice(handle, offset, min(offset + 3, limit))
        skip = 0
        for b in head:
            if b & 0xC0 != 0x80:
                break
            skip += 1
        return offset + skip

    def _slice(self, handle: FileHandle, start: int, end: int) -> bytes:
        try:
            data = handle.slice(start, end)
        except ReadError:
            raise
        except OSError as e:
            raise ReadError(f"Failed to read bytes [{start}, {end}): {e}", offset=start) from e
        if not data:
            raise ReadError(
                f"Unexpected end of data at byte {start} (expected up to {end}); "
                f"was the file truncated during the read?",
                offset=start,
            )
        return data[: end - start]

    def _decode(self, decoder: codecs.IncrementalDecoder, data: bytes, offset: int, *, final: bool) -> str:
        try:
            return decoder.decode(data, final=final)
        except UnicodeDecodeError as e:
            raise DecodeError(offset, e) from e


def read_lines(
    handle: FileHandle,
    range_start: int = 0,
    range_end: Optional[int] = None,
    chunk_size: Optional[int] = None,
    *,
    on_line: Callable[[str], None],
    on_chunk: Optional[Callable[[int, int, float], None]] = None,
    on_done: Optional[Callable[[str], None]] = None,
    decode_errors: str = "replace",
) -> str:
    return ChunkedReader(chunk_size, decode_errors=decode_errors).read(
        handle,
        range_start,
        range_end,
        on_line=on_line,
        on_chunk=on_chunk,
        on_done=on_done,
    )

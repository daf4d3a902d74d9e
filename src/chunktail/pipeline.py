from __future__ import annotations
from typing import Callable, Optional
import logging
import threading
import time

from .config import IngestOptions
from .errors import DecodeError
from .filters import LineFilter
from .linebuffer import LineBuffer
from .reader import ChunkedReader, Progress, new_decoder
from .sources.file_handle import FileHandle
from .watcher import ChangeWatcher, WatchStatus

logger = logging.getLogger(__name__)


class IngestSession:
    """
    One file being ingested: the initial (tail mode) pass, then delta passes
    driven by a ChangeWatcher until `stop()` or a shrink.

    In follow mode the incomplete last line of a pass is not emitted; it is
    carried into the next delta pass, and flushed through the filter when
    the session stops.
    """

    def __init__(self, pipeline: "IngestPipeline", handle: FileHandle, *, follow: bool = True) -> None:
        self.pipeline = pipeline
        self.handle = handle
        self.follow = follow
        self.options = pipeline.options
        self.reader = ChunkedReader(
            self.options.chunk_size,
            decode_errors=self.options.decode_errors,
            clock=pipeline.clock,
        )
        self.watcher = ChangeWatcher(
            handle,
            on_growth=self._read_delta,
            on_fatal=self._fatal,
            interval=self.options.poll_interval,
        )
        self.start_offset: Optional[int] = None
        self.pending = ""
        self.fatal_reason: Optional[str] = None
        self._decoder = new_decoder(self.options.decode_errors)
        self._initial_done = False
        self._flushed = False
        self._flush_lock = threading.Lock()
        self._watching = False

    # -------------------------
    # State
    # -------------------------
    @property
    def status(self) -> WatchStatus:
        return self.watcher.status

    @property
    def last_known_size(self) -> int:
        return self.watcher.last_known_size

    # -------------------------
    # Passes
    # -------------------------
    def initial_pass(self) -> int:
        """Read the last `max_initial_bytes` of the file; returns the end offset."""
        if self._initial_done:
            raise RuntimeError("initial pass already ran for this session")
        size = self.handle.size
        start = max(0, size - self.options.max_initial_bytes)
        # never start on a UTF-8 continuation byte
        self.start_offset = self.reader.align(self.handle, start, size)
        logger.info("Initial pass over %r: bytes [%s, %s)", self.handle, self.start_offset, size)
        self._run_pass(self.start_offset, size, final=not self.follow)
        self._initial_done = True
        return size

    def _read_delta(self, start: int, end: int) -> None:
        logger.debug("Delta pass over %r: bytes [%s, %s)", self.handle, start, end)
        try:
            self._run_pass(start, end, final=False)
        except DecodeError:
            # strict decoding: the decoder state is unusable from here on
            logger.error("Undecodable data in %r; stopping the watch", self.handle)
            self._flushed = True
            self.watcher.stop()
            raise
        except BaseException:
            # resume after the bytes already decoded, whatever the caller does next
            self.watcher.mark_consumed(self.reader.position)
            raise

    def _run_pass(self, start: int, end: int, *, final: bool) -> None:
        started_at = self.pipeline.clock()
        on_progress = self.pipeline.on_progress

        def on_chunk(bytes_read: int, total: int, now: float) -> None:
            if on_progress is not None:
                on_progress(Progress(bytes_read, total, started_at, now))

        buf = LineBuffer(self.pipeline.dispatch, self._pass_done if final else None, seed=self.pending)
        try:
            tail = self.reader.read(
                self.handle,
                start,
                end,
                on_chunk=on_chunk,
                decoder=self._decoder,
                final=final,
                buffer=buf,
            )
        except BaseException:
            # lines already dispatched must not come back on a later flush
            self.pending = buf.pending
            raise
        if final:
            self.pending = ""
            self._flushed = True
        else:
            self.pending = tail

    def _pass_done(self, tail: str) -> None:
        # "" just means the data ended with a terminator
        if tail:
            self.pipeline.dispatch(tail)

    def _fatal(self, reason: str) -> None:
        self.fatal_reason = reason
        # a shrink ends the session without flushing: nothing else may be emitted
        self._flushed = True
        if self.pipeline.on_fatal is not None:
            self.pipeline.on_fatal(reason)

    # -------------------------
    # Watching
    # -------------------------
    def start_watch(self, last_known_size: int) -> None:
        self.watcher.start(last_known_size)

    def poll(self) -> bool:
        return self.watcher.poll()

    def watch(self) -> WatchStatus:
        self._watching = True
        try:
            status = self.watcher.run()
        finally:
            self._watching = False
        if status is WatchStatus.IDLE:
            self._flush()
        return status

    def run(self) -> WatchStatus:
        """Initial pass, then (in follow mode) watch until stopped."""
        end = self.initial_pass()
        if not self.follow:
            return self.watcher.status
        self.start_watch(end)
        return self.watch()

    def stop(self) -> None:
        self.watcher.stop()
        # a running watch() loop flushes on its own way out
        if not self._watching and self.watcher.started and self.watcher.status is WatchStatus.IDLE:
            self._flush()

    def _flush(self) -> None:
        # stop() from another thread can race the end of watch()
        with self._flush_lock:
            if self._flushed:
                return
            self._flushed = True
        tail = self._decoder.decode(b"", final=True)
        self.pending += tail
        if self.pending:
            line, self.pending = self.pending, ""
            self.pipeline.dispatch(line)


class IngestPipeline:
    """
    Wires reader, filter and watcher together for one set of sinks.

    `on_line` only sees accepted lines, in file order. `on_progress` gets a
    Progress per chunk, with a fresh `started_at` for every pass. `on_fatal`
    fires once if a watched file shrinks.
    """

    def __init__(
        self,
        options: Optional[IngestOptions] = None,
        line_filter: Optional[LineFilter] = None,
        *,
        on_line: Callable[[str], None],
        on_progress: Optional[Callable[[Progress], None]] = None,
        on_fatal: Optional[Callable[[str], None]] = None,
        on_reject: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.options = options or IngestOptions()
        self.line_filter = line_filter or LineFilter()
        self.on_line = on_line
        self.on_progress = on_progress
        self.on_fatal = on_fatal
        self.on_reject = on_reject
        self.clock = clock

    def dispatch(self, line: str) -> None:
        if self.line_filter.accept(line):
            self.on_line(line)
        elif self.on_reject is not None:
            self.on_reject(line)

    def open(self, handle: FileHandle, *, follow: bool = True) -> IngestSession:
        return IngestSession(self, handle, follow=follow)

    def ingest(self, handle: FileHandle, *, follow: bool = True) -> IngestSession:
        """
        Ingest `handle` and, with `follow=True`, keep tailing it.

        Blocks until the session ends; to stop a following session from
        elsewhere, use `open()` and call `session.stop()`.
        """
        session = self.open(handle, follow=follow)
        session.run()
        return session

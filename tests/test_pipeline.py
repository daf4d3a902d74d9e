"""
Test cases for IngestPipeline / IngestSession.

Tests cover:
- Tail mode start offset and the max_initial_bytes cap
- Filtering between reader and sink
- Growth tailing without re-emitting old lines
- Lines appended while the initial pass runs
- Partial lines carried across passes and flushed on stop
- Shrink: exactly one fatal, nothing afterwards
- Fresh progress start per pass
- Failed and interrupted delta passes: no repeated or stale lines
- Tail mode starting inside a multibyte character
- Concurrent stop() calls flushing once
"""
from __future__ import annotations
import itertools
import threading
import pytest
from chunktail.config import IngestOptions
from chunktail.errors import ConfigurationError, DecodeError, ReadError
from chunktail.filters import LineFilter
from chunktail.pipeline import IngestPipeline
from chunktail.sources.file_handle import LocalFile, MemoryFile
from chunktail.watcher import WatchStatus


ACCEPT_ALL = LineFilter(include=".", exclude=None)


class FlakyFile(MemoryFile):
    """Fails one slice starting at or after `fail_from`, then recovers."""

    def __init__(self, data=b"", fail_from=0):
        super().__init__(data)
        self.fail_from = fail_from
        self.failures = 0

    def slice(self, start, end):
        if start >= self.fail_from and not self.failures:
            self.failures += 1
            raise OSError("transient read failure")
        return super().slice(start, end)


def _pipeline(recorder, line_filter=ACCEPT_ALL, **options):
    options.setdefault("poll_interval", 0.01)
    ticks = itertools.count(1)
    return IngestPipeline(
        IngestOptions(**options),
        line_filter,
        on_line=recorder.on_line,
        on_progress=recorder.on_progress,
        on_fatal=recorder.on_fatal,
        clock=lambda: float(next(ticks)),
    )


class TestInitialPass:
    """Test the first pass over an existing file."""

    def test_small_file_read_in_full(self, recorder):
        session = _pipeline(recorder, chunk_size=4).ingest(MemoryFile("one\ntwo\nthree\n"), follow=False)
        assert recorder.lines == ["one", "two", "three"]
        assert session.start_offset == 0

    def test_tail_mode_starts_near_the_end(self, recorder):
        handle = MemoryFile("old line\nnew line\n")
        session = _pipeline(recorder, max_initial_bytes=9).ingest(handle, follow=False)
        assert session.start_offset == 9
        assert recorder.lines == ["new line"]

    def test_tail_mode_first_fragment_goes_through_filter(self, recorder):
        handle = MemoryFile("Connecting to instance server\nLOG FILE OPENING\n")
        _pipeline(recorder, LineFilter(), max_initial_bytes=30).ingest(handle, follow=False)
        # the cut-off first line no longer matches
        assert recorder.lines == ["LOG FILE OPENING"]

    def test_tail_mode_cut_inside_a_character(self, recorder):
        data = "€\nLOG FILE OPENING ok\n".encode("utf-8")
        handle = MemoryFile(data)
        session = _pipeline(recorder, max_initial_bytes=len(data) - 1, decode_errors="strict").ingest(
            handle, follow=False
        )
        assert session.start_offset == 3
        assert recorder.lines == ["LOG FILE OPENING ok"]

    def test_zero_max_initial_bytes_skips_history(self, recorder):
        session = _pipeline(recorder, max_initial_bytes=0).ingest(MemoryFile("a\nb\n"), follow=False)
        assert recorder.lines == []
        assert session.start_offset == 4

    def test_final_partial_line_emitted_in_scan_mode(self, recorder):
        _pipeline(recorder, chunk_size=2).ingest(MemoryFile("a\nbb\r\nccc"), follow=False)
        assert recorder.lines == ["a", "bb", "ccc"]

    def test_filter_applies(self, recorder, client_log_path):
        _pipeline(recorder, LineFilter(), chunk_size=64).ingest(LocalFile(client_log_path), follow=False)
        assert len(recorder.lines) == 4
        assert all("] #" not in line and "] @" not in line for line in recorder.lines)

    def test_progress_per_chunk(self, recorder):
        _pipeline(recorder, chunk_size=3).ingest(MemoryFile("abcdefgh\n"), follow=False)
        assert [p.bytes_read for p in recorder.progress] == [3, 6, 9]
        assert {p.total_bytes for p in recorder.progress} == {9}
        assert len({p.started_at for p in recorder.progress}) == 1
        assert recorder.progress[-1].fraction == 1.0

    def test_initial_pass_runs_once(self, recorder):
        session = _pipeline(recorder).open(MemoryFile("a\n"))
        session.initial_pass()
        with pytest.raises(RuntimeError):
            session.initial_pass()

    def test_negative_max_initial_bytes(self):
        with pytest.raises(ConfigurationError):
            IngestOptions(max_initial_bytes=-1)


class TestFollowing:
    """Test delta passes after the initial pass."""

    def test_growth_emits_only_new_lines(self, recorder):
        handle = MemoryFile("old 1\nold 2\n")
        session = _pipeline(recorder, chunk_size=4).open(handle)
        end = session.initial_pass()
        session.start_watch(end)
        assert recorder.lines == ["old 1", "old 2"]

        handle.append("new 1\nnew 2\n")
        assert session.poll()
        assert recorder.lines == ["old 1", "old 2", "new 1", "new 2"]

        assert not session.poll()
        assert recorder.lines == ["old 1", "old 2", "new 1", "new 2"]

    def test_bytes_appended_during_initial_pass_are_not_lost(self, recorder):
        handle = MemoryFile("first\n")
        appended = []

        def on_line(line):
            recorder.on_line(line)
            if not appended:
                appended.append(True)
                handle.append("written meanwhile\n")

        pipeline = _pipeline(recorder)
        pipeline.on_line = on_line
        session = pipeline.open(handle)
        session.start_watch(session.initial_pass())
        assert session.last_known_size == 6
        session.poll()
        assert recorder.lines == ["first", "written meanwhile"]

    def test_partial_line_carried_into_next_pass(self, recorder):
        handle = MemoryFile("complete\nhal")
        session = _pipeline(recorder).open(handle)
        session.start_watch(session.initial_pass())
        assert recorder.lines == ["complete"]
        assert session.pending == "hal"

        handle.append("f a line\n")
        session.poll()
        assert recorder.lines == ["complete", "half a line"]
        assert session.pending == ""

    def test_crlf_split_between_passes(self, recorder):
        handle = MemoryFile("a\r")
        session = _pipeline(recorder).open(handle)
        session.start_watch(session.initial_pass())
        handle.append("\nb\n")
        session.poll()
        assert recorder.lines == ["a", "b"]

    def test_multibyte_character_split_between_passes(self, recorder):
        data = "€uro\n".encode("utf-8")
        handle = MemoryFile(data[:1])
        session = _pipeline(recorder).open(handle)
        session.start_watch(session.initial_pass())
        handle.append(data[1:])
        session.poll()
        assert recorder.lines == ["€uro"]

    def test_pending_flushed_on_stop(self, recorder):
        handle = MemoryFile("done\nunfinished")
        session = _pipeline(recorder).open(handle)
        session.start_watch(session.initial_pass())
        session.stop()
        assert recorder.lines == ["done", "unfinished"]
        assert session.status is WatchStatus.IDLE

        session.stop()
        assert recorder.lines == ["done", "unfinished"]

    def test_each_delta_pass_has_fresh_start(self, recorder):
        handle = MemoryFile("a\n")
        session = _pipeline(recorder).open(handle)
        session.start_watch(session.initial_pass())
        handle.append("b\n")
        session.poll()
        handle.append("c\n")
        session.poll()
        starts = [p.started_at for p in recorder.progress]
        assert len(starts) == 3
        assert len(set(starts)) == 3
        assert [p.total_bytes for p in recorder.progress] == [2, 2, 2]

    def test_run_until_stopped(self, recorder):
        handle = MemoryFile("x\n")
        session = _pipeline(recorder).open(handle)

        def writer():
            handle.append("y\n")
            threading.Timer(0.05, session.stop).start()

        threading.Timer(0.02, writer).start()
        assert session.run() is WatchStatus.IDLE
        assert recorder.lines == ["x", "y"]


class TestShrink:
    """Test the fatal shrink path end to end."""

    def test_shrink_reports_once_and_goes_quiet(self, recorder):
        handle = MemoryFile("line one\nline two\npartial")
        session = _pipeline(recorder).open(handle)
        session.start_watch(session.initial_pass())
        events_before = len(recorder.events)

        handle.truncate(5)
        session.poll()
        handle.append("lots more data\nand more\n" * 3)
        session.poll()
        session.stop()

        assert recorder.fatal == [session.fatal_reason]
        assert recorder.events[events_before:] == [("fatal", session.fatal_reason)]
        assert session.status is WatchStatus.STOPPED

    def test_run_returns_stopped_on_shrink(self, recorder):
        handle = MemoryFile("abc\n")
        session = _pipeline(recorder).open(handle)
        threading.Timer(0.03, handle.truncate, args=(1,)).start()
        assert session.run() is WatchStatus.STOPPED
        assert len(recorder.fatal) == 1


class TestFailedPasses:
    """Test what a failing or interrupted delta pass leaves behind."""

    def test_read_error_retry_does_not_repeat_lines(self, recorder):
        handle = FlakyFile(fail_from=8)
        session = _pipeline(recorder, chunk_size=4).open(handle)
        session.start_watch(session.initial_pass())

        handle.append("aa\nbb\ncc\ndd\n")
        with pytest.raises(ReadError):
            session.poll()
        assert recorder.lines == ["aa", "bb"]
        assert session.last_known_size == 8
        assert session.status is WatchStatus.POLLING

        assert session.poll()
        assert recorder.lines == ["aa", "bb", "cc", "dd"]
        assert session.last_known_size == 12

    def test_interrupt_during_pass_flushes_only_undelivered_text(self, recorder):
        handle = MemoryFile("one\npart")
        pipeline = _pipeline(recorder, chunk_size=5)

        def on_line(line):
            recorder.on_line(line)
            if line == "two":
                raise KeyboardInterrupt

        pipeline.on_line = on_line
        session = pipeline.open(handle)
        session.start_watch(session.initial_pass())

        handle.append("ial\ntwo\nth")
        with pytest.raises(KeyboardInterrupt):
            session.poll()
        session.stop()
        assert recorder.lines == ["one", "partial", "two", "th"]
        assert session.status is WatchStatus.IDLE

    def test_strict_decode_failure_ends_the_watch(self, recorder):
        handle = MemoryFile("ok\npart")
        session = _pipeline(recorder, decode_errors="strict").open(handle)
        session.start_watch(session.initial_pass())

        handle.append(b" \xff\n")
        with pytest.raises(DecodeError):
            session.poll()
        assert session.status is WatchStatus.IDLE

        handle.append("more\n")
        assert not session.poll()
        session.stop()
        assert recorder.lines == ["ok"]


class TestConcurrentStop:
    """Test stop() called from several threads at once."""

    def test_pending_flushed_once(self, recorder):
        handle = MemoryFile("done\nunfinished")
        session = _pipeline(recorder).open(handle)
        session.start_watch(session.initial_pass())

        threads = [threading.Thread(target=session.stop) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert recorder.lines == ["done", "unfinished"]

    def test_stop_while_watch_exits(self, recorder):
        handle = MemoryFile("done\nunfinished")
        session = _pipeline(recorder).open(handle)
        runner = threading.Thread(target=session.run)
        runner.start()
        while runner.is_alive():
            session.stop()
        runner.join()
        session.stop()
        assert recorder.lines == ["done", "unfinished"]

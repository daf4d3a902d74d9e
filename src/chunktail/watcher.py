from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
import logging
import threading

from .errors import ConfigurationError
from .sources.file_handle import FileHandle

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0  # seconds


class WatchStatus(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    READING_DELTA = "reading_delta"
    STOPPED = "stopped"  # shrink detected, terminal


@dataclass
class WatchState:
    last_known_size: int = 0


class ChangeWatcher:
    """
    Polls a handle's size and reports appended byte ranges.

    Growth calls `on_growth(old_size, new_size)` synchronously; the next
    tick cannot happen before it returns, so delta passes never overlap.
    `last_known_size` moves once the delta pass is done, or, if the pass
    fails, to whatever it reported through `mark_consumed`. A shrink calls
    `on_fatal(reason)` once and ends the watch for good.

    Usage:
        watcher = ChangeWatcher(handle, on_growth=read_delta, on_fatal=report)
        watcher.start(last_known_size=handle.size)
        watcher.run()          # blocks; call watcher.stop() to end it
    """

    def __init__(
        self,
        handle: FileHandle,
        *,
        on_growth: Callable[[int, int], None],
        on_fatal: Optional[Callable[[str], None]] = None,
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        if interval is None or interval <= 0:
            raise ConfigurationError(f"poll interval must be positive, got {interval}")
        self.handle = handle
        self.on_growth = on_growth
        self.on_fatal = on_fatal
        self.interval = interval
        self.state = WatchState()
        self.status = WatchStatus.IDLE
        self.fatal_reason: Optional[str] = None
        self._started = False
        self._stop_event = threading.Event()

    @property
    def last_known_size(self) -> int:
        return self.state.last_known_size

    @property
    def started(self) -> bool:
        return self._started

    @property
    def active(self) -> bool:
        return self.status in (WatchStatus.POLLING, WatchStatus.READING_DELTA)

    def start(self, last_known_size: Optional[int] = None) -> None:
        if self._started:
            raise RuntimeError("ChangeWatcher cannot be restarted; create a new one")
        if last_known_size is None:
            last_known_size = self.handle.size
        if last_known_size < 0:
            raise ConfigurationError(f"last_known_size must not be negative, got {last_known_size}")
        self._started = True
        self.state.last_known_size = last_known_size
        self.status = WatchStatus.POLLING
        logger.info("Watching %r from byte %s (every %ss)", self.handle, last_known_size, self.interval)

    def stop(self) -> None:
        """
        End the watch. Safe from another thread or from inside a callback;
        a delta pass already running finishes first.
        """
        self._stop_event.set()
        if self.status is WatchStatus.POLLING:
            self.status = WatchStatus.IDLE
            logger.info("Stopped watching %r", self.handle)

    def mark_consumed(self, offset: int) -> None:
        """
        Record that a delta pass got as far as `offset` before failing, so the
        next tick resumes there instead of re-reading delivered bytes.
        """
        if self.status is not WatchStatus.READING_DELTA:
            raise RuntimeError("mark_consumed() is only valid during a delta pass")
        if offset > self.state.last_known_size:
            self.state.last_known_size = offset

    def poll(self) -> bool:
        """One tick. Returns True if a delta pass ran."""
        if self.status is not WatchStatus.POLLING or self._stop_event.is_set():
            return False

        size = self.handle.size
        last = self.state.last_known_size
        if size == last:
            return False

        if size < last:
            self.status = WatchStatus.STOPPED
            self.fatal_reason = f"file shrank from {last} to {size} bytes"
            self._stop_event.set()
            logger.warning("Giving up on %r: %s", self.handle, self.fatal_reason)
            if self.on_fatal is not None:
                self.on_fatal(self.fatal_reason)
            return False

        logger.debug("Growth on %r: %s -> %s", self.handle, last, size)
        self.status = WatchStatus.READING_DELTA
        try:
            self.on_growth(last, size)
        except BaseException:
            # only the part recorded through mark_consumed() counts as read
            self.status = WatchStatus.IDLE if self._stop_event.is_set() else WatchStatus.POLLING
            raise
        self.state.last_known_size = size
        if self._stop_event.is_set():
            self.status = WatchStatus.IDLE
            logger.info("Stopped watching %r", self.handle)
        else:
            self.status = WatchStatus.POLLING
        return True

    def run(self) -> WatchStatus:
        """Poll until stopped or a shrink is detected; returns the final status."""
        if self.status is WatchStatus.IDLE and not self._started:
            self.start()
        while self.status is WatchStatus.POLLING:
            self.poll()
            if self.status is not WatchStatus.POLLING:
                break
            if self._stop_event.wait(self.interval):
                self.stop()
                break
        return self.status

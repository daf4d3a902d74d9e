"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides
common fixtures and configuration for all test files.
"""
from __future__ import annotations
import pytest
from pathlib import Path
from chunktail.sources.file_handle import LocalFile, MemoryFile


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def fixtures_dir():
    """Return the test fixtures directory."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture(scope="session")
def config_path(project_root):
    """Return path to the default configuration."""
    return project_root / "configs" / "default.yaml"


@pytest.fixture(scope="session")
def client_log_path(fixtures_dir):
    """Return path to the sample client log."""
    return fixtures_dir / "client.txt"


@pytest.fixture
def memory_file():
    """Factory for in-memory handles."""
    def _make(data=b""):
        return MemoryFile(data)
    return _make


@pytest.fixture
def log_file(tmp_path):
    """A growable log file on disk, returned as (path, handle)."""
    path = tmp_path / "client.txt"
    path.write_bytes(b"")
    return path, LocalFile(path)


class Recorder:
    """Collects everything a pipeline emits, in order."""

    def __init__(self) -> None:
        self.lines = []
        self.progress = []
        self.fatal = []
        self.events = []

    def on_line(self, line):
        self.lines.append(line)
        self.events.append(("line", line))

    def on_progress(self, p):
        self.progress.append(p)
        self.events.append(("progress", p.bytes_read))

    def on_fatal(self, reason):
        self.fatal.append(reason)
        self.events.append(("fatal", reason))


@pytest.fixture
def recorder():
    return Recorder()

from __future__ import annotations
from typing import Optional


class ChunktailError(Exception):
    """Base class for errors raised by the ingest core."""


class ConfigurationError(ChunktailError, ValueError):
    """Invalid option passed at call time (chunk size, offsets, patterns...)."""


class DecodeError(ChunktailError):
    def __init__(self, offset: int, cause: UnicodeDecodeError) -> None:
        super().__init__(f"Chunk at byte {offset} is not valid UTF-8: {cause}")
        self.offset = offset
        self.cause = cause


class ReadError(ChunktailError, OSError):
    """The file handle failed to deliver the requested byte range."""

    def __init__(self, message: str, offset: Optional[int] = None) -> None:
        super().__init__(message)
        self.offset = offset

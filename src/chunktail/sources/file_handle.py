from __future__ import annotations
from typing import Protocol, Union
import os
import threading


class FileHandle(Protocol):
    """
    Byte-addressable, append-only data source.

    The ingest core only ever asks for the current total size and for a
    byte range; it never closes or writes to the handle.
    """

    @property
    def size(self) -> int: ...

    def slice(self, start: int, end: int) -> bytes: ...


class LocalFile:
    """
    A log file on disk.

    Size is taken from the path on every call and each slice opens the file,
    so a writer appending to the same path is always observed.
    """

    def __init__(self, path: Union[str, "os.PathLike[str]"]) -> None:
        self.path = os.fspath(path)

    @property
    def size(self) -> int:
        return os.stat(self.path).st_size

    def slice(self, start: int, end: int) -> bytes:
        if end <= start:
            return b""
        with open(self.path, "rb") as f:
            f.seek(start, os.SEEK_SET)
            return f.read(end - start)

    def __repr__(self) -> str:
        return f"LocalFile({self.path!r})"


class MemoryFile:
    """In-memory handle; `append` grows it, `truncate` shrinks it."""

    def __init__(self, data: Union[bytes, str] = b"") -> None:
        self._lock = threading.Lock()
        self._data = bytearray(_as_bytes(data))

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._data)

    def slice(self, start: int, end: int) -> bytes:
        with self._lock:
            return bytes(self._data[start:end])

    def append(self, data: Union[bytes, str]) -> None:
        with self._lock:
            self._data.extend(_as_bytes(data))

    def truncate(self, size: int) -> None:
        with self._lock:
            del self._data[size:]

    def __repr__(self) -> str:
        return f"MemoryFile(size={self.size})"


def _as_bytes(data: Union[bytes, str]) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)

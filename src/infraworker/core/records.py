"""Durable keyed records backing the lock and status resources.

The lock and status are the only state shared across worker processes.
Both sit behind this small interface so the worker logic does not care
whether the record lives in a file, a database row or a lock service.

File records write through a temp file and ``os.replace`` so readers never
see a half-written document, and serialize compare-and-swap through an
exclusive ``flock`` on a sidecar guard file.
"""

import contextlib
import fcntl
import os
import tempfile
import threading
from collections.abc import Iterator
from pathlib import Path
from typing import Protocol


class DurableRecord(Protocol):
    """A single durable text document with atomic update primitives."""

    def read(self) -> str | None:
        """Return the current contents, or None if the record does not exist."""
        ...

    def write(self, data: str) -> None:
        """Atomically replace the contents."""
        ...

    def compare_and_swap(self, expected: str | None, new: str | None) -> bool:
        """Replace the contents only if they currently equal ``expected``.

        ``expected=None`` means "record must not exist"; ``new=None`` deletes
        the record. Returns True if the swap happened.
        """
        ...

    def delete(self) -> None:
        """Remove the record if it exists."""
        ...


class FileRecord:
    """A record stored in a single file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._guard_path = path.with_name(path.name + ".guard")

    def __repr__(self) -> str:
        return f"FileRecord({str(self.path)!r})"

    def read(self) -> str | None:
        # Undecodable bytes come back as lone surrogates: CAS still compares
        # exactly and the model parsers reject the text as corrupt
        try:
            return self.path.read_text(encoding="utf-8", errors="surrogateescape")
        except FileNotFoundError:
            return None

    def write(self, data: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise

    def compare_and_swap(self, expected: str | None, new: str | None) -> bool:
        with self._exclusive():
            if self.read() != expected:
                return False
            if new is None:
                self.path.unlink(missing_ok=True)
            else:
                self.write(new)
            return True

    def delete(self) -> None:
        with self._exclusive():
            self.path.unlink(missing_ok=True)

    @contextlib.contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold an exclusive flock on the guard file for the block."""
        self._guard_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self._guard_path), os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


class MemoryRecord:
    """An in-process record. Shares nothing across processes."""

    def __init__(self, data: str | None = None) -> None:
        self._data = data
        self._lock = threading.Lock()

    def read(self) -> str | None:
        with self._lock:
            return self._data

    def write(self, data: str) -> None:
        with self._lock:
            self._data = data

    def compare_and_swap(self, expected: str | None, new: str | None) -> bool:
        with self._lock:
            if self._data != expected:
                return False
            self._data = new
            return True

    def delete(self) -> None:
        with self._lock:
            self._data = None

"""Small filesystem and time helpers shared across imibot."""

from __future__ import annotations

import os
import tempfile
import time
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Create *path* (and parents) if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def key_to_filename(key: str) -> str:
    """Hex-encode *key* into a file stem; distinct keys never share a stem."""
    return key.encode("utf-8").hex()


def filename_to_key(stem: str) -> str | None:
    """Inverse of :func:`key_to_filename`. Returns None for stems it did not produce."""
    try:
        return bytes.fromhex(stem).decode("utf-8")
    except ValueError:
        return None


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to *path* via a temp file + os.replace."""
    ensure_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.tmp-", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def append_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Append *content* to *path* in a single write and fsync it."""
    ensure_dir(path.parent)
    with open(path, "a", encoding=encoding) as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())


def truncate(value: str, length: int) -> str:
    """Shorten *value* to *length* chars, ending with ``...`` when cut."""
    if len(value) <= length:
        return value
    return value[: max(0, length - 3)] + "..."

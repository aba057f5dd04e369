"""Utility helpers."""

from imibot.utils.helpers import (
    append_text,
    atomic_write_text,
    ensure_dir,
    filename_to_key,
    key_to_filename,
    now_ms,
    truncate,
)

__all__ = [
    "append_text",
    "atomic_write_text",
    "ensure_dir",
    "filename_to_key",
    "key_to_filename",
    "now_ms",
    "truncate",
]

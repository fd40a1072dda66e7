"""Read and write the agent's top-level data files by safe name."""

from __future__ import annotations

import string
from pathlib import Path

_ALLOWED = frozenset(string.ascii_letters + string.digits + "._-")


class UnsafeFilenameError(ValueError):
    """Raised for names that could escape the data directory or are hidden."""

    def __init__(self, name: str) -> None:
        super().__init__(f"invalid filename: {name!r}")
        self.name = name


def is_safe_filename(name: str) -> bool:
    """Whether ``name`` is a plain, non-hidden ASCII file name."""
    return (
        bool(name)
        and "/" not in name
        and "\\" not in name
        and not name.startswith(".")
        and all(char in _ALLOWED for char in name)
    )


def _checked_path(data_dir: str | Path, filename: str) -> Path:
    if not is_safe_filename(filename):
        raise UnsafeFilenameError(filename)
    return Path(data_dir) / filename


def read_agent_file(data_dir: str | Path, filename: str) -> str:
    """Return the file's text, or an empty string if it does not exist."""
    path = _checked_path(data_dir, filename)
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""


def write_agent_file(data_dir: str | Path, filename: str, content: str) -> None:
    """Write ``content`` to the file, creating the data directory if needed."""
    path = _checked_path(data_dir, filename)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content.encode("utf-8"))
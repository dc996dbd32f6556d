"""Crash-safe file writes for approved workspace mutations."""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


class StaleContentError(OSError):
    """The file changed after its diff was proposed."""

    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"{path} was modified after the change was proposed")


def _fsync_dir(dir_path: Path) -> None:
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        # Not every filesystem supports directory fsync.
        logger.debug("Directory fsync unsupported for %s", dir_path)


def read_text_or_empty(path: Path, *, encoding: str = "utf-8") -> str:
    try:
        with open(path, encoding=encoding, newline="") as f:
            return f.read()
    except FileNotFoundError:
        return ""


def atomic_write_text(
    path: Path,
    content: str,
    *,
    encoding: str = "utf-8",
    expected_before: str | None = None,
) -> None:
    """Replace *path* with *content* via temp file, fsync and rename.

    When *expected_before* is given, the current content (empty for a
    missing file) must still match it, otherwise StaleContentError is
    raised and nothing is written. The existing file mode is kept.
    """
    path = Path(path)
    if expected_before is not None:
        if read_text_or_empty(path, encoding=encoding) != expected_before:
            raise StaleContentError(path)

    path.parent.mkdir(parents=True, exist_ok=True)
    mode = None
    if path.exists():
        mode = path.stat().st_mode & 0o7777

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent),
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                logger.debug("Could not remove temp file %s", tmp_path)

"""
Filesystem side of file transfers: name validation, quarantine of risky
file types and write sinks that can be discarded on cancellation.
"""

import logging
import os
import zipfile
from pathlib import Path, PurePosixPath

from lanlink.config import FORBIDDEN_NAME_CHARS, QUARANTINE_SUFFIX, RISKY_EXTENSIONS
from lanlink.errors import InvalidInput

logger = logging.getLogger(__name__)

_PATH_CHARS = frozenset("/\\\x00")


def validate_filename(name: str | None) -> str:
    if not name or not name.strip():
        raise InvalidInput("Filename required")
    bad = (FORBIDDEN_NAME_CHARS | _PATH_CHARS) & set(name)
    if bad:
        raise InvalidInput(f"Invalid filename: {name!r}")
    if name in (".", ".."):
        raise InvalidInput(f"Invalid filename: {name!r}")
    return name


def validate_folder(name: str | None) -> str:
    """Folder names may nest with ``/`` but must stay inside the shared root."""
    if not name or not name.strip():
        raise InvalidInput("Folder name required")
    if (FORBIDDEN_NAME_CHARS | {"\\", "\x00"}) & set(name):
        raise InvalidInput(f"Invalid folder name: {name!r}")
    parts = PurePosixPath(name).parts
    if name.startswith("/") or any(p in ("..", ".") for p in parts):
        raise InvalidInput(f"Invalid folder name: {name!r}")
    return name


def is_risky(filename: str, risky_extensions=RISKY_EXTENSIONS) -> bool:
    lowered = filename.lower()
    return any(lowered.endswith(ext) for ext in risky_extensions)


def stored_name(filename: str, risky_extensions=RISKY_EXTENSIONS) -> str:
    """Name the file will have on disk."""
    if is_risky(filename, risky_extensions):
        return filename + QUARANTINE_SUFFIX
    return filename


class FileSink:
    """Writes a received file to its final path; ``discard`` removes it."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.bytes_written = 0
        path.parent.mkdir(parents=True, exist_ok=True)
        self._f = open(path, "wb")

    def write(self, chunk: bytes) -> None:
        self._f.write(chunk)
        self.bytes_written += len(chunk)

    def close(self) -> None:
        if not self._f.closed:
            self._f.close()

    def discard(self) -> None:
        self.close()
        if self.path.exists():
            os.unlink(self.path)
            logger.info(f"Discarded partial file {self.path.name}")


class QuarantineSink(FileSink):
    """Streams a risky file into a single-entry zip archive instead of onto disk."""

    def __init__(self, path: Path, entry_name: str) -> None:
        self.path = path
        self.bytes_written = 0
        path.parent.mkdir(parents=True, exist_ok=True)
        self._zip = zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED)
        self._f = self._zip.open(entry_name, "w", force_zip64=True)

    def close(self) -> None:
        if not self._f.closed:
            self._f.close()
        if self._zip.fp is not None:
            self._zip.close()


def open_sink(target_dir: Path, filename: str, risky_extensions=RISKY_EXTENSIONS) -> FileSink:
    validate_filename(filename)
    path = target_dir / stored_name(filename, risky_extensions)
    if path.name != filename:
        logger.info(f"Quarantining {filename} as {path.name}")
        return QuarantineSink(path, filename)
    return FileSink(path)

"""
Tree Chronicle Backend — Backup Archive Format
================================================

What:  Reads and writes the backup ZIP container.
Why:   Keeps format knowledge (entry names, validation rules, extraction)
       apart from the import/export protocol in BackupService.
How:   Plain synchronous functions over `zipfile`; BackupService runs them in
       a worker thread so the event loop keeps serving other requests.

Archive layout:
    store.db                 ← raw bytes of the SQLite file, unmodified
    uploads/<filename>       ← one entry per file in the upload directory

    Archives written by earlier releases name the database
    entry `tree_chronicle.db`; inspect_archive() accepts that name too.

Validation performed before anything is touched:
    1. The file is a readable ZIP and every entry's CRC matches
    2. A database entry exists and starts with the SQLite file header
    3. No upload entry is absolute or climbs out with `..`
"""

import logging
import os
import shutil
import time
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import List, Optional, Tuple

from tree_chronicle.exceptions import InvalidArchiveError

logger = logging.getLogger(__name__)

ARCHIVE_DB_ENTRY = "store.db"
ARCHIVE_UPLOADS_PREFIX = "uploads/"
LEGACY_DB_ENTRIES = ("tree_chronicle.db",)

SQLITE_HEADER = b"SQLite format 3\x00"
COPY_BUFFER_SIZE = 1024 * 1024


class ExtractionTimeout(Exception):
    """Staging ran past its deadline."""


@dataclass
class ArchiveManifest:
    """What inspect_archive() found inside a validated archive."""

    db_entry: str
    # (entry name, path relative to the upload directory)
    upload_entries: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def file_count(self) -> int:
        return len(self.upload_entries)


# ══════════════════════════════════════════════════════════════════════════
# Export
# ══════════════════════════════════════════════════════════════════════════

def list_upload_files(uploads_dir: Path) -> List[Path]:
    """Every regular file under the upload directory, sorted for stable output."""
    return sorted(p for p in uploads_dir.rglob("*") if p.is_file())


def build_archive(target: Path, db_path: Path, uploads_dir: Path) -> List[str]:
    """
    Write a complete backup archive to `target`.

    Both sources are read, never written, so no content or timestamp in the
    store or upload directory changes.

    Returns:
        Paths (relative to the upload directory) of the files archived.

    Raises:
        OSError: Database file or upload directory missing/unreadable, or
                 the target could not be written. `target` may then hold a
                 partial file which the caller must discard.
    """
    if not db_path.is_file():
        raise FileNotFoundError(f"database file not found: {db_path.name}")
    if not uploads_dir.is_dir():
        raise FileNotFoundError(f"upload directory not found: {uploads_dir.name}")

    archived = []
    with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.write(db_path, ARCHIVE_DB_ENTRY)
        for path in list_upload_files(uploads_dir):
            relative = path.relative_to(uploads_dir).as_posix()
            zf.write(path, ARCHIVE_UPLOADS_PREFIX + relative)
            archived.append(relative)
    return archived


# ══════════════════════════════════════════════════════════════════════════
# Import
# ══════════════════════════════════════════════════════════════════════════

def _safe_relative(name: str) -> Optional[str]:
    """Upload entry name → relative path, or None if it would escape the directory."""
    relative = name[len(ARCHIVE_UPLOADS_PREFIX):]
    if not relative or "\\" in relative:
        return None
    path = PurePosixPath(relative)
    if path.is_absolute() or any(part in ("..", "") for part in path.parts):
        return None
    if ":" in path.parts[0]:
        return None
    return path.as_posix()


def inspect_archive(archive_path: Path) -> ArchiveManifest:
    """
    Validate an uploaded archive without extracting it.

    Raises:
        InvalidArchiveError: Any of the module-level validation rules failed.
    """
    if not zipfile.is_zipfile(archive_path):
        raise InvalidArchiveError("The uploaded file is not a ZIP archive.")

    try:
        with zipfile.ZipFile(archive_path) as zf:
            bad_entry = zf.testzip()
            if bad_entry is not None:
                raise InvalidArchiveError(
                    "The backup archive is corrupt.",
                    context={"entry": bad_entry},
                )

            names = zf.namelist()
            db_entry = next(
                (n for n in (ARCHIVE_DB_ENTRY, *LEGACY_DB_ENTRIES) if n in names),
                None,
            )
            if db_entry is None:
                raise InvalidArchiveError(
                    "The backup archive does not contain a database.",
                    context={"expected_entry": ARCHIVE_DB_ENTRY},
                )
            with zf.open(db_entry) as f:
                if f.read(len(SQLITE_HEADER)) != SQLITE_HEADER:
                    raise InvalidArchiveError(
                        "The database inside the backup archive is not a SQLite file.",
                        context={"entry": db_entry},
                    )

            manifest = ArchiveManifest(db_entry=db_entry)
            for info in zf.infolist():
                name = info.filename
                if not name.startswith(ARCHIVE_UPLOADS_PREFIX) or info.is_dir():
                    if name != db_entry and not info.is_dir():
                        logger.debug("Ignoring unexpected archive entry: %s", name)
                    continue
                relative = _safe_relative(name)
                if relative is None:
                    raise InvalidArchiveError(
                        "The backup archive contains an unsafe file path.",
                        context={"entry": name},
                    )
                manifest.upload_entries.append((name, relative))
    except (zipfile.BadZipFile, zlib.error, EOFError) as e:
        raise InvalidArchiveError(
            "The backup archive could not be read.",
            context={"error": str(e)},
        ) from e

    return manifest


def _check_deadline(deadline: Optional[float]) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise ExtractionTimeout("archive staging exceeded its deadline")


def _copy_entry(zf: zipfile.ZipFile, name: str, dest: Path) -> None:
    with zf.open(name) as src, open(dest, "wb") as dst:
        shutil.copyfileobj(src, dst, COPY_BUFFER_SIZE)
        dst.flush()
        os.fsync(dst.fileno())


def stage_archive(
    archive_path: Path,
    manifest: ArchiveManifest,
    db_dest: Path,
    uploads_dest: Path,
    deadline: Optional[float] = None,
) -> None:
    """
    Extract a validated archive into staging locations beside the live files.

    Args:
        db_dest:      Where the database entry is written (not the live path)
        uploads_dest: Fresh directory receiving the upload entries
        deadline:     time.monotonic() value after which staging aborts

    Raises:
        OSError:           Disk full, permission denied
        ExtractionTimeout: Deadline passed between entries
    """
    uploads_dest.mkdir(parents=True, exist_ok=False)
    with zipfile.ZipFile(archive_path) as zf:
        _check_deadline(deadline)
        _copy_entry(zf, manifest.db_entry, db_dest)
        for name, relative in manifest.upload_entries:
            _check_deadline(deadline)
            dest = uploads_dest / relative
            dest.parent.mkdir(parents=True, exist_ok=True)
            _copy_entry(zf, name, dest)

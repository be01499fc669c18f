"""
Tree Chronicle Backend — Backup Export & Import Service
=========================================================

What:  Produces a self-contained backup archive of the whole store (database
       file plus upload directory) and restores one in place of the live data.
Why:   The store is a single SQLite file next to a directory of photo files;
       the two only make sense together, so they are saved and replaced as a
       unit.
Who:   Called by the /api/backup routes; recover_interrupted_import() runs
       once at startup before the store is opened.

Export flow:
    1. Take a gate token (an import cannot swap files mid-export)
    2. Read the filenames referenced by Photo rows
    3. Zip the database file and every upload into a temp file (worker thread)
    4. Return the temp path; the route streams it and deletes it afterwards

Import flow:
    1. Validate the archive (ZIP integrity, database entry, safe paths)
       ── failures here change nothing and the store stays open ──
    2. Quiesce: reject new requests, drain in-flight ones, dispose the engine
    3. Stage: extract database and uploads beside the live files
    4. Swap: snapshot the live files into rollback/, then rename staged files
       into place (journal written before any live file moves)
    5. Reopen the store (tenacity retry) and run an integrity check
    6. Drop the snapshot and journal

Error Recovery:
    Validation fails      → InvalidArchiveError (400), store untouched
    Drain times out       → ImportFailedError(stage="quiesce"), store reopened
    Staging fails         → ImportFailedError(stage="stage"), staged files
                            discarded, store reopened on the old data
    Swap / reopen fails   → snapshot restored, store reopened on the old data,
                            ImportFailedError(rolled_back=True)
    Restore itself fails  → logged CRITICAL, ImportFailedError(state_consistent=False)
    Process dies mid-swap → recover_interrupted_import() restores the snapshot
                            on the next start
"""

import asyncio
import json
import logging
import os
import secrets
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, NoReturn, Optional, Set, Tuple

import aiofiles
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from starlette.datastructures import UploadFile
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from tree_chronicle.config import settings
from tree_chronicle.database import StoreHandle, store
from tree_chronicle.exceptions import (
    BackupExportError,
    DatabaseError,
    FileStorageError,
    ImportFailedError,
    MissingArchiveError,
    StoreUnavailableError,
    ValidationError,
)
from tree_chronicle.models.photo import Photo
from tree_chronicle.models.project import Project
from tree_chronicle.schemas.backup import ImportResponse
from tree_chronicle.services.archive import (
    ArchiveManifest,
    ExtractionTimeout,
    build_archive,
    inspect_archive,
    stage_archive,
)

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024
ROLLBACK_DB_NAME = "store.db"
SQLITE_SIDECARS = ("-wal", "-shm", "-journal")


@dataclass
class ExportResult:
    """A finished archive waiting to be streamed, plus what went into it."""

    path: Path
    filename: str
    file_count: int
    missing_files: List[str] = field(default_factory=list)


def _remove_quietly(path: Path) -> None:
    try:
        if path.is_dir():
            shutil.rmtree(path)
        elif path.exists():
            path.unlink()
    except OSError as e:
        logger.warning("Could not remove %s: %s", path.name, str(e))


class BackupService:
    """
    Export/import orchestration over one StoreHandle and its upload directory.

    All filesystem work runs in worker threads via asyncio.to_thread so the
    event loop keeps answering (with 503s while quiesced) during long imports.
    """

    JOURNAL_NAME = "import.journal"

    def __init__(
        self,
        store_handle: StoreHandle,
        uploads_dir: Optional[Path] = None,
        work_dir: Optional[Path] = None,
        import_timeout: Optional[float] = None,
        drain_timeout: Optional[float] = None,
        max_backup_size: Optional[int] = None,
        reopen_attempts: Optional[int] = None,
        reopen_min_wait: Optional[float] = None,
        reopen_max_wait: Optional[float] = None,
    ):
        """
        Args:
            store_handle: The handle whose file is exported/replaced.
            uploads_dir:  Override settings.uploads_path (tests).
            work_dir:     Override settings.backup_work_path (tests). Must be
                          on the same filesystem as the live files.

        Remaining arguments default to the matching settings values.
        """
        self.store = store_handle
        self.db_path = store_handle.db_path
        self.uploads_dir = Path(uploads_dir or settings.uploads_path).resolve()
        self.work_dir = Path(work_dir or settings.backup_work_path).resolve()
        self.import_timeout = import_timeout if import_timeout is not None else settings.import_timeout
        self.drain_timeout = drain_timeout if drain_timeout is not None else settings.store_drain_timeout
        self.max_backup_size = max_backup_size or settings.max_backup_size
        self.reopen_attempts = reopen_attempts or settings.retry_max_attempts
        self.reopen_min_wait = reopen_min_wait if reopen_min_wait is not None else settings.retry_min_wait
        self.reopen_max_wait = reopen_max_wait if reopen_max_wait is not None else settings.retry_max_wait
        self._importing = False

    # ── Scratch locations ─────────────────────────────────────────────────
    @property
    def exports_dir(self) -> Path:
        return self.work_dir / "exports"

    @property
    def incoming_dir(self) -> Path:
        return self.work_dir / "incoming"

    @property
    def staging_dir(self) -> Path:
        return self.work_dir / "staging"

    @property
    def rollback_dir(self) -> Path:
        return self.work_dir / "rollback"

    @property
    def journal_path(self) -> Path:
        return self.work_dir / self.JOURNAL_NAME

    @property
    def staged_db_path(self) -> Path:
        # Beside the live file so the swap is a same-directory rename
        return self.db_path.with_name(self.db_path.name + ".incoming")

    # ══════════════════════════════════════════════════════════════════════
    # Export
    # ══════════════════════════════════════════════════════════════════════

    async def export_archive(self) -> ExportResult:
        """
        Build a backup archive of the current store and upload directory.

        Photo rows whose file is gone are still exported (the row is data);
        they are logged and reported in ExportResult.missing_files.

        Raises:
            StoreUnavailableError: An import holds the store.
            BackupExportError:     The archive could not be written. No
                                   partial file is left behind.
        """
        stamp = int(time.time() * 1000)
        filename = f"tree_chronicle_backup_{stamp}.zip"
        target = self.exports_dir / f"{stamp}-{secrets.token_hex(4)}.zip"

        async with self.store.acquire():
            try:
                async with self.store.new_session() as db:
                    result = await db.execute(select(Photo.filename))
                    referenced: Set[str] = set(result.scalars().all())

                self.exports_dir.mkdir(parents=True, exist_ok=True)
                archived = await asyncio.to_thread(
                    build_archive, target, self.db_path, self.uploads_dir
                )
            except (OSError, SQLAlchemyError) as e:
                await asyncio.to_thread(_remove_quietly, target)
                logger.error("Backup export failed: %s", str(e), exc_info=True)
                raise BackupExportError(context={"error_type": type(e).__name__})

        missing = sorted(referenced - set(archived))
        if missing:
            logger.warning(
                "Backup export: %d photo row(s) reference missing files: %s",
                len(missing), ", ".join(missing[:10]),
            )

        logger.info("Backup exported: %s (%d files)", filename, len(archived))
        return ExportResult(
            path=target,
            filename=filename,
            file_count=len(archived),
            missing_files=missing,
        )

    def discard_export(self, path: Path) -> None:
        """Delete a streamed archive. Runs as a response background task."""
        _remove_quietly(path)

    # ══════════════════════════════════════════════════════════════════════
    # Import
    # ══════════════════════════════════════════════════════════════════════

    async def save_upload(self, upload: UploadFile) -> Path:
        """
        Spool an uploaded archive to the incoming directory in chunks.

        Returns:  Path of the spooled archive (owned by the caller).
        Raises:
            MissingArchiveError: The upload was empty.
            ValidationError:     The upload exceeded max_backup_size.
            FileStorageError:    The spool file could not be written.
        """
        self.incoming_dir.mkdir(parents=True, exist_ok=True)
        target = self.incoming_dir / f"{int(time.time() * 1000)}-{secrets.token_hex(4)}.zip"
        size = 0

        try:
            async with aiofiles.open(target, "wb") as out:
                while True:
                    chunk = await upload.read(UPLOAD_CHUNK_SIZE)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > self.max_backup_size:
                        max_mb = self.max_backup_size / (1024 * 1024)
                        raise ValidationError(
                            message=f"Backup archive exceeds the maximum of {max_mb:.0f}MB.",
                            field="backup",
                            context={"max_size": self.max_backup_size},
                        )
                    await out.write(chunk)
        except ValidationError:
            await asyncio.to_thread(_remove_quietly, target)
            raise
        except OSError as e:
            await asyncio.to_thread(_remove_quietly, target)
            logger.error("Failed to spool backup upload: %s", str(e))
            raise FileStorageError(
                message="The backup archive could not be received. Please try again.",
                context={"os_error": str(e)},
            )

        if size == 0:
            await asyncio.to_thread(_remove_quietly, target)
            raise MissingArchiveError(message="The attached backup archive is empty.")
        return target

    async def import_archive(self, archive_path: Path) -> ImportResponse:
        """
        Replace the live store and upload directory with an archive's contents.

        The archive file is deleted whatever the outcome.

        Raises:
            StoreUnavailableError: Another import is already running.
            InvalidArchiveError:   Validation failed; nothing was touched.
            ImportFailedError:     A later stage failed (see module docstring).
        """
        try:
            if self._importing:
                raise StoreUnavailableError(
                    message="Another backup import is already running. Please retry shortly."
                )
            self._importing = True
            try:
                manifest = await asyncio.to_thread(inspect_archive, archive_path)
                return await self._restore(archive_path, manifest)
            finally:
                self._importing = False
                if not self.store.is_open:
                    # Drop any unverified engine, then let the next request
                    # retry the open instead of 503ing forever
                    await self.store.close()
                    self.store.release()
        finally:
            await asyncio.to_thread(_remove_quietly, archive_path)

    async def _restore(self, archive_path: Path, manifest: ArchiveManifest) -> ImportResponse:
        logger.info(
            "Import: archive accepted (database entry %s, %d files)",
            manifest.db_entry, manifest.file_count,
        )

        # ── Quiesce ───────────────────────────────────────────────────────
        try:
            await self.store.close(drain_timeout=self.drain_timeout)
        except TimeoutError:
            logger.warning("Import aborted: store did not drain within %ss", self.drain_timeout)
            raise ImportFailedError(
                stage="quiesce",
                message="The store is busy and the import was not started. Please retry shortly.",
            )

        # ── Stage ─────────────────────────────────────────────────────────
        deadline = time.monotonic() + self.import_timeout
        try:
            await asyncio.to_thread(self._stage, archive_path, manifest, deadline)
        except (OSError, ExtractionTimeout) as e:
            logger.error("Import failed while staging: %s", str(e))
            await asyncio.to_thread(self._discard_staging)
            await self._reopen_after_failure()
            raise ImportFailedError(stage="stage", context={"error_type": type(e).__name__})

        # ── Swap ──────────────────────────────────────────────────────────
        try:
            await asyncio.to_thread(self._swap)
        except OSError as e:
            await self._fail_and_roll_back("swap", e)

        # ── Reopen & verify ───────────────────────────────────────────────
        # Requests stay rejected until the new store has passed both checks
        try:
            await self._reopen()
            projects, photos = await self._counts()
        except (DatabaseError, SQLAlchemyError) as e:
            await self._fail_and_roll_back("reopen", e)

        self.store.admit()
        await asyncio.to_thread(self._finish)
        logger.info(
            "Import complete: %d project(s), %d photo(s), %d file(s)",
            projects, photos, manifest.file_count,
        )
        return ImportResponse(projects=projects, photos=photos, files=manifest.file_count)

    async def _fail_and_roll_back(self, stage: str, error: Exception) -> NoReturn:
        """Restore the pre-import snapshot, reopen, and raise ImportFailedError."""
        logger.error("Import failed during %s: %s", stage, str(error), exc_info=True)
        # Disposes an engine left REOPENING by a failed check
        await self.store.close()

        try:
            await asyncio.to_thread(self._rollback)
        except OSError as rollback_error:
            logger.critical(
                "Rollback after failed import did not complete (%s). The database and "
                "upload directory may not match; restore from a previous export.",
                str(rollback_error),
            )
            await self._reopen_after_failure()
            raise ImportFailedError(stage=stage, state_consistent=False, rolled_back=False)

        await self._reopen_after_failure()
        raise ImportFailedError(stage=stage, state_consistent=True, rolled_back=True)

    # ── Store reopening ───────────────────────────────────────────────────

    async def _reopen(self) -> None:
        """
        Open the store with retry, then integrity-check it.

        The handle is left REOPENING; the caller admits requests with
        store.admit() once it is satisfied. Only the open is retried: a
        transient lock or file handle still draining can clear, a corrupt
        file will not.
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(DatabaseError),
            stop=stop_after_attempt(self.reopen_attempts),
            wait=wait_exponential_jitter(
                multiplier=self.reopen_min_wait,
                max=self.reopen_max_wait,
                jitter=self.reopen_min_wait,
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                await self.store.open(admit=False)
        await self.store.verify()

    async def _reopen_after_failure(self) -> None:
        try:
            await self._reopen()
        except DatabaseError as e:
            logger.critical("Store could not be reopened after a failed import: %s", e.message)
            await self.store.close()
            return
        self.store.admit()

    async def _counts(self) -> Tuple[int, int]:
        # The caller has not admitted requests yet, so no gate token is taken
        async with self.store.new_session() as db:
            projects = await db.scalar(select(func.count()).select_from(Project))
            photos = await db.scalar(select(func.count()).select_from(Photo))
        return projects or 0, photos or 0

    # ── Filesystem steps (worker thread) ──────────────────────────────────

    def _stage(self, archive_path: Path, manifest: ArchiveManifest, deadline: float) -> None:
        self._discard_staging()
        self.work_dir.mkdir(parents=True, exist_ok=True)
        stage_archive(archive_path, manifest, self.staged_db_path, self.staging_dir, deadline)

    def _discard_staging(self) -> None:
        _remove_quietly(self.staging_dir)
        _remove_quietly(self.staged_db_path)

    def _remove_sidecars(self) -> None:
        # WAL/SHM files belong to the old database and would corrupt the new one
        for suffix in SQLITE_SIDECARS:
            sidecar = self.db_path.with_name(self.db_path.name + suffix)
            if sidecar.exists():
                sidecar.unlink()

    def _write_journal(self, had_database: bool, had_uploads: bool) -> None:
        payload = {
            "had_database": had_database,
            "had_uploads": had_uploads,
            "started_at": datetime.now(timezone.utc).isoformat(),
        }
        with open(self.journal_path, "w", encoding="utf-8") as f:
            json.dump(payload, f)
            f.flush()
            os.fsync(f.fileno())

    def _read_journal(self) -> dict:
        try:
            with open(self.journal_path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            # Unknown prior state: assume both existed and trust the snapshot
            logger.warning("Import journal unreadable (%s); assuming full snapshot", str(e))
            return {"had_database": True, "had_uploads": True}

    def _swap(self) -> None:
        """
        Snapshot the live files, then rename the staged ones into place.

        The snapshot copy is written under a temporary name and renamed when
        complete, so rollback never restores a half-written database.
        """
        _remove_quietly(self.rollback_dir)
        self.rollback_dir.mkdir(parents=True)

        had_database = self.db_path.exists()
        had_uploads = self.uploads_dir.exists()
        if had_database:
            partial = self.rollback_dir / (ROLLBACK_DB_NAME + ".partial")
            shutil.copy2(self.db_path, partial)
            os.replace(partial, self.rollback_dir / ROLLBACK_DB_NAME)

        self._write_journal(had_database, had_uploads)
        # From here on a crash is repaired by recover_interrupted_import()

        if had_uploads:
            os.replace(self.uploads_dir, self.rollback_dir / "uploads")
        self._remove_sidecars()
        os.replace(self.staged_db_path, self.db_path)
        os.replace(self.staging_dir, self.uploads_dir)

    def _rollback(self) -> None:
        """Put the snapshot back. Safe to run at any point after _swap() began."""
        journal = self._read_journal() if self.journal_path.exists() else {
            "had_database": True, "had_uploads": True,
        }

        rollback_db = self.rollback_dir / ROLLBACK_DB_NAME
        self._remove_sidecars()
        if rollback_db.exists():
            os.replace(rollback_db, self.db_path)
        elif not journal.get("had_database", True) and self.db_path.exists():
            self.db_path.unlink()

        rollback_uploads = self.rollback_dir / "uploads"
        if rollback_uploads.exists():
            if self.uploads_dir.exists():
                shutil.rmtree(self.uploads_dir)
            os.replace(rollback_uploads, self.uploads_dir)
        elif not journal.get("had_uploads", True) and self.uploads_dir.exists():
            shutil.rmtree(self.uploads_dir)
        self.uploads_dir.mkdir(parents=True, exist_ok=True)

        self._discard_staging()
        self._finish()
        logger.warning("Pre-import snapshot restored")

    def _finish(self) -> None:
        # Journal first: without it a leftover snapshot is never restored
        if self.journal_path.exists():
            self.journal_path.unlink()
        _remove_quietly(self.rollback_dir)

    # ── Startup ───────────────────────────────────────────────────────────

    def recover_interrupted_import(self) -> bool:
        """
        Repair the aftermath of a process that died during an import.

        Must run before the store is opened. Leftover staging files are always
        removed; the snapshot is restored only if the journal says a swap was
        in progress.

        Returns:  True if a snapshot was restored.
        """
        if not self.journal_path.exists():
            self._discard_staging()
            _remove_quietly(self.rollback_dir)
            return False

        if not self.rollback_dir.exists():
            logger.warning("Discarding import journal with no snapshot to restore")
            self._discard_staging()
            self.journal_path.unlink()
            return False

        logger.warning("Found an interrupted import; restoring the pre-import snapshot")
        self._rollback()
        return True


# ── Singleton Instance ────────────────────────────────────────────────────
backup_service = BackupService(store)

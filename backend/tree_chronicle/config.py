"""
Tree Chronicle Backend — Application Configuration
====================================================

What:  Centralized configuration management using Pydantic Settings.
Why:   Type-safe environment variable loading with validation on startup.
How:   Pydantic Settings reads from environment variables (or .env file),
       validates types/ranges, and provides a singleton `settings` object.
Who:   Imported by every module that needs configuration values.
When:  Loaded once at module import time; validated before app starts.

Persisted layout (all relative to DATA_ROOT):
    data/
    ├── tree_chronicle.db      ← the single SQLite store file
    ├── uploads/               ← photo payloads, generated filenames only
    └── .backup/               ← export/import scratch space
        ├── exports/           ← finished archives waiting to be streamed
        ├── incoming/          ← uploaded archives waiting to be imported
        ├── staging/           ← extracted upload tree before the swap
        ├── rollback/          ← pre-import snapshot while a swap is running
        └── import.journal     ← present only while a swap is in flight

    Keeping the scratch space under DATA_ROOT puts it on the same filesystem
    as the live files, so the import swap can use atomic renames.
"""

from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings have sensible defaults for a single-user local install.
    Attributes are grouped by concern for readability.
    """

    # ── Storage ───────────────────────────────────────────────────────────
    # What: Root directory for the database, uploads and backup scratch space
    # Why relative: Works in both Docker (mounted volume) and local development
    data_root: str = Field(default="./data")

    # What: Name of the SQLite file inside data_root
    database_filename: str = Field(default="tree_chronicle.db")

    # What: Maximum size of a single photo upload in bytes (default 20MB)
    max_file_size: int = Field(default=20_971_520, ge=1_048_576, le=104_857_600)

    # ── Backup ────────────────────────────────────────────────────────────
    # What: Maximum size of an uploaded backup archive (default 2GB)
    # Why bounded: Archives are materialised on disk, not streamed
    max_backup_size: int = Field(default=2_147_483_648, ge=1_048_576)

    # What: Seconds allowed for staging an archive during import
    # Why: A stuck extraction must not leave the store quiesced forever
    import_timeout: int = Field(default=300, ge=5, le=3600)

    # What: Seconds to wait for in-flight requests to finish before an import
    # gives up quiescing the store
    store_drain_timeout: int = Field(default=30, ge=1, le=600)

    # ── Retry Configuration ───────────────────────────────────────────────
    # What: Tenacity settings for reopening the store after an import
    retry_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_min_wait: float = Field(default=0.5, ge=0, le=30)
    retry_max_wait: float = Field(default=5, ge=0, le=120)

    # ── CORS ──────────────────────────────────────────────────────────────
    # Format: Comma-separated URLs
    cors_origins: str = Field(default="http://localhost:3000")

    @property
    def cors_origins_list(self) -> List[str]:
        """Splits comma-separated CORS origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    # ── Server ────────────────────────────────────────────────────────────
    backend_host: str = Field(default="0.0.0.0")
    backend_port: int = Field(default=8000, ge=1024, le=65535)

    # Valid: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = Field(default="INFO")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensures log level is a valid Python logging level name."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log_level '{v}'. Must be one of: {valid_levels}")
        return upper

    # ── Rate Limiting ─────────────────────────────────────────────────────
    # What: Per-IP sliding window rate limit
    rate_limit_requests: int = Field(default=1000, ge=10, le=100000)
    rate_limit_window: int = Field(default=3600, ge=60, le=86400)  # seconds

    # ── Pydantic Settings Config ──────────────────────────────────────────
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,  # DATA_ROOT and data_root both work
    }

    # ── Derived Paths ─────────────────────────────────────────────────────
    @property
    def database_path(self) -> Path:
        return Path(self.data_root).resolve() / self.database_filename

    @property
    def uploads_path(self) -> Path:
        return Path(self.data_root).resolve() / "uploads"

    @property
    def backup_work_path(self) -> Path:
        return Path(self.data_root).resolve() / ".backup"

    def prepare_storage(self) -> None:
        """
        What:  Creates the data root, upload directory and backup scratch space.
        When:  Called during app startup (lifespan).
        Why:   Export fails loudly when the upload directory is missing, so a
               fresh install must have one before the first request.
        """
        for path in (Path(self.data_root).resolve(), self.uploads_path, self.backup_work_path):
            path.mkdir(parents=True, exist_ok=True)


# Singleton instance, imported throughout the application
settings = Settings()

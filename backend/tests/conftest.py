"""
Tree Chronicle Backend — Test Configuration (conftest.py)
===========================================================

What:  Shared pytest fixtures for the entire test suite.
How:   The environment is pointed at a throwaway DATA_ROOT before any
       application import, so the module-level singletons (settings, store,
       file_service, backup_service) all resolve into it.

Fixture Hierarchy:
    Autouse (every test):
    └── clean_data_root: empty data root with uploads/ and .backup/

    Function-scoped:
    ├── open_store:         the global store, opened (and seeded) for the test
    ├── test_client:        HTTPX AsyncClient over the app (store already open)
    ├── backup_env:         isolated StoreHandle + BackupService under tmp_path
    └── sample_image_bytes: tiny JPEG payload for upload tests
"""

import io
import os
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

# ══════════════════════════════════════════════════════════════════════════
# Environment Setup
# ══════════════════════════════════════════════════════════════════════════

# Must happen BEFORE any tree_chronicle import: settings are read at import time
os.environ["DATA_ROOT"] = tempfile.mkdtemp(prefix="tree_chronicle_test_")
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["RATE_LIMIT_REQUESTS"] = "100000"

from tree_chronicle.config import settings  # noqa: E402
from tree_chronicle.database import StoreHandle, store  # noqa: E402
from tree_chronicle.models.photo import Photo  # noqa: E402
from tree_chronicle.models.project import Project  # noqa: E402
from tree_chronicle.services.backup_service import BackupService  # noqa: E402
from tree_chronicle.services.project_service import seed_default_project  # noqa: E402


# Minimal JPEG: Start of Image + JFIF marker + End of Image
JPEG_BYTES = (
    b"\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00"
    b"\xff\xd9"
)


# ══════════════════════════════════════════════════════════════════════════
# Global data root
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def clean_data_root():
    """Give every test an empty data root; leave the global store CLOSED."""
    root = Path(settings.data_root)
    if root.exists():
        shutil.rmtree(root)
    settings.prepare_storage()
    yield root


@pytest_asyncio.fixture
async def open_store():
    """
    The global store, open for the test.

    Closing at teardown marks it quiesced, so release() afterwards lets the
    next test open it lazily again.
    """
    store.add_create_hook(seed_default_project)
    await store.open()
    yield store
    store.release()
    await store.close()
    store.release()


@pytest_asyncio.fixture
async def test_client(open_store):
    """
    HTTPX AsyncClient talking to the app in-process.

    ASGITransport does not run the lifespan, which is why open_store opens
    the store explicitly.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
            assert response.status_code == 200
    """
    from tree_chronicle.main import app
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def sample_image_bytes():
    return JPEG_BYTES


# ══════════════════════════════════════════════════════════════════════════
# Isolated backup environment
# ══════════════════════════════════════════════════════════════════════════

@dataclass
class BackupEnv:
    root: Path
    handle: StoreHandle
    service: BackupService

    @property
    def uploads(self) -> Path:
        return self.service.uploads_dir

    def upload_tree(self) -> Dict[str, bytes]:
        """relative path → bytes for every file in the upload directory"""
        return {
            p.relative_to(self.uploads).as_posix(): p.read_bytes()
            for p in self.uploads.rglob("*") if p.is_file()
        }

    async def add_project(self, name: str, photos: Dict[str, bytes] = None) -> int:
        """Insert a project and, for each filename → bytes, a photo row + file."""
        async with self.handle.session() as db:
            project = Project(name=name, description=f"{name} description")
            db.add(project)
            await db.flush()
            for i, (filename, content) in enumerate((photos or {}).items()):
                (self.uploads / filename).write_bytes(content)
                db.add(Photo(
                    project_id=project.id,
                    filename=filename,
                    original_date=f"2024-0{i + 1}-01T09:00:00",
                    caption=f"{name} #{i + 1}",
                ))
            return project.id

    async def project_names(self) -> List[str]:
        async with self.handle.session() as db:
            result = await db.execute(select(Project.name).order_by(Project.name))
            return list(result.scalars().all())


@pytest_asyncio.fixture
async def backup_env(tmp_path):
    """
    A StoreHandle and BackupService over their own directory, with no retry
    waits and a short drain timeout.
    """
    root = tmp_path / "data"
    uploads = root / "uploads"
    uploads.mkdir(parents=True)
    handle = StoreHandle(db_path=root / "store.db")
    service = BackupService(
        handle,
        uploads_dir=uploads,
        work_dir=root / ".backup",
        drain_timeout=1,
        reopen_attempts=2,
        reopen_min_wait=0,
        reopen_max_wait=0,
    )
    await handle.open()
    yield BackupEnv(root=root, handle=handle, service=service)
    await handle.close()


def _make_zip(entries: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in entries.items():
            zf.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def make_zip():
    """Build an in-memory ZIP from name → bytes (for hand-crafted archives)."""
    return _make_zip

"""
Tree Chronicle Backend — Backup & CRUD API Tests
==================================================

What:  End-to-end HTTP tests through the FastAPI app (httpx ASGITransport).
How:   Uses the global store and services, rooted in the per-test DATA_ROOT
       prepared by conftest.

Scenarios:
    ✅ Export download headers and archive layout
    ✅ Oak: create → photograph → export → delete → import → Oak is back
    ✅ Missing / corrupt / database-less archives → 400, service keeps working
    ✅ Store closed for import → 503 with Retry-After
    ✅ Image downloads keep streaming when an import moves uploads/ aside
    ✅ Import failure → 500 import_failed with stage and consistency flags
"""

import io
import os
import re
import zipfile
from unittest.mock import patch

import pytest

from tree_chronicle.database import store
from tree_chronicle.routes.photos import serve_upload
from tree_chronicle.services.backup_service import backup_service


async def _create_oak(client, image: bytes) -> dict:
    response = await client.post("/api/projects", json={"name": "Oak", "description": "Front yard"})
    assert response.status_code == 201
    project = response.json()

    response = await client.post(
        "/api/photos",
        data={"project_id": str(project["id"]), "original_date": "2024-05-01T10:00:00", "caption": "Buds"},
        files={"image": ("oak.jpg", image, "image/jpeg")},
    )
    assert response.status_code == 201
    return {"project": project, "photo": response.json()}


async def _import(client, archive: bytes, filename: str = "backup.zip"):
    return await client.post(
        "/api/backup/import",
        files={"backup": (filename, archive, "application/zip")},
    )


class TestExportEndpoint:

    @pytest.mark.asyncio
    async def test_download(self, test_client, sample_image_bytes):
        oak = await _create_oak(test_client, sample_image_bytes)

        response = await test_client.get("/api/backup/export")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        disposition = response.headers["content-disposition"]
        assert re.search(r'filename="tree_chronicle_backup_\d+\.zip"', disposition)
        assert response.headers["x-backup-files"] == "1"
        assert "x-backup-missing-files" not in response.headers

        with zipfile.ZipFile(io.BytesIO(response.content)) as zf:
            assert "store.db" in zf.namelist()
            assert zf.read(f"uploads/{oak['photo']['filename']}") == sample_image_bytes

    @pytest.mark.asyncio
    async def test_missing_file_header(self, test_client, sample_image_bytes):
        oak = await _create_oak(test_client, sample_image_bytes)
        (backup_service.uploads_dir / oak["photo"]["filename"]).unlink()

        response = await test_client.get("/api/backup/export")

        assert response.status_code == 200
        assert response.headers["x-backup-missing-files"] == "1"

    @pytest.mark.asyncio
    async def test_temp_archive_removed_after_download(self, test_client):
        response = await test_client.get("/api/backup/export")
        assert response.status_code == 200
        assert list(backup_service.exports_dir.iterdir()) == []


class TestImportEndpoint:

    @pytest.mark.asyncio
    async def test_oak_round_trip(self, test_client, sample_image_bytes):
        oak = await _create_oak(test_client, sample_image_bytes)
        archive = (await test_client.get("/api/backup/export")).content

        response = await test_client.delete(f"/api/projects/{oak['project']['id']}")
        assert response.status_code == 200
        names = [p["name"] for p in (await test_client.get("/api/projects")).json()]
        assert "Oak" not in names

        response = await _import(test_client, archive)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["photos"] == 1 and body["files"] == 1

        projects = (await test_client.get("/api/projects")).json()
        restored = next(p for p in projects if p["name"] == "Oak")
        assert restored["id"] == oak["project"]["id"]
        assert restored["latest_photo"] == oak["photo"]["filename"]

        image = await test_client.get(oak["photo"]["image_url"])
        assert image.status_code == 200
        assert image.content == sample_image_bytes

    @pytest.mark.asyncio
    async def test_missing_archive(self, test_client):
        response = await test_client.post("/api/backup/import", data={"note": "no file"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "missing_archive"
        assert body["details"] == {"field": "backup"}

    @pytest.mark.asyncio
    async def test_archive_in_wrong_field(self, test_client, make_zip):
        response = await test_client.post(
            "/api/backup/import",
            files={"file": ("backup.zip", make_zip({"store.db": b"x"}), "application/zip")},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "missing_archive"

    @pytest.mark.asyncio
    async def test_corrupt_archive_then_service_continues(self, test_client):
        response = await _import(test_client, b"this is not a zip archive")

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_archive"

        response = await test_client.get("/api/projects")
        assert response.status_code == 200
        assert [p["name"] for p in response.json()] == ["My Tree"]
        assert list(backup_service.incoming_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_archive_without_database(self, test_client, make_zip):
        response = await _import(test_client, make_zip({"uploads/a.jpg": b"a"}))

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "invalid_archive"
        assert "database" in body["message"]

    @pytest.mark.asyncio
    async def test_failed_swap_reports_rollback(self, test_client, sample_image_bytes):
        await _create_oak(test_client, sample_image_bytes)
        archive = (await test_client.get("/api/backup/export")).content

        with patch.object(backup_service, "_swap", side_effect=OSError("simulated")):
            response = await _import(test_client, archive)

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "import_failed"
        assert body["details"] == {"stage": "swap", "state_consistent": True, "rolled_back": True}
        assert body["request_id"]

        response = await test_client.get("/api/projects")
        assert response.status_code == 200
        assert "Oak" in [p["name"] for p in response.json()]


class TestStoreGate:

    @pytest.mark.asyncio
    async def test_requests_rejected_while_store_closed(self, test_client):
        await store.close()
        try:
            response = await test_client.get("/api/projects")
            assert response.status_code == 503
            assert response.headers["retry-after"] == "5"
            assert response.json()["error"] == "store_unavailable"

            health = await test_client.get("/health")
            assert health.status_code == 200
            assert health.json()["status"] == "degraded"
        finally:
            store.release()

        response = await test_client.get("/api/projects")
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_health_when_open(self, test_client):
        response = await test_client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["store"] == "open"

    @pytest.mark.asyncio
    async def test_image_served_with_media_type(self, test_client, sample_image_bytes):
        oak = await _create_oak(test_client, sample_image_bytes)

        response = await test_client.get(oak["photo"]["image_url"])

        assert response.status_code == 200
        assert response.headers["content-type"] == "image/jpeg"
        assert response.content == sample_image_bytes

    @pytest.mark.asyncio
    async def test_image_download_survives_upload_dir_move(self, test_client, sample_image_bytes):
        oak = await _create_oak(test_client, sample_image_bytes)
        response = await serve_upload(oak["photo"]["filename"])

        # What an import's swap does once the gate token has been returned
        uploads = backup_service.uploads_dir
        os.replace(uploads, uploads.with_name("uploads.rollback"))

        body = b"".join([chunk async for chunk in response.body_iterator])
        assert body == sample_image_bytes

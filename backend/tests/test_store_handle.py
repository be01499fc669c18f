"""
Tree Chronicle Backend — Store Handle Tests
=============================================

What:  Lifecycle and gate behaviour of StoreHandle.
Why:   The gate is what keeps requests off the database file while an import
       replaces it; a leak here means reads against a half-swapped store.

Test Strategy:
    ✅ Create hooks run for new files only
    ✅ Quiesced handle rejects; released handle reopens lazily
    ✅ close() waits for in-flight tokens, or times out and stays OPEN
    ✅ A non-SQLite file fails to open and leaves the handle CLOSED
    ✅ open(admit=False) holds requests off until admit()
    ✅ close() during a lazy open waits for it and keeps the handle shut
"""

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from tree_chronicle.database import StoreHandle, StoreState
from tree_chronicle.exceptions import DatabaseError, StoreUnavailableError
from tree_chronicle.models.project import Project


@pytest.fixture
def handle(tmp_path):
    return StoreHandle(db_path=tmp_path / "store.db")


async def _project_count(handle: StoreHandle) -> int:
    async with handle.session() as db:
        return await db.scalar(select(func.count()).select_from(Project))


class TestOpen:

    @pytest.mark.asyncio
    async def test_create_hook_runs_for_new_file_only(self, handle):
        async def seed(db):
            db.add(Project(name="Seeded"))

        hook = AsyncMock(side_effect=seed)
        handle.add_create_hook(hook)
        handle.add_create_hook(hook)  # registering twice is a no-op

        await handle.open()
        assert handle.is_open
        assert hook.await_count == 1
        assert await _project_count(handle) == 1

        await handle.close()
        await handle.open()
        assert hook.await_count == 1
        assert await _project_count(handle) == 1
        await handle.close()

    @pytest.mark.asyncio
    async def test_open_rejects_non_sqlite_file(self, handle):
        handle.db_path.write_bytes(b"this is not a database" * 100)

        with pytest.raises(DatabaseError):
            await handle.open()
        assert handle.state is StoreState.CLOSED

    @pytest.mark.asyncio
    async def test_verify_passes_on_healthy_store(self, handle):
        await handle.open()
        await handle.verify()
        await handle.close()


class TestGate:

    @pytest.mark.asyncio
    async def test_quiesced_handle_rejects(self, handle):
        await handle.open()
        await handle.close()
        assert handle.is_quiesced

        with pytest.raises(StoreUnavailableError) as exc_info:
            async with handle.session():
                pass
        assert exc_info.value.retry_after > 0

    @pytest.mark.asyncio
    async def test_released_handle_reopens_lazily(self, handle):
        await handle.open()
        await handle.close()
        handle.release()

        assert await _project_count(handle) == 0
        assert handle.is_open
        await handle.close()

    @pytest.mark.asyncio
    async def test_tokens_are_returned_on_error(self, handle):
        await handle.open()
        with pytest.raises(RuntimeError):
            async with handle.acquire():
                assert handle.in_flight == 1
                raise RuntimeError("boom")
        assert handle.in_flight == 0
        await handle.close()


class TestClose:

    @pytest.mark.asyncio
    async def test_close_waits_for_in_flight_requests(self, handle):
        await handle.open()
        entered = asyncio.Event()
        finished = []

        async def slow_request():
            async with handle.acquire():
                entered.set()
                await asyncio.sleep(0.2)
                finished.append(True)

        task = asyncio.create_task(slow_request())
        await entered.wait()

        await handle.close(drain_timeout=5)

        assert finished == [True]
        assert handle.state is StoreState.CLOSED
        assert handle.in_flight == 0
        await task

    @pytest.mark.asyncio
    async def test_new_requests_rejected_while_draining(self, handle):
        await handle.open()
        entered = asyncio.Event()
        release = asyncio.Event()

        async def held_request():
            async with handle.acquire():
                entered.set()
                await release.wait()

        task = asyncio.create_task(held_request())
        await entered.wait()
        closing = asyncio.create_task(handle.close(drain_timeout=5))
        await asyncio.sleep(0.05)

        with pytest.raises(StoreUnavailableError):
            async with handle.acquire():
                pass

        release.set()
        await closing
        await task

    @pytest.mark.asyncio
    async def test_drain_timeout_restores_open(self, handle):
        await handle.open()
        async with handle.acquire():
            with pytest.raises(TimeoutError):
                await handle.close(drain_timeout=0.1)
            assert handle.is_open
            assert not handle.is_quiesced

        await handle.close()
        assert handle.state is StoreState.CLOSED

    @pytest.mark.asyncio
    async def test_close_during_lazy_open_keeps_handle_shut(self, handle):
        opening = asyncio.create_task(handle.open())
        await asyncio.sleep(0)
        assert handle.state is StoreState.REOPENING

        await handle.close()
        await opening

        assert handle.state is StoreState.CLOSED
        assert handle.is_quiesced
        with pytest.raises(StoreUnavailableError):
            async with handle.session():
                pass
        with pytest.raises(StoreUnavailableError):
            handle.engine


class TestAdmit:

    @pytest.mark.asyncio
    async def test_unadmitted_open_rejects_requests(self, handle):
        await handle.open()
        await handle.close()

        await handle.open(admit=False)
        assert handle.state is StoreState.REOPENING
        with pytest.raises(StoreUnavailableError):
            async with handle.session():
                pass

        await handle.verify()
        handle.admit()
        assert handle.is_open
        assert not handle.is_quiesced
        assert await _project_count(handle) == 0
        await handle.close()

    @pytest.mark.asyncio
    async def test_close_disposes_unadmitted_engine(self, handle):
        await handle.open(admit=False)
        await handle.close()

        assert handle.state is StoreState.CLOSED
        with pytest.raises(StoreUnavailableError):
            handle.admit()

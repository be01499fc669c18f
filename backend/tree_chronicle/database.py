"""
Tree Chronicle Backend — Store Handle & Session Management
============================================================

What:  The process-wide handle to the SQLite store file, its async engine,
       the declarative Base, and the FastAPI session dependency.
Why:   The store file is swapped out from under the running process during a
       backup import. Every query therefore goes through one lifecycle object
       that knows whether the file may currently be touched.
How:   StoreHandle owns an async SQLAlchemy engine (aiosqlite driver) and a
       gate. Each request holds a gate token for its whole duration; the
       handle counts tokens in flight. Closing flips the state first so new
       requests are rejected, then waits for the in-flight count to drain,
       then disposes the engine.
Who:   Routes use get_db_session(); BackupService calls close()/open().

Lifecycle:
    ┌──────────┐  open()   ┌───────────┐  success  ┌────────┐
    │  CLOSED  │──────────▶│ REOPENING │──────────▶│  OPEN  │
    └──────────┘           └───────────┘           └────────┘
         ▲                       │ failure              │
         │                       ▼                      │ close()
         └──────────────────── CLOSED ◀─────────────────┘
                                         (drain in-flight tokens,
                                          dispose engine)

    A CLOSED handle that was not quiesced for an import opens lazily on the
    next session request. A quiesced handle rejects every request with
    StoreUnavailableError (HTTP 503) until the import reopens or releases it.

    An import reopens with open(admit=False): the engine exists but the
    handle stays REOPENING, so verify() and the import's own queries run
    before any request is admitted. admit() then flips it to OPEN.

    close() issued while an open() is still running waits for that open to
    finish and then disposes its engine; the open does not admit requests.

Why no asyncio.Lock/Condition:
    The gate is a counter mutated only between awaits on the event loop, so
    check-and-increment is atomic. A polling drain keeps the handle free of
    loop-bound primitives, which matters because the handle is a module-level
    singleton outliving any single event loop (tests create one per test).
"""

import asyncio
import enum
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Awaitable, Callable, List, Optional

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from tree_chronicle.config import settings
from tree_chronicle.exceptions import DatabaseError, StoreUnavailableError

logger = logging.getLogger(__name__)

# Called with a fresh session the first time a database file is created
CreateHook = Callable[[AsyncSession], Awaitable[None]]


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    All models inherit from this class so a single metadata object describes
    the whole schema; StoreHandle.open() runs create_all against it.
    """
    pass


class StoreState(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    REOPENING = "reopening"


def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ships with FK enforcement off; ON DELETE CASCADE needs it per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class StoreHandle:
    """
    Process-wide, lazily-open reference to the SQLite store file.

    Invariant:
        No query executes against the store file while the handle is CLOSED
        or REOPENING. session()/acquire() refuse to hand out a token in those
        states, and close() only disposes the engine once every token handed
        out earlier has been returned.

    Attributes:
        db_path: Absolute path of the SQLite file this handle opens
        state:   Current StoreState
    """

    DRAIN_POLL_INTERVAL = 0.05

    def __init__(self, db_path: Optional[Path] = None, echo: bool = False):
        """
        Args:
            db_path: Override the default store path (used in tests).
                     If None, uses settings.database_path.
            echo:    Echo SQL to the log (DEBUG only).
        """
        self.db_path = Path(db_path or settings.database_path).resolve()
        self.echo = echo
        self.state = StoreState.CLOSED
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None
        self._in_flight = 0
        self._quiesced = False
        self._opening = False
        # Bumped by every close(); an open() that sees it change must not admit
        self._close_generation = 0
        self._create_hooks: List[CreateHook] = []

    # ── Introspection ─────────────────────────────────────────────────────
    @property
    def is_open(self) -> bool:
        return self.state is StoreState.OPEN

    @property
    def is_quiesced(self) -> bool:
        return self._quiesced

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise StoreUnavailableError()
        return self._engine

    def add_create_hook(self, hook: CreateHook) -> None:
        """Register a coroutine to run once when a brand-new store file is created."""
        if hook not in self._create_hooks:
            self._create_hooks.append(hook)

    # ── Lifecycle ─────────────────────────────────────────────────────────
    async def open(self, admit: bool = True) -> None:
        """
        Open (or reopen) the engine against db_path.

        What:    Creates the async engine, ensures the schema exists, and runs
                 create hooks when the file did not exist beforehand.
        Why create hooks only on creation: A restored backup must come back
                 exactly as archived, so seeding never touches an existing file.

        Args:
            admit: Flip to OPEN once the engine is ready. With False the handle
                   stays REOPENING until admit() is called. An open overtaken
                   by close() never admits.

        Raises:
            DatabaseError: The file could not be opened as a SQLite database.
                           The handle stays CLOSED.
        """
        if self.state is StoreState.OPEN or self._opening:
            return
        if self._engine is not None:
            # Opened without admitting and not yet closed
            if admit:
                self.admit()
            return

        # Models register themselves with Base.metadata on import
        import tree_chronicle.models.project  # noqa: F401
        import tree_chronicle.models.photo  # noqa: F401

        generation = self._close_generation
        self.state = StoreState.REOPENING
        self._opening = True
        created = not self.db_path.exists()
        engine: Optional[AsyncEngine] = None
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            engine = create_async_engine(
                f"sqlite+aiosqlite:///{self.db_path}",
                echo=self.echo,
            )
            event.listen(engine.sync_engine, "connect", _enable_foreign_keys)

            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            session_factory = async_sessionmaker(
                engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )

            if created and self._create_hooks:
                async with session_factory() as session:
                    for hook in self._create_hooks:
                        await hook(session)
                    await session.commit()
        except Exception as e:
            self.state = StoreState.CLOSED
            self._opening = False
            if engine is not None:
                await engine.dispose()
            logger.error("Failed to open store %s: %s", self.db_path.name, str(e))
            raise DatabaseError(
                message="The photo store could not be opened.",
                context={"path": str(self.db_path), "error_type": type(e).__name__},
            ) from e

        self._engine = engine
        self._session_factory = session_factory
        self._opening = False
        logger.info("Store opened: %s%s", self.db_path.name, " (new file)" if created else "")
        if admit and generation == self._close_generation:
            self.admit()

    def admit(self) -> None:
        """
        Start handing out gate tokens on an engine opened with admit=False.

        Raises:
            StoreUnavailableError: No engine is open.
        """
        if self._engine is None:
            raise StoreUnavailableError(context={"store_state": self.state.value})
        self._quiesced = False
        self.state = StoreState.OPEN

    async def close(self, drain_timeout: Optional[float] = None) -> None:
        """
        Quiesce the store: reject new requests, drain in-flight ones, dispose.

        Also disposes an engine opened with admit=False, and waits out an
        open() still in progress before doing so.

        Args:
            drain_timeout: Seconds to wait for in-flight tokens. None waits forever.

        Raises:
            TimeoutError: In-flight requests did not finish in time. The
                          handle is returned to OPEN before raising, so the
                          caller has changed nothing.
        """
        self._quiesced = True
        self._close_generation += 1
        while self._opening:
            await asyncio.sleep(self.DRAIN_POLL_INTERVAL)
        if self.state is StoreState.CLOSED and self._engine is None:
            return

        was_open = self.state is StoreState.OPEN
        self.state = StoreState.CLOSED

        deadline = None if drain_timeout is None else time.monotonic() + drain_timeout
        while self._in_flight > 0:
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(
                    "Store drain timed out with %d request(s) in flight", self._in_flight
                )
                if was_open:
                    self.state = StoreState.OPEN
                    self._quiesced = False
                raise TimeoutError("store did not drain in time")
            await asyncio.sleep(self.DRAIN_POLL_INTERVAL)

        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("Store closed: %s", self.db_path.name)

    def release(self) -> None:
        """
        Allow a closed handle to reopen lazily on the next request.

        Used after a failed import whose own reopen attempt also failed, so
        the process keeps trying instead of staying quiesced forever.
        """
        self._quiesced = False

    # ── Gate ──────────────────────────────────────────────────────────────
    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[None, None]:
        """
        Hold a gate token for the duration of the block.

        Raises:
            StoreUnavailableError: The store is quiesced or reopening.
        """
        if self.state is StoreState.CLOSED and not self._quiesced:
            await self.open()
        if self.state is not StoreState.OPEN:
            raise StoreUnavailableError(context={"store_state": self.state.value})

        self._in_flight += 1
        try:
            yield
        finally:
            self._in_flight -= 1

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Gate token plus an AsyncSession that commits on success and rolls
        back on error.
        """
        async with self.acquire():
            assert self._session_factory is not None
            async with self._session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

    def new_session(self) -> AsyncSession:
        """Bare session for callers that already hold a gate token."""
        if self._session_factory is None:
            raise StoreUnavailableError()
        return self._session_factory()

    async def verify(self) -> None:
        """
        Run SQLite's quick integrity check against the open engine.

        Goes straight to the engine without a gate token, so it works while
        the handle is REOPENING and no request has been admitted yet.

        Raises:
            StoreUnavailableError: No engine is open.
            DatabaseError:         The check did not report "ok".
        """
        async with self.engine.connect() as conn:
            result = await conn.execute(text("PRAGMA quick_check"))
            verdict = result.scalar()
        if verdict != "ok":
            raise DatabaseError(
                message="The photo store failed its integrity check.",
                context={"quick_check": verdict},
            )


# ── Singleton Instance ────────────────────────────────────────────────────
# The one handle every request and the backup service share
store = StoreHandle(echo=settings.log_level == "DEBUG")


# ── Session Dependency ────────────────────────────────────────────────────
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides a gated database session per request.

    How it works:
        1. Takes a gate token (503 StoreUnavailableError while importing)
        2. Yields a session to the route handler
        3. On success: commits; on error: rolls back
        4. Always: returns the token so an import can drain

    Example usage in a route:
        @router.get("/projects")
        async def list_projects(db: AsyncSession = Depends(get_db_session)):
            ...
    """
    async with store.session() as session:
        yield session

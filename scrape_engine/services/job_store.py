"""Durable job records keyed by job id.

Two implementations share one contract:

- ``InMemoryJobStore`` keeps detached copies in a dict (single process,
  nothing survives a restart)
- ``SqlJobStore`` persists through SQLAlchemy's asyncio API (SQLite via
  aiosqlite by default) so jobs survive a restart and the crash-recovery
  sweep can find them; store I/O awaits instead of blocking the event loop

``claim`` is a conditional write: it only moves a job to in-flight if its
stored state is still one of the expected states, which is what makes a claim
atomic across workers sharing the store. Every store failure surfaces as
``PersistenceFailure``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from scrape_engine.errors import ErrorKind, PersistenceFailure
from scrape_engine.models.jobs import Job, JobError, JobState

logger = logging.getLogger(__name__)


class JobStore(ABC):
    """Read/write contract for job records."""

    @abstractmethod
    async def insert_many(self, jobs: Sequence[Job]) -> None:
        """Insert new jobs in one all-or-nothing write."""

    @abstractmethod
    async def save(self, job: Job) -> None:
        """Overwrite the stored record of an existing job."""

    @abstractmethod
    async def claim(
        self, job: Job, expected_states: Iterable[JobState]
    ) -> bool:
        """Store *job* (already in-flight) only if the stored state is expected."""

    @abstractmethod
    async def get(self, job_id: str) -> Job | None:
        """Return a detached copy of the job, or None."""

    @abstractmethod
    async def load_active(self) -> list[Job]:
        """Return every non-terminal job."""

    async def initialize(self) -> None:
        """Prepare the store (create the schema) before first use."""

    async def close(self) -> None:
        """Release store resources."""


class InMemoryJobStore(JobStore):
    """Dict-backed store holding detached copies of job records."""

    def __init__(self) -> None:
        self._records: dict[str, Job] = {}

    async def insert_many(self, jobs: Sequence[Job]) -> None:
        for job in jobs:
            if job.id in self._records:
                raise PersistenceFailure(f"Duplicate job id: {job.id}")
        for job in jobs:
            self._records[job.id] = job.snapshot()

    async def save(self, job: Job) -> None:
        self._records[job.id] = job.snapshot()

    async def claim(self, job: Job, expected_states: Iterable[JobState]) -> bool:
        current = self._records.get(job.id)
        if current is None or current.state not in tuple(expected_states):
            return False
        self._records[job.id] = job.snapshot()
        return True

    async def get(self, job_id: str) -> Job | None:
        record = self._records.get(job_id)
        return record.snapshot() if record is not None else None

    async def load_active(self) -> list[Job]:
        return [
            record.snapshot()
            for record in self._records.values()
            if not record.state.is_terminal
        ]


# ---------------------------------------------------------------------------
# SQLAlchemy store
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    pass


class JobORM(Base):
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    domain: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    captcha_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deferrals: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    proxy_deferrals: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_proxy: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    not_before: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    captcha_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    callback_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _async_url(database_url: str) -> str:
    if database_url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + database_url[len("sqlite://"):]
    return database_url


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_row(job: Job) -> dict:
    return {
        "id": job.id,
        "url": job.url,
        "domain": job.domain,
        "priority": job.priority,
        "state": job.state.value,
        "attempt_count": job.attempt_count,
        "captcha_attempts": job.captcha_attempts,
        "deferrals": job.deferrals,
        "proxy_deferrals": job.proxy_deferrals,
        "last_error_kind": job.last_error.kind.value if job.last_error else None,
        "last_error_message": job.last_error.message if job.last_error else None,
        "last_proxy": job.last_proxy,
        "result": job.result,
        "not_before": job.not_before,
        "captcha_token": job.captcha_token,
        "cancel_requested": job.cancel_requested,
        "callback_url": job.callback_url,
        "submitted_at": job.submitted_at,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
    }


def _from_orm(row: JobORM) -> Job:
    last_error = None
    if row.last_error_kind is not None:
        last_error = JobError(
            kind=ErrorKind(row.last_error_kind),
            message=row.last_error_message or "",
        )
    return Job(
        id=row.id,
        url=row.url,
        domain=row.domain,
        priority=row.priority,
        state=JobState(row.state),
        attempt_count=row.attempt_count,
        captcha_attempts=row.captcha_attempts,
        deferrals=row.deferrals,
        proxy_deferrals=row.proxy_deferrals,
        last_error=last_error,
        last_proxy=row.last_proxy,
        result=row.result,
        not_before=_as_utc(row.not_before),
        captcha_token=row.captcha_token,
        cancel_requested=row.cancel_requested,
        callback_url=row.callback_url,
        submitted_at=_as_utc(row.submitted_at),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


class SqlJobStore(JobStore):
    """SQLAlchemy asyncio store. One short session per operation.

    Plain ``sqlite://`` URLs are served through aiosqlite; other databases
    need an async driver in the URL (e.g. ``postgresql+asyncpg://``).
    Call ``initialize`` once before use to create the schema.
    """

    def __init__(self, database_url: str) -> None:
        engine_kwargs: dict = {}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # Share the single in-memory database across sessions
            engine_kwargs["poolclass"] = StaticPool
        try:
            self._engine = create_async_engine(_async_url(database_url), **engine_kwargs)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Cannot open job store: {exc}") from exc
        self._sessions = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def initialize(self) -> None:
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Cannot open job store: {exc}") from exc

    async def insert_many(self, jobs: Sequence[Job]) -> None:
        try:
            async with self._sessions() as session, session.begin():
                session.add_all(JobORM(**_to_row(job)) for job in jobs)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to insert {len(jobs)} jobs: {exc}") from exc

    async def save(self, job: Job) -> None:
        try:
            async with self._sessions() as session, session.begin():
                await session.merge(JobORM(**_to_row(job)))
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to save job {job.id}: {exc}") from exc

    async def claim(self, job: Job, expected_states: Iterable[JobState]) -> bool:
        row = _to_row(job)
        row.pop("id")
        stmt = (
            update(JobORM)
            .where(JobORM.id == job.id)
            .where(JobORM.state.in_([s.value for s in expected_states]))
            .values(**row)
        )
        try:
            async with self._sessions() as session, session.begin():
                result = await session.execute(stmt)
                return result.rowcount == 1
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to claim job {job.id}: {exc}") from exc

    async def get(self, job_id: str) -> Job | None:
        try:
            async with self._sessions() as session:
                row = await session.get(JobORM, job_id)
                return _from_orm(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to read job {job_id}: {exc}") from exc

    async def load_active(self) -> list[Job]:
        terminal = [JobState.SUCCEEDED.value, JobState.FAILED.value]
        stmt = select(JobORM).where(JobORM.state.not_in(terminal))
        try:
            async with self._sessions() as session:
                rows = await session.scalars(stmt)
                return [_from_orm(row) for row in rows]
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to load active jobs: {exc}") from exc

    async def close(self) -> None:
        await self._engine.dispose()


def create_job_store(database_url: str | None) -> JobStore:
    """Pick the store implementation for a configured database URL."""
    if not database_url:
        logger.warning("No database_url configured — jobs will not survive a restart")
        return InMemoryJobStore()
    return SqlJobStore(database_url)

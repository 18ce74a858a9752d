"""Durable store for files and their per-mode check jobs.

The store is the single source of truth for job status. It is shared by every
worker thread; all operations are serialized by one re-entrant lock and each
mutation runs in its own transaction.

The one place where correctness depends on true atomicity is
``claim_next_pending_job``: the oldest pending job id is selected and then
moved to PROCESSING with a conditional UPDATE (``WHERE status = 'pending'``)
inside a single transaction. If the UPDATE touches no row (another process
sharing the database won the race), the next candidate is tried.
"""

import logging
import threading
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from vcheck.domain.models import (
    TERMINAL_STATUSES,
    CheckMode,
    ClaimedJob,
    FileRecord,
    FileStats,
    FileWithJobs,
    JobRecord,
    JobStats,
    JobStatus,
    utc_now,
)

_files = FileRecord.__table__  # type: ignore[attr-defined]
_jobs = JobRecord.__table__  # type: ignore[attr-defined]


def database_url_for(path: Path) -> str:
    return f"sqlite:///{path}"


class JobStore:
    """SQLModel-backed job queue.

    Args:
        database_url: SQLAlchemy URL. ``sqlite://`` / ``:memory:`` URLs share a
            single connection so every thread sees the same tables.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.logger = logging.getLogger(__name__)
        is_sqlite = database_url.startswith("sqlite")
        in_memory = is_sqlite and (":memory:" in database_url or database_url.rstrip("/") == "sqlite:")
        connect_args = {"check_same_thread": False, "timeout": 30} if is_sqlite else {}
        self.engine = create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool if in_memory else None,
        )
        self._lock = threading.RLock()
        SQLModel.metadata.create_all(self.engine)

    @classmethod
    def open(cls, path: Path) -> "JobStore":
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(database_url_for(path))

    def close(self) -> None:
        self.engine.dispose()

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # ── Files ──────────────────────────────────────────────────────────────────

    def insert_file(self, path: str, filename: str) -> bool:
        """Registers a file. Returns False (no-op) when the path is already known."""
        with self._lock, self._session() as session:
            existing = session.exec(select(FileRecord).where(FileRecord.path == path)).first()
            if existing is not None:
                return False
            session.add(FileRecord(path=path, filename=filename))
            try:
                session.commit()
            except IntegrityError:
                # Inserted concurrently by another process.
                session.rollback()
                return False
            return True

    def get_file(self, file_id: int) -> Optional[FileRecord]:
        with self._lock, self._session() as session:
            return session.get(FileRecord, file_id)

    def get_all_files(self) -> List[FileRecord]:
        with self._lock, self._session() as session:
            return list(session.exec(select(FileRecord).order_by(FileRecord.path)).all())

    def get_all_files_with_jobs(self) -> List[FileWithJobs]:
        """Every file with its full job history, most recent job first."""
        with self._lock, self._session() as session:
            files = session.exec(select(FileRecord).order_by(FileRecord.path)).all()
            jobs = session.exec(
                select(JobRecord).order_by(JobRecord.created_at.desc(), JobRecord.id.desc())
            ).all()

        jobs_by_file: Dict[int, List[JobRecord]] = defaultdict(list)
        for job in jobs:
            jobs_by_file[job.file_id].append(job)
        return [FileWithJobs(file=f, jobs=jobs_by_file.get(f.id, [])) for f in files]

    def get_file_ids_without_job(self, mode: CheckMode) -> List[int]:
        """Ids of files that were never checked in ``mode``."""
        checked = sa.select(_jobs.c.file_id).where(_jobs.c.mode == mode)
        stmt = sa.select(_files.c.id).where(_files.c.id.not_in(checked)).order_by(_files.c.path)
        with self._lock, self.engine.connect() as conn:
            return list(conn.execute(stmt).scalars())

    def update_file_duration(self, file_id: int, duration_seconds: float) -> None:
        with self._lock, self.engine.begin() as conn:
            conn.execute(
                sa.update(_files).where(_files.c.id == file_id).values(duration_seconds=duration_seconds)
            )

    def clear_all_files(self) -> None:
        """Full reset: all jobs, then all files."""
        with self._lock, self.engine.begin() as conn:
            conn.execute(sa.delete(_jobs))
            conn.execute(sa.delete(_files))
        self.logger.info("Cleared all files and jobs")

    # ── Jobs ───────────────────────────────────────────────────────────────────

    def create_jobs(self, file_ids: Iterable[int], mode: CheckMode) -> int:
        """Seeds one pending job per file id, all in one transaction."""
        ids = list(file_ids)
        if not ids:
            return 0
        with self._lock, self._session() as session:
            session.add_all([JobRecord(file_id=file_id, mode=mode) for file_id in ids])
            session.commit()
        self.logger.debug(f"Created {len(ids)} {mode.value} jobs")
        return len(ids)

    def get_job(self, job_id: int) -> Optional[JobRecord]:
        with self._lock, self._session() as session:
            return session.get(JobRecord, job_id)

    def claim_next_pending_job(self, mode: CheckMode) -> Optional[ClaimedJob]:
        """Atomically moves the oldest pending job of ``mode`` to PROCESSING."""
        with self._lock:
            while True:
                with self.engine.begin() as conn:
                    job_id = conn.execute(
                        sa.select(_jobs.c.id)
                        .where(_jobs.c.mode == mode, _jobs.c.status == JobStatus.PENDING)
                        .order_by(_jobs.c.created_at, _jobs.c.id)
                        .limit(1)
                    ).scalar()
                    if job_id is None:
                        return None
                    claimed = conn.execute(
                        sa.update(_jobs)
                        .where(_jobs.c.id == job_id, _jobs.c.status == JobStatus.PENDING)
                        .values(status=JobStatus.PROCESSING)
                    ).rowcount
                if claimed != 1:
                    continue

                with self._session() as session:
                    job = session.get(JobRecord, job_id)
                    file = session.get(FileRecord, job.file_id) if job is not None else None
                if job is None:
                    continue
                if file is None:
                    self.logger.warning(f"Job {job_id} references missing file {job.file_id}")
                    self.update_job_status(job_id, JobStatus.ERROR, "File record missing")
                    continue
                return ClaimedJob(job=job, file=file)

    def update_job_status(
        self,
        job_id: int,
        status: JobStatus,
        error_message: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ) -> None:
        """Last write wins. completed_at is only set for terminal statuses."""
        if status in TERMINAL_STATUSES:
            values = dict(
                status=status,
                error_message=error_message,
                duration_seconds=duration_seconds,
                completed_at=utc_now(),
            )
        else:
            values = dict(status=status)
        with self._lock, self.engine.begin() as conn:
            conn.execute(sa.update(_jobs).where(_jobs.c.id == job_id).values(**values))

    def finish_job(
        self,
        job_id: int,
        status: JobStatus,
        error_message: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ) -> bool:
        """PROCESSING -> ``status``. Returns False when the row is gone or no longer processing."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status.value}")
        stmt = (
            sa.update(_jobs)
            .where(_jobs.c.id == job_id, _jobs.c.status == JobStatus.PROCESSING)
            .values(
                status=status,
                error_message=error_message,
                duration_seconds=duration_seconds,
                completed_at=utc_now(),
            )
        )
        with self._lock, self.engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def reset_processing_jobs(self, mode: Optional[CheckMode] = None) -> int:
        """PROCESSING -> PENDING (recovery after an abnormal exit). Returns row count."""
        stmt = sa.update(_jobs).where(_jobs.c.status == JobStatus.PROCESSING)
        if mode is not None:
            stmt = stmt.where(_jobs.c.mode == mode)
        with self._lock, self.engine.begin() as conn:
            return conn.execute(stmt.values(status=JobStatus.PENDING)).rowcount

    def delete_pending_and_processing_jobs(self, mode: Optional[CheckMode] = None) -> int:
        stmt = sa.delete(_jobs).where(_jobs.c.status.in_([JobStatus.PENDING, JobStatus.PROCESSING]))
        if mode is not None:
            stmt = stmt.where(_jobs.c.mode == mode)
        with self._lock, self.engine.begin() as conn:
            return conn.execute(stmt).rowcount

    # ── Counters ───────────────────────────────────────────────────────────────

    def get_job_stats(self) -> JobStats:
        """All counters from one SELECT, so they describe a single snapshot."""
        def _count(status: JobStatus):
            return sa.func.coalesce(sa.func.sum(sa.case((_jobs.c.status == status, 1), else_=0)), 0)

        stmt = sa.select(
            sa.func.count(_jobs.c.id),
            _count(JobStatus.PENDING),
            _count(JobStatus.PROCESSING),
            _count(JobStatus.COMPLETED),
            _count(JobStatus.ERROR),
        )
        with self._lock, self.engine.connect() as conn:
            total, pending, processing, completed, error = conn.execute(stmt).one()
        return JobStats(
            total=total,
            pending=pending,
            processing=processing,
            completed=completed,
            error=error,
        )

    def get_file_stats(self) -> FileStats:
        with self._lock, self.engine.connect() as conn:
            total = conn.execute(sa.select(sa.func.count(_files.c.id))).scalar_one()
        return FileStats(total=total)

    def count_jobs(self, mode: CheckMode, status: JobStatus) -> int:
        stmt = sa.select(sa.func.count(_jobs.c.id)).where(_jobs.c.mode == mode, _jobs.c.status == status)
        with self._lock, self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one()

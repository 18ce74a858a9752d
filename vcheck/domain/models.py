from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, Field as PydanticField
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CheckMode(str, Enum):
    QUICK = "quick"  # ffprobe structural probe
    FULL = "full"    # ffmpeg full decode


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.ERROR)


class WorkerStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"


class OutputStream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


class FileRecord(SQLModel, table=True):
    __tablename__ = "files"

    id: Optional[int] = Field(default=None, primary_key=True)
    path: str = Field(unique=True, index=True)
    filename: str
    duration_seconds: Optional[float] = None
    created_at: datetime = Field(default_factory=utc_now)


class JobRecord(SQLModel, table=True):
    __tablename__ = "jobs"

    id: Optional[int] = Field(default=None, primary_key=True)
    file_id: int = Field(foreign_key="files.id", index=True)
    mode: CheckMode
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class ClaimedJob(BaseModel):
    """A job that was atomically moved to PROCESSING, with its file."""

    job: JobRecord
    file: FileRecord


class FileWithJobs(BaseModel):
    file: FileRecord
    jobs: List[JobRecord] = PydanticField(default_factory=list)  # most recent first


class JobStats(BaseModel):
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    error: int = 0


class FileStats(BaseModel):
    total: int = 0


class CheckOutcome(BaseModel):
    success: bool
    error_message: Optional[str] = None
    duration_seconds: Optional[float] = None


class CheckTiming(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def elapsed_seconds(self) -> Optional[float]:
        if self.start_time is None:
            return None
        end = self.end_time or utc_now()
        return (end - self.start_time).total_seconds()


class LogLine(BaseModel):
    time: str
    stream: OutputStream
    data: str


class WorkerSnapshot(BaseModel):
    worker_id: int
    logs: List[LogLine] = PydanticField(default_factory=list)
    current_file: Optional[str] = None
    status: WorkerStatus = WorkerStatus.STOPPED


WorkerSnapshots = Dict[int, WorkerSnapshot]

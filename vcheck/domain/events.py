"""Domain events for the media checking pipeline.

Events represent state changes that flow through the EventBus, decoupling the
checker pool, the job store and the worker log sink from observers (the CLI
progress view, live HTTP streams).

Two families exist and observers normally subscribe to a family base class:

- ``FileEvent``: job and file status (``status_change``, ``job_update``,
  ``check_complete``).
- ``WorkerEvent``: per-worker log activity (``state``, ``output``, ``file``,
  ``clear``).

Delivery has no replay. A new observer must attach to the bus first and then
read a snapshot (``JobStore.get_job_stats`` / ``WorkerLogSink.get_worker_outputs``)
so nothing published in between is lost.

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from typing import Any, Dict, Literal, Optional
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from .models import CheckMode, JobStats, JobStatus, LogLine, WorkerStatus


class Event(BaseModel):
    """Base class for all domain events.

    Events are validated Pydantic models. They are not frozen by default.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready dict with camelCase keys; unset optional fields are dropped."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── File / job family ──────────────────────────────────────────────────────────

class FileEvent(Event):
    """Base class for job and file status events."""

    type: str
    job_id: Optional[int] = None
    file_id: Optional[int] = None
    mode: Optional[CheckMode] = None
    status: Optional[JobStatus] = None
    error_message: Optional[str] = None
    stats: Optional[JobStats] = None


class StatusChanged(FileEvent):
    """Emitted when the set of files changes (scan, bulk clear)."""

    type: Literal["status_change"] = "status_change"


class JobUpdated(FileEvent):
    """Emitted when a job is claimed (processing) and when it finishes."""

    type: Literal["job_update"] = "job_update"


class CheckCompleted(FileEvent):
    """Emitted when the last active mode drains, and on every stop request."""

    type: Literal["check_complete"] = "check_complete"


# ── Worker / log family ────────────────────────────────────────────────────────

class WorkerEvent(Event):
    """Base class for worker log events."""

    type: str
    worker_id: Optional[int] = None


class WorkerStateChanged(WorkerEvent):
    type: Literal["state"] = "state"
    status: WorkerStatus


class WorkerOutputAppended(WorkerEvent):
    type: Literal["output"] = "output"
    line: LogLine


class WorkerFileChanged(WorkerEvent):
    type: Literal["file"] = "file"
    file_path: str


class WorkersCleared(WorkerEvent):
    """All worker logs were wiped (new run epoch or explicit clear)."""

    type: Literal["clear"] = "clear"

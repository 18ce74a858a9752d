import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from vcheck.domain.events import (
    WorkerFileChanged,
    WorkerOutputAppended,
    WorkersCleared,
    WorkerStateChanged,
)
from vcheck.domain.models import (
    LogLine,
    OutputStream,
    WorkerSnapshot,
    WorkerSnapshots,
    WorkerStatus,
)
from vcheck.infrastructure.event_bus import EventBus

_LOG_FILE_RE = re.compile(r"^worker-(\d+)\.log$")
_LOG_LINE_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z) \[(stdout|stderr)\] (.*)$"
)


def _timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def format_log_line(line: LogLine) -> str:
    return f"{line.time} [{line.stream.value}] {line.data}"


def parse_log_line(raw: str) -> Optional[LogLine]:
    match = _LOG_LINE_RE.match(raw)
    if not match:
        return None
    return LogLine(time=match.group(1), stream=OutputStream(match.group(2)), data=match.group(3))


class _WorkerState:
    __slots__ = ("status", "current_file")

    def __init__(self):
        self.status = WorkerStatus.RUNNING
        self.current_file: Optional[str] = None


class WorkerLogSink:
    """Per-worker durable output logs plus in-memory running state.

    Each worker owns ``<logs_dir>/worker-<id>.log``; lines are appended as
    ``<ISO time> [stdout|stderr] <text>``. Status and current file live only in
    memory, so after a restart every logged worker reads back as stopped.
    """

    def __init__(self, logs_dir: Path, event_bus: EventBus):
        self.logs_dir = logs_dir
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        self._workers: Dict[int, _WorkerState] = {}
        self._lock = threading.Lock()

    def log_path(self, worker_id: int) -> Path:
        return self.logs_dir / f"worker-{worker_id}.log"

    def init_worker(self, worker_id: int) -> None:
        with self._lock:
            self.log_path(worker_id).write_text("", encoding="utf-8")
            self._workers[worker_id] = _WorkerState()
        self.event_bus.publish(WorkerStateChanged(worker_id=worker_id, status=WorkerStatus.RUNNING))

    def append_worker_output(self, worker_id: int, stream: OutputStream, text: str) -> None:
        """Appends ``text`` (one durable line per embedded line) for a known worker.

        Unknown workers are ignored: after a restart nothing is registered until
        a new run starts.
        """
        parts = text.rstrip("\r\n").splitlines() or [""]
        lines = [LogLine(time=_timestamp(), stream=stream, data=part.rstrip("\r")) for part in parts]
        with self._lock:
            if worker_id not in self._workers:
                return
            with open(self.log_path(worker_id), "a", encoding="utf-8") as f:
                for line in lines:
                    f.write(format_log_line(line) + "\n")
        for line in lines:
            self.event_bus.publish(WorkerOutputAppended(worker_id=worker_id, line=line))

    def set_worker_file(self, worker_id: int, file_path: str) -> None:
        with self._lock:
            state = self._workers.get(worker_id)
            if state is None:
                return
            state.current_file = file_path
        self.event_bus.publish(WorkerFileChanged(worker_id=worker_id, file_path=file_path))

    def stop_worker(self, worker_id: int) -> None:
        with self._lock:
            state = self._workers.get(worker_id)
            if state is not None:
                state.status = WorkerStatus.STOPPED
                state.current_file = None
        self.event_bus.publish(WorkerStateChanged(worker_id=worker_id, status=WorkerStatus.STOPPED))

    def clear_workers(self) -> None:
        """Forgets every worker and deletes all worker log files."""
        removed = 0
        with self._lock:
            self._workers.clear()
            if self.logs_dir.exists():
                for path in self.logs_dir.iterdir():
                    if _LOG_FILE_RE.match(path.name):
                        path.unlink()
                        removed += 1
        self.logger.debug(f"Cleared {removed} worker logs")
        self.event_bus.publish(WorkersCleared())

    def read_worker_logs(self, worker_id: int) -> List[LogLine]:
        path = self.log_path(worker_id)
        if not path.exists():
            return []
        lines = []
        for raw in path.read_text(encoding="utf-8", errors="replace").splitlines():
            if not raw.strip():
                continue
            line = parse_log_line(raw)
            if line is not None:
                lines.append(line)
        return lines

    def get_worker_outputs(self) -> WorkerSnapshots:
        """Snapshot of every durable worker log, keyed and ordered by worker id."""
        result: WorkerSnapshots = {}
        with self._lock:
            worker_ids = []
            if self.logs_dir.exists():
                for path in self.logs_dir.iterdir():
                    match = _LOG_FILE_RE.match(path.name)
                    if match:
                        worker_ids.append(int(match.group(1)))
            for worker_id in sorted(worker_ids):
                state = self._workers.get(worker_id)
                result[worker_id] = WorkerSnapshot(
                    worker_id=worker_id,
                    logs=self.read_worker_logs(worker_id),
                    current_file=state.current_file if state else None,
                    status=state.status if state else WorkerStatus.STOPPED,
                )
        return result

from pathlib import Path
from typing import Dict, Optional
from vcheck.infrastructure.event_bus import EventBus
from vcheck.ui.state import UIState
from vcheck.domain.events import (
    CheckCompleted, JobUpdated, WorkerFileChanged, WorkerStateChanged, WorkersCleared
)
from vcheck.domain.models import JobStatus, WorkerStatus

class UIManager:
    """Subscribes to EventBus and updates UIState.

    Only events for the mode being displayed are counted.
    """

    def __init__(self, bus: EventBus, state: UIState, file_names: Optional[Dict[int, str]] = None):
        self.bus = bus
        self.state = state
        self.file_names = file_names or {}
        self._setup_subscriptions()

    def _setup_subscriptions(self):
        self.bus.subscribe(JobUpdated, self.on_job_updated)
        self.bus.subscribe(CheckCompleted, self.on_check_completed)
        self.bus.subscribe(WorkerFileChanged, self.on_worker_file)
        self.bus.subscribe(WorkerStateChanged, self.on_worker_state)
        self.bus.subscribe(WorkersCleared, self.on_workers_cleared)

    def close(self):
        self.bus.unsubscribe(JobUpdated, self.on_job_updated)
        self.bus.unsubscribe(CheckCompleted, self.on_check_completed)
        self.bus.unsubscribe(WorkerFileChanged, self.on_worker_file)
        self.bus.unsubscribe(WorkerStateChanged, self.on_worker_state)
        self.bus.unsubscribe(WorkersCleared, self.on_workers_cleared)

    def on_job_updated(self, event: JobUpdated):
        with self.state._lock:
            if self.state.mode is not None and event.mode != self.state.mode:
                return
            if event.status == JobStatus.COMPLETED:
                self.state.completed_count += 1
            elif event.status == JobStatus.ERROR:
                self.state.error_count += 1
                name = self.file_names.get(event.file_id, f"file #{event.file_id}")
                message = (event.error_message or "").splitlines()
                self.state.recent_errors.append((name, message[0] if message else "error"))

    def on_check_completed(self, event: CheckCompleted):
        with self.state._lock:
            self.state.finished = True

    def on_worker_file(self, event: WorkerFileChanged):
        with self.state._lock:
            self.state.worker_files[event.worker_id] = Path(event.file_path).name

    def on_worker_state(self, event: WorkerStateChanged):
        if event.status != WorkerStatus.STOPPED:
            return
        with self.state._lock:
            self.state.worker_files.pop(event.worker_id, None)

    def on_workers_cleared(self, event: WorkersCleared):
        with self.state._lock:
            self.state.worker_files.clear()

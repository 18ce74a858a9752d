import threading
from collections import deque
from datetime import datetime
from typing import Deque, Dict, Optional, Tuple
from vcheck.domain.models import CheckMode

class UIState:
    """Thread-safe state behind the terminal dashboard."""

    def __init__(self, recent_errors_max: int = 5):
        self._lock = threading.RLock()

        self.mode: Optional[CheckMode] = None
        self.total_jobs = 0
        self.completed_count = 0
        self.error_count = 0

        # worker id -> file currently being checked
        self.worker_files: Dict[int, str] = {}
        # (filename, error message), newest last
        self.recent_errors: Deque[Tuple[str, str]] = deque(maxlen=recent_errors_max)

        self.start_time: Optional[datetime] = None
        self.finished = False
        self.stop_requested = False

    @property
    def done_count(self) -> int:
        with self._lock:
            return self.completed_count + self.error_count

    def begin(self, mode: CheckMode, total_jobs: int) -> None:
        with self._lock:
            self.mode = mode
            self.total_jobs = total_jobs
            self.completed_count = 0
            self.error_count = 0
            self.worker_files.clear()
            self.recent_errors.clear()
            self.start_time = datetime.now()
            self.finished = False
            self.stop_requested = False

    def elapsed_seconds(self) -> float:
        with self._lock:
            if self.start_time is None:
                return 0.0
            return (datetime.now() - self.start_time).total_seconds()

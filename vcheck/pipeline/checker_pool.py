"""Worker pool controller for media check runs.

Turns a batch of (file id, mode) pairs into pending jobs and drains them with
a bounded set of worker threads per mode. Modes (quick, full) run
independently and may overlap.

Key responsibilities:
- Seed jobs and activate a mode (rejecting duplicates and empty batches)
- Reset the run epoch (worker logs, worker ids, timing) when the first mode
  activates from idle
- Run worker loops: claim -> check -> persist -> publish
- Cooperative cancellation: a stopped mode's rows are deleted at once and any
  result that arrives afterwards is discarded
- Emit CheckCompleted when the last active mode drains

Mode state machine: idle -> activating -> running -> draining -> idle.
"""

import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from vcheck.config.models import default_concurrency
from vcheck.domain.events import CheckCompleted, JobUpdated
from vcheck.domain.models import CheckMode, CheckOutcome, CheckTiming, ClaimedJob, JobStatus, OutputStream, utc_now
from vcheck.infrastructure.checker import MediaChecker
from vcheck.infrastructure.event_bus import EventBus
from vcheck.infrastructure.job_store import JobStore
from vcheck.infrastructure.worker_logs import WorkerLogSink


class CheckerPool:
    """Owns the active-mode set, live worker counts and run timing.

    All controller state is guarded by one Condition; workers coordinate with
    each other only through ``JobStore.claim_next_pending_job``.

    Each activation of a mode gets a new generation number. A worker keeps
    running only while its mode is active *and* still on the generation it was
    spawned for, so a worker that outlives a stop never writes into a later
    run of the same mode. The liveness check and the claim happen under the
    Condition together, and results are written only to rows still in
    PROCESSING.

    Args:
        store: JobStore holding files and jobs.
        log_sink: WorkerLogSink receiving per-worker tool output.
        event_bus: EventBus for JobUpdated / CheckCompleted.
        checker: MediaChecker invoked once per claimed job.
        default_concurrency: Workers per activation when the caller gives none.
    """

    def __init__(
        self,
        store: JobStore,
        log_sink: WorkerLogSink,
        event_bus: EventBus,
        checker: MediaChecker,
        default_concurrency: Optional[int] = None,
    ):
        self.store = store
        self.log_sink = log_sink
        self.event_bus = event_bus
        self.checker = checker
        self.default_concurrency = default_concurrency
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Condition()
        self._running_modes: Set[CheckMode] = set()
        self._active_workers: Dict[CheckMode, int] = {}
        self._generations: Dict[CheckMode, int] = {}
        self._exiting = 0  # workers past their count decrement, still publishing
        self._worker_id_counter = 0
        self._start_time: Optional[datetime] = None
        self._end_time: Optional[datetime] = None
        self._threads: List[threading.Thread] = []

    # ── Commands ───────────────────────────────────────────────────────────────

    def start_checking(self, mode: CheckMode, file_ids: Iterable[int], concurrency: Optional[int] = None) -> bool:
        """Seeds jobs for ``file_ids`` and spawns workers for ``mode``.

        Returns False without side effects when the mode is already active or
        the batch is empty. Store errors propagate to the caller.
        """
        ids = list(file_ids)
        workers = concurrency if concurrency is not None else (self.default_concurrency or default_concurrency())
        if workers < 1:
            raise ValueError(f"concurrency must be >= 1, got {workers}")

        with self._lock:
            if mode in self._running_modes:
                self.logger.info(f"Start rejected: {mode.value} check already running")
                return False
            if not ids:
                self.logger.info(f"Start rejected: empty {mode.value} batch")
                return False

            self.store.create_jobs(ids, mode)
            self._running_modes.add(mode)
            generation = self._generations.get(mode, 0) + 1
            self._generations[mode] = generation

            if len(self._running_modes) == 1 and self.get_active_workers() == 0:
                self._reset_epoch()

            for _ in range(workers):
                self._worker_id_counter += 1
                worker_id = self._worker_id_counter
                self._active_workers[mode] = self._active_workers.get(mode, 0) + 1
                self.log_sink.init_worker(worker_id)
                thread = threading.Thread(
                    target=self._worker_loop,
                    args=(worker_id, mode, generation),
                    name=f"vcheck-{mode.value}-worker-{worker_id}",
                    daemon=True,
                )
                self._threads.append(thread)
                thread.start()

        self.logger.info(f"Started {mode.value} check: {len(ids)} files, {workers} workers")
        return True

    def stop_checking(self, mode: Optional[CheckMode] = None) -> None:
        """Deactivates ``mode`` (or every mode) and deletes its in-flight rows.

        Workers notice on their next liveness check; results that arrive after
        this call are dropped. Always publishes CheckCompleted.
        """
        with self._lock:
            modes = [mode] if mode is not None else list(self._running_modes)
            for m in modes:
                self._running_modes.discard(m)
                self._generations[m] = self._generations.get(m, 0) + 1
            deleted = self.store.delete_pending_and_processing_jobs(mode)
            self._lock.notify_all()

        scope = mode.value if mode else "all modes"
        self.logger.info(f"Stop requested ({scope}); removed {deleted} pending/processing jobs")
        self.event_bus.publish(CheckCompleted(stats=self.store.get_job_stats()))

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Blocks until no worker is alive. Returns False on timeout."""
        with self._lock:
            return self._lock.wait_for(
                lambda: self.get_active_workers() == 0 and self._exiting == 0, timeout=timeout
            )

    # ── Queries (pure reads) ───────────────────────────────────────────────────

    def is_checker_running(self, mode: Optional[CheckMode] = None) -> bool:
        with self._lock:
            if mode is not None:
                return mode in self._running_modes
            return bool(self._running_modes)

    def get_active_workers(self, mode: Optional[CheckMode] = None) -> int:
        with self._lock:
            if mode is not None:
                return self._active_workers.get(mode, 0)
            return sum(self._active_workers.values())

    def get_running_modes(self) -> List[CheckMode]:
        with self._lock:
            return [m for m in CheckMode if m in self._running_modes]

    def get_check_timing(self) -> CheckTiming:
        with self._lock:
            return CheckTiming(start_time=self._start_time, end_time=self._end_time)

    # ── Internals ──────────────────────────────────────────────────────────────

    def _reset_epoch(self) -> None:
        """Called with the lock held when the first mode activates from idle."""
        self.log_sink.clear_workers()
        self._worker_id_counter = 0
        self._start_time = utc_now()
        self._end_time = None
        self._threads = [t for t in self._threads if t.is_alive()]

    def _is_live(self, mode: CheckMode, generation: int) -> bool:
        with self._lock:
            return mode in self._running_modes and self._generations.get(mode) == generation

    def _claim(self, mode: CheckMode, generation: int) -> Optional[ClaimedJob]:
        """Liveness check and claim as one step, so a stop cannot land in between."""
        with self._lock:
            if not self._is_live(mode, generation):
                return None
            return self.store.claim_next_pending_job(mode)

    def _worker_loop(self, worker_id: int, mode: CheckMode, generation: int) -> None:
        self.logger.debug(f"Worker {worker_id} started ({mode.value})")
        try:
            while True:
                claimed = self._claim(mode, generation)
                if claimed is None:
                    break
                if not self._process(worker_id, mode, generation, claimed):
                    break
        except Exception:
            self.logger.exception(f"Worker {worker_id} ({mode.value}) crashed")
        finally:
            self._on_worker_exit(worker_id, mode)

    def _process(self, worker_id: int, mode: CheckMode, generation: int, claimed: ClaimedJob) -> bool:
        """Checks one claimed job. Returns False when the result was discarded."""
        job, file = claimed.job, claimed.file
        self.logger.debug(f"Worker {worker_id} claimed job {job.id}: {file.path}")
        self.log_sink.set_worker_file(worker_id, file.path)
        self.event_bus.publish(JobUpdated(
            job_id=job.id, file_id=file.id, mode=mode, status=JobStatus.PROCESSING,
        ))

        def _forward(stream: OutputStream, text: str) -> None:
            self.log_sink.append_worker_output(worker_id, stream, text)

        try:
            outcome = self.checker.check(Path(file.path), mode, on_output=_forward)
        except Exception as e:
            self.logger.exception(f"Checker raised for {file.path}")
            outcome = CheckOutcome(success=False, error_message=f"Checker failed: {e}")

        # A stop during the check already deleted the row; do not resurrect it.
        if not self._is_live(mode, generation):
            self.logger.info(f"Discarded {mode.value} result for {file.filename} (check stopped)")
            return False

        status = JobStatus.COMPLETED if outcome.success else JobStatus.ERROR
        error_message = None if outcome.success else outcome.error_message
        if not self.store.finish_job(job.id, status, error_message, outcome.duration_seconds):
            self.logger.info(f"Discarded {mode.value} result for {file.filename} (job no longer processing)")
            return False

        if outcome.duration_seconds is not None:
            self.store.update_file_duration(file.id, outcome.duration_seconds)
        if not outcome.success:
            self.logger.info(f"{mode.value} check failed: {file.path}")
        self.event_bus.publish(JobUpdated(
            job_id=job.id, file_id=file.id, mode=mode, status=status, error_message=error_message,
        ))
        return True

    def _on_worker_exit(self, worker_id: int, mode: CheckMode) -> None:
        run_finished = False
        with self._lock:
            remaining = max(0, self._active_workers.get(mode, 0) - 1)
            self._active_workers[mode] = remaining
            self.log_sink.stop_worker(worker_id)
            if remaining == 0:
                self._running_modes.discard(mode)
                if not self._running_modes:
                    self._end_time = utc_now()
                    run_finished = True
            self._exiting += 1

        self.logger.debug(f"Worker {worker_id} stopped ({mode.value})")
        try:
            if run_finished:
                stats = self.store.get_job_stats()
                self.logger.info(
                    f"Check run finished: completed={stats.completed} error={stats.error} "
                    f"pending={stats.pending}"
                )
                self.event_bus.publish(CheckCompleted(stats=stats))
        finally:
            with self._lock:
                self._exiting -= 1
                self._lock.notify_all()

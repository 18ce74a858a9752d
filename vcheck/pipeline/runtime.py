import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional

from vcheck.config.models import AppConfig
from vcheck.domain.events import StatusChanged
from vcheck.domain.models import CheckMode
from vcheck.infrastructure.checker import MediaChecker
from vcheck.infrastructure.event_bus import EventBus
from vcheck.infrastructure.file_scanner import FileScanner
from vcheck.infrastructure.housekeeping import HousekeepingService
from vcheck.infrastructure.job_store import JobStore
from vcheck.infrastructure.run_lease import RunLease
from vcheck.infrastructure.worker_logs import WorkerLogSink
from vcheck.pipeline.checker_pool import CheckerPool
from vcheck.pipeline.report import build_report, report_filename

logger = logging.getLogger(__name__)


class ScanResult(NamedTuple):
    found: int
    added: int


@dataclass
class Runtime:
    """Wired components shared by the CLI and the HTTP server."""

    config: AppConfig
    event_bus: EventBus
    store: JobStore
    log_sink: WorkerLogSink
    checker: MediaChecker
    pool: CheckerPool
    lease: Optional[RunLease] = None

    def scan(self, directory: Path) -> ScanResult:
        """Registers every media file under ``directory`` (already known paths are kept)."""
        if not directory.is_dir():
            raise ValueError(f"Not a directory: {directory}")
        scanner = FileScanner(self.config.general.extensions)
        found = added = 0
        for path in scanner.scan(directory):
            found += 1
            if self.store.insert_file(str(path), path.name):
                added += 1
        logger.info(f"Scanned {directory}: found={found} added={added}")
        if added:
            self.event_bus.publish(StatusChanged(stats=self.store.get_job_stats()))
        return ScanResult(found=found, added=added)

    def select_file_ids(self, mode: CheckMode, include_checked: bool = False) -> List[int]:
        if include_checked:
            return [f.id for f in self.store.get_all_files()]
        return self.store.get_file_ids_without_job(mode)

    def clear_files(self) -> None:
        """Stops any running check, then deletes every file and job."""
        if self.pool.is_checker_running():
            self.pool.stop_checking()
        self.store.clear_all_files()
        self.event_bus.publish(StatusChanged(stats=self.store.get_job_stats()))

    def clear_logs(self) -> None:
        self.log_sink.clear_workers()

    def export_report(self) -> Dict[str, Any]:
        return build_report(self.store, self.checker)

    def export_filename(self) -> str:
        return report_filename()

    def status(self) -> Dict[str, Any]:
        timing = self.pool.get_check_timing()
        return {
            "runningModes": [m.value for m in self.pool.get_running_modes()],
            "activeWorkers": {m.value: self.pool.get_active_workers(m) for m in CheckMode},
            "timing": {
                "startTime": timing.start_time.isoformat() if timing.start_time else None,
                "endTime": timing.end_time.isoformat() if timing.end_time else None,
                "elapsedSeconds": timing.elapsed_seconds,
            },
            "stats": self.store.get_job_stats().model_dump(),
            "totalFiles": self.store.get_file_stats().total,
        }

    def close(self) -> None:
        if self.pool.is_checker_running():
            self.pool.stop_checking()
        self.pool.wait(timeout=5.0)
        self.store.close()
        if self.lease is not None:
            self.lease.release()


def build_runtime(config: AppConfig, exclusive: bool = False) -> Runtime:
    """Opens the data directory and wires all components.

    ``exclusive`` takes the data directory's run lease first (raising
    DataDirBusyError when another process holds it). Processes that run
    workers or clear worker logs must ask for it; only the lease holder resets
    jobs left PROCESSING by a previous process.
    """
    general = config.general
    general.data_path.mkdir(parents=True, exist_ok=True)

    lease = None
    if exclusive:
        lease = RunLease(general.lock_path)
        lease.acquire()

    event_bus = EventBus()
    store = JobStore.open(general.database_path)
    log_sink = WorkerLogSink(general.logs_dir, event_bus)
    checker = MediaChecker.from_config(config.checker)
    pool = CheckerPool(
        store=store,
        log_sink=log_sink,
        event_bus=event_bus,
        checker=checker,
        default_concurrency=general.effective_concurrency,
    )

    if exclusive and general.recover_on_start:
        HousekeepingService().recover_abandoned_jobs(store)

    return Runtime(
        config=config,
        event_bus=event_bus,
        store=store,
        log_sink=log_sink,
        checker=checker,
        pool=pool,
        lease=lease,
    )

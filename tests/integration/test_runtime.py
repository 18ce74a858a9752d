import threading

import pytest

from vcheck.domain.events import StatusChanged
from vcheck.domain.models import CheckMode, JobStatus
from vcheck.infrastructure.job_store import JobStore
from vcheck.infrastructure.run_lease import DataDirBusyError
from vcheck.pipeline.runtime import build_runtime


def _with_checker(runtime, checker):
    runtime.checker = checker
    runtime.pool.checker = checker
    return runtime


def test_build_runtime_creates_data_layout(sample_config):
    runtime = build_runtime(sample_config)
    try:
        assert sample_config.general.database_path.exists()
        assert sample_config.general.logs_dir.is_dir()
        assert runtime.pool.default_concurrency == 2
        assert runtime.checker.max_error_length == 200
    finally:
        runtime.close()


def test_scan_registers_media_and_publishes_status(sample_config, dummy_video_files, test_input_dir):
    runtime = build_runtime(sample_config)
    events = []
    runtime.event_bus.subscribe(StatusChanged, events.append)
    try:
        first = runtime.scan(test_input_dir)
        second = runtime.scan(test_input_dir)
    finally:
        runtime.close()

    assert (first.found, first.added) == (4, 4)
    assert (second.found, second.added) == (4, 0)
    assert len(events) == 1


def test_select_file_ids_skips_checked_files(sample_config, dummy_video_files, test_input_dir, fake_checker):
    runtime = _with_checker(build_runtime(sample_config), fake_checker)
    try:
        runtime.scan(test_input_dir)
        all_ids = runtime.select_file_ids(CheckMode.QUICK)
        assert len(all_ids) == 4

        runtime.pool.start_checking(CheckMode.QUICK, all_ids[:2])
        assert runtime.pool.wait(timeout=10)

        assert runtime.select_file_ids(CheckMode.QUICK) == all_ids[2:]
        assert len(runtime.select_file_ids(CheckMode.FULL)) == 4
        assert len(runtime.select_file_ids(CheckMode.QUICK, include_checked=True)) == 4
    finally:
        runtime.close()


def test_clear_files_stops_running_check(sample_config, dummy_video_files, test_input_dir, make_checker):
    gate = threading.Event()
    runtime = _with_checker(build_runtime(sample_config), make_checker(gate=gate))
    try:
        runtime.scan(test_input_dir)
        runtime.pool.start_checking(CheckMode.FULL, runtime.select_file_ids(CheckMode.FULL), 1)
        assert runtime.pool.checker.started.wait(timeout=5)

        runtime.clear_files()

        assert not runtime.pool.is_checker_running()
        gate.set()
        assert runtime.pool.wait(timeout=10)
        assert runtime.store.get_file_stats().total == 0
        assert runtime.store.get_job_stats().total == 0
    finally:
        runtime.close()


def test_status_payload(sample_config, dummy_video_files, test_input_dir, fake_checker):
    runtime = _with_checker(build_runtime(sample_config), fake_checker)
    try:
        idle = runtime.status()
        assert idle["runningModes"] == []
        assert idle["timing"] == {"startTime": None, "endTime": None, "elapsedSeconds": None}

        runtime.scan(test_input_dir)
        runtime.pool.start_checking(CheckMode.QUICK, runtime.select_file_ids(CheckMode.QUICK))
        assert runtime.pool.wait(timeout=10)

        done = runtime.status()
        assert done["stats"]["completed"] == 4
        assert done["totalFiles"] == 4
        assert done["timing"]["elapsedSeconds"] >= 0
    finally:
        runtime.close()


def test_recovery_on_startup(sample_config):
    sample_config.general.data_path.mkdir(parents=True)
    store = JobStore.open(sample_config.general.database_path)
    store.insert_file("/videos/a.mp4", "a.mp4")
    store.create_jobs([store.get_all_files()[0].id], CheckMode.QUICK)
    store.claim_next_pending_job(CheckMode.QUICK)
    store.close()

    observer = build_runtime(sample_config)
    try:
        assert observer.store.count_jobs(CheckMode.QUICK, JobStatus.PROCESSING) == 1
    finally:
        observer.close()

    runner = build_runtime(sample_config, exclusive=True)
    try:
        assert runner.store.count_jobs(CheckMode.QUICK, JobStatus.PENDING) == 1
    finally:
        runner.close()


def test_recovery_can_be_disabled(sample_config):
    sample_config.general.recover_on_start = False
    sample_config.general.data_path.mkdir(parents=True)
    store = JobStore.open(sample_config.general.database_path)
    store.insert_file("/videos/a.mp4", "a.mp4")
    store.create_jobs([store.get_all_files()[0].id], CheckMode.QUICK)
    store.claim_next_pending_job(CheckMode.QUICK)
    store.close()

    runtime = build_runtime(sample_config, exclusive=True)
    try:
        assert runtime.store.count_jobs(CheckMode.QUICK, JobStatus.PROCESSING) == 1
    finally:
        runtime.close()


def test_clear_logs_and_export(sample_config, dummy_video_files, test_input_dir, fake_checker):
    runtime = _with_checker(build_runtime(sample_config), fake_checker)
    try:
        runtime.scan(test_input_dir)
        runtime.pool.start_checking(CheckMode.QUICK, runtime.select_file_ids(CheckMode.QUICK), 1)
        assert runtime.pool.wait(timeout=10)
        assert runtime.log_sink.get_worker_outputs()

        runtime.clear_logs()
        assert runtime.log_sink.get_worker_outputs() == {}

        report = runtime.export_report()
        assert len(report["files"]) == 4
        assert runtime.export_filename().startswith("media-check-report-")
    finally:
        runtime.close()


def test_second_worker_runtime_on_one_data_dir_is_refused(sample_config, dummy_video_files, test_input_dir):
    server = build_runtime(sample_config, exclusive=True)
    try:
        server.scan(test_input_dir)
        file_id = server.store.get_all_files()[0].id
        server.store.create_jobs([file_id], CheckMode.QUICK)
        in_flight = server.store.claim_next_pending_job(CheckMode.QUICK)

        with pytest.raises(DataDirBusyError):
            build_runtime(sample_config, exclusive=True)

        # A read-only runtime neither recovers nor re-claims the in-flight row.
        reader = build_runtime(sample_config)
        try:
            assert reader.store.claim_next_pending_job(CheckMode.QUICK) is None
            assert reader.store.get_job(in_flight.job.id).status == JobStatus.PROCESSING
        finally:
            reader.close()
    finally:
        server.close()

    successor = build_runtime(sample_config, exclusive=True)
    try:
        assert successor.lease.held
        assert successor.store.count_jobs(CheckMode.QUICK, JobStatus.PENDING) == 1
    finally:
        successor.close()
    assert not successor.lease.held

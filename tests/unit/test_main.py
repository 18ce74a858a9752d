import json

import pytest
from typer.testing import CliRunner

from vcheck import main as vcheck_main
from vcheck.domain.models import CheckMode, JobStatus
from vcheck.infrastructure.job_store import JobStore
from vcheck.infrastructure.run_lease import RunLease


@pytest.fixture
def cli(tmp_path, monkeypatch):
    """Runs CLI commands from an empty cwd so the default config is absent."""
    workdir = tmp_path / "cwd"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    runner = CliRunner()
    data_dir = tmp_path / "data"

    def invoke(*args, **kwargs):
        return runner.invoke(vcheck_main.app, [*args, "--data-dir", str(data_dir)], **kwargs)

    invoke.data_dir = data_dir
    return invoke


@pytest.fixture
def with_checker(monkeypatch):
    """Swaps the real MediaChecker for a fake in every runtime the CLI builds."""
    real_build_runtime = vcheck_main.build_runtime

    def install(checker):
        def fake_build_runtime(config, exclusive=False):
            runtime = real_build_runtime(config, exclusive=exclusive)
            runtime.checker = checker
            runtime.pool.checker = checker
            return runtime

        monkeypatch.setattr(vcheck_main, "build_runtime", fake_build_runtime)
        return checker

    return install


def test_scan_registers_files_once(cli, dummy_video_files, test_input_dir):
    result = cli("scan", str(test_input_dir))
    assert result.exit_code == 0, result.output
    assert "Found 4 media files, 4 new." in result.output

    again = cli("scan", str(test_input_dir))
    assert "Found 4 media files, 0 new." in again.output
    assert (cli.data_dir / "videos-checker.db").exists()
    assert (cli.data_dir / "checker.log").exists()


def test_scan_missing_directory_exits(cli, tmp_path):
    result = cli("scan", str(tmp_path / "missing"))
    assert result.exit_code == 1
    assert "Not a directory" in result.output


def test_missing_explicit_config_exits(cli, tmp_path):
    result = cli("status", "--config", str(tmp_path / "nope.yaml"))
    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_check_runs_batch_and_reports_counts(cli, with_checker, make_checker, dummy_video_files, test_input_dir):
    checker = with_checker(make_checker(failing={"b.mp4"}))
    cli("scan", str(test_input_dir))

    result = cli("check", "--mode", "full", "--threads", "2")

    assert result.exit_code == 0, result.output
    assert "Done: 3 ok, 1 with errors" in result.output
    assert len(checker.calls) == 4
    assert {mode for _, mode in checker.calls} == {CheckMode.FULL}

    store = JobStore.open(cli.data_dir / "videos-checker.db")
    stats = store.get_job_stats()
    store.close()
    assert (stats.completed, stats.error, stats.pending, stats.processing) == (3, 1, 0, 0)


def test_check_skips_already_checked_files_unless_all(cli, with_checker, make_checker, dummy_video_files, test_input_dir):
    checker = with_checker(make_checker())
    cli("scan", str(test_input_dir))
    cli("check")

    second = cli("check")
    assert second.exit_code == 0
    assert "No files to check in quick mode." in second.output
    assert len(checker.calls) == 4

    forced = cli("check", "--all")
    assert "Done: 4 ok, 0 with errors" in forced.output
    assert len(checker.calls) == 8


def test_check_rejects_zero_threads(cli):
    result = cli("check", "--threads", "0")
    assert result.exit_code == 1
    assert "--threads must be >= 1" in result.output


def test_status_shows_counts(cli, with_checker, make_checker, dummy_video_files, test_input_dir):
    with_checker(make_checker(failing={"a.mp4"}))
    cli("scan", str(test_input_dir))
    cli("check")

    result = cli("status")

    assert result.exit_code == 0
    assert "vcheck - 4 files" in result.output
    assert "quick" in result.output


def test_export_writes_report(cli, with_checker, make_checker, dummy_video_files, test_input_dir, tmp_path):
    with_checker(make_checker())
    cli("scan", str(test_input_dir))
    cli("check")
    target = tmp_path / "report.json"

    result = cli("export", "--output", str(target))

    assert result.exit_code == 0, result.output
    report = json.loads(target.read_text())
    assert len(report["files"]) == 4
    assert report["stats"]["completed"] == 4
    assert report["commands"] == {"quick": "fake quick <file>", "full": "fake full <file>"}


def test_clear_deletes_everything(cli, dummy_video_files, test_input_dir):
    cli("scan", str(test_input_dir))

    result = cli("clear", "--yes")
    assert result.exit_code == 0
    assert "vcheck - 0 files" in cli("status").output


def test_clear_aborts_without_confirmation(cli, dummy_video_files, test_input_dir):
    cli("scan", str(test_input_dir))

    result = cli("clear", input="n\n")
    assert result.exit_code != 0
    assert "vcheck - 4 files" in cli("status").output


def test_clear_logs_removes_worker_logs(cli, with_checker, make_checker, dummy_video_files, test_input_dir):
    with_checker(make_checker())
    cli("scan", str(test_input_dir))
    cli("check", "--threads", "1")
    assert (cli.data_dir / "logs" / "worker-1.log").exists()

    result = cli("clear-logs")

    assert result.exit_code == 0
    assert not (cli.data_dir / "logs" / "worker-1.log").exists()


def test_recover_resets_abandoned_jobs(cli, dummy_video_files, test_input_dir):
    cli("scan", str(test_input_dir))
    store = JobStore.open(cli.data_dir / "videos-checker.db")
    store.create_jobs([f.id for f in store.get_all_files()], CheckMode.QUICK)
    store.claim_next_pending_job(CheckMode.QUICK)
    store.close()

    result = cli("recover")

    assert result.exit_code == 0
    assert "Recovered 1 abandoned jobs." in result.output


def test_data_dir_from_environment(tmp_path, monkeypatch, dummy_video_files, test_input_dir):
    monkeypatch.chdir(tmp_path)
    data_dir = tmp_path / "env-data"

    result = CliRunner().invoke(
        vcheck_main.app, ["scan", str(test_input_dir)], env={"VCHECK_DATA_DIR": str(data_dir)}
    )

    assert result.exit_code == 0, result.output
    assert (data_dir / "videos-checker.db").exists()


def test_worker_commands_refuse_while_data_dir_is_leased(cli, with_checker, make_checker, dummy_video_files, test_input_dir):
    checker = with_checker(make_checker())
    cli("scan", str(test_input_dir))
    store = JobStore.open(cli.data_dir / "videos-checker.db")
    store.create_jobs([f.id for f in store.get_all_files()], CheckMode.QUICK)
    store.claim_next_pending_job(CheckMode.QUICK)

    with RunLease(cli.data_dir / "vcheck.lock"):
        for command in (("check",), ("recover",), ("clear-logs",), ("clear", "--yes")):
            result = cli(*command)
            assert result.exit_code == 1, command
            assert "in use by another vcheck process" in result.output

        # Read-only commands still work next to a running server.
        assert cli("status").exit_code == 0

    assert checker.calls == []
    assert store.count_jobs(CheckMode.QUICK, JobStatus.PROCESSING) == 1
    store.close()

    assert cli("recover").exit_code == 0

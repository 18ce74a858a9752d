import json
import threading
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from vcheck.config.loader import load_config
from vcheck.config.models import AppConfig
from vcheck.domain.models import CheckMode, JobStatus
from vcheck.infrastructure.housekeeping import HousekeepingService
from vcheck.infrastructure.logging import setup_logging
from vcheck.infrastructure.run_lease import DataDirBusyError
from vcheck.infrastructure.web_server import VCheckWebServer
from vcheck.pipeline.runtime import Runtime, build_runtime
from vcheck.ui.dashboard import Dashboard
from vcheck.ui.manager import UIManager
from vcheck.ui.state import UIState

DEFAULT_CONFIG_PATH = Path("conf/vcheck.yaml")
_STATUS_COLUMNS = (JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.PENDING, JobStatus.PROCESSING)

app = typer.Typer(help="vcheck - media file integrity checker (ffprobe / ffmpeg)")
console = Console()

ConfigOption = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to YAML config")
DataDirOption = typer.Option(
    None, "--data-dir", envvar="VCHECK_DATA_DIR", help="Directory holding the database and worker logs"
)
DebugOption = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging")


def _fail(message: str) -> None:
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _load(config_path: Path, data_dir: Optional[Path], debug: bool) -> AppConfig:
    """Loads the YAML config (defaults when the default file is absent) and applies CLI overrides."""
    try:
        if config_path == DEFAULT_CONFIG_PATH and not config_path.exists():
            config = AppConfig()
        else:
            config = load_config(config_path)
    except (FileNotFoundError, ValueError) as exc:
        _fail(str(exc))
    if data_dir is not None:
        config.general.data_dir = str(data_dir)
    if debug:
        config.general.debug = True
    return config


def _open(config: AppConfig, exclusive: bool = False, console_log: bool = False) -> Runtime:
    log_path = Path(config.general.log_path) if config.general.log_path else None
    logger = setup_logging(config.general.data_path, debug=config.general.debug, log_path=log_path, console=console_log)
    logger.info(f"Data directory: {config.general.data_path.resolve()}")
    try:
        return build_runtime(config, exclusive=exclusive)
    except DataDirBusyError as exc:
        logger.error(str(exc))
        _fail(f"{exc}. Stop it or use its HTTP API.")


@app.command()
def scan(
    directory: Path = typer.Argument(..., help="Directory to scan recursively for media files"),
    config_path: Path = ConfigOption,
    data_dir: Optional[Path] = DataDirOption,
    debug: bool = DebugOption,
):
    """Register media files found under DIRECTORY."""
    config = _load(config_path, data_dir, debug)
    runtime = _open(config)
    try:
        result = runtime.scan(directory)
    except ValueError as exc:
        _fail(str(exc))
    finally:
        runtime.close()
    typer.secho(f"Found {result.found} media files, {result.added} new.", fg=typer.colors.GREEN)


@app.command()
def check(
    mode: CheckMode = typer.Option(CheckMode.QUICK, "--mode", "-m", help="quick (ffprobe) or full (ffmpeg decode)"),
    threads: Optional[int] = typer.Option(None, "--threads", "-t", help="Override number of workers"),
    include_checked: bool = typer.Option(False, "--all", help="Also re-check files that already have a job in this mode"),
    config_path: Path = ConfigOption,
    data_dir: Optional[Path] = DataDirOption,
    debug: bool = DebugOption,
):
    """Check registered files in the foreground with a live progress display."""
    config = _load(config_path, data_dir, debug)
    if threads is not None:
        if threads < 1:
            _fail("--threads must be >= 1")
        config.general.concurrency = threads

    runtime = _open(config, exclusive=True)
    ui_manager = None
    try:
        file_ids = runtime.select_file_ids(mode, include_checked=include_checked)
        if not file_ids:
            typer.secho(f"No files to check in {mode.value} mode.", fg=typer.colors.YELLOW)
            return

        file_names = {f.id: f.filename for f in runtime.store.get_all_files()}
        ui_state = UIState()
        ui_state.begin(mode, len(file_ids))
        ui_manager = UIManager(runtime.event_bus, ui_state, file_names=file_names)

        try:
            with Dashboard(ui_state, console=console):
                if not runtime.pool.start_checking(mode, file_ids, config.general.effective_concurrency):
                    _fail(f"A {mode.value} check is already running.")
                while not runtime.pool.wait(timeout=0.5):
                    pass
        except KeyboardInterrupt:
            with ui_state._lock:
                ui_state.stop_requested = True
            runtime.pool.stop_checking(mode)
            typer.secho("\n✓ Check stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
            raise typer.Exit(code=130)

        colour = typer.colors.RED if ui_state.error_count else typer.colors.GREEN
        typer.secho(
            f"Done: {ui_state.completed_count} ok, {ui_state.error_count} with errors "
            f"({ui_state.elapsed_seconds():.1f}s).",
            fg=colour,
        )
    finally:
        if ui_manager is not None:
            ui_manager.close()
        runtime.close()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (overrides config)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port (overrides config)"),
    config_path: Path = ConfigOption,
    data_dir: Optional[Path] = DataDirOption,
    debug: bool = DebugOption,
):
    """Run the HTTP API and live event streams until Ctrl+C."""
    config = _load(config_path, data_dir, debug)
    if host is not None:
        config.server.host = host
    if port is not None:
        config.server.port = port

    runtime = _open(config, exclusive=True, console_log=True)
    server = VCheckWebServer(runtime, port=config.server.port, host=config.server.host)
    try:
        server.start()
    except OSError as exc:
        runtime.close()
        _fail(f"Could not bind to {config.server.host}:{config.server.port}: {exc}")

    typer.secho(f"Serving on {server.url} (Ctrl+C to stop)", fg=typer.colors.GREEN)
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        typer.secho("\n✓ Server stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)
    finally:
        server.stop()
        runtime.close()


@app.command()
def status(
    config_path: Path = ConfigOption,
    data_dir: Optional[Path] = DataDirOption,
    debug: bool = DebugOption,
):
    """Show file and job counts."""
    config = _load(config_path, data_dir, debug)
    runtime = _open(config)
    try:
        stats = runtime.store.get_job_stats()
        total_files = runtime.store.get_file_stats().total
        per_mode = {
            mode: {s: runtime.store.count_jobs(mode, s) for s in _STATUS_COLUMNS}
            for mode in CheckMode
        }
    finally:
        runtime.close()

    table = Table(title=f"vcheck - {total_files} files")
    table.add_column("Mode")
    table.add_column("Completed", justify="right", style="green")
    table.add_column("Error", justify="right", style="red")
    table.add_column("Pending", justify="right")
    table.add_column("Processing", justify="right", style="cyan")
    for mode, counts in per_mode.items():
        table.add_row(mode.value, *(str(counts[s]) for s in _STATUS_COLUMNS))
    table.add_row(
        "all", str(stats.completed), str(stats.error), str(stats.pending), str(stats.processing), style="bold"
    )
    console.print(table)


@app.command()
def export(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Report path (default: media-check-report-<date>.json)"),
    config_path: Path = ConfigOption,
    data_dir: Optional[Path] = DataDirOption,
    debug: bool = DebugOption,
):
    """Write the JSON check report."""
    config = _load(config_path, data_dir, debug)
    runtime = _open(config)
    try:
        report = runtime.export_report()
        target = output or Path(runtime.export_filename())
    finally:
        runtime.close()
    try:
        target.write_text(json.dumps(report, indent=2), encoding="utf-8")
    except OSError as exc:
        _fail(f"Could not write {target}: {exc}")
    typer.secho(f"Report written to {target} ({len(report['files'])} files).", fg=typer.colors.GREEN)


@app.command()
def clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    config_path: Path = ConfigOption,
    data_dir: Optional[Path] = DataDirOption,
    debug: bool = DebugOption,
):
    """Delete every registered file and its jobs."""
    if not yes:
        typer.confirm("Delete all files and jobs?", abort=True)
    config = _load(config_path, data_dir, debug)
    runtime = _open(config, exclusive=True)
    try:
        runtime.clear_files()
    finally:
        runtime.close()
    typer.secho("All files and jobs deleted.", fg=typer.colors.GREEN)


@app.command("clear-logs")
def clear_logs(
    config_path: Path = ConfigOption,
    data_dir: Optional[Path] = DataDirOption,
    debug: bool = DebugOption,
):
    """Delete the per-worker log files."""
    config = _load(config_path, data_dir, debug)
    runtime = _open(config, exclusive=True)
    try:
        runtime.clear_logs()
    finally:
        runtime.close()
    typer.secho("Worker logs cleared.", fg=typer.colors.GREEN)


@app.command()
def recover(
    mode: Optional[CheckMode] = typer.Option(None, "--mode", "-m", help="Only recover jobs of this mode"),
    config_path: Path = ConfigOption,
    data_dir: Optional[Path] = DataDirOption,
    debug: bool = DebugOption,
):
    """Reset jobs left in processing by a crashed run back to pending."""
    config = _load(config_path, data_dir, debug)
    # Recovery below honours --mode.
    config.general.recover_on_start = False
    runtime = _open(config, exclusive=True)
    try:
        recovered = HousekeepingService().recover_abandoned_jobs(runtime.store, mode)
    finally:
        runtime.close()
    typer.secho(f"Recovered {recovered} abandoned jobs.", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()

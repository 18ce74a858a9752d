import logging
import threading
import time
from typing import Optional
from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text
from rich.box import SIMPLE
from vcheck.ui.state import UIState


def format_elapsed(seconds: Optional[float]) -> str:
    """Format seconds: 59s, 01m 01s, 1h 01m."""
    if seconds is None or seconds < 0:
        return "--:--"
    s = float(seconds)
    if s < 60:
        return f"{int(s)}s"
    if s < 3600:
        return f"{int(s // 60):02d}m {int(s % 60):02d}s"
    return f"{int(s // 3600)}h {int((s % 3600) // 60):02d}m"


class Dashboard:
    """Live terminal view of one check run (progress, busy workers, recent errors)."""

    def __init__(self, state: UIState, console: Optional[Console] = None, refresh_per_second: int = 4):
        self.state = state
        self.console = console or Console()
        self.refresh_per_second = refresh_per_second
        self._live: Optional[Live] = None
        self._stop_refresh = threading.Event()
        self._refresh_thread: Optional[threading.Thread] = None
        self.logger = logging.getLogger(__name__)

    def create_display(self) -> RenderableType:
        with self.state._lock:
            mode = self.state.mode.value if self.state.mode else "-"
            total = self.state.total_jobs
            completed = self.state.completed_count
            errors = self.state.error_count
            workers = sorted(self.state.worker_files.items())
            recent_errors = list(self.state.recent_errors)
            finished = self.state.finished
            stop_requested = self.state.stop_requested
        elapsed = self.state.elapsed_seconds()
        done = completed + errors

        if finished:
            status = Text("FINISHED", style="bold green")
        elif stop_requested:
            status = Text("STOPPING", style="bold yellow")
        else:
            status = Text("CHECKING", style="bold cyan")

        header = Text.assemble(
            status,
            f"  mode={mode}  {done}/{total}  ",
            (f"ok {completed}", "green"),
            "  ",
            (f"err {errors}", "red" if errors else "dim"),
            f"  elapsed {format_elapsed(elapsed)}",
        )
        parts = [header, ProgressBar(total=max(total, 1), completed=done)]

        if workers:
            table = Table(box=SIMPLE, show_header=True, header_style="bold", expand=True)
            table.add_column("Worker", justify="right", width=8)
            table.add_column("File")
            for worker_id, filename in workers:
                table.add_row(str(worker_id), filename)
            parts.append(table)

        if recent_errors:
            errors_text = Text()
            for name, message in recent_errors:
                errors_text.append("✗ ", style="red")
                errors_text.append(f"{name}: ", style="bold")
                errors_text.append(f"{message}\n")
            parts.append(errors_text)

        return Panel(Group(*parts), title="vcheck", border_style="blue")

    def _refresh_loop(self):
        while not self._stop_refresh.is_set():
            if self._live:
                try:
                    self._live.update(self.create_display())
                except Exception:
                    self.logger.debug("Dashboard refresh failed", exc_info=True)
            time.sleep(1.0 / self.refresh_per_second)

    def start(self):
        self._live = Live(self.create_display(), console=self.console, refresh_per_second=self.refresh_per_second)
        self._live.start()
        self._stop_refresh.clear()
        self._refresh_thread = threading.Thread(target=self._refresh_loop, daemon=True)
        self._refresh_thread.start()
        return self

    def stop(self):
        self._stop_refresh.set()
        if self._refresh_thread:
            self._refresh_thread.join(timeout=1.0)
            self._refresh_thread = None
        if self._live:
            # Final update shows the FINISHED / STOPPING state
            self._live.update(self.create_display())
            self._live.stop()
            self._live = None

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

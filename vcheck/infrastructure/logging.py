import logging
from pathlib import Path
from typing import List, Optional
from rich.logging import RichHandler

def setup_logging(
    data_dir: Path,
    debug: bool = False,
    log_path: Optional[Path] = None,
    console: bool = False,
) -> logging.Logger:
    """
    Setup logging configuration for vcheck.

    Creates the data directory and the checker.log file. Worker output is not
    written here; it goes to the per-worker logs under ``<data_dir>/logs``.

    Args:
        data_dir: Directory holding the database, worker logs and checker.log
        debug: If True, enable DEBUG level logging (claims, tool commands)
        log_path: Optional path to log file (overrides data_dir)
        console: Also log to the terminal (used by the long-running server)
    """
    data_dir.mkdir(parents=True, exist_ok=True)

    log_file = Path(log_path) if log_path else (data_dir / "checker.log")
    log_file.parent.mkdir(parents=True, exist_ok=True)

    handlers: List[logging.Handler] = [logging.FileHandler(log_file)]
    if console:
        handlers.append(RichHandler(show_path=False, rich_tracebacks=True))

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True  # Override any existing configuration
    )

    logger = logging.getLogger("vcheck")
    logger.info(f"Logging initialized: {log_file} (debug={'ON' if debug else 'OFF'})")

    return logger

import logging
import queue
import re
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple
from vcheck.config.models import CheckerConfig
from vcheck.domain.models import CheckMode, CheckOutcome, OutputStream

OutputCallback = Callable[[OutputStream, str], None]

_DURATION_RE = re.compile(r"^duration=(.+)$", re.MULTILINE)


class RunResult(NamedTuple):
    returncode: int
    stdout: str
    stderr: str


def _ignore_output(stream: OutputStream, text: str) -> None:
    pass


class MediaChecker:
    """Wrapper around ffprobe/ffmpeg to verify media files.

    quick: ffprobe structural probe (also reports the duration).
    full:  ffprobe duration probe followed by a full ffmpeg decode to null.

    A file fails when the tool exits non-zero or writes anything to stderr.
    """

    def __init__(self, ffprobe_path: str = "ffprobe", ffmpeg_path: str = "ffmpeg", max_error_length: int = 4000):
        self.ffprobe_path = ffprobe_path
        self.ffmpeg_path = ffmpeg_path
        self.max_error_length = max_error_length
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: CheckerConfig) -> "MediaChecker":
        return cls(
            ffprobe_path=config.ffprobe_path,
            ffmpeg_path=config.ffmpeg_path,
            max_error_length=config.max_error_length,
        )

    def _duration_probe_command(self, file_path: Path) -> List[str]:
        return [
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1",
            "-sexagesimal",
            str(file_path),
        ]

    def build_command(self, mode: CheckMode, file_path: Path) -> List[str]:
        """Constructs the verification command line for ``mode``."""
        if mode == CheckMode.FULL:
            return [self.ffmpeg_path, "-v", "error", "-i", str(file_path), "-f", "null", "-"]
        return [
            self.ffprobe_path,
            "-v", "error",
            "-show_error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1",
            "-sexagesimal",
            str(file_path),
        ]

    def command_summary(self) -> Dict[str, str]:
        """Fixed per-mode command strings, with a placeholder for the file."""
        return {
            mode.value: " ".join(self.build_command(mode, Path("<file>")))
            for mode in CheckMode
        }

    @staticmethod
    def parse_duration(stdout: str) -> Optional[float]:
        """Parses ``duration=H:MM:SS.ffffff`` (or plain seconds) into seconds."""
        match = _DURATION_RE.search(stdout)
        if not match:
            return None
        text = match.group(1).strip()
        try:
            return float(text)
        except ValueError:
            pass
        parts = text.split(":")
        if len(parts) not in (2, 3):
            return None
        try:
            parts_f = [float(p) for p in parts]
        except ValueError:
            return None
        if len(parts_f) == 2:
            minutes, seconds = parts_f
            return minutes * 60 + seconds
        hours, minutes, seconds = parts_f
        return hours * 3600 + minutes * 60 + seconds

    def _truncate(self, message: str) -> str:
        if len(message) <= self.max_error_length:
            return message
        return message[: self.max_error_length - 3] + "..."

    def run(self, cmd: List[str], on_output: Optional[OutputCallback] = None) -> RunResult:
        """Runs ``cmd`` and forwards every stdout/stderr line as it arrives."""
        emit = on_output or _ignore_output
        emit(OutputStream.STDOUT, " ".join(cmd))

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
            )
        except OSError as e:
            message = f"Failed to spawn {cmd[0]}: {e}"
            self.logger.warning(message)
            emit(OutputStream.STDERR, message)
            return RunResult(1, "", message)

        output_queue: "queue.Queue[Tuple[OutputStream, Optional[str]]]" = queue.Queue()

        def _reader(pipe, stream: OutputStream):
            for line in pipe:
                output_queue.put((stream, line))
            output_queue.put((stream, None))

        readers = [
            threading.Thread(target=_reader, args=(process.stdout, OutputStream.STDOUT), daemon=True),
            threading.Thread(target=_reader, args=(process.stderr, OutputStream.STDERR), daemon=True),
        ]
        for reader in readers:
            reader.start()

        captured: Dict[OutputStream, List[str]] = {OutputStream.STDOUT: [], OutputStream.STDERR: []}
        open_streams = len(readers)
        while open_streams:
            stream, line = output_queue.get()
            if line is None:
                open_streams -= 1
                continue
            captured[stream].append(line)
            emit(stream, line.rstrip("\r\n"))

        process.wait()
        for reader in readers:
            reader.join(timeout=1.0)

        return RunResult(
            process.returncode,
            "".join(captured[OutputStream.STDOUT]),
            "".join(captured[OutputStream.STDERR]),
        )

    def check(self, file_path: Path, mode: CheckMode, on_output: Optional[OutputCallback] = None) -> CheckOutcome:
        """Verifies one file. Never raises for tool failures; they become the outcome."""
        start_time = time.monotonic()
        self.logger.debug(f"CHECK_START: {file_path.name} (mode={mode.value})")

        duration: Optional[float] = None
        if mode == CheckMode.FULL:
            probe = self.run(self._duration_probe_command(file_path), on_output)
            duration = self.parse_duration(probe.stdout)

        cmd = self.build_command(mode, file_path)
        result = self.run(cmd, on_output)
        if mode == CheckMode.QUICK:
            duration = self.parse_duration(result.stdout)

        elapsed = time.monotonic() - start_time
        if result.returncode != 0 or result.stderr.strip():
            error = result.stderr.strip() or f"{Path(cmd[0]).name} exited with code {result.returncode}"
            self.logger.debug(f"CHECK_END: {file_path.name} status=error code={result.returncode} elapsed={elapsed:.2f}s")
            return CheckOutcome(success=False, error_message=self._truncate(error), duration_seconds=duration)

        self.logger.debug(f"CHECK_END: {file_path.name} status=ok elapsed={elapsed:.2f}s")
        return CheckOutcome(success=True, duration_seconds=duration)

import threading
import pytest
import yaml
from pathlib import Path
from typing import Dict, List, Optional, Set
from vcheck.config.models import AppConfig
from vcheck.domain.models import CheckMode, CheckOutcome, OutputStream
from vcheck.infrastructure.event_bus import EventBus
from vcheck.infrastructure.job_store import JobStore
from vcheck.infrastructure.worker_logs import WorkerLogSink

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config(tmp_path):
    """Returns an AppConfig rooted in a temporary data directory."""
    return AppConfig(
        general={
            "data_dir": str(tmp_path / "data"),
            "concurrency": 2,
            "extensions": [".mp4", ".mkv", ".mov"],
            "recover_on_start": True,
            "debug": False,
        },
        checker={
            "ffprobe_path": "ffprobe",
            "ffmpeg_path": "ffmpeg",
            "max_error_length": 200,
        },
        server={
            "host": "127.0.0.1",
            "port": 8765,
            "keepalive_s": 0.5,
        },
    )

@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "vcheck.yaml"

    content = {
        'general': {
            'data_dir': str(tmp_path / "data"),
            'concurrency': 3,
            'extensions': ['mp4', 'MKV'],
            'debug': False,
        },
        'checker': {
            'ffprobe_path': '/opt/ffmpeg/bin/ffprobe',
            'max_error_length': 500,
        },
        'server': {
            'port': 9000,
        },
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# Core component Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

@pytest.fixture
def store(tmp_path):
    """JobStore backed by a temporary SQLite file."""
    job_store = JobStore.open(tmp_path / "db" / "videos-checker.db")
    yield job_store
    job_store.close()

@pytest.fixture
def log_sink(tmp_path, event_bus):
    return WorkerLogSink(tmp_path / "logs", event_bus)


class FakeChecker:
    """Stands in for MediaChecker; never spawns ffprobe/ffmpeg.

    Files whose name is in ``failing`` fail with ``<name> is corrupt``. When
    ``gate`` is given every check blocks until it is set.
    """

    def __init__(
        self,
        failing: Optional[Set[str]] = None,
        duration: Optional[float] = 12.5,
        gate: Optional[threading.Event] = None,
        raising: Optional[Set[str]] = None,
    ):
        self.failing = failing or set()
        self.raising = raising or set()
        self.duration = duration
        self.gate = gate
        self.started = threading.Event()
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def check(self, file_path: Path, mode: CheckMode, on_output=None) -> CheckOutcome:
        with self._lock:
            self.calls.append((file_path.name, mode))
        self.started.set()
        if on_output:
            on_output(OutputStream.STDOUT, f"fake-check {mode.value} {file_path}")
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if file_path.name in self.raising:
            raise RuntimeError("boom")
        if file_path.name in self.failing:
            if on_output:
                on_output(OutputStream.STDERR, f"{file_path.name} is corrupt")
            return CheckOutcome(success=False, error_message=f"{file_path.name} is corrupt", duration_seconds=self.duration)
        return CheckOutcome(success=True, duration_seconds=self.duration)

    def command_summary(self) -> Dict[str, str]:
        return {"quick": "fake quick <file>", "full": "fake full <file>"}


@pytest.fixture
def fake_checker():
    return FakeChecker()

@pytest.fixture
def make_checker():
    """Factory for FakeChecker with custom failures or a blocking gate."""
    return FakeChecker

@pytest.fixture
def recorded_events(event_bus):
    """Collects every published event (both families)."""
    from vcheck.domain.events import Event

    events = []
    event_bus.subscribe(Event, events.append)
    return events

# ============================================================================
# File System Fixtures
# ============================================================================

@pytest.fixture
def test_input_dir(tmp_path):
    """Creates a test input directory."""
    input_dir = tmp_path / "input"
    input_dir.mkdir()
    return input_dir

@pytest.fixture
def dummy_video_files(test_input_dir):
    """Creates dummy media files (and some noise) in the input directory."""
    files = []

    for name in ("a.mp4", "b.mp4", "c.mkv"):
        f = test_input_dir / name
        f.write_bytes(b"dummy video content " * 10)
        files.append(f)

    subdir = test_input_dir / "subdir"
    subdir.mkdir()
    f = subdir / "d.MOV"
    f.write_bytes(b"dummy video content")
    files.append(f)

    (test_input_dir / "notes.txt").write_text("not a video")
    (test_input_dir / ".hidden.mp4").write_bytes(b"hidden")
    hidden_dir = test_input_dir / ".cache"
    hidden_dir.mkdir()
    (hidden_dir / "e.mp4").write_bytes(b"cached")

    return files

# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )

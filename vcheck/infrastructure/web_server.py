"""JSON + Server-Sent Events HTTP API for vcheck.

Runs as a daemon thread on stdlib http.server + socketserver.

Live streams (``/events``, ``/logs-stream``) follow a two-step subscribe
protocol so a new observer never misses history:

1. attach to the EventBus family (events buffer in a per-connection queue),
2. send ``connected`` and a ``snapshot`` message (job stats / worker logs),
3. stream buffered and live events; ``: ping`` comments keep idle
   connections open.

A write error (client gone) or server shutdown detaches the observer.
"""
from __future__ import annotations

import json
import logging
import queue
import socketserver
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Type

from vcheck.domain.events import Event, FileEvent, WorkerEvent
from vcheck.domain.models import CheckMode

if TYPE_CHECKING:
    from vcheck.pipeline.runtime import Runtime

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8765
_POLL_INTERVAL_S = 0.5  # how often SSE loops notice a server shutdown


# ---------------------------------------------------------------------------
# Request parsing helpers
# ---------------------------------------------------------------------------

def _parse_mode(value: Any, default: Optional[CheckMode] = None) -> Optional[CheckMode]:
    if value in (None, ""):
        return default
    try:
        return CheckMode(str(value))
    except ValueError:
        raise ValueError(f"Unknown mode: {value!r} (expected quick or full)")


def _parse_file_ids(value: Any) -> List[int]:
    """Accepts a list of ids (numbers or numeric strings); junk entries are dropped."""
    if not isinstance(value, list):
        return []
    ids = []
    for item in value:
        if isinstance(item, bool):
            continue
        try:
            ids.append(int(item))
        except (TypeError, ValueError):
            continue
    return ids


def _parse_concurrency(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        concurrency = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid concurrency: {value!r}")
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")
    return concurrency


def _workers_payload(runtime: "Runtime") -> Dict[str, Any]:
    outputs = runtime.log_sink.get_worker_outputs()
    return {
        str(worker_id): {
            "logs": [line.model_dump(mode="json") for line in snap.logs],
            "currentFile": snap.current_file,
            "status": snap.status.value,
        }
        for worker_id, snap in outputs.items()
    }


def _files_payload(runtime: "Runtime") -> List[Dict[str, Any]]:
    files = []
    for entry in runtime.store.get_all_files_with_jobs():
        data = entry.file.model_dump(mode="json")
        data["jobs"] = [job.model_dump(mode="json") for job in entry.jobs]
        files.append(data)
    return files


# ---------------------------------------------------------------------------
# HTTP server
# ---------------------------------------------------------------------------

class VCheckRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the vcheck API.

    Class attribute ``runtime`` is set by VCheckWebServer before the server starts.
    """

    runtime: "Runtime"  # Injected by VCheckWebServer.start()
    protocol_version = "HTTP/1.1"

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)

    # ── Responses ──────────────────────────────────────────────────────────

    def _send_json(
        self,
        payload: Any,
        status: int = 200,
        extra_headers: Optional[Dict[str, str]] = None,
        indent: Optional[int] = None,
    ) -> None:
        encoded = json.dumps(payload, indent=indent).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(encoded)))
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        for name, value in (extra_headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(encoded)

    def _read_json(self) -> Dict[str, Any]:
        length = int(self.headers.get("Content-Length") or 0)
        if length <= 0:
            return {}
        raw = self.rfile.read(length)
        try:
            body = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValueError("Request body must be JSON")
        if not isinstance(body, dict):
            raise ValueError("Request body must be a JSON object")
        return body

    def _send_sse(self, payload: Dict[str, Any]) -> None:
        self.wfile.write(f"data: {json.dumps(payload)}\n\n".encode("utf-8"))
        self.wfile.flush()

    def _stream(self, family: Type[Event], snapshot: Callable[[], Dict[str, Any]]) -> None:
        runtime = self.__class__.runtime
        events: "queue.Queue[Event]" = queue.Queue()
        callback = events.put
        runtime.event_bus.subscribe(family, callback)
        keepalive = runtime.config.server.keepalive_s
        stopping: threading.Event = getattr(self.server, "stopping", threading.Event())
        try:
            self.send_response(200)
            self.send_header("Content-Type", "text/event-stream")
            self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
            self.send_header("Connection", "keep-alive")
            self.send_header("X-Accel-Buffering", "no")
            self.end_headers()
            self.close_connection = True

            self._send_sse({"type": "connected"})
            self._send_sse({"type": "snapshot", **snapshot()})

            last_write = time.monotonic()
            while not stopping.is_set():
                try:
                    event = events.get(timeout=min(_POLL_INTERVAL_S, keepalive))
                except queue.Empty:
                    if time.monotonic() - last_write >= keepalive:
                        self.wfile.write(b": ping\n\n")
                        self.wfile.flush()
                        last_write = time.monotonic()
                    continue
                self._send_sse(event.to_wire())
                last_write = time.monotonic()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("SSE client disconnected from %s", self.path)
        finally:
            runtime.event_bus.unsubscribe(family, callback)

    # ── Routes ─────────────────────────────────────────────────────────────

    def do_GET(self) -> None:
        path = self.path.split("?")[0]
        runtime = self.__class__.runtime
        try:
            if path == "/events":
                self._stream(FileEvent, lambda: {
                    "stats": runtime.store.get_job_stats().model_dump(),
                    "runningModes": [m.value for m in runtime.pool.get_running_modes()],
                })
            elif path == "/logs-stream":
                self._stream(WorkerEvent, lambda: {"workers": _workers_payload(runtime)})
            elif path == "/api/files":
                self._send_json({"files": _files_payload(runtime)})
            elif path == "/api/stats":
                self._send_json({
                    "jobs": runtime.store.get_job_stats().model_dump(),
                    "files": runtime.store.get_file_stats().model_dump(),
                })
            elif path == "/api/status":
                self._send_json(runtime.status())
            elif path == "/api/logs":
                self._send_json({"workers": _workers_payload(runtime)})
            elif path == "/api/export":
                self._send_json(
                    runtime.export_report(),
                    extra_headers={"Content-Disposition": f'attachment; filename="{runtime.export_filename()}"'},
                    indent=2,
                )
            else:
                self._send_json({"error": "Not found"}, status=404)
        except Exception as exc:
            self._send_error(path, exc)

    def do_POST(self) -> None:
        path = self.path.split("?")[0]
        runtime = self.__class__.runtime
        try:
            body = self._read_json()
            if path == "/api/scan":
                directory = body.get("path")
                if not directory:
                    raise ValueError("path is required")
                result = runtime.scan(Path(str(directory)))
                self._send_json({"found": result.found, "added": result.added})
            elif path == "/api/check":
                mode = _parse_mode(body.get("mode"), default=CheckMode.QUICK)
                file_ids = _parse_file_ids(body.get("fileIds"))
                concurrency = _parse_concurrency(body.get("concurrency"))
                started = runtime.pool.start_checking(mode, file_ids, concurrency) if file_ids else False
                self._send_json({"started": started})
            elif path == "/api/stop":
                runtime.pool.stop_checking(_parse_mode(body.get("mode")))
                self._send_json({"stopped": True})
            elif path == "/api/clear":
                runtime.clear_files()
                self._send_json({"cleared": True})
            elif path == "/api/clear-logs":
                runtime.clear_logs()
                self._send_json({"cleared": True})
            else:
                self._send_json({"error": "Not found"}, status=404)
        except Exception as exc:
            self._send_error(path, exc)

    def _send_error(self, path: str, exc: Exception) -> None:
        if isinstance(exc, ValueError):
            status = 400
        else:
            status = 500
            logger.exception("Request error for %s", path)
        try:
            self._send_json({"error": str(exc)}, status=status)
        except OSError:
            logger.debug("Could not send error response for %s", path)


class _ThreadingHTTPServer(socketserver.ThreadingMixIn, HTTPServer):
    """Thread-per-request HTTP server with address reuse and daemon threads."""

    allow_reuse_address = True
    daemon_threads = True  # request threads die when main thread exits

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.stopping = threading.Event()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

class VCheckWebServer:
    """HTTP API server for vcheck.

    Usage::

        server = VCheckWebServer(runtime, port=8765)
        server.start()   # non-blocking
        # ... checks run ...
        server.stop()
    """

    def __init__(self, runtime: "Runtime", port: int = DEFAULT_PORT, host: str = "0.0.0.0") -> None:
        self.runtime = runtime
        self.port = port
        self.host = host
        self._server: Optional[_ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Start the server in a daemon background thread. Bind errors propagate."""
        VCheckRequestHandler.runtime = self.runtime  # inject shared runtime
        try:
            self._server = _ThreadingHTTPServer((self.host, self.port), VCheckRequestHandler)
        except OSError as exc:
            logger.error("Web server: could not bind to %s:%d: %s", self.host, self.port, exc)
            raise
        self.port = self._server.server_address[1]

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="vcheck-web-server",
            daemon=True,
        )
        self._thread.start()
        display_host = "localhost" if self.host in ("0.0.0.0", "::") else self.host
        logger.info("Web server: http://%s:%d/", display_host, self.port)

    @property
    def url(self) -> str:
        display_host = "localhost" if self.host in ("0.0.0.0", "::") else self.host
        return f"http://{display_host}:{self.port}"

    def stop(self) -> None:
        """Gracefully stop the server and any open event streams."""
        if self._server:
            self._server.stopping.set()
            self._server.shutdown()
            self._server.server_close()
            self._server = None
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

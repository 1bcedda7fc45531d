import asyncio
import json
import logging
import os
import queue
import threading
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, unquote, urlsplit

from .config import ConfigWatcher, DashboardConfig, diff_servers, load_config
from .engine import EngineSettings, TailEngine
from .models import FinalizedIssue, ServerPath, Severity, WatchTarget
from .reader import detect_encoding
from .rules import Classifier, RuleSet
from .scanner import DirectoryScanner
from .store import MAX_FILTER_RESULTS, IssueStore, export_csv

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "log_issue_monitor"


class LogMonitor:
    """Background polling thread: scan watched paths, tail files, emit issues.

    Reconfiguration calls may come from any thread. They are queued and applied
    at the start of the next cycle, so a scan or poll never sees them halfway.
    """

    def __init__(
        self,
        classifier: Classifier,
        on_issue: Callable[[FinalizedIssue], Any],
        scanner: Optional[DirectoryScanner] = None,
        settings: Optional[EngineSettings] = None,
        poll_interval: float = 1.0,
        scan_interval: float = 10.0,
        on_status: Optional[Callable[[str], Any]] = None,
        clock: Callable[[], float] = time.time,
        status_history: int = 200,
    ):
        self.poll_interval = poll_interval
        self.scan_interval = scan_interval
        self._on_status = on_status
        self.status_messages: Deque[Dict[str, Any]] = deque(maxlen=status_history)
        self.engine = TailEngine(classifier, on_issue, on_status=self._record_status, settings=settings, clock=clock)
        self.scanner = scanner or DirectoryScanner()
        self.scanner.on_status = self._record_status
        self._ops: "queue.Queue[Tuple[Callable, tuple]]" = queue.Queue()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_scan = 0.0
        self._scan_due = True
        self._snapshot: List[Dict[str, Any]] = []

    @classmethod
    def from_config(
        cls,
        cfg: DashboardConfig,
        on_issue: Callable[[FinalizedIssue], Any],
        on_status: Optional[Callable[[str], Any]] = None,
    ) -> "LogMonitor":
        settings = EngineSettings(
            context_lines_before=cfg.context_lines_before,
            context_lines_after=cfg.context_lines_after,
            max_stack_lines=cfg.max_stack_lines,
            enable_deduplication=cfg.enable_deduplication,
            dedup_window_seconds=cfg.dedup_window_seconds,
        )
        scanner = DirectoryScanner(
            paths=cfg.server_paths(),
            file_patterns=cfg.file_patterns,
            start_from_end=cfg.start_from_end,
        )
        return cls(
            Classifier(cfg.rule_set()),
            on_issue,
            scanner=scanner,
            settings=settings,
            poll_interval=cfg.poll_interval,
            scan_interval=cfg.scan_interval,
            on_status=on_status,
        )

    # reconfiguration (queued) -------------------------------------------

    def _submit(self, fn: Callable, *args) -> None:
        self._ops.put((fn, args))

    def add_watch_target(
        self,
        path: str,
        server_name: Optional[str] = None,
        encoding: str = "utf-8",
        transcode: bool = False,
        structured: bool = False,
    ) -> None:
        sp = ServerPath(path=path, server_name=server_name, encoding=encoding, transcode=transcode, structured=structured)
        self._submit(self._add_path, sp)

    def remove_watch_target(self, path: str) -> None:
        self._submit(self._remove_path, path)

    def set_file_patterns(self, patterns: List[str]) -> None:
        self._submit(self._set_patterns, list(patterns))

    def set_rules(self, rules: RuleSet) -> None:
        self._submit(self.engine.classifier.swap, rules)

    def set_context(self, before: int, after: int, max_stack_lines: Optional[int] = None) -> None:
        self._submit(self.engine.set_context, before, after, max_stack_lines)

    def set_deduplication(self, enabled: bool, window_seconds: Optional[float] = None) -> None:
        self._submit(self.engine.set_deduplication, enabled, window_seconds)

    def set_scan_options(self, poll_interval: float, scan_interval: float, start_from_end: bool) -> None:
        self._submit(self._set_scan_options, float(poll_interval), float(scan_interval), bool(start_from_end))

    def force_rescan(self) -> None:
        self._submit(self._rescan)

    def _add_path(self, sp: ServerPath) -> None:
        if self.scanner.add_path(sp):
            self._scan_due = True

    def _remove_path(self, path: str) -> None:
        if self.scanner.remove_path(path) is not None:
            # drop its files now, before a later add of the same path
            self._apply_scan()

    def _set_patterns(self, patterns: List[str]) -> None:
        self.scanner.set_file_patterns(patterns)
        self.report_status(f"File patterns: {', '.join(patterns) or '(none)'}")
        self._scan_due = True

    def _set_scan_options(self, poll_interval: float, scan_interval: float, start_from_end: bool) -> None:
        self.poll_interval = poll_interval
        self.scan_interval = scan_interval
        self.scanner.start_from_end = start_from_end

    def _rescan(self) -> None:
        self.report_status("Forcing rescan of all watch paths")
        self.scanner.force_rescan()
        self._scan_due = True

    def _drain(self) -> None:
        while True:
            try:
                fn, args = self._ops.get_nowait()
            except queue.Empty:
                return
            try:
                fn(*args)
            except Exception:
                logger.exception("Reconfiguration %s failed", getattr(fn, "__name__", fn))

    # diagnostics --------------------------------------------------------

    def set_verbose(self, enabled: bool) -> None:
        logging.getLogger(PACKAGE_LOGGER).setLevel(logging.DEBUG if enabled else logging.INFO)
        self.report_status(f"Verbose logging {'enabled' if enabled else 'disabled'}")

    @property
    def verbose(self) -> bool:
        return logging.getLogger(PACKAGE_LOGGER).level == logging.DEBUG

    def tracked_files(self) -> List[str]:
        return [p["path"] for p in self._snapshot]

    def file_positions(self) -> List[Dict[str, Any]]:
        return list(self._snapshot)

    def recent_status(self, limit: int = 50) -> List[Dict[str, Any]]:
        items = list(self.status_messages)
        return items[-limit:] if limit else items

    def summary(self) -> Dict[str, Any]:
        e = self.engine
        return {
            "running": self.running,
            "paths": [str(sp) for sp in self.scanner.paths()],
            "file_patterns": self.scanner.file_patterns,
            "files": len(self._snapshot),
            "lines": e.lines_read,
            "issues": e.issues_emitted,
            "duplicates": e.duplicates_suppressed,
            "cycles": e.cycles,
            "patterns": e.classifier.rules.pattern_count(),
            "verbose": self.verbose,
        }

    def report_status(self, message: str) -> None:
        logger.info(message)
        self._record_status(message)

    def _record_status(self, message: str) -> None:
        # engine and scanner log their own messages
        self.status_messages.append({"ts": time.time(), "message": message})
        if self._on_status is not None:
            try:
                self._on_status(message)
            except Exception:
                logger.exception("Status listener failed")

    # loop ---------------------------------------------------------------

    def _apply_scan(self) -> None:
        result = self.scanner.scan()
        for target in result.removed:
            self.engine.unregister(target.path)
        for target in result.added:
            self.engine.register(target)
        self._last_scan = time.monotonic()
        self._scan_due = False

    def poll_once(self) -> int:
        """One cycle: apply queued changes, scan when due, then tail every file."""
        self._drain()
        if self._scan_due or time.monotonic() - self._last_scan >= self.scan_interval:
            self._apply_scan()
        emitted = self.engine.poll()
        self._snapshot = self.engine.positions()
        return emitted

    def _run(self) -> None:
        self.report_status(f"Monitoring {len(self.scanner.paths())} path(s)")
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Monitor cycle failed")
            self._stop.wait(self.poll_interval)
        self._drain()
        flushed = self.engine.flush()
        self._snapshot = self.engine.positions()
        self.report_status(f"Monitor stopped ({flushed} pending issue(s) flushed)")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="log-monitor", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None


def check_file(
    path: str,
    cfg: Optional[DashboardConfig] = None,
    encoding: Optional[str] = None,
    structured: Optional[bool] = None,
) -> List[FinalizedIssue]:
    """Classify a whole file once, from the first byte, and return its issues."""
    cfg = cfg or DashboardConfig()
    issues: List[FinalizedIssue] = []
    settings = EngineSettings(
        context_lines_before=cfg.context_lines_before,
        context_lines_after=cfg.context_lines_after,
        max_stack_lines=cfg.max_stack_lines,
        enable_deduplication=cfg.enable_deduplication,
        dedup_window_seconds=cfg.dedup_window_seconds,
    )
    engine = TailEngine(Classifier(cfg.rule_set()), issues.append, settings=settings)
    target = WatchTarget(
        path=os.path.abspath(path),
        encoding=encoding or "utf-8",
        structured=cfg.parse_json_logs if structured is None else structured,
    )
    engine.register(target)
    size = os.path.getsize(target.path)
    while True:
        before = target.offset
        engine.poll(final=True)
        if target.offset >= size or target.offset == before:
            break
    engine.flush()
    return issues


class Broadcaster:
    def __init__(self, max_queue: int = 200):
        self.subs: List[asyncio.Queue] = []
        self.max_queue = max_queue
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop

    def add_subscriber(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        self.subs.append(q)
        return q

    def remove_subscriber(self, q: asyncio.Queue) -> None:
        try:
            self.subs.remove(q)
        except ValueError:
            pass

    def publish(self, event: Dict[str, Any]) -> None:
        # Drop oldest on overflow
        for q in list(self.subs):
            if q.full():
                try:
                    q.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            q.put_nowait(event)

    def publish_threadsafe(self, event: Dict[str, Any]) -> None:
        """Publish from a non-loop thread (the monitor thread)."""
        loop = self.loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self.publish, event)
        except RuntimeError:
            # loop closed between the check and the call
            logger.debug("Dropped event, loop closed")


class MonitorState:
    """Everything the control and HTTP servers act on."""

    def __init__(self, cfg: Optional[DashboardConfig] = None, config_path: Optional[Path] = None):
        self.cfg = cfg or DashboardConfig()
        self.config_path = Path(config_path) if config_path else None
        self.store = IssueStore(self.cfg.max_issues)
        self.bcast = Broadcaster()
        self.monitor = LogMonitor.from_config(self.cfg, self.store.add, on_status=self.on_status)
        self.store.add_listener(self.on_issue)
        self.started_at = time.time()
        self._stopped: Optional[asyncio.Event] = None

    def on_issue(self, issue: FinalizedIssue) -> None:
        self.bcast.publish_threadsafe({"type": "issue", **issue.to_dict()})

    def on_status(self, message: str) -> None:
        self.bcast.publish_threadsafe({"type": "status", "message": message, "ts": time.time()})

    def status(self) -> Dict[str, Any]:
        out = {"ok": True, "uptime": round(time.time() - self.started_at, 1), "viewers": len(self.bcast.subs)}
        out.update(self.monitor.summary())
        return out

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "files": self.monitor.file_positions(),
            "status": self.monitor.recent_status(),
            "rule_errors": list(self.monitor.engine.classifier.rules.errors),
            "config_warnings": list(self.cfg.warnings),
            "verbose": self.monitor.verbose,
        }

    def within_servers(self, path: str) -> bool:
        """True when ``path`` resolves inside one of the configured server paths."""
        target = os.path.realpath(path)
        for sp in self.cfg.server_paths():
            root = os.path.realpath(sp.path)
            if target == root or target.startswith(root.rstrip(os.sep) + os.sep):
                return True
        return False

    def apply_config(self, new: DashboardConfig) -> List[str]:
        """Push the differences between the active and a reloaded config into the monitor."""
        old = self.cfg
        changes: List[str] = []
        added, removed = diff_servers(old.server_paths(), new.server_paths())
        for sp in removed:
            self.monitor.remove_watch_target(sp.path)
            changes.append(f"removed {sp}")
        for sp in added:
            self.monitor.add_watch_target(sp.path, sp.server_name, sp.encoding, sp.transcode, sp.structured)
            changes.append(f"added {sp}")
        if new.rules_mapping() != old.rules_mapping():
            self.monitor.set_rules(new.rule_set())
            changes.append("rules")
        if new.file_patterns != old.file_patterns:
            self.monitor.set_file_patterns(new.file_patterns)
            changes.append("file_patterns")
        ctx = (new.context_lines_before, new.context_lines_after, new.max_stack_lines)
        if ctx != (old.context_lines_before, old.context_lines_after, old.max_stack_lines):
            self.monitor.set_context(*ctx)
            changes.append("context")
        if (new.enable_deduplication, new.dedup_window_seconds) != (old.enable_deduplication, old.dedup_window_seconds):
            self.monitor.set_deduplication(new.enable_deduplication, new.dedup_window_seconds)
            changes.append("deduplication")
        if (new.poll_interval, new.scan_interval, new.start_from_end) != (old.poll_interval, old.scan_interval, old.start_from_end):
            self.monitor.set_scan_options(new.poll_interval, new.scan_interval, new.start_from_end)
            changes.append("scan options")
        self.cfg = new
        if changes:
            self.monitor.report_status("Configuration reloaded: " + ", ".join(changes))
        else:
            self.monitor.report_status("Configuration reloaded (no changes)")
        return changes

    async def watch_config(self, interval: float) -> None:
        if not self.config_path:
            return
        watcher = ConfigWatcher(self.config_path, self.cfg)
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(interval)
            try:
                new = await loop.run_in_executor(None, watcher.check)
                if new is not None:
                    self.apply_config(new)
            except Exception:
                logger.exception("Config reload failed")

    async def wait_stopped(self) -> None:
        if self._stopped is None:
            self._stopped = asyncio.Event()
        await self._stopped.wait()

    async def stop(self):
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.monitor.stop)
        if self._stopped is None:
            self._stopped = asyncio.Event()
        self._stopped.set()


class ControlServer:
    def __init__(self, host: str, port: int, state: MonitorState):
        self.host = host
        self.port = port
        self.state = state
        self.server = None
        self._stop_task: Optional[asyncio.Task] = None

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        data = await reader.readline()
        try:
            cmd = json.loads(data.decode()) if data else {}
        except ValueError:
            cmd = {}
        if not isinstance(cmd, dict):
            cmd = {}
        resp = await self._dispatch(cmd)
        writer.write((json.dumps(resp) + "\n").encode())
        await writer.drain()
        writer.close()
        await writer.wait_closed()

    async def _dispatch(self, cmd: dict) -> dict:
        typ = cmd.get("cmd")
        mon = self.state.monitor
        if typ == "add_path":
            path = cmd.get("path")
            if not path:
                return {"ok": False, "error": "missing path"}
            mon.add_watch_target(
                path,
                server_name=cmd.get("server"),
                encoding=cmd.get("encoding") or "utf-8",
                transcode=bool(cmd.get("transcode", False)),
                structured=bool(cmd.get("structured", False)),
            )
            return {"ok": True, "added": path}
        if typ == "remove_path":
            path = cmd.get("path")
            if not path:
                return {"ok": False, "error": "missing path"}
            mon.remove_watch_target(path)
            return {"ok": True, "removed": path}
        if typ == "status":
            return self.state.status()
        if typ == "files":
            return {"ok": True, "files": mon.file_positions()}
        if typ == "rescan":
            mon.force_rescan()
            return {"ok": True, "rescan": True}
        if typ == "verbose":
            mon.set_verbose(bool(cmd.get("enabled", True)))
            return {"ok": True, "verbose": mon.verbose}
        if typ == "stop":
            self._stop_task = asyncio.get_running_loop().create_task(self.state.stop())
            return {"ok": True, "stopping": True}
        return {"ok": False, "error": "unknown cmd"}

    async def start(self):
        self.server = await asyncio.start_server(self.handle, self.host, self.port)

    async def close(self):
        if self.server:
            self.server.close()
            await self.server.wait_closed()


_REASONS = {200: "OK", 400: "Bad Request", 403: "Forbidden", 404: "Not Found", 405: "Method Not Allowed", 500: "Internal Server Error"}


class HttpError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


def _query(qs: Dict[str, List[str]], name: str, default: Optional[str] = None) -> Optional[str]:
    vals = qs.get(name)
    return vals[0] if vals else default


def _int_param(qs: Dict[str, List[str]], name: str, default: int) -> int:
    raw = _query(qs, name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise HttpError(400, f"{name} must be an integer")


def _time_param(qs: Dict[str, List[str]], name: str) -> Optional[datetime]:
    raw = _query(qs, name)
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        raise HttpError(400, f"{name} must be an ISO timestamp")


def _bool_param(qs: Dict[str, List[str]], name: str, default: bool) -> bool:
    raw = _query(qs, name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class HttpStatusServer:
    """Minimal HTTP server for the dashboard, REST API and SSE stream, without extra deps."""

    def __init__(self, host: str, port: int, state: MonitorState, heartbeat: float = 15.0):
        self.host = host
        self.port = port
        self.state = state
        self.heartbeat = heartbeat
        self.server = None

    def _write(self, writer: asyncio.StreamWriter, status: int, body: bytes, content_type: str) -> None:
        headers = (
            f"HTTP/1.1 {status} {_REASONS.get(status, 'OK')}\r\n"
            f"Content-Type: {content_type}\r\n"
            "Access-Control-Allow-Origin: *\r\n"
            "Connection: close\r\n"
            f"Content-Length: {len(body)}\r\n\r\n"
        ).encode()
        writer.write(headers + body)

    def _json(self, writer: asyncio.StreamWriter, obj: Any, status: int = 200) -> None:
        self._write(writer, status, json.dumps(obj, ensure_ascii=False).encode(), "application/json")

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            data = await reader.readuntil(b"\r\n\r\n")
        except asyncio.IncompleteReadError as e:
            data = e.partial
        except asyncio.LimitOverrunError:
            data = b""
        first = (data or b"").split(b"\r\n", 1)[0].decode(errors="ignore")
        method, raw_path, *_ = (first.split(" ") + ["", ""])[:3]
        parts = urlsplit(raw_path)
        path = unquote(parts.path).rstrip("/") or "/"
        qs = parse_qs(parts.query)

        if path == "/stream":
            await self._stream(writer)
            return
        try:
            self._route(writer, method.upper(), path, qs)
        except HttpError as e:
            self._json(writer, {"ok": False, "error": str(e)}, e.status)
        except Exception as e:
            logger.exception("HTTP handler failed for %s", path)
            self._json(writer, {"ok": False, "error": str(e)}, 500)
        try:
            await writer.drain()
        except (ConnectionResetError, BrokenPipeError):
            pass
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass

    def _route(self, writer: asyncio.StreamWriter, method: str, path: str, qs: Dict[str, List[str]]) -> None:
        state = self.state
        store = state.store
        if path in ("/", "/console"):
            self._write(writer, 200, CONSOLE_HTML.encode(), "text/html; charset=utf-8")
        elif path == "/console.js":
            self._write(writer, 200, CONSOLE_JS.encode(), "application/javascript; charset=utf-8")
        elif path == "/console.css":
            self._write(writer, 200, CONSOLE_CSS.encode(), "text/css; charset=utf-8")
        elif path == "/status":
            self._json(writer, state.status())
        elif path == "/api/issues":
            filters = self._filters(qs)
            issues = store.list(offset=_int_param(qs, "offset", 0), limit=_int_param(qs, "limit", 100), **filters)
            self._json(writer, {"ok": True, "total": store.count(**filters), "issues": [i.to_dict() for i in issues]})
        elif path == "/api/issues/clear-acknowledged":
            if method != "POST":
                raise HttpError(405, "use POST")
            self._json(writer, {"ok": True, "removed": store.clear_acknowledged()})
        elif path == "/api/issues/clear":
            if method != "POST":
                raise HttpError(405, "use POST")
            self._json(writer, {"ok": True, "removed": store.clear()})
        elif path.startswith("/api/issues/") and path.endswith("/acknowledge"):
            if method != "POST":
                raise HttpError(405, "use POST")
            issue_id = path[len("/api/issues/"):-len("/acknowledge")]
            if not store.acknowledge(issue_id):
                raise HttpError(404, "issue not found")
            self._json(writer, {"ok": True, "id": issue_id, "acknowledged": True})
        elif path.startswith("/api/issues/"):
            issue = store.get(path[len("/api/issues/"):])
            if issue is None:
                raise HttpError(404, "issue not found")
            self._json(writer, {"ok": True, "issue": issue.to_dict()})
        elif path == "/api/stats":
            stats = store.stats()
            stats["viewers"] = len(state.bcast.subs)
            stats["ok"] = True
            self._json(writer, stats)
        elif path == "/api/health":
            self._json(writer, {"ok": True, "status": "UP", "timestamp": int(time.time() * 1000), "issue_count": len(store)})
        elif path == "/api/export":
            self._export(writer, qs)
        elif path == "/api/encoding/detect":
            self._json(writer, self._detect(_query(qs, "path")))
        elif path == "/api/diagnostics":
            self._json(writer, state.diagnostics())
        elif path == "/api/diagnostics/rescan":
            if method != "POST":
                raise HttpError(405, "use POST")
            state.monitor.force_rescan()
            self._json(writer, {"ok": True, "rescan": True})
        elif path == "/api/diagnostics/verbose":
            if method != "POST":
                raise HttpError(405, "use POST")
            state.monitor.set_verbose(_bool_param(qs, "enabled", True))
            self._json(writer, {"ok": True, "verbose": state.monitor.verbose})
        else:
            raise HttpError(404, f"no route for {path}")

    def _filters(self, qs: Dict[str, List[str]]) -> Dict[str, Any]:
        sev_raw = _query(qs, "severity")
        try:
            severity = Severity.parse(sev_raw) if sev_raw else None
        except ValueError:
            raise HttpError(400, f"unknown severity {sev_raw!r}")
        return dict(
            severity=severity,
            server=_query(qs, "server"),
            since=_time_param(qs, "since"),
            until=_time_param(qs, "until"),
        )

    def _export(self, writer: asyncio.StreamWriter, qs: Dict[str, List[str]]) -> None:
        issues = self.state.store.list(limit=MAX_FILTER_RESULTS, **self._filters(qs))
        fmt = (_query(qs, "format") or "json").lower()
        if fmt == "csv":
            self._write(writer, 200, export_csv(issues).encode("utf-8"), "text/csv; charset=utf-8")
        elif fmt == "json":
            self._json(writer, {
                "ok": True,
                "exported_at": datetime.now().isoformat(timespec="seconds"),
                "total": len(issues),
                "issues": [i.to_dict() for i in issues],
            })
        else:
            raise HttpError(400, f"unknown format {fmt!r}")

    def _detect(self, path: Optional[str]) -> Dict[str, Any]:
        if not path:
            raise HttpError(400, "missing path")
        if not self.state.within_servers(path):
            raise HttpError(403, "path must be within a configured server path")
        if not os.path.isfile(path):
            raise HttpError(404, "not a regular file")
        try:
            guess = detect_encoding(path)
        except OSError as e:
            raise HttpError(500, f"cannot analyze file: {e}")
        return {"ok": True, "path": path, "file": os.path.basename(path), **guess.to_dict()}

    async def _stream(self, writer: asyncio.StreamWriter) -> None:
        headers = (
            b"HTTP/1.1 200 OK\r\n"
            b"Content-Type: text/event-stream\r\n"
            b"Cache-Control: no-cache\r\n"
            b"Connection: keep-alive\r\n"
            b"Access-Control-Allow-Origin: *\r\n\r\n"
        )
        try:
            writer.write(headers)
            await writer.drain()
        except (ConnectionResetError, BrokenPipeError):
            return
        q = self.state.bcast.add_subscriber()
        try:
            hello = {"viewers": len(self.state.bcast.subs), **self.state.store.stats()}
            writer.write(("event: hello\ndata: " + json.dumps(hello) + "\n\n").encode())
            await writer.drain()
            while True:
                try:
                    evt = await asyncio.wait_for(q.get(), timeout=self.heartbeat)
                except asyncio.TimeoutError:
                    writer.write(b": keep-alive\n\n")
                    await writer.drain()
                    continue
                payload = ("data: " + json.dumps(evt, ensure_ascii=False) + "\n\n").encode()
                writer.write(payload)
                await writer.drain()
        except (ConnectionResetError, ConnectionAbortedError, BrokenPipeError):
            logger.debug("SSE client disconnected")
        finally:
            self.state.bcast.remove_subscriber(q)
            writer.close()

    async def start(self):
        self.server = await asyncio.start_server(self.handle, self.host, self.port)

    async def close(self):
        if self.server:
            self.server.close()
            await self.server.wait_closed()


# Static UI assets (inline for packaging simplicity)
CONSOLE_HTML = """
<!doctype html>
<html>
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>Log Issue Monitor</title>
    <link rel="stylesheet" href="/console.css" />
  </head>
  <body>
    <header>
      <div class="title">Log Issue Monitor</div>
      <div class="counts" id="counts"></div>
      <div class="controls">
        <select id="severity">
          <option value="">All severities</option>
          <option>CRITICAL</option><option>EXCEPTION</option><option>ERROR</option><option>WARNING</option>
        </select>
        <input id="filter" placeholder="Filter (server, file, type, message)" />
        <button id="pauseBtn">Pause</button>
        <button id="clearAckBtn">Clear acknowledged</button>
        <a class="export" href="/api/export?format=csv">Export CSV</a>
      </div>
    </header>
    <div id="status" class="status"></div>
    <main id="issues"></main>
    <script src="/console.js"></script>
  </body>
  </html>
"""

CONSOLE_CSS = """
:root { --bg:#0f1115; --panel:#151924; --fg:#e5e7eb; --muted:#9aa0a6; --crit:#ef4444; --exc:#f97316; --err:#f59e0b; --warn:#eab308; --acc:#5eead4; }
*{box-sizing:border-box} body{margin:0;background:var(--bg);color:var(--fg);font:14px/1.5 ui-monospace, SFMono-Regular, Menlo, Consolas, monospace}
header{position:sticky;top:0;background:linear-gradient(180deg,var(--panel),rgba(21,25,36,0.6));border-bottom:1px solid rgba(255,255,255,0.06);display:flex;gap:16px;align-items:center;justify-content:space-between;padding:10px 12px}
.title{font-weight:700;letter-spacing:.3px}
.counts{display:flex;gap:8px;color:var(--muted)}
.controls{display:flex;gap:8px;align-items:center}
button,select{background:rgba(94,234,212,.12);color:var(--fg);border:1px solid rgba(94,234,212,.4);padding:6px 10px;border-radius:8px;cursor:pointer}
.export{color:var(--fg);font-size:12px;text-decoration:none;border-bottom:1px dotted var(--fg)}
input{background:rgba(255,255,255,.06);color:var(--fg);border:1px solid rgba(255,255,255,.12);border-radius:8px;padding:6px 8px;min-width:280px}
.status{color:var(--muted);padding:4px 12px;font-size:12px}
main{padding:10px 12px}
.row{display:flex;gap:10px;align-items:flex-start;padding:6px 8px;border-bottom:1px solid rgba(255,255,255,.06)}
.row.ack{opacity:.45}
.badge{padding:2px 6px;border-radius:6px;font-weight:700;min-width:88px;text-align:center}
.CRITICAL{background:rgba(239,68,68,.15);border:1px solid var(--crit)}
.EXCEPTION{background:rgba(249,115,22,.15);border:1px solid var(--exc)}
.ERROR{background:rgba(245,158,11,.12);border:1px solid var(--err)}
.WARNING{background:rgba(234,179,8,.10);border:1px solid var(--warn)}
.meta{color:var(--muted)}
details{margin-left:auto}
pre{white-space:pre-wrap;word-break:break-word}
"""

CONSOLE_JS = """
(function(){
  const list = document.getElementById('issues');
  const counts = document.getElementById('counts');
  const statusEl = document.getElementById('status');
  const pauseBtn = document.getElementById('pauseBtn');
  const clearAckBtn = document.getElementById('clearAckBtn');
  const filter = document.getElementById('filter');
  const severity = document.getElementById('severity');
  let paused = false;
  let filterTxt = '';
  const buf = [];

  function matches(issue){
    if(severity.value && issue.severity !== severity.value) return false;
    if(!filterTxt) return true;
    const hay = [issue.server_name, issue.file_name, issue.issue_type, issue.message].join(' ').toLowerCase();
    return hay.includes(filterTxt.toLowerCase());
  }

  function row(issue){
    const div = document.createElement('div');
    div.className = 'row' + (issue.acknowledged ? ' ack' : '');
    const badge = document.createElement('span');
    badge.className = 'badge ' + issue.severity;
    badge.textContent = issue.severity_display;
    const span = document.createElement('span');
    const server = issue.server_name ? issue.server_name + ':' : '';
    span.textContent = `[${issue.detected_at}] ${server}${issue.file_name}:${issue.line_number} ${issue.issue_type} - ${issue.message}`;
    const det = document.createElement('details');
    const sum = document.createElement('summary');
    sum.textContent = 'context';
    const pre = document.createElement('pre');
    pre.textContent = issue.full_text;
    det.appendChild(sum); det.appendChild(pre);
    const ack = document.createElement('button');
    ack.textContent = 'Ack';
    ack.disabled = !!issue.acknowledged;
    ack.onclick = ()=>{
      fetch(`/api/issues/${issue.id}/acknowledge`, {method:'POST'}).then(()=>{
        issue.acknowledged = true; renderAll();
      }).catch(()=>{});
    };
    div.appendChild(badge); div.appendChild(span); div.appendChild(det); div.appendChild(ack);
    return div;
  }

  function renderAll(){
    list.innerHTML = '';
    for(const issue of buf){ if(matches(issue)) list.appendChild(row(issue)); }
  }

  function refreshStats(){
    fetch('/api/stats').then(r=>r.json()).then(s=>{
      const parts = Object.entries(s.by_severity || {}).map(([k,v])=>`${k}: ${v}`);
      parts.push(`viewers: ${s.viewers}`);
      counts.textContent = parts.join('  ');
    }).catch(()=>{});
  }

  pauseBtn.onclick = ()=>{ paused = !paused; pauseBtn.textContent = paused? 'Resume' : 'Pause'; if(!paused) renderAll(); };
  clearAckBtn.onclick = ()=>{
    fetch('/api/issues/clear-acknowledged', {method:'POST'}).then(()=>{
      for(let i = buf.length - 1; i >= 0; i--){ if(buf[i].acknowledged) buf.splice(i, 1); }
      renderAll(); refreshStats();
    }).catch(()=>{});
  };
  filter.oninput = ()=>{ filterTxt = filter.value.trim(); renderAll(); };
  severity.onchange = renderAll;

  const es = new EventSource('/stream');
  es.addEventListener('hello', ()=>{ statusEl.textContent = 'connected'; refreshStats(); });
  es.onmessage = (ev)=>{
    let obj;
    try{ obj = JSON.parse(ev.data); }catch(e){ return; }
    if(obj.type === 'issue'){
      buf.unshift(obj);
      if(buf.length > 1000) buf.pop();
      if(!paused && matches(obj)) list.insertBefore(row(obj), list.firstChild);
      refreshStats();
    } else if(obj.type === 'status'){
      statusEl.textContent = obj.message;
    }
  };
  es.onerror = ()=>{ statusEl.textContent = 'disconnected, retrying...'; };

  // preload recent issues
  fetch('/api/issues?limit=200').then(r=>r.json()).then(res=>{
    if(Array.isArray(res.issues)){
      for(const e of res.issues){ buf.push(e); }
      renderAll();
    }
  }).catch(()=>{});
})();
"""


def daemonize():
    """Simple UNIX double-fork daemonization."""
    if os.name != "posix":
        return
    try:
        pid = os.fork()
        if pid > 0:
            os._exit(0)
    except OSError:
        return
    os.setsid()
    try:
        pid = os.fork()
        if pid > 0:
            os._exit(0)
    except OSError:
        return
    os.umask(0)
    os.chdir("/")


async def run_monitor(
    config_path: str,
    host: Optional[str] = None,
    port: Optional[int] = None,
    http_enabled: bool = True,
    http_port: Optional[int] = None,
):
    cfg_path = Path(config_path)
    cfg = load_config(cfg_path)
    state = MonitorState(cfg, config_path=cfg_path)
    state.bcast.bind(asyncio.get_running_loop())
    host = host or cfg.host
    port = cfg.control_port if port is None else port
    http_port = cfg.http_port if http_port is None else http_port

    ctrl = ControlServer(host, port, state)
    await ctrl.start()
    http_srv = None
    if http_enabled:
        http_srv = HttpStatusServer(host, http_port, state)
        await http_srv.start()

    state.monitor.start()
    watch_task = asyncio.create_task(state.watch_config(cfg.config_check_interval))

    msg = f"Monitor running. Control server on {host}:{port}."
    if http_enabled:
        msg += f" Dashboard on http://{host}:{http_port}/."
    logger.info(msg)
    try:
        await state.wait_stopped()
    except (asyncio.CancelledError, KeyboardInterrupt):
        await state.stop()
    finally:
        watch_task.cancel()
        await ctrl.close()
        if http_srv:
            await http_srv.close()
        logger.info("Monitor stopped.")

"""Tail engine: turns newly appended log lines into finalized issues.

Each registered file is polled from its saved offset. Classified lines open a
capture that collects leading context from a small ring buffer and a bounded
number of trailing lines (stack-trace frames ride along without counting).
A capture is emitted once: when its trailing budget is used up, when the next
anchor line arrives, or when the file is removed or the engine flushes.

All state here is touched by the single polling thread only.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

from .models import ClassificationResult, FinalizedIssue, Severity, WatchTarget
from .reader import DEFAULT_MAX_READ, read_new_lines, resolve_encoding
from .rules import Classifier
from .tracker import FilePositionTracker, FileSignature

logger = logging.getLogger(__name__)

IssueCallback = Callable[[FinalizedIssue], Any]
StatusCallback = Callable[[str], Any]


_STACK_FRAME = re.compile(r"^\s+at\s+[\w.$<>/]+\(.*\)")
_CAUSED_BY = re.compile(r"^\s*Caused by:")
_MORE = re.compile(r"^\s*\.\.\.\s*\d+\s+(more|common frames omitted)")
_PY_FRAME = re.compile(r'^\s+File ".*", line \d+')

_EXCEPTION_TYPE = re.compile(r"([\w.$]+(?:Exception|Error|Throwable))")
_LEADING_TS = re.compile(
    r"^\s*\[?\d{4}[-/]\d{2}[-/]\d{2}[T ]\d{2}:\d{2}(?::\d{2}(?:[.,]\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?\]?\s*"
)
_ESCALATE = re.compile(r"OutOfMemoryError|StackOverflowError|VirtualMachineError")

_TYPE_KEYWORDS = (
    (("timeout",), "Timeout"),
    (("connection",), "Connection"),
    (("authentication",), "Authentication"),
    (("permission", "denied"), "Permission"),
    (("memory",), "Memory"),
    (("disk", "storage"), "Storage"),
)

_NORMALIZERS = (
    (re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"), "UUID"),
    (re.compile(r"\d{4}[-/]\d{2}[-/]\d{2}"), "DATE"),
    (re.compile(r"\d{2}:\d{2}:\d{2}(?:[.,]\d+)?"), "TIME"),
    (re.compile(r"0x[0-9a-fA-F]+"), "HEX"),
    (re.compile(r"\d+"), "N"),
)


def is_continuation(line: str) -> bool:
    """Stack-trace frame lines that belong to the issue above them."""
    return bool(
        _STACK_FRAME.match(line)
        or _CAUSED_BY.match(line)
        or _MORE.match(line)
        or _PY_FRAME.match(line)
    )


def extract_exception_type(line: str) -> Optional[str]:
    m = _EXCEPTION_TYPE.search(line)
    if not m:
        return None
    return m.group(1).rsplit(".", 1)[-1]


def issue_type_for(line: str, severity: Severity) -> str:
    found = extract_exception_type(line)
    if found:
        return found
    if severity is Severity.EXCEPTION:
        return "Exception"
    low = line.lower()
    for words, name in _TYPE_KEYWORDS:
        if any(w in low for w in words):
            return name
    return severity.value


def extract_message(line: str) -> str:
    """Message part of an exception line, e.g. the text after ``FooException:``."""
    s = _LEADING_TS.sub("", line).strip()
    m = _EXCEPTION_TYPE.search(s)
    if m:
        rest = s[m.end():]
        if rest.startswith(":") and rest[1:].strip():
            return rest[1:].strip()
    idx = s.find(":")
    if 0 < idx < len(s) - 1 and s[idx + 1:].strip():
        return s[idx + 1:].strip()
    return s or line.strip()


def normalize_message(message: str) -> str:
    out = message
    for rx, repl in _NORMALIZERS:
        out = rx.sub(repl, out)
    return out


def fingerprint(issue: FinalizedIssue) -> str:
    key = "|".join([
        issue.server_name or "",
        issue.file_name,
        issue.issue_type,
        normalize_message(issue.message),
    ])
    return hashlib.sha1(key.encode("utf-8", errors="replace")).hexdigest()


class DeduplicationWindow:
    """Fingerprints emitted within the last ``window_seconds``.

    Entries keep their first-emission time, so insertion order is time order
    and expired entries are popped from the front on every check.
    """

    def __init__(self, window_seconds: float = 5.0, clock: Callable[[], float] = time.time):
        self.window_seconds = float(window_seconds)
        self._clock = clock
        self._seen: "OrderedDict[str, float]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def _evict(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._seen:
            key, ts = next(iter(self._seen.items()))
            if ts > cutoff:
                break
            self._seen.popitem(last=False)

    def is_duplicate(self, key: str) -> bool:
        now = self._clock()
        self._evict(now)
        if key in self._seen:
            return True
        self._seen[key] = now
        return False

    def clear(self) -> None:
        self._seen.clear()


@dataclass
class EngineSettings:
    context_lines_before: int = 2
    context_lines_after: int = 5
    max_stack_lines: int = 200
    enable_deduplication: bool = True
    dedup_window_seconds: float = 5.0
    max_read_bytes: int = DEFAULT_MAX_READ


@dataclass
class _Capture:
    anchor: str
    line_number: int
    result: ClassificationResult
    before: List[str]
    detected_at: datetime
    after: List[str] = field(default_factory=list)
    trailing: int = 0
    stack_lines: int = 0


class _Tail:
    def __init__(self, target: WatchTarget, history_size: int):
        self.target = target
        self.history: Deque[str] = deque(maxlen=max(0, history_size))
        self.capture: Optional[_Capture] = None

    def resize(self, history_size: int) -> None:
        self.history = deque(self.history, maxlen=max(0, history_size))


class TailEngine:
    def __init__(
        self,
        classifier: Classifier,
        on_issue: IssueCallback,
        on_status: Optional[StatusCallback] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], float] = time.time,
        tracker: Optional[FilePositionTracker] = None,
    ):
        self.classifier = classifier
        self.on_issue = on_issue
        self.on_status = on_status
        self.settings = settings or EngineSettings()
        self.clock = clock
        self.tracker = tracker or FilePositionTracker()
        self.dedup = DeduplicationWindow(self.settings.dedup_window_seconds, clock=clock)
        self._tails: Dict[str, _Tail] = {}
        self.issues_emitted = 0
        self.duplicates_suppressed = 0
        self.lines_read = 0
        self.cycles = 0

    # registration -------------------------------------------------------

    def __contains__(self, path: str) -> bool:
        return path in self._tails

    def register(self, target: WatchTarget) -> bool:
        """Start tailing a file; False if it is already registered."""
        if target.path in self._tails:
            return False
        try:
            resolve_encoding(target.encoding)
        except LookupError as e:
            logger.warning("Unknown encoding %r for %s (%s); using utf-8", target.encoding, target.path, e)
            self._status(f"Unknown encoding {target.encoding} for {target.describe()}, using UTF-8")
            target.encoding = "utf-8"
        try:
            sig: Optional[FileSignature] = FileSignature.of(target.path)
        except OSError:
            sig = None
        self.tracker.update_offset(target.path, target.offset, sig)
        if sig is not None:
            target.size, target.mtime = sig.size, sig.mtime
        self._tails[target.path] = _Tail(target, self.settings.context_lines_before)
        enc = f" ({target.encoding})" if target.encoding.lower() not in ("utf-8", "utf8") else ""
        self._status(f"Tracking: {target.describe()}{enc}")
        return True

    def unregister(self, path: str) -> Optional[WatchTarget]:
        tail = self._tails.pop(path, None)
        if tail is None:
            return None
        self._finalize(tail)
        self.tracker.forget(path)
        self._status(f"Stopped tracking: {tail.target.describe()}")
        return tail.target

    # settings -----------------------------------------------------------

    def set_context(self, before: int, after: int, max_stack_lines: Optional[int] = None) -> None:
        self.settings.context_lines_before = max(0, int(before))
        self.settings.context_lines_after = max(0, int(after))
        if max_stack_lines is not None:
            self.settings.max_stack_lines = max(0, int(max_stack_lines))
        for tail in self._tails.values():
            tail.resize(self.settings.context_lines_before)

    def set_deduplication(self, enabled: bool, window_seconds: Optional[float] = None) -> None:
        self.settings.enable_deduplication = bool(enabled)
        if window_seconds is not None:
            self.settings.dedup_window_seconds = float(window_seconds)
            self.dedup.window_seconds = float(window_seconds)
        if not enabled:
            self.dedup.clear()

    # polling ------------------------------------------------------------

    def poll(self, final: bool = False) -> int:
        """Read every registered file once; returns the number of issues emitted.

        ``final`` also consumes an unterminated last line.
        """
        before = self.issues_emitted
        self.cycles += 1
        for tail in list(self._tails.values()):
            self._poll_tail(tail, final)
        return self.issues_emitted - before

    def _poll_tail(self, tail: _Tail, final: bool = False) -> None:
        target = tail.target
        path = target.path
        try:
            sig = FileSignature.of(path)
        except FileNotFoundError:
            logger.debug("File vanished before poll: %s", path)
            return
        except OSError as e:
            logger.warning("Cannot stat %s: %s", path, e)
            return

        if self.tracker.detect_rotation(path, sig):
            self._status(f"File rotated: {target.describe()}")
            self._finalize(tail)
            tail.history.clear()
            self.tracker.reset(path)
            target.line_number = 0

        offset, _ = self.tracker.get_offset(path)
        target.offset = offset
        target.size, target.mtime = sig.size, sig.mtime
        if sig.size <= offset:
            self.tracker.update_offset(path, offset, sig)
            return

        try:
            result = read_new_lines(target, self.settings.max_read_bytes, final=final)
        except OSError as e:
            logger.warning("Cannot read %s: %s", path, e)
            return

        self.process_lines(tail, result.lines)
        target.offset = offset + result.bytes_consumed
        self.tracker.update_offset(path, target.offset, sig)

    def process_lines(self, tail: _Tail, lines: List[str]) -> None:
        for line in lines:
            tail.target.line_number += 1
            self.lines_read += 1
            try:
                self._process_line(tail, line, tail.target.line_number)
            except Exception:
                logger.exception("Failed to process %s line %d", tail.target.path, tail.target.line_number)

    def _process_line(self, tail: _Tail, line: str, line_number: int) -> None:
        cap = tail.capture
        if cap is not None and cap.stack_lines < self.settings.max_stack_lines and is_continuation(line):
            cap.after.append(line)
            cap.stack_lines += 1
            tail.history.append(line)
            return

        result = self.classifier.classify(line, structured=tail.target.structured)
        if cap is not None:
            if result is not None:
                self._finalize(tail)
            else:
                cap.after.append(line)
                cap.trailing += 1
                if cap.trailing >= self.settings.context_lines_after:
                    self._finalize(tail)
                tail.history.append(line)
                return

        if result is not None:
            tail.capture = _Capture(
                anchor=line,
                line_number=line_number,
                result=result,
                before=list(tail.history),
                detected_at=datetime.fromtimestamp(self.clock()),
            )
            if self.settings.context_lines_after <= 0:
                self._finalize(tail)
        tail.history.append(line)

    def flush(self) -> int:
        """Finalize every open capture (used on stop)."""
        before = self.issues_emitted
        for tail in list(self._tails.values()):
            self._finalize(tail)
        return self.issues_emitted - before

    # emission -----------------------------------------------------------

    def _finalize(self, tail: _Tail) -> None:
        cap = tail.capture
        tail.capture = None
        if cap is None:
            return
        issue = self._build_issue(tail.target, cap)
        if self.settings.enable_deduplication and self.dedup.is_duplicate(fingerprint(issue)):
            self.duplicates_suppressed += 1
            logger.debug("Suppressed duplicate %s at %s:%d", issue.issue_type, issue.file_name, issue.line_number)
            return
        self.issues_emitted += 1
        try:
            self.on_issue(issue)
        except Exception:
            logger.exception("Issue sink failed for %s:%d", issue.file_name, issue.line_number)

    def _build_issue(self, target: WatchTarget, cap: _Capture) -> FinalizedIssue:
        res = cap.result
        block = "\n".join(cap.before + [cap.anchor] + cap.after)
        if res.stack:
            block = block + "\n" + res.stack
        severity = res.severity
        if severity is Severity.EXCEPTION and _ESCALATE.search(block):
            severity = Severity.CRITICAL
        issue_type = res.issue_type or issue_type_for(cap.anchor, res.severity)
        if res.message:
            message = res.message
        elif res.severity in (Severity.CRITICAL, Severity.EXCEPTION):
            message = extract_message(cap.anchor)
        else:
            message = cap.anchor.strip()
        return FinalizedIssue(
            server_name=target.server_name,
            file_name=target.file_name,
            line_number=cap.line_number,
            issue_type=issue_type,
            message=message,
            full_text=block,
            detected_at=cap.detected_at,
            severity=severity,
            path=target.path,
        )

    def _status(self, message: str) -> None:
        logger.info(message)
        if self.on_status is not None:
            try:
                self.on_status(message)
            except Exception:
                logger.exception("Status callback failed")

    # diagnostics --------------------------------------------------------

    def positions(self) -> List[Dict[str, Any]]:
        out = []
        for path, tail in sorted(self._tails.items()):
            t = tail.target
            out.append({
                "path": path,
                "server": t.server_name,
                "encoding": t.encoding,
                "offset": t.offset,
                "size": t.size,
                "line": t.line_number,
                "capturing": tail.capture is not None,
            })
        return out

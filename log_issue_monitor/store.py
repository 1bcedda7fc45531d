from __future__ import annotations

import csv
import io
import logging
import threading
import uuid
from collections import Counter, deque
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional

from .models import FinalizedIssue, Severity, TIER_ORDER

logger = logging.getLogger(__name__)

MAX_ISSUES_LIMIT = 50000
MAX_LISTENERS = 100
MAX_FILTER_RESULTS = 10000

IssueListener = Callable[[FinalizedIssue], Any]

CSV_COLUMNS = ["ID", "Server", "File", "Line", "Type", "Severity", "Message", "Detected At", "Acknowledged"]


class IssueStore:
    """In-memory issue sink: assigns ids, keeps bounded history, notifies listeners.

    Issues are held most recent first. The store is called from the polling
    thread and from HTTP handlers, so every access goes through one lock.
    Listeners are called outside the lock.
    """

    def __init__(self, max_issues: int = 1000):
        self.max_issues = max(1, min(int(max_issues), MAX_ISSUES_LIMIT))
        self._issues: Deque[FinalizedIssue] = deque(maxlen=self.max_issues)
        self._listeners: List[IssueListener] = []
        self._lock = threading.Lock()
        self.total_count = 0
        self._severity_counts: Counter = Counter()
        self._server_counts: Counter = Counter()

    # sink ---------------------------------------------------------------

    def add(self, issue: FinalizedIssue) -> FinalizedIssue:
        if issue.id is None:
            issue = replace(issue, id=uuid.uuid4().hex[:12])
        with self._lock:
            self._issues.appendleft(issue)
            self.total_count += 1
            self._severity_counts[issue.severity] += 1
            self._server_counts[issue.server_name or "Unknown"] += 1
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(issue)
            except Exception:
                logger.exception("Issue listener failed")
        return issue

    __call__ = add

    def add_listener(self, listener: IssueListener) -> bool:
        with self._lock:
            if len(self._listeners) >= MAX_LISTENERS:
                logger.warning("Listener limit (%d) reached, rejecting new listener", MAX_LISTENERS)
                return False
            self._listeners.append(listener)
            return True

    def remove_listener(self, listener: IssueListener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    # queries ------------------------------------------------------------

    def __len__(self) -> int:
        with self._lock:
            return len(self._issues)

    def get(self, issue_id: str) -> Optional[FinalizedIssue]:
        with self._lock:
            for issue in self._issues:
                if issue.id == issue_id:
                    return issue
        return None

    def _select(
        self,
        severity: Optional[Severity],
        server: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime],
    ) -> List[FinalizedIssue]:
        with self._lock:
            items = list(self._issues)
        out = []
        for i in items:
            if severity is not None and i.severity is not severity:
                continue
            if server and i.server_name != server:
                continue
            if since is not None and i.detected_at < since:
                continue
            if until is not None and i.detected_at > until:
                continue
            out.append(i)
        return out

    def list(
        self,
        severity: Optional[Severity] = None,
        server: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 100,
    ) -> List[FinalizedIssue]:
        limit = max(0, min(int(limit), MAX_FILTER_RESULTS))
        offset = max(0, int(offset))
        return self._select(severity, server, since, until)[offset:offset + limit]

    def count(
        self,
        severity: Optional[Severity] = None,
        server: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> int:
        return len(self._select(severity, server, since, until))

    # mutations ----------------------------------------------------------

    def acknowledge(self, issue_id: str) -> bool:
        with self._lock:
            for idx, issue in enumerate(self._issues):
                if issue.id == issue_id:
                    self._issues[idx] = replace(issue, acknowledged=True)
                    return True
        return False

    def clear_acknowledged(self) -> int:
        with self._lock:
            keep = [i for i in self._issues if not i.acknowledged]
            removed = len(self._issues) - len(keep)
            self._issues = deque(keep, maxlen=self.max_issues)
        return removed

    def clear(self) -> int:
        with self._lock:
            n = len(self._issues)
            self._issues.clear()
        return n

    # statistics ---------------------------------------------------------

    def hourly_trend(self, hours: int = 24, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.now()
        top = now.replace(minute=0, second=0, microsecond=0)
        trend: Dict[str, int] = {}
        for i in range(hours - 1, -1, -1):
            trend[(top - timedelta(hours=i)).strftime("%H:00")] = 0
        cutoff = top - timedelta(hours=hours - 1)
        with self._lock:
            items = list(self._issues)
        for issue in items:
            if issue.detected_at >= cutoff:
                key = issue.detected_at.strftime("%H:00")
                if key in trend:
                    trend[key] += 1
        return trend

    def stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        with self._lock:
            items = list(self._issues)
            total = self.total_count
            by_server_total = dict(self._server_counts)
            by_sev_total = {s.value: self._severity_counts.get(s, 0) for s in TIER_ORDER}
        current = Counter(i.severity.value for i in items)
        types = Counter(i.issue_type for i in items)
        return {
            "total": total,
            "current": len(items),
            "unacknowledged": sum(1 for i in items if not i.acknowledged),
            "by_severity": {s.value: current.get(s.value, 0) for s in TIER_ORDER},
            "by_severity_total": by_sev_total,
            "by_server": by_server_total,
            "top_types": dict(types.most_common(10)),
            "hourly": self.hourly_trend(24, now=now),
            "servers": sorted({i.server_name for i in items if i.server_name}),
        }


def export_csv(issues: List[FinalizedIssue]) -> str:
    buf = io.StringIO()
    w = csv.writer(buf, lineterminator="\n")
    w.writerow(CSV_COLUMNS)
    for i in issues:
        w.writerow([
            i.id or "",
            i.server_name or "",
            i.file_name,
            i.line_number,
            i.issue_type,
            i.severity.value,
            i.message,
            i.detected_at.strftime("%Y-%m-%d %H:%M:%S"),
            "true" if i.acknowledged else "false",
        ])
    return buf.getvalue()

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class Severity(str, Enum):
    """Issue severity tiers, listed in evaluation order (highest first)."""

    CRITICAL = "CRITICAL"
    EXCEPTION = "EXCEPTION"
    ERROR = "ERROR"
    WARNING = "WARNING"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @classmethod
    def parse(cls, value: str) -> "Severity":
        name = (value or "").strip().upper()
        if name == "WARN":
            name = "WARNING"
        if name in ("FATAL", "SEVERE"):
            name = "CRITICAL"
        return cls(name)


# Evaluation order of the classifier tiers.
TIER_ORDER = (Severity.CRITICAL, Severity.EXCEPTION, Severity.ERROR, Severity.WARNING)


@dataclass(frozen=True)
class ClassificationResult:
    severity: Severity
    pattern: str
    # Set by custom rules and structured (JSON) lines.
    issue_type: Optional[str] = None
    message: Optional[str] = None
    stack: Optional[str] = None


@dataclass(frozen=True)
class ServerPath:
    """A configured directory (or single file) and the server it belongs to."""

    path: str
    server_name: Optional[str] = None
    encoding: str = "utf-8"
    transcode: bool = False
    structured: bool = False
    description: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.server_name} -> {self.path}" if self.server_name else self.path


@dataclass
class WatchTarget:
    """One file being tailed, plus its read position."""

    path: str
    server_name: Optional[str] = None
    encoding: str = "utf-8"
    transcode: bool = False
    structured: bool = False
    # mutable position state
    offset: int = 0
    size: int = 0
    mtime: float = 0.0
    line_number: int = 0

    @property
    def file_name(self) -> str:
        return os.path.basename(self.path)

    def describe(self) -> str:
        server = f" [{self.server_name}]" if self.server_name else ""
        return f"{self.file_name}{server}"


@dataclass(frozen=True)
class FinalizedIssue:
    server_name: Optional[str]
    file_name: str
    line_number: int
    issue_type: str
    message: str
    full_text: str
    detected_at: datetime
    severity: Severity
    acknowledged: bool = False
    id: Optional[str] = None
    path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["severity"] = self.severity.value
        d["severity_display"] = self.severity.display_name
        d["detected_at"] = self.detected_at.isoformat(timespec="seconds")
        return d

    def __str__(self) -> str:
        server = f"{self.server_name}:" if self.server_name else ""
        ts = self.detected_at.strftime("%Y-%m-%d %H:%M:%S")
        return f"[{self.severity.display_name}] {ts} - {server}{self.file_name}:{self.line_number} - {self.message}"

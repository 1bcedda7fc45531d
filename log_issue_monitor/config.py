from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .models import ServerPath
from .reader import resolve_encoding
from .rules import RuleSet, rules_from_mapping
from .scanner import DEFAULT_FILE_PATTERNS

logger = logging.getLogger(__name__)

DEFAULT_EXCEPTION_PATTERNS = [r"Exception", r"Error:", r"FATAL", r"Throwable"]
DEFAULT_ERROR_PATTERNS = [r"\bERROR\b", r"\bFAILED\b", r"\bFAILURE\b"]
DEFAULT_WARNING_PATTERNS = [r"\bWARN\b", r"\bWARNING\b"]

_RULE_KEYS = (
    "critical_patterns",
    "exception_patterns",
    "error_patterns",
    "warning_patterns",
    "exclusion_patterns",
    "custom_rules",
    "use_builtin_patterns",
    "case_sensitive",
)


class ConfigError(ValueError):
    """The configuration document could not be read or is not a mapping."""


@dataclass
class DashboardConfig:
    servers: List[ServerPath] = field(default_factory=list)
    watch_paths: List[str] = field(default_factory=list)
    file_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_FILE_PATTERNS))
    # None selects the built-in critical catalogue
    critical_patterns: Optional[List[str]] = None
    exception_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_EXCEPTION_PATTERNS))
    error_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_ERROR_PATTERNS))
    warning_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_WARNING_PATTERNS))
    exclusion_patterns: List[str] = field(default_factory=list)
    custom_rules: List[Dict[str, Any]] = field(default_factory=list)
    use_builtin_patterns: bool = True
    case_sensitive: bool = False
    context_lines_before: int = 2
    context_lines_after: int = 5
    max_stack_lines: int = 200
    enable_deduplication: bool = True
    dedup_window_seconds: float = 5.0
    parse_json_logs: bool = False
    poll_interval: float = 1.0
    scan_interval: float = 10.0
    start_from_end: bool = True
    max_issues: int = 1000
    host: str = "127.0.0.1"
    http_port: int = 8766
    control_port: int = 8765
    config_check_interval: float = 2.0
    warnings: List[str] = field(default_factory=list, compare=False)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "DashboardConfig":
        cfg = cls()
        warnings: List[str] = []

        def _num(key: str, conv, minimum):
            if key not in data or data[key] is None:
                return getattr(cfg, key)
            try:
                val = conv(data[key])
            except (TypeError, ValueError):
                warnings.append(f"{key}: expected a number, got {data[key]!r}")
                return getattr(cfg, key)
            if val < minimum:
                warnings.append(f"{key}: {val} is below {minimum}, using {minimum}")
                return conv(minimum)
            return val

        def _list(key: str) -> List[Any]:
            val = data.get(key)
            if val is None:
                return getattr(cfg, key)
            if isinstance(val, str):
                return [val]
            if not isinstance(val, list):
                warnings.append(f"{key}: expected a list")
                return getattr(cfg, key)
            return list(val)

        cfg.servers = _servers(data.get("servers") or [], bool(data.get("parse_json_logs", False)), warnings)
        cfg.watch_paths = [str(p) for p in _list("watch_paths") if p]
        cfg.file_patterns = [str(p) for p in _list("file_patterns")]
        if data.get("critical_patterns") is not None:
            cfg.critical_patterns = [str(p) for p in _list("critical_patterns")]
        cfg.exception_patterns = _list("exception_patterns")
        cfg.error_patterns = _list("error_patterns")
        cfg.warning_patterns = _list("warning_patterns")
        cfg.exclusion_patterns = _list("exclusion_patterns")
        cfg.custom_rules = [r for r in _list("custom_rules") if isinstance(r, dict)]
        for key in ("use_builtin_patterns", "case_sensitive", "enable_deduplication", "parse_json_logs", "start_from_end"):
            if key in data and data[key] is not None:
                setattr(cfg, key, bool(data[key]))
        cfg.context_lines_before = _num("context_lines_before", int, 0)
        cfg.context_lines_after = _num("context_lines_after", int, 0)
        cfg.max_stack_lines = _num("max_stack_lines", int, 0)
        cfg.dedup_window_seconds = _num("dedup_window_seconds", float, 0)
        cfg.poll_interval = _num("poll_interval", float, 0.1)
        cfg.scan_interval = _num("scan_interval", float, 0.1)
        cfg.max_issues = _num("max_issues", int, 1)
        cfg.http_port = _num("http_port", int, 0)
        cfg.control_port = _num("control_port", int, 0)
        cfg.config_check_interval = _num("config_check_interval", float, 0.1)
        if data.get("host"):
            cfg.host = str(data["host"])

        rules = cfg.rule_set()
        warnings.extend(rules.errors)
        cfg.warnings = warnings
        for w in warnings:
            logger.warning("Config: %s", w)
        return cfg

    def rules_mapping(self) -> Dict[str, Any]:
        return {key: getattr(self, key) for key in _RULE_KEYS}

    def rule_set(self) -> RuleSet:
        return rules_from_mapping(self.rules_mapping())

    def server_paths(self) -> List[ServerPath]:
        """Named servers followed by legacy unnamed watch paths, without duplicates."""
        out: List[ServerPath] = []
        seen = set()
        for sp in self.servers:
            key = os.path.abspath(sp.path)
            if key not in seen:
                seen.add(key)
                out.append(sp)
        for p in self.watch_paths:
            key = os.path.abspath(p)
            if key not in seen:
                seen.add(key)
                out.append(ServerPath(path=p, structured=self.parse_json_logs))
        return out


def _servers(items: List[Any], structured_default: bool, warnings: List[str]) -> List[ServerPath]:
    out = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("path"):
            warnings.append(f"servers[{idx}]: missing path, entry skipped")
            continue
        encoding = str(item.get("encoding") or "utf-8")
        try:
            resolve_encoding(encoding)
        except LookupError:
            warnings.append(f"servers[{idx}]: unknown encoding {encoding!r}, using utf-8")
            encoding = "utf-8"
        out.append(ServerPath(
            path=str(item["path"]),
            server_name=item.get("name") or item.get("server_name"),
            encoding=encoding,
            transcode=bool(item.get("transcode", False)),
            structured=bool(item.get("structured", structured_default)),
            description=item.get("description"),
        ))
    return out


def default_config_yaml() -> str:
    return """
# Servers (or single files) to watch. Directories are listed non-recursively.
servers:
  - name: local
    path: ./logs
    encoding: utf-8
    # transcode: true  # pipe bytes through iconv (e.g. encoding: IBM-1047)
    # structured: true  # one JSON object per line

# Unnamed paths, kept for older configs
watch_paths: []

file_patterns: ["*.log", "*.txt", "*.out"]

# Leave critical_patterns out to use the built-in catalogue
# critical_patterns: ["OutOfMemory", "Segmentation fault"]
exception_patterns: ["Exception", "Error:", "FATAL", "Throwable"]
error_patterns: ['\\bERROR\\b', '\\bFAILED\\b', '\\bFAILURE\\b']
warning_patterns: ['\\bWARN\\b', '\\bWARNING\\b']
exclusion_patterns: []
use_builtin_patterns: true
case_sensitive: false

custom_rules: []
#  - name: Payment gateway
#    pattern: 'gateway returned (\\d{3})'
#    severity: ERROR
#    issue_type: PaymentGateway
#    extract_group: 1

context_lines_before: 2
context_lines_after: 5
max_stack_lines: 200

enable_deduplication: true
dedup_window_seconds: 5

parse_json_logs: false
poll_interval: 1.0
scan_interval: 10.0
start_from_end: true
max_issues: 1000

host: 127.0.0.1
http_port: 8766
control_port: 8765
config_check_interval: 2.0
"""


def load_config(path: Path, create: bool = True) -> DashboardConfig:
    """Load the YAML config; writes the default document first when it is missing."""
    path = Path(path)
    if not path.exists():
        if not create:
            raise ConfigError(f"config file not found: {path}")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(default_config_yaml(), encoding="utf-8")
        logger.info("Created default configuration file: %s", path)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    cfg = DashboardConfig.from_mapping(data)
    # relative paths resolve against the config file's directory
    base = path.parent
    cfg.servers = [_rebase(sp, base) for sp in cfg.servers]
    cfg.watch_paths = [str(base / p) if not os.path.isabs(p) else p for p in cfg.watch_paths]
    return cfg


def _rebase(sp: ServerPath, base: Path) -> ServerPath:
    if os.path.isabs(sp.path):
        return sp
    return ServerPath(
        path=os.path.normpath(str(base / sp.path)),
        server_name=sp.server_name,
        encoding=sp.encoding,
        transcode=sp.transcode,
        structured=sp.structured,
        description=sp.description,
    )


def diff_servers(old: List[ServerPath], new: List[ServerPath]) -> Tuple[List[ServerPath], List[ServerPath]]:
    """(added, removed) between two server lists.

    An entry whose settings changed shows up in both lists, so applying the
    removals before the additions re-registers it with the new settings.
    """
    added = [sp for sp in new if sp not in old]
    removed = [sp for sp in old if sp not in new]
    return added, removed


class ConfigWatcher:
    """Polls the config file's mtime and reloads it when it changes."""

    def __init__(self, path: Path, current: Optional[DashboardConfig] = None):
        self.path = Path(path)
        self.current = current
        self._mtime = self._stat()

    def _stat(self) -> float:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return 0.0

    def check(self) -> Optional[DashboardConfig]:
        """Return the reloaded config when the file changed, else None.

        A document that fails to load leaves ``current`` untouched.
        """
        mtime = self._stat()
        if not mtime or mtime <= self._mtime:
            return None
        self._mtime = mtime
        logger.info("Configuration file changed, reloading %s", self.path)
        try:
            cfg = load_config(self.path, create=False)
        except ConfigError as e:
            logger.error("Error reloading configuration, keeping previous: %s", e)
            return None
        self.current = cfg
        return cfg

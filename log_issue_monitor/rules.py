from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Pattern, Tuple

from .models import ClassificationResult, Severity, TIER_ORDER

logger = logging.getLogger(__name__)


BUILTIN_CRITICAL_PATTERNS = [
    # memory
    r"OutOfMemory",
    r"GC overhead limit exceeded",
    r"Java heap space",
    r"unable to create new native thread",
    # threads
    r"deadlock.*detected",
    r"ThreadDeath",
    # crashes
    r"FATAL.*ERROR",
    r"system.*crash",
    r"JVM.*crash",
    r"core\s+dumped",
    r"Segmentation fault",
    r"SIGSEGV",
    r"SIGKILL",
    r"SIGABRT",
    # database / storage
    r"database.*connection.*lost",
    r"too many connections",
    r"tablespace.*full",
    r"disk.*full",
    r"no space left",
    # security
    r"authentication.*fail.*multiple",
    r"unauthorized.*access",
    r"SSL.*handshake.*fail",
    r"certificate.*expired",
    # service
    r"service.*unavailable",
    r"application.*shutdown",
    r"circuit.*breaker.*open",
    r"StackOverflowError",
]

BUILTIN_ERROR_PATTERNS = [
    r"Connection refused",
    r"Connection reset",
    r"Connection timed out",
    r"SocketException",
    r"SocketTimeoutException",
    r"ConnectException",
    r"UnknownHostException",
    r"timeout.*exceeded",
    r"request.*timeout",
    r"TimeoutException",
    r"resource.*exhausted",
    r"pool.*exhausted",
    r"queue.*full",
    r"rate.*limit",
    r"IOException",
    r"FileNotFoundException",
    r"EOFException",
    r"AccessDeniedException",
    r"SQLException",
    r"DataAccessException",
    r"TransactionException",
    r"constraint.*violation",
    r"\bHTTP\b.*\b[45]\d{2}\b",
    r"status.*code.*\b[45]\d{2}\b",
    r"authentication.*failed",
    r"AuthenticationException",
    r"access.*denied",
]

BUILTIN_WARNING_PATTERNS = [
    r"slow.*query",
    r"performance.*degraded",
    r"high.*cpu",
    r"high.*memory",
    r"latency.*high",
    r"deprecated",
    r"memory.*usage.*high",
    r"disk.*usage.*high",
    r"pool.*near.*capacity",
    r"approaching.*limit",
    r"retry.*attempt",
    r"retrying",
    r"configuration.*missing",
    r"using.*default",
]

LEVEL_FIELDS = ("level", "severity", "log_level", "loglevel")
MESSAGE_FIELDS = ("message", "msg", "error", "exception")
TYPE_FIELDS = ("exception", "error_type", "exception_class", "type")
STACK_FIELDS = ("stacktrace", "stack_trace", "stack", "trace")

_STRUCTURED_LEVELS = {
    "FATAL": Severity.CRITICAL,
    "CRITICAL": Severity.CRITICAL,
    "SEVERE": Severity.CRITICAL,
    "ERROR": Severity.ERROR,
    "WARN": Severity.WARNING,
    "WARNING": Severity.WARNING,
}


@dataclass
class CustomRule:
    name: str
    pattern: str
    severity: Severity = Severity.ERROR
    issue_type: Optional[str] = None
    extract_group: int = 0

    def compile(self, flags: int = re.IGNORECASE):
        self._regex = re.compile(self.pattern, flags)
        return self

    def match(self, line: str) -> Optional[ClassificationResult]:
        m = self._regex.search(line)
        if not m:
            return None
        message = None
        if 0 < self.extract_group <= self._regex.groups:
            message = m.group(self.extract_group)
        return ClassificationResult(
            severity=self.severity,
            pattern=self.pattern,
            issue_type=self.issue_type or self.name,
            message=message.strip() if message else line.strip(),
        )


@dataclass(frozen=True)
class RuleSet:
    """Immutable snapshot of compiled classification rules.

    A classifier holds exactly one snapshot; reconfiguration builds a new one
    and swaps the reference instead of editing lists in place.
    """

    exclusion: Tuple[Pattern, ...] = ()
    patterns: Mapping[Severity, Tuple[Pattern, ...]] = field(default_factory=dict)
    custom: Mapping[Severity, Tuple[CustomRule, ...]] = field(default_factory=dict)
    errors: Tuple[str, ...] = ()

    @classmethod
    def build(
        cls,
        *,
        critical: Optional[Iterable[str]] = None,
        exception: Iterable[str] = (),
        error: Iterable[str] = (),
        warning: Iterable[str] = (),
        exclusion: Iterable[str] = (),
        custom_rules: Iterable[Mapping[str, Any]] = (),
        use_builtins: bool = False,
        case_sensitive: bool = False,
    ) -> "RuleSet":
        """Compile pattern lists into a snapshot.

        ``critical=None`` selects the built-in critical catalogue. With
        ``use_builtins`` the built-in error and warning patterns are appended to
        the configured ones. Bad patterns are skipped and listed in ``errors``.
        """
        flags = 0 if case_sensitive else re.IGNORECASE
        errors: List[str] = []

        crit_src = list(BUILTIN_CRITICAL_PATTERNS) if critical is None else list(critical)
        err_src = list(error) + (BUILTIN_ERROR_PATTERNS if use_builtins else [])
        warn_src = list(warning) + (BUILTIN_WARNING_PATTERNS if use_builtins else [])

        patterns = {
            Severity.CRITICAL: _compile_all(crit_src, flags, "critical", errors),
            Severity.EXCEPTION: _compile_all(exception, flags, "exception", errors),
            Severity.ERROR: _compile_all(err_src, flags, "error", errors),
            Severity.WARNING: _compile_all(warn_src, flags, "warning", errors),
        }
        excl = _compile_all(exclusion, flags, "exclusion", errors)

        grouped: Dict[Severity, List[CustomRule]] = {sev: [] for sev in TIER_ORDER}
        for item in custom_rules or []:
            rule = _custom_rule(item, flags, errors)
            if rule is not None:
                grouped[rule.severity].append(rule)

        return cls(
            exclusion=excl,
            patterns=patterns,
            custom={sev: tuple(rs) for sev, rs in grouped.items()},
            errors=tuple(errors),
        )

    def pattern_count(self) -> int:
        n = len(self.exclusion)
        n += sum(len(v) for v in self.patterns.values())
        n += sum(len(v) for v in self.custom.values())
        return n


def _compile_all(sources: Iterable[str], flags: int, tier: str, errors: List[str]) -> Tuple[Pattern, ...]:
    out = []
    for src in sources or []:
        if not isinstance(src, str) or not src:
            errors.append(f"{tier}: not a pattern: {src!r}")
            logger.warning("Skipping invalid %s pattern %r", tier, src)
            continue
        try:
            out.append(re.compile(src, flags))
        except re.error as e:
            errors.append(f"{tier}: {src!r}: {e}")
            logger.warning("Skipping invalid %s pattern %r: %s", tier, src, e)
    return tuple(out)


def _custom_rule(item: Mapping[str, Any], flags: int, errors: List[str]) -> Optional[CustomRule]:
    try:
        name = str(item.get("name") or "custom")
        rule = CustomRule(
            name=name,
            pattern=item["pattern"],
            severity=Severity.parse(str(item.get("severity", "ERROR"))),
            issue_type=item.get("issue_type") or item.get("issueType"),
            extract_group=int(item.get("extract_group", item.get("extractGroup", 0)) or 0),
        )
        return rule.compile(flags)
    except (KeyError, TypeError, ValueError, AttributeError, re.error) as e:
        errors.append(f"custom rule {item!r}: {e}")
        logger.warning("Skipping invalid custom rule %r: %s", item, e)
        return None


def rules_from_mapping(data: Mapping[str, Any]) -> RuleSet:
    """Build a rule set from a config mapping (the YAML document's keys)."""
    return RuleSet.build(
        critical=data.get("critical_patterns"),
        exception=data.get("exception_patterns") or [],
        error=data.get("error_patterns") or [],
        warning=data.get("warning_patterns") or [],
        exclusion=data.get("exclusion_patterns") or [],
        custom_rules=data.get("custom_rules") or [],
        use_builtins=bool(data.get("use_builtin_patterns", True)),
        case_sensitive=bool(data.get("case_sensitive", False)),
    )


def parse_structured(line: str) -> Optional[Dict[str, Any]]:
    s = line.strip()
    if not (s.startswith("{") and s.endswith("}")):
        return None
    try:
        obj = json.loads(s)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


def _field(record: Mapping[str, Any], names: Iterable[str]) -> Optional[str]:
    for name in names:
        val = record.get(name)
        if val is None:
            continue
        if isinstance(val, (dict, list)):
            return json.dumps(val, ensure_ascii=False)
        return str(val)
    return None


def classify_record(record: Mapping[str, Any]) -> Optional[ClassificationResult]:
    """Map a structured log record's level onto a severity (None for INFO and below)."""
    level = _field(record, LEVEL_FIELDS)
    if level is None:
        return None
    severity = _STRUCTURED_LEVELS.get(level.strip().upper())
    if severity is None:
        return None
    return ClassificationResult(
        severity=severity,
        pattern="json:level",
        issue_type=_field(record, TYPE_FIELDS),
        message=_field(record, MESSAGE_FIELDS),
        stack=_field(record, STACK_FIELDS),
    )


class Classifier:
    def __init__(self, rules: Optional[RuleSet] = None):
        self._rules = rules or RuleSet.build()

    @property
    def rules(self) -> RuleSet:
        return self._rules

    def swap(self, rules: RuleSet) -> None:
        self._rules = rules

    def classify(self, line: str, structured: bool = False) -> Optional[ClassificationResult]:
        rules = self._rules
        for rx in rules.exclusion:
            if rx.search(line):
                return None
        if structured:
            record = parse_structured(line)
            if record is not None and _field(record, LEVEL_FIELDS) is not None:
                return classify_record(record)
        for sev in TIER_ORDER:
            for rule in rules.custom.get(sev, ()):
                hit = rule.match(line)
                if hit is not None:
                    return hit
            for rx in rules.patterns.get(sev, ()):
                if rx.search(line):
                    return ClassificationResult(severity=sev, pattern=rx.pattern)
        return None

import asyncio
import logging
import os
import time
from pathlib import Path

from log_issue_monitor.config import DashboardConfig, load_config
from log_issue_monitor.engine import EngineSettings
from log_issue_monitor.models import ServerPath, Severity
from log_issue_monitor.rules import Classifier, RuleSet
from log_issue_monitor.runtime import PACKAGE_LOGGER, LogMonitor, MonitorState, check_file
from log_issue_monitor.scanner import DirectoryScanner


def write(p: Path, txt: str):
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(txt, encoding="utf-8")


def append(p: Path, text: str):
    with p.open("a", encoding="utf-8") as h:
        h.write(text)


def make_monitor(scanner=None, after=0, **kw):
    issues = []
    mon = LogMonitor(
        Classifier(RuleSet.build(critical=[], error=["ERROR"])),
        issues.append,
        scanner=scanner or DirectoryScanner(file_patterns=["*.log"]),
        settings=EngineSettings(context_lines_after=after, enable_deduplication=False),
        **kw,
    )
    return mon, issues


def test_poll_once_scans_and_tails(tmp_path: Path):
    logs = tmp_path / "logs"
    f = logs / "app.log"
    write(f, "ERROR before start\n")
    scanner = DirectoryScanner([ServerPath(str(logs), "web")], file_patterns=["*.log"], start_from_end=True)
    mon, issues = make_monitor(scanner)

    mon.poll_once()
    assert issues == []
    assert mon.tracked_files() == [str(f)]

    append(f, "ERROR after start\n")
    mon.poll_once()
    assert [(i.server_name, i.message, i.line_number) for i in issues] == [("web", "ERROR after start", 2)]
    (pos,) = mon.file_positions()
    assert pos["offset"] == f.stat().st_size


def test_reconfiguration_waits_for_next_cycle(tmp_path: Path):
    logs = tmp_path / "logs"
    f = logs / "app.log"
    write(f, "ERROR first\n")
    mon, issues = make_monitor()

    mon.add_watch_target(str(logs), server_name="api")
    assert mon.tracked_files() == []
    mon.poll_once()
    assert mon.tracked_files() == [str(f)]
    assert [i.server_name for i in issues] == ["api"]

    mon.remove_watch_target(str(logs))
    mon.poll_once()
    assert mon.tracked_files() == []


def test_set_rules_and_patterns(tmp_path: Path):
    logs = tmp_path / "logs"
    write(logs / "app.log", "")
    write(logs / "app.txt", "")
    mon, issues = make_monitor()
    mon.add_watch_target(str(logs))
    mon.poll_once()
    assert len(mon.tracked_files()) == 1

    mon.set_rules(RuleSet.build(critical=[], warning=["WARN"]))
    mon.set_file_patterns(["*.log", "*.txt"])
    mon.poll_once()
    assert len(mon.tracked_files()) == 2

    append(logs / "app.log", "ERROR ignored now\nWARN disk filling\n")
    mon.poll_once()
    assert [i.severity for i in issues] == [Severity.WARNING]


def test_force_rescan_keeps_offsets(tmp_path: Path):
    logs = tmp_path / "logs"
    write(logs / "app.log", "ERROR once\n")
    mon, issues = make_monitor()
    mon.add_watch_target(str(logs))
    mon.poll_once()
    assert len(issues) == 1
    mon.force_rescan()
    mon.poll_once()
    assert len(issues) == 1
    assert any("rescan" in s["message"] for s in mon.recent_status())


def test_thread_runs_and_flushes_on_stop(tmp_path: Path):
    logs = tmp_path / "logs"
    write(logs / "app.log", "ERROR pending capture\n")
    mon, issues = make_monitor(after=5, poll_interval=0.02)
    mon.add_watch_target(str(logs))
    mon.start()
    try:
        deadline = time.time() + 5
        while mon.engine.lines_read == 0 and time.time() < deadline:
            time.sleep(0.02)
        assert mon.running
        assert issues == []
    finally:
        mon.stop()
    assert not mon.running
    assert [i.message for i in issues] == ["ERROR pending capture"]
    assert "Monitor stopped" in mon.recent_status()[-1]["message"]


def test_set_verbose_toggles_package_logger():
    mon, _ = make_monitor()
    logger = logging.getLogger(PACKAGE_LOGGER)
    old = logger.level
    try:
        mon.set_verbose(True)
        assert mon.verbose
        mon.set_verbose(False)
        assert not mon.verbose
    finally:
        logger.setLevel(old)


def test_check_file_reads_whole_file(tmp_path: Path):
    f = tmp_path / "app.log"
    write(f, "INFO boot\nIllegalStateException: bad\n\tat Foo.bar(Foo.java:1)\nINFO next\nWARN slow\n")
    cfg = DashboardConfig(
        critical_patterns=[],
        exception_patterns=["Exception"],
        error_patterns=[],
        warning_patterns=["WARN"],
        use_builtin_patterns=False,
        context_lines_before=1,
        context_lines_after=1,
    )
    issues = check_file(str(f), cfg)
    assert [(i.severity, i.line_number) for i in issues] == [(Severity.EXCEPTION, 2), (Severity.WARNING, 5)]
    assert issues[0].full_text == "INFO boot\nIllegalStateException: bad\n\tat Foo.bar(Foo.java:1)\nINFO next"


def test_apply_config_pushes_differences(tmp_path: Path):
    a, b = tmp_path / "a", tmp_path / "b"
    write(a / "a.log", "")
    write(b / "b.log", "")
    base = dict(file_patterns=["*.log"], start_from_end=False, error_patterns=["ERROR"])
    state = MonitorState(DashboardConfig(servers=[ServerPath(str(a), "a")], **base))
    state.monitor.poll_once()
    assert state.monitor.tracked_files() == [str(a / "a.log")]

    new = DashboardConfig(servers=[ServerPath(str(b), "b")], context_lines_after=1, **dict(base, error_patterns=["FAIL"]))
    changes = state.apply_config(new)
    assert "rules" in changes and "context" in changes
    state.monitor.poll_once()
    assert state.monitor.tracked_files() == [str(b / "b.log")]
    assert state.cfg is new


def test_file_deleted_after_rescan_request_is_untracked(tmp_path: Path):
    logs = tmp_path / "logs"
    f = logs / "app.log"
    write(f, "")
    mon, _ = make_monitor()
    mon.add_watch_target(str(logs))
    mon.poll_once()
    assert mon.tracked_files() == [str(f)]

    mon.force_rescan()
    f.unlink()
    mon.poll_once()
    assert mon.tracked_files() == []


def test_check_file_classifies_unterminated_last_line(tmp_path: Path):
    f = tmp_path / "app.log"
    write(f, "INFO ok\nERROR final line no newline")
    cfg = DashboardConfig(critical_patterns=[], error_patterns=["ERROR"], use_builtin_patterns=False)
    issues = check_file(str(f), cfg)
    assert [(i.message, i.line_number) for i in issues] == [("ERROR final line no newline", 2)]


def test_scan_options_wait_for_next_cycle(tmp_path: Path):
    base = dict(file_patterns=["*.log"], start_from_end=True, poll_interval=1.0, scan_interval=10.0)
    state = MonitorState(DashboardConfig(**base))
    changes = state.apply_config(DashboardConfig(**dict(base, start_from_end=False, poll_interval=0.5, scan_interval=2.0)))
    assert "scan options" in changes
    mon = state.monitor
    assert (mon.poll_interval, mon.scan_interval, mon.scanner.start_from_end) == (1.0, 10.0, True)
    mon.poll_once()
    assert (mon.poll_interval, mon.scan_interval, mon.scanner.start_from_end) == (0.5, 2.0, False)


def test_config_watch_survives_failed_reload(tmp_path: Path):
    p = tmp_path / "config.yaml"
    p.write_text("poll_interval: 1.0\n", encoding="utf-8")
    state = MonitorState(load_config(p), config_path=p)
    seen = []

    def failing_apply(new):
        seen.append(new.poll_interval)
        raise RuntimeError("apply failed")

    state.apply_config = failing_apply

    def touch(text: str, bump: float):
        mtime = p.stat().st_mtime
        p.write_text(text, encoding="utf-8")
        os.utime(p, (mtime + bump, mtime + bump))

    async def wait_for(n: int):
        deadline = time.time() + 5
        while len(seen) < n and time.time() < deadline:
            await asyncio.sleep(0.01)

    async def run_case():
        task = asyncio.create_task(state.watch_config(0.01))
        await asyncio.sleep(0.05)
        touch("poll_interval: 2.0\n", 5)
        await wait_for(1)
        touch("poll_interval: 3.0\n", 10)
        await wait_for(2)
        alive = not task.done()
        task.cancel()
        return alive

    assert asyncio.run(run_case())
    assert seen == [2.0, 3.0]

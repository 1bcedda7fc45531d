import os
from pathlib import Path

import pytest
import yaml

from log_issue_monitor.config import (
    ConfigError,
    ConfigWatcher,
    DashboardConfig,
    default_config_yaml,
    diff_servers,
    load_config,
)
from log_issue_monitor.models import ServerPath, Severity


def test_missing_config_is_created_with_defaults(tmp_path: Path):
    p = tmp_path / "state" / "config.yaml"
    cfg = load_config(p)
    assert p.exists()
    assert cfg.warnings == []
    assert cfg.start_from_end is True
    assert [(s.server_name, s.path) for s in cfg.servers] == [("local", str(tmp_path / "state" / "logs"))]
    rules = cfg.rule_set()
    assert rules.errors == ()
    assert rules.patterns[Severity.CRITICAL]


def test_default_document_parses():
    data = yaml.safe_load(default_config_yaml())
    assert data["error_patterns"] == [r"\bERROR\b", r"\bFAILED\b", r"\bFAILURE\b"]
    assert DashboardConfig.from_mapping(data).dedup_window_seconds == 5.0


def test_per_item_problems_become_warnings():
    cfg = DashboardConfig.from_mapping({
        "servers": [{"name": "no-path"}, {"name": "x", "path": "/var/log/x", "encoding": "bogus-enc"}],
        "error_patterns": ["(bad"],
        "poll_interval": "fast",
        "context_lines_after": -3,
    })
    assert [(s.server_name, s.encoding) for s in cfg.servers] == [("x", "utf-8")]
    assert cfg.poll_interval == 1.0
    assert cfg.context_lines_after == 0
    assert len(cfg.warnings) == 5


def test_unreadable_document_raises(tmp_path: Path):
    p = tmp_path / "config.yaml"
    p.write_text("servers: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(p)
    p.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(p)
    with pytest.raises(ConfigError):
        load_config(tmp_path / "absent.yaml", create=False)


def test_server_paths_include_legacy_watch_paths():
    cfg = DashboardConfig(
        servers=[ServerPath("/srv/a", "web")],
        watch_paths=["/srv/a", "/srv/b"],
        parse_json_logs=True,
    )
    paths = cfg.server_paths()
    assert [(p.path, p.server_name) for p in paths] == [("/srv/a", "web"), ("/srv/b", None)]
    assert paths[1].structured


def test_diff_servers():
    a, b, b2 = ServerPath("/a", "a"), ServerPath("/b", "b"), ServerPath("/b", "b", encoding="cp1047")
    added, removed = diff_servers([a, b], [b2])
    assert added == [b2]
    assert removed == [a, b]


def test_config_watcher_reloads_and_keeps_last_good(tmp_path: Path):
    p = tmp_path / "config.yaml"
    p.write_text("poll_interval: 1.0\n", encoding="utf-8")
    first = load_config(p)
    watcher = ConfigWatcher(p, first)
    assert watcher.check() is None

    mtime = p.stat().st_mtime
    p.write_text("poll_interval: 3.0\n", encoding="utf-8")
    os.utime(p, (mtime + 5, mtime + 5))
    cfg = watcher.check()
    assert cfg is not None and cfg.poll_interval == 3.0

    p.write_text("poll_interval: [\n", encoding="utf-8")
    os.utime(p, (mtime + 10, mtime + 10))
    assert watcher.check() is None
    assert watcher.current.poll_interval == 3.0

import shutil
from pathlib import Path

from log_issue_monitor.models import ServerPath
from log_issue_monitor.scanner import DirectoryScanner


def write(p: Path, txt: str):
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(txt, encoding="utf-8")


def test_scan_lists_matching_files_once(tmp_path: Path):
    write(tmp_path / "app.log", "x\n")
    write(tmp_path / "APP2.LOG", "")
    write(tmp_path / "notes.md", "x\n")
    write(tmp_path / "sub" / "deep.log", "x\n")

    sc = DirectoryScanner([ServerPath(str(tmp_path), "web")], file_patterns=["*.log"])
    res = sc.scan()
    assert sorted(t.file_name for t in res.added) == ["APP2.LOG", "app.log"]
    assert all(t.server_name == "web" and t.offset == 0 for t in res.added)
    assert not sc.scan()


def test_deleted_file_is_reported_removed(tmp_path: Path):
    f = tmp_path / "app.log"
    write(f, "x\n")
    sc = DirectoryScanner([ServerPath(str(tmp_path))], file_patterns=["*.log"])
    sc.scan()
    f.unlink()
    res = sc.scan()
    assert [t.path for t in res.removed] == [str(f)]
    assert sc.known() == []


def test_start_from_end_applies_to_first_listing_only(tmp_path: Path):
    write(tmp_path / "old.log", "a\nb\n")
    sc = DirectoryScanner([ServerPath(str(tmp_path))], file_patterns=["*.log"], start_from_end=True)
    (old,) = sc.scan().added
    assert old.offset == 4
    assert old.line_number == 2

    write(tmp_path / "new.log", "c\n")
    (new,) = sc.scan().added
    assert new.file_name == "new.log"
    assert new.offset == 0


def test_single_file_path(tmp_path: Path):
    f = tmp_path / "server.out"
    write(f, "x\n")
    write(tmp_path / "other.out", "x\n")
    sc = DirectoryScanner([ServerPath(str(f), "batch", encoding="cp1047")])
    (t,) = sc.scan().added
    assert t.path == str(f)
    assert t.encoding == "cp1047"


def test_force_rescan_reports_everything_again(tmp_path: Path):
    write(tmp_path / "a.log", "")
    write(tmp_path / "b.log", "")
    sc = DirectoryScanner([ServerPath(str(tmp_path))])
    assert len(sc.scan().added) == 2
    sc.force_rescan()
    assert len(sc.scan().added) == 2


def test_pattern_change_and_path_removal(tmp_path: Path):
    write(tmp_path / "a.log", "")
    write(tmp_path / "b.txt", "")
    sc = DirectoryScanner([ServerPath(str(tmp_path))], file_patterns=["*.log", "*.txt"])
    assert len(sc.scan().added) == 2

    sc.set_file_patterns(["*.log"])
    res = sc.scan()
    assert [t.file_name for t in res.removed] == ["b.txt"]

    assert sc.remove_path(str(tmp_path)) is not None
    res = sc.scan()
    assert [t.file_name for t in res.removed] == ["a.log"]
    assert sc.paths() == []


def test_unreachable_directory_has_grace_period(tmp_path: Path):
    d = tmp_path / "mnt"
    write(d / "a.log", "x\n")
    messages = []
    sc = DirectoryScanner([ServerPath(str(d))], missing_scans_before_removal=2, on_status=messages.append)
    assert len(sc.scan().added) == 1

    shutil.rmtree(d)
    assert not sc.scan()
    assert any("not accessible" in m for m in messages)
    res = sc.scan()
    assert [t.file_name for t in res.removed] == ["a.log"]


def test_add_path_is_idempotent(tmp_path: Path):
    sc = DirectoryScanner()
    assert sc.add_path(ServerPath(str(tmp_path)))
    assert not sc.add_path(ServerPath(str(tmp_path) + "/"))
    assert sc.matches("APP.LOG")
    assert not sc.matches("app.log.gz")


def test_force_rescan_still_reports_deleted_files(tmp_path: Path):
    write(tmp_path / "a.log", "")
    write(tmp_path / "b.log", "")
    sc = DirectoryScanner([ServerPath(str(tmp_path))])
    first = {t.path: t for t in sc.scan().added}
    first[str(tmp_path / "a.log")].offset = 42

    sc.force_rescan()
    (tmp_path / "b.log").unlink()
    res = sc.scan()
    assert [t.file_name for t in res.removed] == ["b.log"]
    (again,) = res.added
    assert again.offset == 42
    assert sc.known() == [str(tmp_path / "a.log")]
    assert not sc.scan()

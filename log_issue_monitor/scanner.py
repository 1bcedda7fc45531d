from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Callable, Dict, List, Optional

from .models import ServerPath, WatchTarget
from .reader import count_lines

logger = logging.getLogger(__name__)

DEFAULT_FILE_PATTERNS = ["*.log", "*.txt", "*.out"]


@dataclass
class ScanResult:
    added: List[WatchTarget] = field(default_factory=list)
    removed: List[WatchTarget] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.added or self.removed)


class DirectoryScanner:
    """Lists configured paths and reports files that appeared or went away.

    With ``start_from_end`` the files found by the first scan of a path start
    at their current size, so content already on disk is not reported. Files
    appearing in that path later always start at offset 0.
    """

    def __init__(
        self,
        paths: Optional[List[ServerPath]] = None,
        file_patterns: Optional[List[str]] = None,
        start_from_end: bool = False,
        missing_scans_before_removal: int = 3,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self._paths: Dict[str, ServerPath] = {}
        self._patterns: List[str] = []
        self.set_file_patterns(file_patterns if file_patterns is not None else DEFAULT_FILE_PATTERNS)
        self.start_from_end = start_from_end
        self.missing_scans_before_removal = max(1, missing_scans_before_removal)
        self.on_status = on_status
        # path -> target, for every file currently reported as present
        self._known: Dict[str, WatchTarget] = {}
        # file -> owning ServerPath.path
        self._owner: Dict[str, str] = {}
        self._initialized: set = set()
        self._rescan = False
        self._failures: Dict[str, int] = {}
        for sp in paths or []:
            self.add_path(sp)

    # configuration ------------------------------------------------------

    @property
    def file_patterns(self) -> List[str]:
        return list(self._patterns)

    def set_file_patterns(self, patterns: List[str]) -> None:
        self._patterns = [p for p in (patterns or []) if isinstance(p, str) and p.strip()]

    def paths(self) -> List[ServerPath]:
        return list(self._paths.values())

    def add_path(self, sp: ServerPath) -> bool:
        p = os.path.abspath(sp.path)
        if p in self._paths:
            return False
        self._paths[p] = ServerPath(
            path=p,
            server_name=sp.server_name,
            encoding=sp.encoding,
            transcode=sp.transcode,
            structured=sp.structured,
            description=sp.description,
        )
        self._status(f"Watching path: {self._paths[p]}")
        return True

    def remove_path(self, path: str) -> Optional[ServerPath]:
        p = os.path.abspath(path)
        sp = self._paths.pop(p, None)
        if sp is not None:
            self._initialized.discard(p)
            self._failures.pop(p, None)
            self._status(f"No longer watching path: {sp}")
        return sp

    def force_rescan(self) -> None:
        """The next scan reports every present file as added again.

        Known targets are re-reported as they are, so their offsets survive.
        """
        self._rescan = True

    def matches(self, name: str) -> bool:
        low = name.lower()
        return any(fnmatch(low, pat.lower()) for pat in self._patterns)

    def known(self) -> List[str]:
        return sorted(self._known)

    # scanning -----------------------------------------------------------

    def _list(self, sp: ServerPath) -> List[str]:
        p = sp.path
        if os.path.isdir(p):
            out = []
            with os.scandir(p) as it:
                for entry in it:
                    try:
                        if entry.is_file() and self.matches(entry.name):
                            out.append(entry.path)
                    except OSError:
                        continue
            return sorted(out)
        if os.path.isfile(p):
            return [p] if self.matches(os.path.basename(p)) else []
        raise FileNotFoundError(p)

    def _new_target(self, file: str, sp: ServerPath, at_end: bool) -> WatchTarget:
        target = WatchTarget(
            path=file,
            server_name=sp.server_name,
            encoding=sp.encoding,
            transcode=sp.transcode,
            structured=sp.structured,
        )
        if at_end:
            try:
                size = os.path.getsize(file)
                target.offset = size
                target.size = size
                target.line_number = count_lines(file, size, sp.encoding)
            except (OSError, LookupError) as e:
                logger.warning("Could not size %s, reading from start: %s", file, e)
                target.offset = target.size = target.line_number = 0
        return target

    def scan(self) -> ScanResult:
        result = ScanResult()
        present: Dict[str, str] = {}
        unreachable: set = set()
        rescan, self._rescan = self._rescan, False

        for p, sp in list(self._paths.items()):
            try:
                files = self._list(sp)
            except OSError as e:
                n = self._failures.get(p, 0) + 1
                self._failures[p] = n
                if n == 1:
                    self._status(f"Warning: watch path not accessible: {sp} ({e.__class__.__name__})")
                if n < self.missing_scans_before_removal:
                    unreachable.add(p)
                continue
            if self._failures.pop(p, 0):
                self._status(f"Watch path accessible again: {sp}")

            first = p not in self._initialized
            self._initialized.add(p)
            for f in files:
                if f in present:
                    continue
                present[f] = p
                if f in self._known:
                    if rescan:
                        result.added.append(self._known[f])
                    continue
                target = self._new_target(f, sp, at_end=first and self.start_from_end)
                self._known[f] = target
                self._owner[f] = p
                result.added.append(target)

        for f in list(self._known):
            if f in present:
                continue
            owner = self._owner.get(f)
            if owner in unreachable:
                continue
            result.removed.append(self._known.pop(f))
            self._owner.pop(f, None)
            self._status(f"File no longer present: {f}")

        if result:
            logger.debug("Scan: %d added, %d removed", len(result.added), len(result.removed))
        return result

    def _status(self, message: str) -> None:
        logger.info(message)
        if self.on_status is not None:
            try:
                self.on_status(message)
            except Exception:
                logger.exception("Status callback failed")

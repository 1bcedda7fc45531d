from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class FileSignature:
    size: int
    mtime: float
    inode: Optional[int] = None

    @classmethod
    def of(cls, path: str) -> "FileSignature":
        st = os.stat(path)
        # st_ino is 0 on filesystems without stable inodes
        inode = getattr(st, "st_ino", None) or None
        return cls(size=st.st_size, mtime=st.st_mtime, inode=inode)


@dataclass
class _Position:
    offset: int
    signature: Optional[FileSignature]


class FilePositionTracker:
    """Byte offset and last seen signature per watched file."""

    def __init__(self):
        self._positions: Dict[str, _Position] = {}

    def __contains__(self, path: str) -> bool:
        return path in self._positions

    def paths(self) -> List[str]:
        return sorted(self._positions)

    def get_offset(self, path: str) -> Tuple[int, Optional[FileSignature]]:
        pos = self._positions.get(path)
        if pos is None:
            return 0, None
        return pos.offset, pos.signature

    def update_offset(self, path: str, offset: int, signature: Optional[FileSignature]) -> None:
        if offset < 0:
            raise ValueError("offset must be >= 0")
        self._positions[path] = _Position(offset, signature)

    def detect_rotation(self, path: str, current: FileSignature) -> bool:
        """True when the file was truncated or replaced since the last update.

        Size below the tracked offset always counts. A changed inode counts when
        both sides have one; without inodes a changed signature only counts
        together with a shrunken size. A same-size rewrite with no inode change
        is not detected.
        """
        pos = self._positions.get(path)
        if pos is None:
            return False
        if current.size < pos.offset:
            return True
        last = pos.signature
        if last is None:
            return False
        if last.inode is not None and current.inode is not None:
            return last.inode != current.inode
        return current != last and current.size < last.size

    def reset(self, path: str, signature: Optional[FileSignature] = None) -> None:
        self._positions[path] = _Position(0, signature)

    def forget(self, path: str) -> None:
        self._positions.pop(path, None)

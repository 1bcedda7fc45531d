"""Incremental line reading for tailed files.

Bytes are read from the saved offset up to EOF; only complete lines are
returned, and ``bytes_consumed`` stops after the last line terminator so an
unterminated tail is picked up whole on a later poll.
"""

from __future__ import annotations

import codecs
import functools
import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set

from .models import WatchTarget

logger = logging.getLogger(__name__)

DEFAULT_MAX_READ = 8 * 1024 * 1024
ICONV_TIMEOUT = 30

# configured name -> (python codec used for decoding, iconv name)
_EBCDIC = {
    "ebcdic": ("cp037", "IBM-1047"),
    "cp1047": ("cp037", "IBM-1047"),
    "ibm-1047": ("cp037", "IBM-1047"),
    "ibm1047": ("cp037", "IBM-1047"),
    "cp037": ("cp037", "IBM-037"),
    "ibm-037": ("cp037", "IBM-037"),
    "ibm037": ("cp037", "IBM-037"),
    "cp500": ("cp500", "IBM-500"),
    "ibm-500": ("cp500", "IBM-500"),
    "ibm500": ("cp500", "IBM-500"),
    "cp1140": ("cp1140", "IBM-1140"),
    "ibm-1140": ("cp1140", "IBM-1140"),
    "cp1148": ("cp500", "IBM-1148"),
    "ibm-1148": ("cp500", "IBM-1148"),
}
_EBCDIC_CODECS = {"cp037", "cp273", "cp500", "cp875", "cp1026", "cp1140"}
# byte-oriented line splitting cannot work on these
_WIDE_CODECS = {"utf-16", "utf-16-le", "utf-16-be", "utf-32", "utf-32-le", "utf-32-be"}

_LINE_SPLIT = re.compile(r"\r?\n")
# EBCDIC NL (0x15) decodes to U+0085, LF (0x25) to "\n"
_EBCDIC_LINE_SPLIT = re.compile(r"\r?\n|\x85")

_iconv_warned: Set[str] = set()


@dataclass(frozen=True)
class EncodingInfo:
    name: str
    codec: str
    ebcdic: bool
    iconv: str

    @property
    def terminators(self) -> bytes:
        return b"\x15\x25" if self.ebcdic else b"\n"


@dataclass
class ReadResult:
    lines: List[str]
    bytes_consumed: int


@functools.lru_cache(maxsize=64)
def resolve_encoding(name: Optional[str]) -> EncodingInfo:
    """Resolve a configured encoding name; raises LookupError if unusable."""
    raw = (name or "utf-8").strip()
    key = raw.lower().replace("_", "-")
    if key in _EBCDIC:
        codec, iconv = _EBCDIC[key]
        return EncodingInfo(name=raw, codec=codec, ebcdic=True, iconv=iconv)
    info = codecs.lookup(key)
    if info.name in _WIDE_CODECS:
        raise LookupError(f"encoding not supported for tailing: {raw}")
    return EncodingInfo(name=raw, codec=info.name, ebcdic=info.name in _EBCDIC_CODECS, iconv=raw.upper())


@functools.lru_cache(maxsize=1)
def iconv_available() -> bool:
    return shutil.which("iconv") is not None


def iconv_to_utf8(data: bytes, from_encoding: str) -> Optional[str]:
    """Convert bytes with the system iconv; None when iconv is missing or fails."""
    if not iconv_available():
        return None
    try:
        proc = subprocess.run(
            ["iconv", "-f", from_encoding, "-t", "UTF-8"],
            input=data,
            capture_output=True,
            timeout=ICONV_TIMEOUT,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("iconv failed for %s: %s", from_encoding, e)
        return None
    if proc.returncode != 0:
        if from_encoding not in _iconv_warned:
            _iconv_warned.add(from_encoding)
            logger.warning(
                "iconv could not convert from %s (%s); using built-in codec",
                from_encoding,
                proc.stderr.decode(errors="replace").strip(),
            )
        return None
    return proc.stdout.decode("utf-8", errors="replace")


def decode_bytes(data: bytes, enc: EncodingInfo, transcode: bool = False) -> str:
    if transcode:
        text = iconv_to_utf8(data, enc.iconv)
        if text is not None:
            return text
    return data.decode(enc.codec, errors="replace")


def split_lines(text: str, enc: EncodingInfo) -> List[str]:
    pattern = _EBCDIC_LINE_SPLIT if enc.ebcdic else _LINE_SPLIT
    lines = pattern.split(text)
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def _complete_end(data: bytes, terminators: bytes) -> int:
    """Index just past the last line terminator, or -1."""
    last = max(data.rfind(bytes([t])) for t in terminators)
    return last + 1 if last >= 0 else -1


def read_new_lines(target: WatchTarget, max_bytes: int = DEFAULT_MAX_READ, final: bool = False) -> ReadResult:
    """Complete lines from the target offset. With ``final`` an unterminated
    last line at EOF is returned too (one-shot reads of a finished file).
    """
    enc = resolve_encoding(target.encoding)
    with open(target.path, "rb") as f:
        f.seek(target.offset)
        data = f.read(max_bytes)
    if not data:
        return ReadResult([], 0)
    end = _complete_end(data, enc.terminators)
    if final and len(data) < max_bytes:
        end = len(data)
    elif end < 0:
        if len(data) < max_bytes:
            return ReadResult([], 0)
        # a single line longer than the read cap; take it as-is
        end = len(data)
    text = decode_bytes(data[:end], enc, transcode=target.transcode)
    return ReadResult(split_lines(text, enc), end)


def count_lines(path: str, limit: int, encoding: Optional[str] = None, chunk_size: int = 1024 * 1024) -> int:
    """Count line terminators in the first ``limit`` bytes of a file."""
    terminators = resolve_encoding(encoding).terminators
    count = 0
    remaining = limit
    with open(path, "rb") as f:
        while remaining > 0:
            chunk = f.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            for t in terminators:
                count += chunk.count(bytes([t]))
    return count


DETECT_SAMPLE_SIZE = 4096
DEFAULT_EBCDIC = "cp1047"

_EBCDIC_LETTERS = (
    set(range(0xC1, 0xCA)) | set(range(0xD1, 0xDA)) | set(range(0xE2, 0xEA))
    | set(range(0x81, 0x8A)) | set(range(0x91, 0x9A)) | set(range(0xA2, 0xAA))
    | set(range(0xF0, 0xFA))
)
_EBCDIC_PRINTABLE = _EBCDIC_LETTERS | {0x40, 0x4B, 0x4C, 0x4D, 0x4E, 0x5A, 0x5B, 0x6B, 0x6C, 0x7A, 0x7B, 0x7C, 0x7D}
_ASCII_LETTERS = set(range(0x41, 0x5B)) | set(range(0x61, 0x7B)) | set(range(0x30, 0x3A))


@dataclass(frozen=True)
class EncodingGuess:
    encoding: str
    confidence: float
    ebcdic_score: float
    ascii_score: float

    @property
    def ebcdic(self) -> bool:
        return self.encoding != "utf-8"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "encoding": self.encoding,
            "ebcdic": self.ebcdic,
            "confidence": round(self.confidence, 3),
            "scores": {"ebcdic": round(self.ebcdic_score, 3), "ascii": round(self.ascii_score, 3)},
        }


def _score(data: bytes, letters: Set[int], printable, space: int, newlines: bytes) -> float:
    n = len(data)
    letter_ratio = sum(1 for b in data if b in letters) / n
    printable_ratio = sum(1 for b in data if printable(b)) / n
    space_ratio = min(1.0, data.count(space) / max(1, n // 10))
    has_newline = any(data.count(t) for t in newlines)
    return letter_ratio * 0.4 + printable_ratio * 0.3 + space_ratio * 0.2 + (0.1 if has_newline else 0.0)


def guess_encoding(data: bytes) -> EncodingGuess:
    """Tell EBCDIC text from ASCII/UTF-8 by byte statistics.

    Letters, digits, spaces (0x40 vs 0x20) and line terminators (0x15/0x25
    vs 0x0A) are scored for both families; EBCDIC wins only with a clear lead.
    """
    if not data or data.startswith(codecs.BOM_UTF8):
        return EncodingGuess("utf-8", 1.0, 0.0, 1.0)
    ebcdic = _score(data, _EBCDIC_LETTERS, _EBCDIC_PRINTABLE.__contains__, 0x40, b"\x15\x25")
    ascii_ = _score(data, _ASCII_LETTERS, lambda b: 0x20 <= b <= 0x7E, 0x20, b"\x0a")
    if ebcdic > ascii_ and ebcdic > 0.3:
        return EncodingGuess(DEFAULT_EBCDIC, ebcdic / (ebcdic + ascii_ + 0.01), ebcdic, ascii_)
    return EncodingGuess("utf-8", max(0.5, ascii_ / (ebcdic + ascii_ + 0.01)), ebcdic, ascii_)


def detect_encoding(path: str, sample_size: int = DETECT_SAMPLE_SIZE) -> EncodingGuess:
    with open(path, "rb") as f:
        data = f.read(sample_size)
    return guess_encoding(data)

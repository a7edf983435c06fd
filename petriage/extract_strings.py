from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Sequence

from petriage.byteview import Section, clip

ALL_SCOPE = "all"


@dataclass(frozen=True)
class StringsOptions:
    min_len: int = 4
    max_len: int = 2048
    extended_ascii: bool = True


DEFAULT_OPTIONS = StringsOptions()


def _printable(b: int, extended: bool) -> bool:
    return 0x20 <= b <= 0x7E or (extended and b >= 0x80)


def extract_runs(data: bytes, opts: StringsOptions = DEFAULT_OPTIONS) -> List[str]:
    """
    Printable runs, left to right.
    Runs shorter than min_len are dropped; a run reaching max_len is flushed and a new one starts.
    """
    out: List[str] = []
    buf = bytearray()

    def flush() -> None:
        if len(buf) >= opts.min_len:
            out.append(buf.decode("latin-1"))
        buf.clear()

    for b in data:
        if _printable(b, opts.extended_ascii):
            buf.append(b)
            if len(buf) >= opts.max_len:
                flush()
        else:
            flush()
    flush()
    return out


def extract_utf16le_runs(data: bytes, opts: StringsOptions = DEFAULT_OPTIONS) -> List[str]:
    out: List[str] = []
    i = 0
    n = len(data)

    while i + 1 < n:
        if 32 <= data[i] <= 126 and data[i + 1] == 0x00:
            start = i
            i += 2
            while i + 1 < n and (32 <= data[i] <= 126) and data[i + 1] == 0x00 and (i - start) // 2 < opts.max_len:
                i += 2
            s = data[start:i].decode("utf-16le", errors="ignore")
            if len(s) >= opts.min_len:
                out.append(s)
        else:
            i += 1
    return out


def extract_all_strings(data: bytes, opts: StringsOptions = DEFAULT_OPTIONS) -> str:
    """Whole-file string stream: single-byte runs followed by UTF-16LE runs, newline-joined."""
    return "\n".join(extract_runs(data, opts) + extract_utf16le_runs(data, opts))


def scope_names(sections: Sequence[Section]) -> List[str]:
    """Section names made unique and non-empty, in section order."""
    names: List[str] = []
    seen: Dict[str, int] = {ALL_SCOPE: 1}
    for i, s in enumerate(sections):
        base = s.name or f"section_{i}"
        n = seen.get(base, 0)
        seen[base] = n + 1
        names.append(base if n == 0 else f"{base}_{n}")
    return names


def extract_section_strings(
    data: bytes, sections: Sequence[Section], opts: StringsOptions = DEFAULT_OPTIONS
) -> Dict[str, str]:
    """Per-section single-byte string streams keyed by unique section name; empty sections are omitted."""
    out: Dict[str, str] = {}
    for name, s in zip(scope_names(sections), sections):
        blob = clip(data, s.raw_offset, s.raw_size)
        if blob:
            out[name] = "\n".join(extract_runs(blob, opts))
    return out


def search_strings(pattern: str, blob: str) -> List[str]:
    """
    Case-insensitive regex search, line by line; every match in order.
    An invalid pattern raises re.error.
    """
    rx = re.compile(pattern, re.IGNORECASE)
    out: List[str] = []
    for line in blob.splitlines():
        out.extend(m.group(0) for m in rx.finditer(line))
    return out

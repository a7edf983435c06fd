from __future__ import annotations

import math
import struct
from dataclasses import dataclass
from typing import Optional, Tuple

SECTION_HEADER_SIZE = 40


def u16(data: bytes, off: int) -> int:
    if off < 0 or off + 2 > len(data):
        return 0
    return struct.unpack_from("<H", data, off)[0]


def u32(data: bytes, off: int) -> int:
    if off < 0 or off + 4 > len(data):
        return 0
    return struct.unpack_from("<I", data, off)[0]


def u64(data: bytes, off: int) -> int:
    if off < 0 or off + 8 > len(data):
        return 0
    return struct.unpack_from("<Q", data, off)[0]


def read_bytes(data: bytes, off: int, size: int) -> Optional[bytes]:
    if off < 0 or size < 0 or off + size > len(data):
        return None
    return data[off : off + size]


def clip(data: bytes, off: int, size: int) -> bytes:
    """Bytes in [off, off+size) clipped to the buffer; empty when off is outside."""
    if off < 0 or size <= 0 or off >= len(data):
        return b""
    return data[off : min(len(data), off + size)]


def safe_ascii(b: bytes) -> str:
    return b.split(b"\x00", 1)[0].decode("ascii", errors="replace").strip()


def read_c_string_bytes(data: bytes, off: int, *, max_len: int = 512) -> Optional[bytes]:
    if off < 0 or off >= len(data):
        return None
    end = min(len(data), off + max_len)
    chunk = data[off:end]
    nul = chunk.find(b"\x00")
    if nul == -1:
        return None
    return chunk[:nul]


def read_c_string(data: bytes, off: int, *, max_len: int = 512) -> Optional[str]:
    raw = read_c_string_bytes(data, off, max_len=max_len)
    if raw is None:
        return None
    return raw.decode("ascii", errors="replace")


def align4(x: int) -> int:
    return (x + 3) & ~3


def read_utf16le_zstring(data: bytes, off: int, *, max_chars: int = 512) -> Tuple[Optional[str], int]:
    """
    Read UTF-16LE null-terminated string starting at off.
    Returns (string_without_null, bytes_consumed_including_null).
    """
    if off < 0 or off >= len(data):
        return None, 0
    end = min(len(data), off + max_chars * 2)
    i = off
    while i + 1 < end:
        if data[i] == 0 and data[i + 1] == 0:
            return data[off:i].decode("utf-16le", errors="replace"), (i + 2) - off
        i += 2
    return None, 0


def read_counted_utf16le(data: bytes, off: int, *, max_chars: int = 1024) -> Optional[str]:
    """Length-prefixed (u16 char count) UTF-16LE string, as used by resource names."""
    if off < 0 or off + 2 > len(data):
        return None
    n = min(u16(data, off), max_chars)
    raw = read_bytes(data, off + 2, n * 2)
    if raw is None:
        return None
    return raw.decode("utf-16le", errors="replace")


def shannon_entropy(blob: bytes) -> float:
    if not blob:
        return 0.0
    counts = [0] * 256
    for x in blob:
        counts[x] += 1
    n = len(blob)
    ent = 0.0
    for c in counts:
        if c:
            p = c / n
            ent -= p * math.log2(p)
    return float(ent)


@dataclass(frozen=True)
class Section:
    name: str
    virtual_address: int
    virtual_size: int
    raw_offset: int
    raw_size: int
    characteristics: int

    def contains_rva(self, rva: int) -> bool:
        return self.virtual_address <= rva < self.virtual_address + self.virtual_size


@dataclass(frozen=True)
class ImageLayout:
    """Facts derived once from the headers; every RVA lookup goes through here."""

    pe_offset: int
    is_64: bool
    sections: Tuple[Section, ...]
    file_len: int

    def section_for_rva(self, rva: int) -> Optional[Section]:
        for s in self.sections:
            if s.contains_rva(rva):
                return s
        return None

    def rva_to_offset(self, rva: int) -> Optional[int]:
        """
        File offset backing `rva`, or None when unmapped.
        A section with no raw data maps the RVA onto itself, as the loader would.
        """
        s = self.section_for_rva(rva)
        if s is None:
            return None
        if s.raw_size == 0:
            off = rva
        else:
            off = s.raw_offset + (rva - s.virtual_address)
        if 0 <= off < self.file_len:
            return off
        return None


def parse_section_table(data: bytes, off: int, count: int) -> Tuple[Section, ...]:
    out = []
    for i in range(count):
        sh_off = off + i * SECTION_HEADER_SIZE
        if sh_off + SECTION_HEADER_SIZE > len(data):
            break
        out.append(
            Section(
                name=safe_ascii(data[sh_off : sh_off + 8]),
                virtual_size=u32(data, sh_off + 8),
                virtual_address=u32(data, sh_off + 12),
                raw_size=u32(data, sh_off + 16),
                raw_offset=u32(data, sh_off + 20),
                characteristics=u32(data, sh_off + 36),
            )
        )
    return tuple(out)

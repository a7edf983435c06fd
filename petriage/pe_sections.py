from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from petriage.byteview import Section, clip, shannon_entropy

IMAGE_SCN_CNT_CODE = 0x00000020
IMAGE_SCN_CNT_INITIALIZED_DATA = 0x00000040
IMAGE_SCN_CNT_UNINITIALIZED_DATA = 0x00000080
IMAGE_SCN_MEM_EXECUTE = 0x20000000
IMAGE_SCN_MEM_WRITE = 0x80000000

EMPTY_MD5 = hashlib.md5(b"").hexdigest()

# Substrings seen in section names emitted by common packers/protectors.
# Heuristic indicator only; not a verdict.
PACKER_SECTION_MARKERS = (
    "UPX",
    "ASPACK",
    "MPRESS",
    "PETITE",
    "FSG!",
    "MEW",
    ".PACK",
    ".BOOM",
    "THEMIDA",
    ".VMP",
)


@dataclass(frozen=True)
class SectionReport:
    section: Section
    md5: str
    entropy: float
    type: str
    is_executable: bool
    is_writable: bool

    def to_dict(self) -> Dict[str, Any]:
        s = self.section
        return {
            "name": s.name,
            "virtual_address": s.virtual_address,
            "virtual_size": s.virtual_size,
            "raw_offset": s.raw_offset,
            "raw_size": s.raw_size,
            "characteristics": s.characteristics,
            "md5": self.md5,
            "entropy": self.entropy,
            "type": self.type,
            "is_executable": self.is_executable,
            "is_writable": self.is_writable,
        }


def section_bytes(data: bytes, s: Section) -> bytes:
    return clip(data, s.raw_offset, s.raw_size)


def classify_section(s: Section) -> str:
    if s.characteristics & IMAGE_SCN_CNT_CODE:
        return "code"
    if s.characteristics & IMAGE_SCN_CNT_INITIALIZED_DATA:
        return "initialized_data"
    if s.characteristics & IMAGE_SCN_CNT_UNINITIALIZED_DATA:
        return "uninitialized_data"
    if s.name == ".rsrc":
        return "resources"
    if s.name == ".reloc":
        return "relocations"
    return "unknown"


def analyze_section(data: bytes, s: Section) -> SectionReport:
    blob = section_bytes(data, s)
    return SectionReport(
        section=s,
        md5=hashlib.md5(blob).hexdigest() if blob else EMPTY_MD5,
        entropy=shannon_entropy(blob),
        type=classify_section(s),
        is_executable=bool(s.characteristics & IMAGE_SCN_MEM_EXECUTE),
        is_writable=bool(s.characteristics & IMAGE_SCN_MEM_WRITE),
    )


def analyze_sections(data: bytes, sections: Sequence[Section]) -> List[SectionReport]:
    return [analyze_section(data, s) for s in sections]


def packing_indicators(reports: Sequence[SectionReport], *, entropy_threshold: float = 6.5) -> List[Dict[str, Any]]:
    """
    Advisory packing hints, in section order.
    Each hint is {"section", "indicator", "detail"}.
    """
    out: List[Dict[str, Any]] = []
    for r in reports:
        name = r.section.name
        if r.is_executable and r.entropy > entropy_threshold:
            out.append(
                {
                    "section": name,
                    "indicator": "high_entropy_executable",
                    "detail": f"entropy {r.entropy:.2f} > {entropy_threshold}",
                }
            )
        upper = name.upper()
        for marker in PACKER_SECTION_MARKERS:
            if marker in upper:
                out.append({"section": name, "indicator": "packer_section_name", "detail": marker})
                break
        if r.section.virtual_size > 0 and r.section.raw_size == 0:
            out.append(
                {
                    "section": name,
                    "indicator": "runtime_only_allocation",
                    "detail": f"virtual size 0x{r.section.virtual_size:X} with no raw data",
                }
            )
    return out

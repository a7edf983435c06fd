from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List

from petriage.byteview import ImageLayout
from petriage.pe import DIR_SECURITY, NUM_DATA_DIRECTORIES, PeHeaders

DIRECTORY_NAMES = (
    "EXPORT",
    "IMPORT",
    "RESOURCE",
    "EXCEPTION",
    "SECURITY",
    "BASERELOC",
    "DEBUG",
    "ARCHITECTURE",
    "GLOBALPTR",
    "TLS",
    "LOAD_CONFIG",
    "BOUND_IMPORT",
    "IAT",
    "DELAY_IMPORT",
    "COM_DESCRIPTOR",
    "RESERVED",
)

NOT_MAPPED = "N/A"


@dataclass(frozen=True)
class DataDirectoryEntry:
    index: int
    name: str
    virtual_address: int
    size: int
    containing_section: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def containing_section(layout: ImageLayout, va: int, size: int) -> str:
    if va == 0 or size == 0:
        return NOT_MAPPED
    for i, s in enumerate(layout.sections):
        if s.contains_rva(va):
            return s.name or f"section_{i}"
    return NOT_MAPPED


def catalog_directories(headers: PeHeaders, data: bytes) -> List[DataDirectoryEntry]:
    """
    Enumerate the data directory slots worth reporting.
    Empty slots are dropped except the certificate table, which is always listed.
    """
    out: List[DataDirectoryEntry] = []
    for index in range(NUM_DATA_DIRECTORIES):
        va, size = headers.directory(data, index)
        if va == 0 and size == 0 and index != DIR_SECURITY:
            continue
        out.append(
            DataDirectoryEntry(
                index=index,
                name=DIRECTORY_NAMES[index],
                virtual_address=va,
                size=size,
                containing_section=containing_section(headers.layout, va, size),
            )
        )
    return out

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple, TypeVar

from petriage.authenticode import ANALYSIS_ERROR, AuthenticodeResult, extract_authenticode
from petriage.byteview import shannon_entropy, u16, u32
from petriage.extract_artifacts import extract_scoped_artifacts
from petriage.extract_strings import StringsOptions, extract_all_strings, extract_section_strings
from petriage.model import AnalysisRecord, FileInfo
from petriage.pe import (
    DIR_EXPORT,
    DIR_IMPORT,
    DIR_RESOURCE,
    E_LFANEW_OFFSET,
    PE32P_MAGIC,
    PE32_MAGIC,
    IMAGE_DOS_SIGNATURE,
    IMAGE_NT_SIGNATURE,
    PeHeaders,
    _err,
    parse_headers,
    static_info,
)
from petriage.pe_directories import catalog_directories
from petriage.pe_exports import parse_exports
from petriage.pe_imports import ImportTable, parse_imports
from petriage.pe_resources import flatten, walk_resources
from petriage.pe_sections import analyze_sections, packing_indicators

logger = logging.getLogger(__name__)

ANALYZER_VERSION = 2
PREVIEW_BYTES = 128

T = TypeVar("T")


@dataclass(frozen=True)
class AnalysisLimits:
    max_input_bytes: int = 50_000_000

    pe_max_sections: int = 96
    imports_max_dlls: int = 256
    imports_max_funcs_per_dll: int = 4096
    exports_max_entries: int = 65536
    resources_max_depth: int = 8
    resources_max_nodes: int = 4096

    strings_min_len: int = 4
    strings_max_len: int = 2048
    strings_extended_ascii: bool = True

    packing_entropy_threshold: float = 6.5

    @property
    def strings(self) -> StringsOptions:
        return StringsOptions(
            min_len=self.strings_min_len,
            max_len=self.strings_max_len,
            extended_ascii=self.strings_extended_ascii,
        )


def file_hashes(path: Path) -> Dict[str, str]:
    hashers = {name: hashlib.new(name) for name in ("md5", "sha1", "sha256")}
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            for h in hashers.values():
                h.update(chunk)
    return {name: h.hexdigest() for name, h in hashers.items()}


def read_file_bytes(path: Path, *, max_bytes: int) -> Tuple[bytes, bool]:
    with path.open("rb") as f:
        data = f.read(max_bytes + 1)
    if len(data) > max_bytes:
        return data[:max_bytes], True
    return data, False


def detect_file_type(data: bytes) -> str:
    if len(data) <= E_LFANEW_OFFSET + 4 or data[:2] != IMAGE_DOS_SIGNATURE:
        return "Unknown file type"
    pe_off = u32(data, E_LFANEW_OFFSET)
    if data[pe_off : pe_off + 4] == IMAGE_NT_SIGNATURE:
        magic = u16(data, pe_off + 24)
        if magic == PE32P_MAGIC:
            return "PE32+ executable"
        if magic == PE32_MAGIC:
            return "PE32 executable"
    return "DOS executable"


def content_preview(data: bytes, limit: int = PREVIEW_BYTES) -> str:
    return "".join(chr(b) if 32 <= b < 127 else "." for b in data[:limit])


def file_info(data: bytes) -> FileInfo:
    return FileInfo(
        file_type=detect_file_type(data),
        size=len(data),
        entropy=shannon_entropy(data),
        md5=hashlib.md5(data).hexdigest(),
        sha1=hashlib.sha1(data).hexdigest(),
        sha256=hashlib.sha256(data).hexdigest(),
        sha512=hashlib.sha512(data).hexdigest(),
        preview=content_preview(data),
    )


def _guarded(facet: str, errors: List[Dict[str, Any]], default: T, fn: Callable[[], T]) -> T:
    """Run one facet; an unexpected failure is logged and degrades only that facet."""
    try:
        return fn()
    except Exception as e:  # noqa: BLE001
        logger.warning("facet %s failed: %s: %s", facet, type(e).__name__, e)
        errors.append(_err("E_FACET_FAILED", f"Failed to compute {facet}: {type(e).__name__}", facet=facet))
        return default


def _imports(data: bytes, headers: PeHeaders, limits: AnalysisLimits, errors: List[Dict[str, Any]]) -> ImportTable:
    rva, size = headers.directory(data, DIR_IMPORT)
    table, errs = parse_imports(
        data,
        headers.layout,
        import_rva=rva,
        import_size=size,
        max_dlls=limits.imports_max_dlls,
        max_funcs_per_dll=limits.imports_max_funcs_per_dll,
    )
    errors.extend(errs)
    return table


def _exports(data: bytes, headers: PeHeaders, limits: AnalysisLimits, errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    rva, size = headers.directory(data, DIR_EXPORT)
    table, errs = parse_exports(
        data,
        headers.layout,
        export_rva=rva,
        export_size=size,
        max_entries=limits.exports_max_entries,
    )
    errors.extend(errs)
    return [e.to_dict() for e in table.entries]


def _resources(data: bytes, headers: PeHeaders, limits: AnalysisLimits, errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    rva, size = headers.directory(data, DIR_RESOURCE)
    root, errs = walk_resources(
        data,
        headers.layout,
        resource_rva=rva,
        resource_size=size,
        max_depth=limits.resources_max_depth,
        max_nodes=limits.resources_max_nodes,
    )
    errors.extend(errs)
    if root is None:
        return []
    return [leaf.to_dict() for leaf in flatten(root)]


def analyze_bytes(data: bytes, *, filename: str = "", limits: AnalysisLimits = AnalysisLimits()) -> AnalysisRecord:
    """
    Run every facet over one in-memory image.
    Header validation failures raise PeFormatError; anything else is recorded in `errors`.
    """
    logger.info("analyzing %s (%d bytes)", filename or "<bytes>", len(data))
    headers = parse_headers(data, max_sections=limits.pe_max_sections)
    errors: List[Dict[str, Any]] = list(headers.errors)

    imports = _guarded("imports", errors, ImportTable(), lambda: _imports(data, headers, limits, errors))
    sections = _guarded("sections", errors, [], lambda: analyze_sections(data, headers.layout.sections))
    auth = _guarded(
        "authenticode_info",
        errors,
        AuthenticodeResult(validation_error=ANALYSIS_ERROR),
        lambda: extract_authenticode(headers, data),
    )

    all_strings = _guarded("extracted_strings", errors, "", lambda: extract_all_strings(data, limits.strings))
    artifacts = _guarded(
        "artifacts",
        errors,
        {},
        lambda: extract_scoped_artifacts(
            extract_section_strings(data, headers.layout.sections, limits.strings),
            all_strings,
        ),
    )

    record = AnalysisRecord(
        filename=filename,
        analyzer_version=ANALYZER_VERSION,
        pe_fileinfo=file_info(data),
        static_info=_guarded(
            "static_info",
            errors,
            None,
            lambda: static_info(headers, data, import_module_names=imports.module_names),
        ),
        data_directories=_guarded(
            "data_directories", errors, [], lambda: [d.to_dict() for d in catalog_directories(headers, data)]
        ),
        imports=imports.by_module(),
        exports=_guarded("exports", errors, [], lambda: _exports(data, headers, limits, errors)),
        sections=[r.to_dict() for r in sections],
        packing_indicators=packing_indicators(sections, entropy_threshold=limits.packing_entropy_threshold),
        resources=_guarded("resources", errors, [], lambda: _resources(data, headers, limits, errors)),
        authenticode_info=auth.to_dict(),
        artifacts=artifacts,
        extracted_strings=all_strings,
        errors=errors,
    )
    logger.info("analysis of %s finished with %d local errors", filename or "<bytes>", len(errors))
    return record


def analyze_path(path: Path, *, limits: AnalysisLimits = AnalysisLimits()) -> AnalysisRecord:
    data, truncated = read_file_bytes(path, max_bytes=limits.max_input_bytes)
    record = analyze_bytes(data, filename=path.name, limits=limits)
    if truncated:
        record.errors.append(
            _err(
                "E_INPUT_TRUNCATED",
                f"Input truncated to max_input_bytes={limits.max_input_bytes}.",
                max_input_bytes=limits.max_input_bytes,
            )
        )
    return record

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Dict, Iterable


def _get(d: Dict[str, Any], path: str, default):
    cur: Any = d
    for part in path.split("."):
        if not isinstance(cur, dict) or part not in cur:
            return default
        cur = cur[part]
    return cur


def summary_row(record: Dict[str, Any]) -> Dict[str, Any]:
    artifacts_all = _get(record, "artifacts.all", {}) or {}
    return {
        "filename": record.get("filename", ""),
        "analyzer_version": record.get("analyzer_version", ""),
        "timestamp_utc": record.get("timestamp_utc", ""),

        "file_type": _get(record, "pe_fileinfo.file_type", ""),
        "size": _get(record, "pe_fileinfo.size", ""),
        "entropy": round(float(_get(record, "pe_fileinfo.entropy", 0.0) or 0.0), 4),
        "md5": _get(record, "pe_fileinfo.md5", ""),
        "sha1": _get(record, "pe_fileinfo.sha1", ""),
        "sha256": _get(record, "pe_fileinfo.sha256", ""),

        "machine": _get(record, "static_info.machine", ""),
        "is_64bit": "true" if _get(record, "static_info.is_64bit", False) else "false",
        "is_dll": "true" if _get(record, "static_info.is_dll", False) else "false",
        "subsystem": _get(record, "static_info.subsystem", ""),
        "entry_point": _get(record, "static_info.entry_point", ""),
        "import_hash": _get(record, "static_info.import_hash", ""),
        "rich_xor_key": _get(record, "static_info.rich_xor_key", ""),

        "section_count": len(record.get("sections", []) or []),
        "import_module_count": len(record.get("imports", {}) or {}),
        "export_count": len(record.get("exports", []) or []),
        "resource_count": len(record.get("resources", []) or []),
        "packing_hint_count": len(record.get("packing_indicators", []) or []),

        "has_signature": "true" if _get(record, "authenticode_info.has_signature", False) else "false",
        "signature_valid": "true" if _get(record, "authenticode_info.is_valid", False) else "false",

        "url_count": len(artifacts_all.get("urls", [])),
        "ip_count": len(artifacts_all.get("ip_addresses", [])),
        "domain_count": len(artifacts_all.get("domains", [])),

        "error_count": len(record.get("errors", []) or []),
    }


def write_summary_csv(path: Path, records: Iterable[Dict[str, Any]]) -> None:
    rows = [summary_row(r) for r in records]
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as f:
        fieldnames = list(rows[0].keys()) if rows else list(summary_row({}).keys())
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)

from __future__ import annotations

import json
import zipfile
from pathlib import Path
from typing import Any, Dict

from petriage.reporters.csv_report import write_summary_csv

BUNDLE_MEMBERS = ("manifest.json", "analysis.json", "artifacts.json", "summary.csv")


def write_json(path: Path, obj: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(obj, indent=2, ensure_ascii=False), encoding="utf-8")


def output_zip_name(scan_id: str, input_path: Path) -> str:
    return f"petriage_{scan_id}_{input_path.name}.zip"


def write_bundle(scan_dir: Path, bundle_zip: Path, manifest: Dict[str, Any], record: Dict[str, Any]) -> Path:
    """
    Write the per-scan files into scan_dir and pack them into bundle_zip.
    artifacts.json duplicates the record's artifact bags for quick grepping.
    """
    scan_dir.mkdir(parents=True, exist_ok=True)
    files = {
        "manifest.json": scan_dir / "manifest.json",
        "analysis.json": scan_dir / "analysis.json",
        "artifacts.json": scan_dir / "artifacts.json",
        "summary.csv": scan_dir / "summary.csv",
    }
    write_json(files["manifest.json"], manifest)
    write_json(files["analysis.json"], record)
    write_json(files["artifacts.json"], record.get("artifacts", {}))
    write_summary_csv(files["summary.csv"], [record])

    bundle_zip.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(bundle_zip, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for arcname in BUNDLE_MEMBERS:
            zf.write(files[arcname], arcname=arcname)
    return bundle_zip

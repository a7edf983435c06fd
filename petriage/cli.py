from __future__ import annotations

import platform
import re
import sys
import uuid
from importlib import metadata
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from petriage.analyzer import ANALYZER_VERSION, AnalysisLimits, analyze_path, file_hashes, read_file_bytes
from petriage.bundler import output_zip_name, write_bundle, write_json
from petriage.cache import AnalysisCache
from petriage.config import AppConfig, config_to_snapshot, load_config
from petriage.extract_strings import extract_all_strings, search_strings
from petriage.log import setup_logging
from petriage.model import Manifest
from petriage.pe import PeFormatError
from petriage.reporters.console import render_console, render_matches
from petriage.reporters.csv_report import write_summary_csv

app = typer.Typer(add_completion=False)

TOOL_NAME = "petriage"


def _tool_version() -> str:
    try:
        return metadata.version(TOOL_NAME)
    except metadata.PackageNotFoundError:
        return "0.1.0-dev"


def version_callback(value: bool):
    if value:
        typer.echo(f"{TOOL_NAME} version: {_tool_version()}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True, help="Show version and exit."
    ),
):
    """
    Static triage of Windows PE files. Nothing is ever executed.
    """
    pass


def env_snapshot() -> dict:
    return {
        "os": platform.system(),
        "os_release": platform.release(),
        "machine": platform.machine(),
        "python": sys.version,
    }


def _limits_from_cfg(cfg: AppConfig) -> AnalysisLimits:
    lim = cfg.limits
    return AnalysisLimits(
        max_input_bytes=lim.max_input_bytes,
        pe_max_sections=lim.pe_max_sections,
        imports_max_dlls=lim.imports_max_dlls,
        imports_max_funcs_per_dll=lim.imports_max_funcs_per_dll,
        exports_max_entries=lim.exports_max_entries,
        resources_max_depth=lim.resources_max_depth,
        resources_max_nodes=lim.resources_max_nodes,
        strings_min_len=lim.strings_min_len,
        strings_max_len=lim.strings_max_len,
        strings_extended_ascii=lim.strings_extended_ascii,
        packing_entropy_threshold=lim.packing_entropy_threshold,
    )


def _collect_inputs(p_in: Path, recursive: bool) -> List[Path]:
    if p_in.is_file():
        return [p_in]
    pattern = "**/*" if recursive else "*"
    return sorted(f for f in p_in.glob(pattern) if f.is_file() and not f.name.startswith("."))


def _analyze_one(
    p: Path,
    cfg: AppConfig,
    limits: AnalysisLimits,
    cache: Optional[AnalysisCache],
    out_base: Path,
    *,
    quiet: bool,
) -> Dict[str, Any]:
    """Analyze one file and write its bundle. PeFormatError propagates to the caller."""
    hashes = file_hashes(p)
    key = (hashes["sha1"], ANALYZER_VERSION)

    def compute() -> Dict[str, Any]:
        return analyze_path(p, limits=limits).model_dump()

    record = cache.get_or_compute(key, compute) if cache is not None else compute()
    if record.get("filename") != p.name:
        # Same content seen under another name.
        record = dict(record, filename=p.name)

    scan_id = str(uuid.uuid4())
    manifest = Manifest(
        schema_version=cfg.schema_version,
        scan_id=scan_id,
        tool={"name": TOOL_NAME, "version": _tool_version(), "analyzer_version": ANALYZER_VERSION},
        environment=env_snapshot(),
        config_snapshot=config_to_snapshot(cfg),
        inputs=[{"input_path": str(p), "file_size": p.stat().st_size, **hashes}],
    ).model_dump()

    bundle_zip = write_bundle(
        out_base / f"{TOOL_NAME}_{scan_id}",
        out_base / output_zip_name(scan_id, p),
        manifest,
        record,
    )
    if not quiet:
        render_console(record, bundle_zip)
    else:
        typer.echo(f"Analyzed {p.name} -> {bundle_zip.name}")
    return record


@app.command()
def analyze(
    path: str = typer.Argument(..., help="Input file or directory path."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
    outdir: str = typer.Option(None, "--outdir", help="Override output directory."),
    recursive: bool = typer.Option(False, "--recursive", "-r", help="Recurse into subdirectories (batch mode)."),
    json_out: Optional[str] = typer.Option(None, "--json", help="Also write the analysis record(s) to this JSON file."),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="One line per file instead of tables."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log progress to stderr."),
):
    """
    Analyze one PE file, or every file in a directory.
    """
    cfg = load_config(config)
    if outdir:
        cfg.output_dir = outdir
    setup_logging("INFO" if verbose else cfg.log_level)

    p_in = Path(path).expanduser().resolve()
    if not p_in.exists():
        raise typer.BadParameter(f"Path does not exist: {p_in}")

    limits = _limits_from_cfg(cfg)
    cache = AnalysisCache(cfg.cache.max_entries, cfg.cache.ttl_seconds) if cfg.cache.enabled else None
    out_base = Path(cfg.output_dir).expanduser().resolve()
    out_base.mkdir(parents=True, exist_ok=True)

    files = _collect_inputs(p_in, recursive)
    if not files:
        typer.echo("No files found to analyze.")
        return
    single = p_in.is_file()
    if not single:
        typer.echo(f"Found {len(files)} files.")

    records: List[Dict[str, Any]] = []
    for f in files:
        size = f.stat().st_size
        if size > cfg.limits.max_file_size_bytes:
            typer.secho(f"Skipping {f.name}: File too large ({size} bytes).", fg=typer.colors.YELLOW, err=True)
            continue
        try:
            records.append(_analyze_one(f, cfg, limits, cache, out_base, quiet=quiet))
        except PeFormatError as e:
            typer.secho(f"{f.name}: {e.code}: {e.message}", fg=typer.colors.RED, err=True)
            if single:
                raise typer.Exit(code=2)

    if not single:
        write_summary_csv(out_base / "index.csv", records)
        typer.echo(f"Batch analysis complete. Analyzed {len(records)}/{len(files)} files.")
    if json_out:
        payload = records[0] if single and records else {"records": records}
        write_json(Path(json_out).expanduser(), payload)


@app.command()
def search(
    path: str = typer.Argument(..., help="Input file."),
    pattern: str = typer.Argument(..., help="Regular expression, matched case-insensitively per string."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
):
    """
    Search the strings extracted from a file.
    """
    cfg = load_config(config)
    setup_logging(cfg.log_level)
    p = Path(path).expanduser().resolve()
    if not p.is_file():
        raise typer.BadParameter(f"Not a file: {p}")

    limits = _limits_from_cfg(cfg)
    data, _ = read_file_bytes(p, max_bytes=limits.max_input_bytes)
    try:
        matches = search_strings(pattern, extract_all_strings(data, limits.strings))
    except re.error as e:
        raise typer.BadParameter(f"Invalid pattern: {e}") from e
    render_matches(pattern, matches)


if __name__ == "__main__":
    app()

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel


class Limits(BaseModel):
    max_file_size_bytes: int = 200_000_000
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


class CacheCfg(BaseModel):
    enabled: bool = True
    max_entries: int = 100
    ttl_seconds: float = 3600.0


class AppConfig(BaseModel):
    schema_version: str = "1.0"
    output_dir: str = "./out"
    log_level: str = "WARNING"
    limits: Limits = Limits()
    cache: CacheCfg = CacheCfg()


def load_config(path: Optional[str]) -> AppConfig:
    if not path:
        return AppConfig()
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    return AppConfig.model_validate(data or {})


def config_to_snapshot(cfg: AppConfig) -> Dict[str, Any]:
    return cfg.model_dump()

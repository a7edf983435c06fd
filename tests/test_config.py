from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from petriage.config import AppConfig, config_to_snapshot, load_config


def test_defaults_without_path():
    cfg = load_config(None)
    assert cfg == AppConfig()
    assert cfg.limits.strings_min_len == 4
    assert cfg.cache.enabled is True


def test_yaml_overrides(tmp_path: Path):
    p = tmp_path / "cfg.yaml"
    p.write_text(
        "output_dir: ./results\n"
        "log_level: DEBUG\n"
        "limits:\n"
        "  strings_min_len: 6\n"
        "  resources_max_depth: 4\n"
        "cache:\n"
        "  enabled: false\n",
        encoding="utf-8",
    )
    cfg = load_config(str(p))
    assert cfg.output_dir == "./results"
    assert cfg.log_level == "DEBUG"
    assert cfg.limits.strings_min_len == 6
    assert cfg.limits.resources_max_depth == 4
    assert cfg.limits.imports_max_dlls == 256
    assert cfg.cache.enabled is False

    snap = config_to_snapshot(cfg)
    assert snap["limits"]["strings_min_len"] == 6


def test_empty_yaml_is_defaults(tmp_path: Path):
    p = tmp_path / "empty.yaml"
    p.write_text("", encoding="utf-8")
    assert load_config(str(p)) == AppConfig()


def test_invalid_value_rejected(tmp_path: Path):
    p = tmp_path / "bad.yaml"
    p.write_text("limits:\n  strings_min_len: lots\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_config(str(p))

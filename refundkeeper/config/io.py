from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from refundkeeper.config.models import ProgramConfig, parse_program_config

_config_logger = logging.getLogger("refundkeeper.config")

DB_FILE_NAME = "refundkeeper.sqlite"


def read_yaml_mapping(path: Path) -> dict[str, Any]:
    document = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(document, dict):
        raise ValueError(f"config file must contain a YAML mapping: {path}")
    return document


def write_yaml_mapping(path: Path, document: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")


def load_program_config(path: Path) -> ProgramConfig:
    """Parse program.yaml, writing back a default app.log_level when it is absent."""
    document = read_yaml_mapping(path)
    program = parse_program_config(document)
    app_section = document.get("app")
    if program.app_log_level_was_missing and isinstance(app_section, dict):
        app_section["log_level"] = program.app_log_level
        write_yaml_mapping(path, document)
        _config_logger.warning(
            "program_config_healed field=app.log_level value=%s path=%s",
            program.app_log_level,
            path,
        )
    return program


def resolve_db_path(home_dir: str, explicit_db_path: str | None) -> Path:
    if explicit_db_path:
        return Path(explicit_db_path).expanduser()
    return (Path(home_dir).expanduser() / "db" / DB_FILE_NAME).resolve()

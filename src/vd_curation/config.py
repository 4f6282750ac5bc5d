"""
Configuration Module for VD Curation.

Every component receives a ``CurationConfig`` at construction instead of
reading table names or tool paths from global state. Configuration files are
JSON, validated against ``CONFIG_SCHEMA`` before use; a small set of
environment variables override file values.
"""

import os
import re
import json
import logging
import jsonschema
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Dict, List, Optional, Any, Union

from .exceptions import ConfigurationError

# Configure logging
log = logging.getLogger("vd-curation")

SAFE_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_DBSNP_URL = "https://www.ncbi.nlm.nih.gov/snp/"

ENV_OVERRIDES = {
    "VD_CURATION_DB": "db_path",
    "VD_CURATION_ANNOTATION_PATH": "annotation_path",
    "VD_CURATION_RUBY": "ruby_path",
    "VD_CURATION_OPERATOR": "operator",
    "VD_CURATION_VERSION": "version",
}

CONFIG_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "db_path": {"type": "string"},
        "tables": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "live": {"type": "string"},
                "queue": {"type": "string"},
                "reviews": {"type": "string"},
                "versions": {"type": "string"},
                "gene_counts": {"type": "string"},
                "history": {"type": "string"},
                "expert": {"type": "string"},
            },
        },
        "annotation_path": {"type": ["string", "null"]},
        "ruby_path": {"type": "string"},
        "frequencies": {
            "type": "array",
            "items": {"enum": ["evs", "1000genomes", "otoscope"]},
            "uniqueItems": True,
        },
        "dbsnp_url": {"type": "string"},
        "dbsnp_timeout": {"type": "number", "exclusiveMinimum": 0},
        "pipeline_workdir": {"type": ["string", "null"]},
        "pipeline_extra_paths": {"type": "array", "items": {"type": "string"}},
        "operator": {"type": "string"},
        "version": {"type": ["integer", "null"], "minimum": 0},
    },
}


@dataclass
class TableNames:
    """Physical table names used by the store."""

    live: str = "vd_live"
    queue: str = "vd_queue"
    reviews: str = "reviews"
    versions: str = "versions"
    gene_counts: str = "variant_count"
    history: str = "variations_log"
    expert: str = "expert_curations"

    def validate(self) -> None:
        """Raise ConfigurationError if a name cannot be safely used as an SQL identifier."""
        names = [getattr(self, f.name) for f in fields(self)]
        for name in names:
            if not SAFE_IDENTIFIER.match(name or ""):
                raise ConfigurationError(details=f"unsafe table name '{name}'")
        if len(set(names)) != len(names):
            raise ConfigurationError(details="table names must be distinct")


@dataclass
class CurationConfig:
    """Injected configuration for the curation and release pipeline."""

    db_path: str = ":memory:"
    tables: TableNames = field(default_factory=TableNames)
    annotation_path: Optional[str] = None
    ruby_path: str = "ruby"
    frequencies: List[str] = field(default_factory=lambda: ["evs", "1000genomes", "otoscope"])
    dbsnp_url: str = DEFAULT_DBSNP_URL
    dbsnp_timeout: float = 5
    pipeline_workdir: Optional[str] = None
    pipeline_extra_paths: List[str] = field(default_factory=list)
    operator: str = "curator"
    version: Optional[int] = None

    def __post_init__(self):
        if isinstance(self.tables, dict):
            self.tables = TableNames(**self.tables)
        self.tables.validate()

    @property
    def tmp_dir(self) -> Optional[Path]:
        """Scratch directory of the annotation tool."""
        if not self.annotation_path:
            return None
        return Path(self.annotation_path) / "tmp"

    @property
    def workdir(self) -> Path:
        """Working directory of the bulk annotation pipeline."""
        if self.pipeline_workdir:
            return Path(self.pipeline_workdir)
        if self.annotation_path:
            return Path(self.annotation_path) / "pipeline"
        return Path("./pipeline")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    for env_name, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value is None or value == "":
            continue
        if key == "version":
            try:
                data[key] = int(value)
            except ValueError:
                raise ConfigurationError(details=f"{env_name} must be an integer, got '{value}'")
        else:
            data[key] = value
        log.debug(f"Configuration '{key}' overridden by {env_name}")
    return data


def load_config(path: Optional[Union[str, Path]] = None) -> CurationConfig:
    """
    Load configuration from a JSON file and the environment.

    Args:
        path: Optional path to a JSON configuration file

    Returns:
        Validated CurationConfig

    Raises:
        ConfigurationError: If the file is missing, malformed, or fails validation
    """
    data: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(details=f"configuration file not found: {config_path}")
        try:
            with open(config_path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(details=f"{config_path} is not valid JSON: {e}")

        try:
            jsonschema.validate(instance=data, schema=CONFIG_SCHEMA)
        except jsonschema.exceptions.ValidationError as e:
            log.error(f"Validation error in {config_path}: {e.message}")
            raise ConfigurationError(details=e.message)

        log.info(f"Loaded configuration from {config_path}")

    data = _apply_env_overrides(data)
    return CurationConfig(**data)

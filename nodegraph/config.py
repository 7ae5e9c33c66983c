"""
nodegraph Configuration

Type-safe settings with Pydantic, loadable from the environment
(NODEGRAPH_ prefix, "__" for nested keys) or from a JSON file.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class SQLiteSettings(BaseModel):
    """Settings for the relational backend."""
    enable_wal: bool = True
    cache_size_kb: int = 16000


class QuerySettings(BaseModel):
    """Settings for query evaluation."""
    default_limit: int = 500
    max_ancestor_depth: int = 20


class NodeGraphConfig(BaseSettings):
    """Top-level node-graph configuration."""

    model_config = {
        "env_prefix": "NODEGRAPH_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    backend: Literal["sqlite", "graph"] = "sqlite"

    data_dir: Path = Path("./data")
    database_path: Optional[Path] = None  # Defaults to data_dir/nodegraph.db
    snapshot_path: Optional[Path] = None  # Defaults to data_dir/nodegraph.graph.json

    sqlite: SQLiteSettings = Field(default_factory=SQLiteSettings)
    query: QuerySettings = Field(default_factory=QuerySettings)

    auto_bootstrap: bool = True
    autosave: bool = False

    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"

    @field_validator("data_dir", "database_path", "snapshot_path", mode="before")
    @classmethod
    def convert_to_path(cls, v: Any) -> Optional[Path]:
        if v is None or v == "":
            return None
        return Path(v) if isinstance(v, str) else v

    def get_database_path(self) -> Path:
        return self.database_path or self.data_dir / "nodegraph.db"

    def get_snapshot_path(self) -> Path:
        return self.snapshot_path or self.data_dir / "nodegraph.graph.json"

    @classmethod
    def from_file(cls, path: Path) -> "NodeGraphConfig":
        """Load configuration from a JSON file."""
        with open(path, "r") as f:
            data = json.load(f)
        return cls(**data)

    def to_file(self, path: Path) -> None:
        """Save configuration to a JSON file."""
        with open(path, "w") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)

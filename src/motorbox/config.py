"""Motorbox configuration loader.

Reads ``motorbox.yaml`` and applies environment overrides.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from motorbox.sandbox.config import SandboxConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "motorbox.yaml"

MiB = 1024 * 1024


class SkillStoreConfig(BaseModel):
    """Limits and behaviour of skill extraction."""

    workspace_subdir: str = Field(
        default="skills", description="Directory inside a run workspace holding skill candidates"
    )
    max_file_bytes: int = Field(default=1 * MiB, gt=0)
    max_total_bytes: int = Field(default=10 * MiB, gt=0)
    # Re-extracting byte-identical content keeps an approved skill approved.
    preserve_approved_on_identical_content: bool = True


class RunStoreConfig(BaseModel):
    max_cas_retries: int = Field(default=5, ge=1)


class MotorboxConfig(BaseModel):
    data_dir: str = "data"
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    skills: SkillStoreConfig = Field(default_factory=SkillStoreConfig)
    runs: RunStoreConfig = Field(default_factory=RunStoreConfig)

    @property
    def skills_dir(self) -> Path:
        return Path(self.data_dir) / "skills"

    @property
    def deps_cache_dir(self) -> Path:
        return Path(self.data_dir) / "deps-cache"

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / "motorbox.db"


def load_config(path: Path | None = None) -> MotorboxConfig:
    """Load configuration.

    Args:
        path: Explicit config file. When omitted, ``motorbox.yaml`` in the
            working directory is used if present, otherwise defaults.

    Raises:
        FileNotFoundError: If an explicit path doesn't exist.
        ValueError: If config validation fails.
    """
    if path is None:
        path = Path(DEFAULT_CONFIG_FILE)
        raw = {}
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
    else:
        if not path.exists():
            raise FileNotFoundError(f"Motorbox config not found: {path}")
        with open(path) as f:
            raw = yaml.safe_load(f) or {}

    config = MotorboxConfig(**raw)

    # Environment variable overrides for deployment
    data_dir = os.environ.get("MOTORBOX_DATA_DIR")
    if data_dir:
        config.data_dir = data_dir

    container_runtime = os.environ.get("MOTORBOX_CONTAINER_RUNTIME")
    if container_runtime:
        config.sandbox.container_runtime = container_runtime

    runtime_image = os.environ.get("MOTORBOX_RUNTIME_IMAGE")
    if runtime_image:
        config.sandbox.runtime_image = runtime_image

    logger.debug("Loaded motorbox config: data_dir=%s", config.data_dir)
    return config

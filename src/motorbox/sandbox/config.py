"""Sandbox configuration model."""

from __future__ import annotations
from pydantic import BaseModel


class SandboxConfig(BaseModel):
    """Configuration for prep containers and the network policy helper."""

    container_runtime: str = "docker"
    runtime_image: str = "motorbox-runtime:latest"

    # ── Network policy helper image ──────────────────────────────────────────
    netpolicy_image: str = "motorbox-netpolicy:latest"
    netpolicy_base_image: str = "alpine:3.21"
    build_timeout_seconds: int = 120

    # ── Dependency cache ─────────────────────────────────────────────────────
    # Named volumes are <volume_prefix>-<ecosystem>-<hash>.
    volume_prefix: str = "motorbox-deps"
    lock_stale_seconds: int = 600
    lock_wait_seconds: float = 5.0
    command_timeout_seconds: int = 10

    # ── Prep container limits ────────────────────────────────────────────────
    prep_memory: str = "512m"
    prep_pids_limit: int = 64
    prep_network: str = "bridge"
    prep_tmpfs: str = "/tmp:rw,noexec,nosuid,size=64m"
    prep_timeout_seconds: int = 300

    # ── Mount handoff ────────────────────────────────────────────────────────
    # Sandbox-internal paths where the runtime binds cache volumes read-only.
    npm_mount_path: str = "/opt/skill-deps/npm"
    pip_mount_path: str = "/opt/skill-deps/pip"

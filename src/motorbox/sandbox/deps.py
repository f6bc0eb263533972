"""Dependency installer -- content-addressed package cache built by prep containers.

Skills declare exact-pinned npm/pip packages.  For each ecosystem:

1. Compute a content address (packages + ecosystem + runtime image + platform).
2. Cache hit: the readiness marker AND the named volume both exist.
3. A volume without a marker is the residue of a crashed install; it is
   removed and the install starts over.
4. Take an exclusive lock file for the hash.  If another installer holds it,
   wait once and re-check; never retry in a loop.
5. Run one restricted, named prep container that writes its own manifest and
   runs the ecosystem installer with scripts/build hooks disabled.
6. Verify the volume contents from the host side.  A zero exit code alone is
   not proof of success.
7. Write the readiness marker.  On any failure the marker and volume are
   deleted so the next attempt starts clean.  The prep container is always
   removed and the lock always released.

Volumes are named, never bind-mounted, so installed files never touch the
host filesystem.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from pydantic import BaseModel, ConfigDict, Field, model_validator

from motorbox.sandbox.locks import FileLock, compute_deps_hash
from motorbox.sandbox.runtime import CommandTimeout

if TYPE_CHECKING:
    from motorbox.sandbox.config import SandboxConfig
    from motorbox.sandbox.runtime import ContainerRuntime

logger = logging.getLogger(__name__)

KNOWN_ECOSYSTEMS = ("npm", "pip")

# Mount point of the cache volume inside the prep container.
PREP_WORKSPACE = "/workspace"

# Manifest content reaches the prep container only through this variable.
MANIFEST_ENV = "MOTORBOX_MANIFEST"

_OUTPUT_PREVIEW = 500

_NPM_NAME_RE = re.compile(r"^(@[a-z0-9][a-z0-9._~-]*/)?[a-z0-9][a-z0-9._~-]*$")
_PIP_NAME_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9._-]*[A-Za-z0-9])?$")
_NPM_VERSION_RE = re.compile(
    r"^\d+\.\d+\.\d+"
    r"(-[0-9A-Za-z-]+(\.[0-9A-Za-z-]+)*)?"
    r"(\+[0-9A-Za-z-]+(\.[0-9A-Za-z-]+)*)?$"
)
_PIP_VERSION_RE = re.compile(r"^\d+(\.\d+)*((a|b|rc)\d+)?(\.post\d+)?(\.dev\d+)?$")

_NAME_PATTERNS = {"npm": _NPM_NAME_RE, "pip": _PIP_NAME_RE}
_VERSION_PATTERNS = {"npm": _NPM_VERSION_RE, "pip": _PIP_VERSION_RE}
_MAX_NAME_LEN = 214


# ── Errors ───────────────────────────────────────────────────────────────────


class DependencyValidationError(ValueError):
    """The declared dependency set violates the exact-pin grammar."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("; ".join(errors))
        self.errors = errors


class DependencyInstallError(RuntimeError):
    """Installation or post-install verification failed."""


class ConcurrentInstallError(DependencyInstallError):
    """Another installer held the lock and did not finish within the wait."""


class PrepContainerTimeout(DependencyInstallError):
    """The prep container exceeded its wall-clock budget."""


# ── Validation ───────────────────────────────────────────────────────────────


def _is_valid_name(ecosystem: str, name: object) -> bool:
    if not isinstance(name, str) or not name or len(name) > _MAX_NAME_LEN:
        return False
    if ".." in name or "://" in name:
        return False
    return bool(_NAME_PATTERNS[ecosystem].match(name))


def _is_exact_pin(ecosystem: str, version: object) -> bool:
    return isinstance(version, str) and bool(_VERSION_PATTERNS[ecosystem].match(version))


def validate_dependencies(raw: object) -> list[str]:
    """Validate a raw dependency declaration.

    Returns a list of human-readable errors (empty = valid).  Ranges,
    ``latest``, URLs and git refs are rejected as versions; URLs and
    path-traversal sequences are rejected as names.
    """
    if not isinstance(raw, dict):
        return ["dependencies must be an object"]

    errors: list[str] = []
    for ecosystem, spec in raw.items():
        if ecosystem not in KNOWN_ECOSYSTEMS:
            errors.append(f"Unknown dependency ecosystem: {ecosystem}")
            continue
        if spec is None:
            continue
        packages = spec.get("packages") if isinstance(spec, dict) else None
        if not isinstance(packages, list):
            errors.append(f"{ecosystem}: packages must be a list")
            continue

        seen: set[str] = set()
        for pkg in packages:
            if not isinstance(pkg, dict):
                errors.append(f"{ecosystem}: package entry must be an object")
                continue
            name = pkg.get("name")
            version = pkg.get("version")
            if not _is_valid_name(ecosystem, name):
                errors.append(f'{ecosystem}: invalid package name "{name}"')
                continue
            if not _is_exact_pin(ecosystem, version):
                errors.append(
                    f'{ecosystem}: "{name}" version "{version}" must be an exact pin (e.g. 1.2.3)'
                )
            key = name.lower() if ecosystem == "pip" else name
            if key in seen:
                errors.append(f'{ecosystem}: duplicate package "{name}"')
            seen.add(key)
    return errors


# ── Declaration & handoff models ─────────────────────────────────────────────


class PackageSpec(BaseModel):
    name: str
    version: str


class EcosystemDeps(BaseModel):
    packages: list[PackageSpec] = Field(default_factory=list)


class SkillDependencies(BaseModel):
    """Per-ecosystem exact-pinned package lists declared by a skill."""

    npm: EcosystemDeps | None = None
    pip: EcosystemDeps | None = None

    @model_validator(mode="before")
    @classmethod
    def _validate_pins(cls, data: Any) -> Any:
        if isinstance(data, dict):
            errors = validate_dependencies(data)
            if errors:
                raise ValueError("; ".join(errors))
        return data

    def packages_for(self, ecosystem: str) -> list[PackageSpec]:
        spec = getattr(self, ecosystem)
        return list(spec.packages) if spec else []

    def is_empty(self) -> bool:
        return not any(self.packages_for(eco) for eco in KNOWN_ECOSYSTEMS)


class PreparedDeps(BaseModel):
    """Opaque mount references for the runtime sandbox (bound read-only)."""

    model_config = ConfigDict(populate_by_name=True)

    npm_dir: str | None = Field(default=None, alias="npmDir")
    pip_dir: str | None = Field(default=None, alias="pipDir")
    pip_python_path: str | None = Field(default=None, alias="pipPythonPath")

    def to_handoff(self) -> dict[str, str]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def mount_args(self, config: SandboxConfig) -> list[str]:
        args: list[str] = []
        if self.npm_dir:
            args += ["-v", f"{self.npm_dir}:{config.npm_mount_path}:ro"]
        if self.pip_dir:
            args += ["-v", f"{self.pip_dir}:{config.pip_mount_path}:ro"]
        return args

    def environment(self, config: SandboxConfig) -> dict[str, str]:
        env: dict[str, str] = {}
        if self.npm_dir:
            env["NODE_PATH"] = f"{config.npm_mount_path}/node_modules"
        if self.pip_python_path:
            env["PYTHONPATH"] = self.pip_python_path
        return env


# ── Ecosystems ───────────────────────────────────────────────────────────────


def _npm_manifest(packages: list[PackageSpec]) -> str:
    return json.dumps(
        {
            "name": "skill-deps",
            "version": "1.0.0",
            "private": True,
            "dependencies": {p.name: p.version for p in packages},
        }
    )


def _pip_manifest(packages: list[PackageSpec]) -> str:
    return "\n".join(f"{p.name}=={p.version}" for p in packages)


def verify_npm_install(entries: list[str] | None, packages: list[PackageSpec]) -> None:
    """Every declared package must have a directory under node_modules."""
    if entries is None:
        raise DependencyInstallError("npm install did not produce node_modules directory")
    present = set(entries)
    missing = [p for p in packages if p.name not in present]
    if missing:
        names = ", ".join(f"{p.name}@{p.version}" for p in missing)
        raise DependencyInstallError(f"npm install completed but missing packages: {names}")


def verify_pip_install(entries: list[str] | None, packages: list[PackageSpec]) -> None:
    """site-packages must exist and be non-empty."""
    if entries is None:
        raise DependencyInstallError("pip install did not produce site-packages directory")
    if not entries:
        raise DependencyInstallError("pip install produced empty site-packages directory")


@dataclass(frozen=True)
class Ecosystem:
    name: str
    output_dir: str
    list_depth: int
    script: str
    manifest: Callable[[list[PackageSpec]], str]
    verify: Callable[[list[str] | None, list[PackageSpec]], None]


# The scripts are constants: package data is only ever read from $MOTORBOX_MANIFEST.
NPM = Ecosystem(
    name="npm",
    output_dir="node_modules",
    list_depth=2,
    script=(
        f'printf "%s" "${MANIFEST_ENV}" > {PREP_WORKSPACE}/package.json'
        f" && cd {PREP_WORKSPACE}"
        " && npm install --ignore-scripts --no-audit --no-fund --omit=optional 2>&1"
    ),
    manifest=_npm_manifest,
    verify=verify_npm_install,
)

PIP = Ecosystem(
    name="pip",
    output_dir="site-packages",
    list_depth=1,
    script=(
        f'printf "%s\\n" "${MANIFEST_ENV}" > {PREP_WORKSPACE}/requirements.txt'
        f" && pip install --target {PREP_WORKSPACE}/site-packages"
        " --only-binary :all: --no-compile --disable-pip-version-check"
        f" -r {PREP_WORKSPACE}/requirements.txt 2>&1"
    ),
    manifest=_pip_manifest,
    verify=verify_pip_install,
)

ECOSYSTEMS = {"npm": NPM, "pip": PIP}


# ── Command builders ─────────────────────────────────────────────────────────


@dataclass
class PrepCommand:
    """Argument list for one restricted, named, non-auto-removed prep container."""

    container_name: str
    volume: str
    image: str
    script: str
    manifest: str
    memory: str = "512m"
    pids_limit: int = 64
    network: str = "bridge"
    tmpfs: str = "/tmp:rw,noexec,nosuid,size=64m"
    extra_env: dict[str, str] = field(default_factory=dict)

    def build(self) -> list[str]:
        args = [
            "run",
            "--name", self.container_name,
            "--entrypoint", "sh",
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "--memory", self.memory,
            "--pids-limit", str(self.pids_limit),
            "--network", self.network,
            "--tmpfs", self.tmpfs,
            "-v", f"{self.volume}:{PREP_WORKSPACE}",
            "-e", f"{MANIFEST_ENV}={self.manifest}",
        ]
        for key, value in sorted(self.extra_env.items()):
            args += ["-e", f"{key}={value}"]
        args += [self.image, "-c", self.script]
        return args


def build_listing_command(volume: str, image: str, output_dir: str, depth: int) -> list[str]:
    """Argument list for a throwaway read-only container that lists the install output."""
    target = f"{PREP_WORKSPACE}/{output_dir}"
    return [
        "run", "--rm",
        "--network", "none",
        "--read-only",
        "--cap-drop", "ALL",
        "--security-opt", "no-new-privileges",
        "-v", f"{volume}:{PREP_WORKSPACE}:ro",
        "--entrypoint", "find",
        image,
        target, "-mindepth", "1", "-maxdepth", str(depth),
    ]


def _relative_entries(stdout: str, output_dir: str) -> list[str]:
    prefix = f"{PREP_WORKSPACE}/{output_dir}/"
    entries = []
    for line in stdout.splitlines():
        line = line.strip()
        if line.startswith(prefix):
            entries.append(line[len(prefix):])
    return entries


# ── Installer ────────────────────────────────────────────────────────────────


class DependencyInstaller:
    """Cache-first installer for skill dependencies.

    Installs with different hashes are fully independent and may run
    concurrently; installs with the same hash are serialised by the lock file.
    """

    def __init__(self, config: SandboxConfig, runtime: ContainerRuntime, cache_dir: Path) -> None:
        self._config = config
        self._runtime = runtime
        self._cache_dir = cache_dir

    async def install(
        self,
        deps: SkillDependencies | dict,
        label: str,
    ) -> PreparedDeps | None:
        """Install declared dependencies and return mount references.

        Returns None when nothing is declared.  Raises
        ``DependencyValidationError`` before building any command when the
        declaration is invalid, and ``DependencyInstallError`` (fatal for the
        requesting run) when an ecosystem fails.  Fails fast on the first
        failing ecosystem.
        """
        deps = self._coerce(deps)
        if deps.is_empty():
            return None

        self._cache_dir.mkdir(parents=True, exist_ok=True)
        image_id = await self._runtime.image_id(self._config.runtime_image)
        result = PreparedDeps()

        npm_packages = deps.packages_for("npm")
        if npm_packages:
            logger.info("Preparing npm dependencies for %s (%d packages)", label, len(npm_packages))
            result.npm_dir = await self._install_ecosystem(NPM, npm_packages, image_id, label)

        pip_packages = deps.packages_for("pip")
        if pip_packages:
            logger.info("Preparing pip dependencies for %s (%d packages)", label, len(pip_packages))
            result.pip_dir = await self._install_ecosystem(PIP, pip_packages, image_id, label)
            result.pip_python_path = f"{self._config.pip_mount_path}/site-packages"

        return result

    # ── Cache state ──────────────────────────────────────────────────────────

    def volume_name(self, ecosystem: str, deps_hash: str) -> str:
        return f"{self._config.volume_prefix}-{ecosystem}-{deps_hash}"

    def marker_path(self, ecosystem: str, deps_hash: str) -> Path:
        return self._cache_dir / f"{ecosystem}-{deps_hash}.ready"

    def lock_path(self, ecosystem: str, deps_hash: str) -> Path:
        return self._cache_dir / f"{ecosystem}-{deps_hash}.lock"

    async def is_ready(self, ecosystem: str, deps_hash: str) -> bool:
        """A volume alone proves nothing; only the marker certifies a verified install."""
        if not self.marker_path(ecosystem, deps_hash).exists():
            return False
        return await self._runtime.volume_exists(self.volume_name(ecosystem, deps_hash))

    def _write_marker(self, eco: Ecosystem, deps_hash: str, packages: list[PackageSpec], label: str) -> None:
        marker = self.marker_path(eco.name, deps_hash)
        tmp = marker.with_suffix(".ready.tmp")
        tmp.write_text(
            json.dumps(
                {
                    "ecosystem": eco.name,
                    "packages": [p.model_dump() for p in packages],
                    "label": label,
                    "verifiedAt": datetime.now(timezone.utc).isoformat(),
                }
            )
        )
        tmp.replace(marker)

    def _clear_marker(self, ecosystem: str, deps_hash: str) -> None:
        self.marker_path(ecosystem, deps_hash).unlink(missing_ok=True)

    # ── Install flow ─────────────────────────────────────────────────────────

    async def _install_ecosystem(
        self,
        eco: Ecosystem,
        packages: list[PackageSpec],
        image_id: str,
        label: str,
    ) -> str:
        deps_hash = compute_deps_hash(eco.name, [p.model_dump() for p in packages], image_id)
        volume = self.volume_name(eco.name, deps_hash)

        if await self.is_ready(eco.name, deps_hash):
            logger.info("Dependency cache hit: %s (%s)", volume, label)
            return volume

        if await self._runtime.volume_exists(volume):
            logger.warning("Removing stale %s volume %s (no ready marker)", eco.name, volume)
            await self._runtime.remove_volume(volume)

        lock = FileLock(self.lock_path(eco.name, deps_hash), self._config.lock_stale_seconds)
        if not lock.acquire():
            logger.info("Waiting for concurrent %s install of %s", eco.name, deps_hash)
            await asyncio.sleep(self._config.lock_wait_seconds)
            if await self.is_ready(eco.name, deps_hash):
                return volume
            raise ConcurrentInstallError(
                f"Concurrent {eco.name} install did not complete (hash={deps_hash})"
            )

        try:
            # The previous holder may have finished between our check and our lock.
            if await self.is_ready(eco.name, deps_hash):
                return volume
            await self._build_volume(eco, packages, volume, deps_hash, label)
            return volume
        finally:
            lock.release()

    async def _build_volume(
        self,
        eco: Ecosystem,
        packages: list[PackageSpec],
        volume: str,
        deps_hash: str,
        label: str,
    ) -> None:
        container = f"prep-{eco.name}-{secrets.token_hex(4)}"
        try:
            await self._run_prep(eco, packages, container, volume, deps_hash)
            entries = await self._list_output(eco, volume)
            eco.verify(entries, packages)
            self._write_marker(eco, deps_hash, packages, label)
            logger.info("%s dependencies cached in volume %s", eco.name, volume)
        except Exception:
            self._clear_marker(eco.name, deps_hash)
            await self._runtime.remove_volume(volume)
            raise
        finally:
            await self._runtime.remove_container(container)

    async def _run_prep(
        self,
        eco: Ecosystem,
        packages: list[PackageSpec],
        container: str,
        volume: str,
        deps_hash: str,
    ) -> None:
        cfg = self._config
        command = PrepCommand(
            container_name=container,
            volume=volume,
            image=cfg.runtime_image,
            script=eco.script,
            manifest=eco.manifest(packages),
            memory=cfg.prep_memory,
            pids_limit=cfg.prep_pids_limit,
            network=cfg.prep_network,
            tmpfs=cfg.prep_tmpfs,
        )
        logger.info(
            "Installing %s dependencies via prep container %s (hash=%s, volume=%s)",
            eco.name,
            container,
            deps_hash,
            volume,
        )
        try:
            result = await self._runtime.exec(*command.build(), timeout=cfg.prep_timeout_seconds)
        except CommandTimeout:
            raise PrepContainerTimeout(
                f"{eco.name} prep container {container} timed out after "
                f"{cfg.prep_timeout_seconds}s"
            ) from None

        if result.stdout:
            logger.debug("%s install stdout: %s", eco.name, result.stdout[:_OUTPUT_PREVIEW])
        if result.stderr:
            logger.debug("%s install stderr: %s", eco.name, result.stderr[:_OUTPUT_PREVIEW])
        if not result.ok:
            output = (result.stderr or result.stdout).strip()[-_OUTPUT_PREVIEW:]
            raise DependencyInstallError(
                f"{eco.name} install failed with exit code {result.returncode}: {output}"
            )

    async def _list_output(self, eco: Ecosystem, volume: str) -> list[str] | None:
        """List the install output directory, or None when it does not exist."""
        args = build_listing_command(volume, self._config.runtime_image, eco.output_dir, eco.list_depth)
        try:
            result = await self._runtime.exec(*args, timeout=self._config.command_timeout_seconds * 3)
        except CommandTimeout:
            raise DependencyInstallError(f"Timed out verifying {eco.name} volume {volume}") from None
        if not result.ok:
            return None
        return _relative_entries(result.stdout, eco.output_dir)

    @staticmethod
    def _coerce(deps: SkillDependencies | dict) -> SkillDependencies:
        raw = deps.model_dump(exclude_none=True) if isinstance(deps, SkillDependencies) else deps
        errors = validate_dependencies(raw)
        if errors:
            raise DependencyValidationError(errors)
        if isinstance(deps, SkillDependencies):
            return deps
        return SkillDependencies.model_validate(raw)

"""Sandbox substrate: dependency cache and network policy helper image.

- Content-addressed dependency cache built by restricted prep containers
- Lock file with staleness recovery per cache entry
- Host-side structural verification before an entry is marked ready
- Lazily built iptables helper image for firewalling sandbox containers
"""

from .config import SandboxConfig
from .deps import (
    ConcurrentInstallError,
    DependencyInstallError,
    DependencyInstaller,
    DependencyValidationError,
    PreparedDeps,
    PrepContainerTimeout,
    SkillDependencies,
    validate_dependencies,
)
from .locks import FileLock, compute_deps_hash
from .netpolicy import NetpolicyImage, is_valid_domain
from .runtime import CommandResult, CommandTimeout, ContainerRuntime

__all__ = [
    "CommandResult",
    "CommandTimeout",
    "ConcurrentInstallError",
    "ContainerRuntime",
    "DependencyInstallError",
    "DependencyInstaller",
    "DependencyValidationError",
    "FileLock",
    "NetpolicyImage",
    "PrepContainerTimeout",
    "PreparedDeps",
    "SandboxConfig",
    "SkillDependencies",
    "compute_deps_hash",
    "is_valid_domain",
    "validate_dependencies",
]

"""Lock and hash primitives for the dependency cache.

``compute_deps_hash`` gives every dependency set a content address; two
requests with the same packages, ecosystem, runtime image and host platform
share one cache entry.  ``FileLock`` serialises installs of the same entry
across processes on one host.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import platform
import sys
import time
from pathlib import Path

logger = logging.getLogger(__name__)

# Bump when install flags change to invalidate every cache entry.
CACHE_SCHEMA_VERSION = 1


def host_platform() -> str:
    return f"{sys.platform}-{platform.machine()}"


def compute_deps_hash(
    ecosystem: str,
    packages: list[dict[str, str]],
    image_id: str,
    platform_id: str | None = None,
) -> str:
    """Return a 16-hex-char content address for a dependency set.

    Package order does not matter: packages are sorted before hashing.
    """
    ordered = sorted(
        ({"name": p["name"], "version": p["version"]} for p in packages),
        key=lambda p: (p["name"], p["version"]),
    )
    canonical = json.dumps(
        {
            "schemaVersion": CACHE_SCHEMA_VERSION,
            "ecosystem": ecosystem,
            "packages": ordered,
            "imageId": image_id,
            "platform": platform_id or host_platform(),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]


class FileLock:
    """Exclusive lock file with staleness recovery.

    The lock is the existence of ``path``.  A lock older than
    ``stale_after`` seconds is assumed abandoned by a crashed holder and is
    reclaimed.
    """

    def __init__(self, path: Path, stale_after: float = 600) -> None:
        self.path = path
        self.stale_after = stale_after
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> bool:
        """Try once to take the lock.  Never blocks."""
        if self._try_create():
            return True
        if not self._is_stale():
            return False
        logger.warning("Reclaiming stale lock %s", self.path)
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        return self._try_create()

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        self._held = False

    def _try_create(self) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as fh:
            fh.write(str(os.getpid()))
        self._held = True
        return True

    def _is_stale(self) -> bool:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            # Holder released between our attempt and the stat.
            return True
        return time.time() - mtime > self.stale_after

    def __enter__(self) -> FileLock:
        if not self._held:
            raise RuntimeError(f"Lock {self.path} must be acquired before use as a context")
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()

"""Network policy helper image.

A tiny Alpine image carrying iptables-legacy (more stable than nftables
inside containers).  It is used to apply firewall rules to sandbox
containers.  Built lazily on first use, at most once per process; the
image-existence check runs before every build attempt so an image left by a
previous process is reused.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import TYPE_CHECKING

from motorbox.sandbox.runtime import CommandTimeout

if TYPE_CHECKING:
    from motorbox.sandbox.config import SandboxConfig
    from motorbox.sandbox.runtime import ContainerRuntime

logger = logging.getLogger(__name__)

_DOMAIN_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
_IPV4_RE = re.compile(r"^\d+\.\d+\.\d+\.\d+$")


def is_valid_domain(domain: str) -> bool:
    """Hostname check for firewall allowlists.

    IP literals and wildcards are rejected; allowlists enumerate hostnames.
    """
    if not isinstance(domain, str) or not domain or len(domain) > 253:
        return False
    if _IPV4_RE.match(domain) or "[" in domain or "]" in domain:
        return False
    return bool(_DOMAIN_RE.match(domain))


def render_dockerfile(base_image: str) -> str:
    return "\n".join(
        [
            f"FROM {base_image}",
            "RUN apk add --no-cache iptables-legacy && rm -rf /var/cache/apk/*",
            'ENTRYPOINT ["sh"]',
            "",
        ]
    )


class NetpolicyImage:
    """Ensures the firewall helper image exists."""

    def __init__(self, config: SandboxConfig, runtime: ContainerRuntime) -> None:
        self._config = config
        self._runtime = runtime
        self._built = False
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self._config.netpolicy_image

    @property
    def is_built(self) -> bool:
        return self._built

    async def ensure(self) -> bool:
        """Build the image unless it already exists.

        Returns True when the image is available.  A failed build is logged
        and returns False; the next call tries again.
        """
        if self._built:
            return True

        async with self._lock:
            if self._built:
                return True

            try:
                exists = await self._runtime.image_exists(self.name)
            except CommandTimeout as exc:
                logger.error("Network policy image lookup failed: %s", exc)
                return False
            if exists:
                self._built = True
                return True

            logger.info("Building network policy helper image %s", self.name)
            try:
                result = await self._runtime.build_image(
                    self.name,
                    render_dockerfile(self._config.netpolicy_base_image),
                    timeout=self._config.build_timeout_seconds,
                )
            except CommandTimeout:
                logger.error(
                    "Network policy image build timed out after %ss",
                    self._config.build_timeout_seconds,
                )
                return False

            if not result.ok:
                logger.error(
                    "Failed to build network policy image (exit %d): %s",
                    result.returncode,
                    result.stderr.strip()[-500:],
                )
                return False

            self._built = True
            logger.info("Network policy helper image %s built", self.name)
            return True

    async def remove(self) -> None:
        """Remove the helper image; the next ensure() rebuilds it."""
        async with self._lock:
            if not await self._runtime.remove_image(self.name):
                logger.debug("Network policy image %s was not present", self.name)
            self._built = False

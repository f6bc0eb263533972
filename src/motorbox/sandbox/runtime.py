"""Thin async client for the container engine CLI.

Every call is an argument list handed to ``asyncio.create_subprocess_exec``;
nothing is ever passed through a shell on the host side.  The engine itself
(docker or podman) is an external dependency and is not implemented here.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class CommandTimeout(Exception):
    """A container engine command exceeded its wall-clock timeout."""

    def __init__(self, args: list[str], timeout: float) -> None:
        super().__init__(f"{args[0] if args else 'command'} timed out after {timeout}s")
        self.args_list = args
        self.timeout = timeout


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ContainerRuntime:
    """Runs container engine commands as async subprocesses."""

    def __init__(self, binary: str = "docker", default_timeout: float = 10) -> None:
        self.binary = binary
        self.default_timeout = default_timeout

    async def exec(
        self,
        *args: str,
        timeout: float | None = None,
        input: str | None = None,
    ) -> CommandResult:
        """Run ``<binary> *args`` and return its result.

        On timeout the client process is killed and ``CommandTimeout`` is
        raised.  Killing the client does not stop a named container; callers
        that start one are responsible for removing it.
        """
        cmd = [self.binary, *args]
        limit = timeout if timeout is not None else self.default_timeout
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input.encode() if input is not None else None),
                timeout=limit,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandTimeout(cmd, limit) from None
        return CommandResult(
            returncode=proc.returncode or 0,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

    # ── Images ───────────────────────────────────────────────────────────────

    async def image_exists(self, image: str) -> bool:
        result = await self.exec("image", "inspect", image)
        return result.ok

    async def image_id(self, image: str) -> str:
        """Return the image ID, or ``"unknown"`` when it cannot be inspected."""
        try:
            result = await self.exec("inspect", "--format", "{{.Id}}", image)
        except CommandTimeout:
            return "unknown"
        if not result.ok:
            return "unknown"
        return result.stdout.strip() or "unknown"

    async def build_image(self, tag: str, dockerfile: str, timeout: float) -> CommandResult:
        """Build an image from a Dockerfile fed on stdin (no build context)."""
        return await self.exec("build", "-t", tag, "-", input=dockerfile, timeout=timeout)

    async def remove_image(self, image: str) -> bool:
        result = await self.exec("rmi", image, timeout=30)
        return result.ok

    # ── Volumes ──────────────────────────────────────────────────────────────

    async def volume_exists(self, volume: str) -> bool:
        result = await self.exec("volume", "inspect", volume)
        return result.ok

    async def remove_volume(self, volume: str) -> None:
        """Best-effort forced volume removal."""
        try:
            result = await self.exec("volume", "rm", "-f", volume)
        except CommandTimeout:
            logger.warning("Timed out removing volume %s", volume)
            return
        if not result.ok:
            logger.warning("Failed to remove volume %s: %s", volume, result.stderr.strip())

    # ── Containers ───────────────────────────────────────────────────────────

    async def remove_container(self, name: str) -> None:
        """Best-effort forced container removal."""
        try:
            await self.exec("rm", "-f", name)
        except CommandTimeout:
            logger.warning("Timed out removing container %s", name)

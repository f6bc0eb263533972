"""Shared fixtures: an in-memory container engine and skill tree builders."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from motorbox.sandbox.config import SandboxConfig
from motorbox.sandbox.runtime import CommandResult, CommandTimeout, ContainerRuntime

FAKE_IMAGE_ID = "sha256:0123456789abcdef"


class FakeRuntime(ContainerRuntime):
    """Simulates images, named volumes and prep/listing containers.

    Every argument list is recorded in ``calls``.  Prep containers populate
    their volume from the manifest they receive, unless told otherwise.
    """

    def __init__(self) -> None:
        super().__init__("docker", default_timeout=1)
        self.calls: list[list[str]] = []
        self.images: set[str] = set()
        self.volumes: set[str] = set()
        self.volume_contents: dict[str, dict[str, list[str]]] = {}
        self.removed_containers: list[str] = []

        self.build_result = CommandResult(0, "built", "")
        self.build_timeout = False
        self.inspect_timeout = False
        self.prep_result = CommandResult(0, "installed", "")
        self.prep_timeout = False
        self.produce_output = True
        self.omit_packages: set[str] = set()

    async def exec(self, *args: str, timeout: float | None = None, input: str | None = None) -> CommandResult:
        args_list = list(args)
        self.calls.append(args_list)
        head = args_list[0]

        if args_list[:2] == ["image", "inspect"]:
            if self.inspect_timeout:
                raise CommandTimeout(args_list, timeout or 0)
            return CommandResult(0 if args_list[2] in self.images else 1, "", "")
        if head == "inspect":
            return CommandResult(0, FAKE_IMAGE_ID + "\n", "")
        if head == "build":
            if self.build_timeout:
                raise CommandTimeout(args_list, timeout or 0)
            if self.build_result.ok:
                self.images.add(args_list[2])
            return self.build_result
        if head == "rmi":
            self.images.discard(args_list[1])
            return CommandResult(0, "", "")
        if args_list[:2] == ["volume", "inspect"]:
            return CommandResult(0 if args_list[2] in self.volumes else 1, "", "")
        if args_list[:2] == ["volume", "rm"]:
            self.volumes.discard(args_list[-1])
            self.volume_contents.pop(args_list[-1], None)
            return CommandResult(0, "", "")
        if head == "rm":
            self.removed_containers.append(args_list[-1])
            return CommandResult(0, "", "")
        if head == "run" and "--rm" in args_list:
            return self._listing(args_list)
        if head == "run":
            return self._prep(args_list, timeout)
        raise AssertionError(f"unexpected command: {args_list}")

    # ── helpers ──────────────────────────────────────────────────────────

    @property
    def prep_calls(self) -> list[list[str]]:
        return [c for c in self.calls if c[0] == "run" and "--rm" not in c]

    def _prep(self, args: list[str], timeout: float | None) -> CommandResult:
        volume = _flag_value(args, "-v").split(":")[0]
        self.volumes.add(volume)
        if self.prep_timeout:
            raise CommandTimeout(args, timeout or 0)
        if not self.prep_result.ok or not self.produce_output:
            return self.prep_result

        manifest = _flag_value(args, "-e").split("=", 1)[1]
        if "-npm-" in volume:
            names = list(json.loads(manifest)["dependencies"])
            entries = []
            for name in names:
                if name in self.omit_packages:
                    continue
                if name.startswith("@"):
                    entries.append(name.split("/")[0])
                entries.append(name)
            self.volume_contents[volume] = {"node_modules": entries}
        else:
            entries = []
            for line in manifest.splitlines():
                name, version = line.split("==")
                if name in self.omit_packages:
                    continue
                entries += [name, f"{name}-{version}.dist-info"]
            self.volume_contents[volume] = {"site-packages": entries}
        return self.prep_result

    def _listing(self, args: list[str]) -> CommandResult:
        volume = _flag_value(args, "-v").split(":")[0]
        target = args[args.index("find") + 2]
        output_dir = target.rsplit("/", 1)[1]
        contents = self.volume_contents.get(volume, {})
        if output_dir not in contents:
            return CommandResult(1, "", f"find: {target}: No such file or directory")
        lines = [f"{target}/{entry}" for entry in contents[output_dir]]
        return CommandResult(0, "\n".join(lines) + "\n", "")


def _flag_value(args: list[str], flag: str) -> str:
    return args[args.index(flag) + 1]


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def sandbox_config() -> SandboxConfig:
    return SandboxConfig(lock_wait_seconds=0, runtime_image="motorbox-runtime:test")


# ── Skill trees ──────────────────────────────────────────────────────────────


def write_skill(
    root: Path,
    name: str,
    *,
    declared_name: str | None = None,
    description: str = "Test skill",
    body: str = "# Usage\n\nRun the script.",
    policy: dict | str | None = None,
    files: dict[str, str] | None = None,
) -> Path:
    """Create a skill directory ``root/name`` and return its path."""
    skill_dir = root / name
    skill_dir.mkdir(parents=True, exist_ok=True)
    fm_name = name if declared_name is None else declared_name
    (skill_dir / "SKILL.md").write_text(
        f"---\nname: {fm_name}\ndescription: {description}\n---\n{body}\n"
    )
    if policy is not None:
        text = policy if isinstance(policy, str) else json.dumps(policy)
        (skill_dir / "policy.json").write_text(text)
    for rel, content in (files or {}).items():
        path = skill_dir / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return skill_dir


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "workspace"
    (ws / "skills").mkdir(parents=True)
    return ws


@pytest.fixture
def skills_dir(tmp_path: Path) -> Path:
    d = tmp_path / "data" / "skills"
    d.mkdir(parents=True)
    return d


@pytest.fixture
def make_skill():
    return write_skill

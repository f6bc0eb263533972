"""Skill loading: definition parsing, content hashing and policy persistence.

A skill lives in ``<skills_dir>/<name>/``:

    SKILL.md      YAML frontmatter (name, description, ...) + markdown body
    policy.json   security policy sidecar (see skills.models)
    scripts/ ...  optional supporting files

The directory hash binds an approval to content: when an approved skill's
on-disk hash no longer matches ``provenance.contentHash``, it loads as
``needs_reapproval``.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

import yaml

from motorbox.skills.models import (
    POLICY_FILENAME,
    SKILL_FILENAME,
    FallbackPolicy,
    SkillPolicy,
    SkillTrust,
    parse_policy,
)

logger = logging.getLogger(__name__)

# No leading hyphen, alphanumeric and hyphen only.
SKILL_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]{0,63}$")


class SkillFormatError(ValueError):
    """The definition file is missing or malformed."""


class SkillLoadError(LookupError):
    """A stored skill cannot be loaded."""


@dataclass
class LoadedSkill:
    name: str
    frontmatter: dict[str, Any]
    body: str
    path: Path
    policy: SkillPolicy | None = None

    @property
    def description(self) -> str:
        return str(self.frontmatter.get("description", ""))

    @property
    def trust(self) -> SkillTrust:
        return self.policy.trust if self.policy else SkillTrust.UNKNOWN


def is_valid_skill_name(name: object) -> bool:
    return isinstance(name, str) and bool(SKILL_NAME_RE.match(name))


# ── Definition file ──────────────────────────────────────────────────────────


def parse_skill_file(content: str) -> tuple[dict[str, Any], str]:
    """Split YAML frontmatter from the markdown body.

    Raises SkillFormatError when the frontmatter block is missing, unclosed,
    not valid YAML, or not a mapping.
    """
    lines = content.lstrip().split("\n")
    if not lines or lines[0].strip() != "---":
        raise SkillFormatError(f"{SKILL_FILENAME} must start with --- (YAML frontmatter delimiter)")

    end_idx = next((i for i in range(1, len(lines)) if lines[i].strip() == "---"), None)
    if end_idx is None:
        raise SkillFormatError("Missing closing --- delimiter for YAML frontmatter")

    try:
        fm = yaml.safe_load("\n".join(lines[1:end_idx]))
    except yaml.YAMLError as exc:
        raise SkillFormatError(f"Invalid YAML frontmatter: {exc}") from None
    if fm is None:
        fm = {}
    if not isinstance(fm, dict):
        raise SkillFormatError("Frontmatter must be a YAML mapping")

    body = "\n".join(lines[end_idx + 1 :]).strip()
    return fm, body


def read_skill_file(skill_dir: Path) -> tuple[dict[str, Any], str]:
    path = skill_dir / SKILL_FILENAME
    if not path.is_file() or path.is_symlink():
        raise SkillFormatError(f"No {SKILL_FILENAME} in {skill_dir.name}")
    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise SkillFormatError(f"{SKILL_FILENAME} is not valid UTF-8: {exc.reason}") from None
    return parse_skill_file(content)


# ── Content hashing ──────────────────────────────────────────────────────────


def iter_skill_files(root: Path) -> Iterator[tuple[str, Path]]:
    """Yield (relative posix path, path) for hashable files, sorted.

    Dot-prefixed entries, symlinks and the root policy file are skipped.
    """

    def walk(current: Path, prefix: str) -> Iterator[tuple[str, Path]]:
        for entry in sorted(current.iterdir(), key=lambda p: p.name):
            if entry.name.startswith("."):
                continue
            if not prefix and entry.name == POLICY_FILENAME:
                continue
            if entry.is_symlink():
                continue
            rel = f"{prefix}{entry.name}"
            if entry.is_dir():
                yield from walk(entry, rel + "/")
            elif entry.is_file():
                yield rel, entry

    yield from walk(root, "")


def compute_directory_hash(root: Path) -> str:
    """Return ``sha256:<hex>`` over file paths and contents of a skill tree."""
    digest = hashlib.sha256()
    for rel, path in iter_skill_files(root):
        digest.update(rel.encode())
        digest.update(b"\0")
        digest.update(hashlib.sha256(path.read_bytes()).digest())
    return f"sha256:{digest.hexdigest()}"


# ── Policy persistence ───────────────────────────────────────────────────────


def save_policy(skill_dir: Path, policy: SkillPolicy) -> None:
    """Write policy.json atomically (temp file in the same directory, then rename)."""
    fd, tmp_name = tempfile.mkstemp(dir=skill_dir, prefix=".policy-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(policy.to_json())
        os.replace(tmp_name, skill_dir / POLICY_FILENAME)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def load_policy(skill_dir: Path) -> SkillPolicy | None:
    path = skill_dir / POLICY_FILENAME
    if not path.is_file():
        return None
    result = parse_policy(path.read_bytes())
    if isinstance(result, FallbackPolicy):
        logger.warning("Ignoring unreadable policy for %s: %s", skill_dir.name, result.reason)
        return None
    return result.policy


# ── Store access ─────────────────────────────────────────────────────────────


def load_skill(name: str, skills_dir: Path) -> LoadedSkill:
    """Load a stored skill.

    An approved policy whose content hash no longer matches the tree is
    returned with trust ``needs_reapproval`` (the file is not rewritten).
    """
    if not is_valid_skill_name(name):
        raise SkillLoadError(f"Invalid skill name: {name!r}")
    skill_dir = skills_dir / name
    if not skill_dir.is_dir() or skill_dir.is_symlink():
        raise SkillLoadError(f"Skill not found: {name}")

    try:
        frontmatter, body = read_skill_file(skill_dir)
    except SkillFormatError as exc:
        raise SkillLoadError(f"Failed to load skill {name!r}: {exc}") from None

    policy = load_policy(skill_dir)
    if (
        policy is not None
        and policy.trust == SkillTrust.APPROVED
        and policy.provenance is not None
        and policy.provenance.content_hash
    ):
        current = compute_directory_hash(skill_dir)
        if current != policy.provenance.content_hash:
            logger.warning("Content of approved skill %s changed; approval revoked", name)
            policy = policy.model_copy(update={"trust": SkillTrust.NEEDS_REAPPROVAL})

    return LoadedSkill(name=name, frontmatter=frontmatter, body=body, path=skill_dir, policy=policy)


def discover_skills(skills_dir: Path) -> list[str]:
    """Names of stored skills (directories holding a definition file)."""
    if not skills_dir.is_dir():
        return []
    names = []
    for entry in skills_dir.iterdir():
        if entry.name.startswith(".") or entry.is_symlink() or not entry.is_dir():
            continue
        if (entry / SKILL_FILENAME).is_file():
            names.append(entry.name)
    return sorted(names)

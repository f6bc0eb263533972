"""Skill extraction: ingest skill candidates produced by a motor run.

Every immediate subdirectory of ``<workspace>/<workspace_subdir>`` is a
candidate.  Each is copied into a hidden staging directory inside the skill
store, validated there, given a freshly generated policy, and renamed into
place.  The store never observes a partially written skill.

Validation order (first failure skips the candidate):

    (a) SKILL.md with YAML frontmatter exists
    (b) frontmatter declares a ``name``
    (c) the name equals the directory name
    (d) the name matches SKILL_NAME_RE
    (e) no symlink anywhere in the tree
    (f) no file above ``max_file_bytes``
    (g) total size not above ``max_total_bytes``

Producer-declared trust and approval stamps are discarded; installed
skills always start in ``pending_review``.
"""

from __future__ import annotations

import logging
import os
import secrets
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from motorbox.config import SkillStoreConfig
from motorbox.models import RunEvidence
from motorbox.skills.loader import (
    SkillFormatError,
    compute_directory_hash,
    is_valid_skill_name,
    load_policy,
    read_skill_file,
    save_policy,
)
from motorbox.skills.models import (
    POLICY_FILENAME,
    ExtractedFrom,
    FallbackPolicy,
    PolicyEvidence,
    Provenance,
    SkillPolicy,
    SkillTrust,
    parse_policy,
)

logger = logging.getLogger(__name__)

STAGING_PREFIX = ".staging-"
RETIRED_PREFIX = ".retired-"


class SkillValidationError(ValueError):
    """A candidate failed validation and is skipped."""


@dataclass
class ExtractionResult:
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)


class SkillExtractor:
    """Validates and atomically installs skill candidates."""

    def __init__(self, config: SkillStoreConfig | None = None) -> None:
        self.config = config or SkillStoreConfig()

    async def extract(
        self,
        workspace: Path,
        skills_dir: Path,
        run_id: str,
        evidence: RunEvidence | None = None,
        pending_credentials: dict[str, str] | None = None,
    ) -> ExtractionResult:
        """Ingest every candidate in the workspace.

        Invalid candidates are logged and skipped; only store-level I/O
        errors propagate.
        """
        result = ExtractionResult()
        candidates_dir = Path(workspace) / self.config.workspace_subdir
        skills_dir = Path(skills_dir)

        skills_dir.mkdir(parents=True, exist_ok=True)
        purge_stale_staging(skills_dir)

        if not candidates_dir.is_dir():
            logger.debug("No skill candidates in %s", workspace)
            return result

        for candidate in sorted(candidates_dir.iterdir(), key=lambda p: p.name):
            if candidate.name.startswith("."):
                continue
            if not candidate.is_dir() and not candidate.is_symlink():
                continue
            try:
                outcome = self._ingest(candidate, skills_dir, run_id, evidence, pending_credentials)
            except SkillValidationError as exc:
                logger.warning("Skipping skill candidate %s: %s", candidate.name, exc)
                continue
            except OSError as exc:
                logger.warning("Skipping skill candidate %s: copy failed: %s", candidate.name, exc)
                continue

            if outcome == "created":
                result.created.append(candidate.name)
            elif outcome == "updated":
                result.updated.append(candidate.name)

        if result.created or result.updated:
            logger.info(
                "Skill extraction for run %s: created=%s updated=%s",
                run_id,
                result.created,
                result.updated,
            )
        return result

    # ── Per-candidate ────────────────────────────────────────────────────

    def _ingest(
        self,
        candidate: Path,
        skills_dir: Path,
        run_id: str,
        evidence: RunEvidence | None,
        pending_credentials: dict[str, str] | None,
    ) -> str | None:
        """Install one candidate.  Returns "created", "updated", or None when unchanged."""
        if candidate.is_symlink():
            raise SkillValidationError("candidate directory is a symlink")

        staging = skills_dir / f"{STAGING_PREFIX}{candidate.name}-{secrets.token_hex(4)}"
        try:
            shutil.copytree(candidate, staging, symlinks=True)
            name = self._validate(staging, candidate.name)
            content_hash = compute_directory_hash(staging)
            target = skills_dir / name
            existing = load_policy(target) if target.is_dir() else None

            if target.is_dir() and self._is_unchanged_approved(target, existing, content_hash):
                logger.info("Skill %s unchanged and approved; keeping stored copy", name)
                shutil.rmtree(staging)
                return None

            policy = self._build_policy(
                staging, run_id, content_hash, existing, evidence, pending_credentials
            )
            save_policy(staging, policy)
            updated = self._swap_into_place(staging, target)
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        logger.info("Skill %s %s from run %s", name, "updated" if updated else "created", run_id)
        return "updated" if updated else "created"

    def _validate(self, staged: Path, dir_name: str) -> str:
        try:
            frontmatter, _ = read_skill_file(staged)
        except SkillFormatError as exc:
            raise SkillValidationError(str(exc)) from None

        name = frontmatter.get("name")
        if not isinstance(name, str) or not name:
            raise SkillValidationError("frontmatter does not declare a name")
        if name != dir_name:
            raise SkillValidationError(
                f"declared name {name!r} does not match directory {dir_name!r}"
            )
        if not is_valid_skill_name(name):
            raise SkillValidationError(f"invalid skill name {name!r}")

        total = 0
        for root, dirs, files in os.walk(staged):
            for entry in dirs + files:
                path = Path(root) / entry
                if path.is_symlink():
                    raise SkillValidationError(f"symlink not allowed: {path.relative_to(staged)}")
            for entry in files:
                size = (Path(root) / entry).lstat().st_size
                if size > self.config.max_file_bytes:
                    raise SkillValidationError(
                        f"file {entry} is {size} bytes (limit {self.config.max_file_bytes})"
                    )
                total += size
                if total > self.config.max_total_bytes:
                    raise SkillValidationError(
                        f"skill exceeds total size limit of {self.config.max_total_bytes} bytes"
                    )
        return name

    def _is_unchanged_approved(
        self, target: Path, existing: SkillPolicy | None, content_hash: str
    ) -> bool:
        if not self.config.preserve_approved_on_identical_content:
            return False
        if existing is None or existing.trust != SkillTrust.APPROVED:
            return False
        if existing.provenance is None or existing.provenance.content_hash != content_hash:
            return False
        return compute_directory_hash(target) == content_hash

    def _build_policy(
        self,
        staged: Path,
        run_id: str,
        content_hash: str,
        existing: SkillPolicy | None,
        evidence: RunEvidence | None,
        pending_credentials: dict[str, str] | None,
    ) -> SkillPolicy:
        producer = _read_producer_policy(staged)
        # Without a producer policy, an update keeps the stored permissions.
        if producer is not None:
            base = producer
        elif existing is not None:
            base = existing
        else:
            base = SkillPolicy()

        credential_values = dict(existing.credential_values) if existing else {}
        credential_values.update(pending_credentials or {})

        now = datetime.now(timezone.utc)
        return SkillPolicy(
            trust=SkillTrust.PENDING_REVIEW,
            allowed_tools=list(base.allowed_tools),
            allowed_domains=list(base.allowed_domains),
            required_credentials=list(base.required_credentials),
            credential_values=credential_values,
            dependencies=base.dependencies,
            provenance=Provenance(source=f"run:{run_id}", fetched_at=now, content_hash=content_hash),
            extracted_from=ExtractedFrom(run_id=run_id, timestamp=now),
            run_evidence=(
                PolicyEvidence.model_validate(evidence.model_dump()) if evidence else None
            ),
        )

    @staticmethod
    def _swap_into_place(staging: Path, target: Path) -> bool:
        """Rename staging to target.  Returns True when a stored skill was replaced."""
        if not target.exists():
            os.rename(staging, target)
            return False

        retired = target.parent / f"{RETIRED_PREFIX}{target.name}-{secrets.token_hex(4)}"
        os.rename(target, retired)
        try:
            os.rename(staging, target)
        except OSError:
            os.rename(retired, target)
            raise
        shutil.rmtree(retired, ignore_errors=True)
        return True


def _read_producer_policy(staged: Path) -> SkillPolicy | None:
    path = staged / POLICY_FILENAME
    if not path.is_file():
        return None
    result = parse_policy(path.read_bytes())
    if isinstance(result, FallbackPolicy):
        logger.warning("Ignoring producer policy for %s: %s", staged.name, result.reason)
        return None
    return result.policy


def purge_stale_staging(skills_dir: Path) -> int:
    """Remove staging and retired directories left behind by an interrupted ingestion."""
    removed = 0
    for entry in skills_dir.iterdir():
        if entry.name.startswith((STAGING_PREFIX, RETIRED_PREFIX)) and not entry.is_symlink():
            logger.warning("Removing stale skill staging directory %s", entry.name)
            shutil.rmtree(entry, ignore_errors=True)
            removed += 1
    return removed

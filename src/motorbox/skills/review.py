"""Deterministic security review of a stored skill.

Observed facts only: the policy's declared permissions, evidence recorded
from the producing run, and a file manifest.  No content scanning.
"""

from __future__ import annotations

import fnmatch
import hashlib

from pydantic import BaseModel, Field

from motorbox.skills.loader import LoadedSkill, iter_skill_files
from motorbox.skills.models import ExtractedFrom, PolicyEvidence, Provenance, SkillTrust

# Build artefacts and logs never appear in the manifest.
MANIFEST_EXCLUDE = ("node_modules/*", "*/node_modules/*", "*.log")

TRUST_DESCRIPTIONS = {
    SkillTrust.APPROVED: "approved - user has approved these permissions",
    SkillTrust.PENDING_REVIEW: "pending_review - extracted from a motor run, needs approval",
    SkillTrust.NEEDS_REAPPROVAL: "needs_reapproval - content or permissions changed since last approval",
    SkillTrust.UNKNOWN: "unknown - trust has not been established",
}


class FileManifestEntry(BaseModel):
    path: str
    size_bytes: int
    sha256: str = Field(description="First 16 hex chars of the file's SHA-256")


class SkillReview(BaseModel):
    name: str
    description: str = ""
    trust: str
    domains: list[str] = Field(default_factory=list)
    credentials: list[str] = Field(default_factory=list)
    evidence: PolicyEvidence | None = None
    files: list[FileManifestEntry] = Field(default_factory=list)
    provenance: Provenance | None = None
    extracted_from: ExtractedFrom | None = None


def describe_trust(loaded: LoadedSkill) -> str:
    if loaded.policy is None:
        return "no_policy - skill has no security policy"
    return TRUST_DESCRIPTIONS[loaded.policy.trust]


def build_manifest(loaded: LoadedSkill) -> list[FileManifestEntry]:
    entries = []
    for rel, path in iter_skill_files(loaded.path):
        if any(fnmatch.fnmatch(rel, pattern) for pattern in MANIFEST_EXCLUDE):
            continue
        content = path.read_bytes()
        entries.append(
            FileManifestEntry(
                path=rel,
                size_bytes=len(content),
                sha256=hashlib.sha256(content).hexdigest()[:16],
            )
        )
    return entries


def review_skill(loaded: LoadedSkill) -> SkillReview:
    policy = loaded.policy
    return SkillReview(
        name=str(loaded.frontmatter.get("name", loaded.name)),
        description=loaded.description,
        trust=describe_trust(loaded),
        domains=list(policy.allowed_domains) if policy else [],
        credentials=list(policy.required_credentials) if policy else [],
        evidence=policy.run_evidence if policy else None,
        files=build_manifest(loaded),
        provenance=policy.provenance if policy else None,
        extracted_from=policy.extracted_from if policy else None,
    )

"""Skill policy models.

``policy.json`` is the locally managed security sidecar of a skill.  It is
separate from the skill's definition file: the definition is portable
content, the policy controls runtime permissions and trust.

Trust only becomes ``approved`` through the consent-gated approve action.
Any trust value written by an untrusted producer is discarded on ingestion.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from motorbox.sandbox.deps import SkillDependencies
from motorbox.sandbox.netpolicy import is_valid_domain

POLICY_SCHEMA_VERSION = 1
POLICY_FILENAME = "policy.json"
SKILL_FILENAME = "SKILL.md"

# Tools the motor sub-agent may be granted.
MOTOR_TOOLS = ("read", "write", "list", "glob", "bash", "grep", "patch", "fetch")


class SkillTrust(str, enum.Enum):
    UNKNOWN = "unknown"
    PENDING_REVIEW = "pending_review"
    NEEDS_REAPPROVAL = "needs_reapproval"
    APPROVED = "approved"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Provenance(_CamelModel):
    source: str
    fetched_at: datetime
    content_hash: str | None = None


class ExtractedFrom(_CamelModel):
    run_id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PolicyEvidence(_CamelModel):
    fetched_domains: list[str] = Field(default_factory=list)
    saved_credentials: list[str] = Field(default_factory=list)
    tools_used: list[str] = Field(default_factory=list)
    bash_used: bool = False


class SkillPolicy(_CamelModel):
    """Security policy sidecar (policy.json)."""

    schema_version: int = POLICY_SCHEMA_VERSION
    trust: SkillTrust = SkillTrust.UNKNOWN
    allowed_tools: list[str] = Field(default_factory=list)
    allowed_domains: list[str] = Field(default_factory=list)
    required_credentials: list[str] = Field(default_factory=list)
    # Redacted for display; never returned raw by the skill tool.
    credential_values: dict[str, str] = Field(default_factory=dict)
    dependencies: SkillDependencies | None = None
    provenance: Provenance | None = None
    approved_by: str | None = None
    approved_at: datetime | None = None
    extracted_from: ExtractedFrom | None = None
    run_evidence: PolicyEvidence | None = None

    @field_validator("allowed_tools")
    @classmethod
    def _check_tools(cls, v: list[str]) -> list[str]:
        unknown = [t for t in v if t not in MOTOR_TOOLS]
        if unknown:
            raise ValueError(f"Unknown tools: {', '.join(unknown)}")
        return list(dict.fromkeys(v))

    @field_validator("allowed_domains")
    @classmethod
    def _check_domains(cls, v: list[str]) -> list[str]:
        invalid = [d for d in v if not is_valid_domain(d)]
        if invalid:
            raise ValueError(f"Invalid domains: {', '.join(invalid)}")
        return list(dict.fromkeys(d.lower() for d in v))

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)


# ── Defensive parsing ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ParsedPolicy:
    policy: SkillPolicy


@dataclass(frozen=True)
class FallbackPolicy:
    reason: str


PolicyParseResult = Union[ParsedPolicy, FallbackPolicy]


def parse_policy(text: str | bytes) -> PolicyParseResult:
    """Parse untrusted policy JSON.

    Never raises: any defect yields ``FallbackPolicy`` carrying the reason,
    and the caller generates a minimal policy instead.
    """
    try:
        raw = json.loads(text)
    except ValueError as exc:
        return FallbackPolicy(f"invalid JSON: {exc}")
    if not isinstance(raw, dict):
        return FallbackPolicy("policy must be a JSON object")
    version = raw.get("schemaVersion")
    if version != POLICY_SCHEMA_VERSION:
        return FallbackPolicy(
            f"schema version mismatch: expected {POLICY_SCHEMA_VERSION}, got {version!r}"
        )
    try:
        return ParsedPolicy(SkillPolicy.model_validate(raw))
    except ValidationError as exc:
        return FallbackPolicy(f"invalid policy: {exc.error_count()} validation error(s)")


def sanitize_policy_for_display(policy: SkillPolicy) -> dict:
    """JSON-ready policy with credential values replaced by ``[set]``."""
    data = json.loads(policy.to_json())
    if policy.credential_values:
        data["credentialValues"] = {k: "[set]" for k in policy.credential_values}
    return data

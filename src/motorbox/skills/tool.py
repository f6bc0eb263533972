"""The ``skill`` tool: inspect skills and drive the trust state machine.

    unknown / pending_review ──approve──► approved
    approved ──reject / content or permission change──► needs_reapproval
    needs_reapproval ──approve──► approved
    any ──delete──► (removed)

``list``, ``read`` and ``review`` never mutate and are available to any
caller, including the agent that produced the skill.  Every mutating action
requires a human-originated trigger; a missing context fails closed.
"""

from __future__ import annotations

import enum
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from motorbox.sandbox.deps import KNOWN_ECOSYSTEMS, PackageSpec, SkillDependencies
from motorbox.skills.loader import (
    LoadedSkill,
    SkillLoadError,
    compute_directory_hash,
    discover_skills,
    load_skill,
    save_policy,
)
from motorbox.skills.models import (
    Provenance,
    SkillPolicy,
    SkillTrust,
    sanitize_policy_for_display,
)
from motorbox.skills.review import review_skill

logger = logging.getLogger(__name__)

CONSENT_REQUIRED_MESSAGE = (
    "Skill mutations require user interaction. Present the review (action=\"review\") "
    "and wait for the user to respond before calling approve, reject, delete or update."
)

MUTATING_ACTIONS = frozenset({"approve", "reject", "delete", "update"})


class TriggerType(str, enum.Enum):
    """What caused the current tool invocation."""

    USER_MESSAGE = "user_message"
    AGENT = "agent"
    MOTOR_RESULT = "motor_result"
    THOUGHT = "thought"
    TIMER = "timer"
    SYSTEM = "system"


class ToolContext(BaseModel):
    trigger_type: TriggerType


# ── Tool Parameter Models ────────────────────────────────────────────────────


class DependencyChange(BaseModel):
    """Packages to add to or remove from one ecosystem."""

    ecosystem: Literal["npm", "pip"]
    packages: list[PackageSpec] = Field(min_length=1)


class SkillToolParams(BaseModel):
    action: Literal["list", "read", "review", "approve", "reject", "delete", "update"]
    name: str | None = Field(default=None, description="Skill name (all actions except list)")
    add_domains: list[str] = Field(default_factory=list, description="Domains to allow")
    remove_domains: list[str] = Field(default_factory=list)
    add_tools: list[str] = Field(default_factory=list, description="Motor tools to allow")
    remove_tools: list[str] = Field(default_factory=list)
    add_credentials: list[str] = Field(default_factory=list)
    remove_credentials: list[str] = Field(default_factory=list)
    add_dependencies: list[DependencyChange] = Field(
        default_factory=list,
        description="Exact-pinned packages to add; a package already declared takes the new version",
    )
    remove_dependencies: list[DependencyChange] = Field(
        default_factory=list, description="Packages to remove, matched by name"
    )

    def has_updates(self) -> bool:
        return any(
            (
                self.add_domains,
                self.remove_domains,
                self.add_tools,
                self.remove_tools,
                self.add_credentials,
                self.remove_credentials,
                self.add_dependencies,
                self.remove_dependencies,
            )
        )


class SkillResult(BaseModel):
    success: bool
    error: str | None = None
    consent_required: bool = False
    skill: str | None = None
    skills: list[str] | None = None
    frontmatter: dict[str, Any] | None = None
    body: str | None = None
    policy: dict[str, Any] | None = None
    trust: str | None = None
    review: dict[str, Any] | None = None
    domains: list[str] | None = None
    tools: list[str] | None = None
    credentials: list[str] | None = None
    dependencies: dict[str, Any] | None = None

    @classmethod
    def fail(cls, error: str, **kwargs: Any) -> SkillResult:
        return cls(success=False, error=error, **kwargs)


class SkillTool:
    """Skill store operations exposed to the cognition layer and the CLI."""

    def __init__(self, skills_dir: Path) -> None:
        self.skills_dir = Path(skills_dir)

    async def execute(self, params: SkillToolParams, context: ToolContext | None = None) -> SkillResult:
        if params.action == "list":
            return SkillResult(success=True, skills=discover_skills(self.skills_dir))

        if not params.name:
            return SkillResult.fail("Missing required parameter: name")

        try:
            loaded = load_skill(params.name, self.skills_dir)
        except SkillLoadError as exc:
            return SkillResult.fail(str(exc))

        if params.action == "read":
            return self._read(loaded)
        if params.action == "review":
            review = review_skill(loaded)
            return SkillResult(success=True, skill=loaded.name, review=review.model_dump(mode="json"))

        if context is None or context.trigger_type != TriggerType.USER_MESSAGE:
            logger.warning(
                "Refused skill %s of %s: trigger=%s",
                params.action,
                loaded.name,
                context.trigger_type.value if context else None,
            )
            return SkillResult.fail(CONSENT_REQUIRED_MESSAGE, consent_required=True, skill=loaded.name)

        if params.action == "delete":
            return self._delete(loaded)
        if params.action == "approve":
            return self._approve(loaded)
        if params.action == "reject":
            return self._reject(loaded)
        return self._update(loaded, params)

    # ── Actions ──────────────────────────────────────────────────────────

    def _read(self, loaded: LoadedSkill) -> SkillResult:
        return SkillResult(
            success=True,
            skill=loaded.name,
            frontmatter=loaded.frontmatter,
            body=loaded.body,
            policy=sanitize_policy_for_display(loaded.policy) if loaded.policy else None,
            trust=loaded.policy.trust.value if loaded.policy else "no_policy",
        )

    def _delete(self, loaded: LoadedSkill) -> SkillResult:
        try:
            shutil.rmtree(loaded.path)
        except OSError as exc:
            return SkillResult.fail(f"Failed to delete skill {loaded.name!r}: {exc}")
        logger.info("Skill deleted: %s", loaded.name)
        return SkillResult(success=True, skill=loaded.name)

    def _approve(self, loaded: LoadedSkill) -> SkillResult:
        policy = loaded.policy
        if policy is None:
            return SkillResult.fail(f"Skill {loaded.name!r} has no policy; cannot change trust")
        if policy.trust == SkillTrust.APPROVED:
            return SkillResult.fail(f"Skill {loaded.name!r} is already approved")

        now = datetime.now(timezone.utc)
        # Re-stamp so the next load does not see hash drift.
        current_hash = compute_directory_hash(loaded.path)
        if policy.provenance is not None:
            provenance = policy.provenance.model_copy(update={"content_hash": current_hash})
        else:
            provenance = Provenance(source="local", fetched_at=now, content_hash=current_hash)

        updated = policy.model_copy(
            update={
                "trust": SkillTrust.APPROVED,
                "approved_by": "user",
                "approved_at": now,
                "provenance": provenance,
            }
        )
        save_policy(loaded.path, updated)
        logger.info("Skill approved: %s", loaded.name)
        return self._trust_result(loaded.name, updated)

    def _reject(self, loaded: LoadedSkill) -> SkillResult:
        policy = loaded.policy
        if policy is None:
            return SkillResult.fail(f"Skill {loaded.name!r} has no policy; cannot change trust")

        updated = policy.model_copy(
            update={"trust": SkillTrust.NEEDS_REAPPROVAL, "approved_by": None, "approved_at": None}
        )
        save_policy(loaded.path, updated)
        logger.info("Skill rejected: %s", loaded.name)
        return self._trust_result(loaded.name, updated)

    def _update(self, loaded: LoadedSkill, params: SkillToolParams) -> SkillResult:
        policy = loaded.policy
        if policy is None:
            return SkillResult.fail(f"Skill {loaded.name!r} has no policy; cannot update")
        if not params.has_updates():
            return SkillResult.fail(
                "Update requires at least one of: add_domains, remove_domains, add_tools, "
                "remove_tools, add_credentials, remove_credentials, add_dependencies, "
                "remove_dependencies"
            )

        domains = _merge(policy.allowed_domains, params.add_domains, params.remove_domains)
        tools = _merge(policy.allowed_tools, params.add_tools, params.remove_tools)
        credentials = _merge(
            policy.required_credentials, params.add_credentials, params.remove_credentials
        )
        dependencies = _merge_dependencies(
            policy.dependencies, params.add_dependencies, params.remove_dependencies
        )

        changes: dict[str, Any] = {
            "allowed_domains": domains,
            "allowed_tools": tools,
            "required_credentials": credentials,
            "dependencies": dependencies,
        }
        try:
            # Revalidate: model_copy skips field validators.
            candidate = SkillPolicy.model_validate({**policy.model_dump(), **changes})
        except ValidationError as exc:
            return SkillResult.fail(f"Invalid update: {_first_error(exc)}")

        changed = (
            candidate.allowed_domains != policy.allowed_domains
            or candidate.allowed_tools != policy.allowed_tools
            or candidate.required_credentials != policy.required_credentials
            or _dependency_dump(candidate.dependencies) != _dependency_dump(policy.dependencies)
        )
        if changed and policy.trust == SkillTrust.APPROVED:
            candidate = candidate.model_copy(
                update={"trust": SkillTrust.NEEDS_REAPPROVAL, "approved_by": None, "approved_at": None}
            )
            logger.info("Permissions of approved skill %s changed; reapproval required", loaded.name)

        save_policy(loaded.path, candidate)
        result = self._trust_result(loaded.name, candidate)
        result.credentials = list(candidate.required_credentials)
        result.dependencies = _dependency_dump(candidate.dependencies)
        return result

    @staticmethod
    def _trust_result(name: str, policy: SkillPolicy) -> SkillResult:
        return SkillResult(
            success=True,
            skill=name,
            trust=policy.trust.value,
            domains=list(policy.allowed_domains),
            tools=list(policy.allowed_tools),
        )


def _merge(current: list[str], add: list[str], remove: list[str]) -> list[str]:
    merged = list(dict.fromkeys([*current, *add]))
    removed = set(remove)
    return [item for item in merged if item not in removed]


def _package_key(ecosystem: str, name: str) -> str:
    # pip names compare case-insensitively, matching the duplicate check.
    return name.lower() if ecosystem == "pip" else name


def _merge_dependencies(
    current: SkillDependencies | None,
    add: list[DependencyChange],
    remove: list[DependencyChange],
) -> dict[str, Any] | None:
    """Apply package additions and removals per ecosystem.

    Returns a raw declaration for revalidation, or None when nothing is left.
    """
    merged: dict[str, list[dict[str, str]]] = {
        eco: [p.model_dump() for p in current.packages_for(eco)] if current else []
        for eco in KNOWN_ECOSYSTEMS
    }
    for change in add:
        packages = merged[change.ecosystem]
        for pkg in change.packages:
            key = _package_key(change.ecosystem, pkg.name)
            idx = next(
                (i for i, p in enumerate(packages) if _package_key(change.ecosystem, p["name"]) == key),
                None,
            )
            if idx is None:
                packages.append(pkg.model_dump())
            else:
                packages[idx] = pkg.model_dump()
    for change in remove:
        names = {_package_key(change.ecosystem, pkg.name) for pkg in change.packages}
        merged[change.ecosystem] = [
            p for p in merged[change.ecosystem] if _package_key(change.ecosystem, p["name"]) not in names
        ]
    declared = {eco: {"packages": packages} for eco, packages in merged.items() if packages}
    return declared or None


def _dependency_dump(dependencies: SkillDependencies | None) -> dict[str, Any] | None:
    if dependencies is None or dependencies.is_empty():
        return None
    return dependencies.model_dump(exclude_none=True)


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    return str(errors[0]["msg"]) if errors else str(exc)

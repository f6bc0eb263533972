"""Skill store: extraction from motor runs, trust state machine, review.

Skills are produced by untrusted motor runs and become usable only after a
human approves them through the consent-gated skill tool.
"""

from .extraction import ExtractionResult, SkillExtractor, SkillValidationError
from .loader import (
    LoadedSkill,
    SkillLoadError,
    compute_directory_hash,
    discover_skills,
    load_skill,
    parse_skill_file,
)
from .models import SkillPolicy, SkillTrust, parse_policy, sanitize_policy_for_display
from .review import SkillReview, review_skill
from .tool import (
    DependencyChange,
    SkillResult,
    SkillTool,
    SkillToolParams,
    ToolContext,
    TriggerType,
)

__all__ = [
    "DependencyChange",
    "ExtractionResult",
    "LoadedSkill",
    "SkillExtractor",
    "SkillLoadError",
    "SkillPolicy",
    "SkillResult",
    "SkillReview",
    "SkillTool",
    "SkillToolParams",
    "SkillTrust",
    "SkillValidationError",
    "ToolContext",
    "TriggerType",
    "compute_directory_hash",
    "discover_skills",
    "load_skill",
    "parse_policy",
    "parse_skill_file",
    "review_skill",
    "sanitize_policy_for_display",
]

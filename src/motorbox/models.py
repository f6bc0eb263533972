"""Core data models for motor runs."""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    """Naive timestamps are taken as UTC so stored runs always compare."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Run Status ───────────────────────────────────────────────────────────────


class RunStatus(str, enum.Enum):
    """Motor run lifecycle states.

    created → running → awaiting_input/awaiting_approval → completed
                      ↘ failed / cancelled
    """

    CREATED = "created"
    RUNNING = "running"
    AWAITING_INPUT = "awaiting_input"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Statuses that occupy the single active-run slot.
ACTIVE_STATUSES = frozenset({RunStatus.CREATED, RunStatus.RUNNING, RunStatus.AWAITING_INPUT})


class AttemptStatus(str, enum.Enum):
    RUNNING = "running"
    AWAITING_INPUT = "awaiting_input"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureCategory(str, enum.Enum):
    TOOL_FAILURE = "tool_failure"
    MODEL_FAILURE = "model_failure"
    INFRA_FAILURE = "infra_failure"
    BUDGET_EXHAUSTED = "budget_exhausted"
    INVALID_TASK = "invalid_task"
    UNKNOWN = "unknown"


DEFAULT_MAX_ATTEMPTS = 3


# ── Attempts ─────────────────────────────────────────────────────────────────


class ToolCallRecord(BaseModel):
    """One tool invocation made by the sub-agent during an attempt."""

    tool: str
    args: dict = Field(default_factory=dict)
    ok: bool = True
    error_code: str | None = None


class FailureSummary(BaseModel):
    category: FailureCategory = FailureCategory.UNKNOWN
    retryable: bool = False
    last_error_code: str | None = None
    hint: str | None = None


class MotorAttempt(BaseModel):
    """A single attempt within a run.  Each retry is a new attempt."""

    id: str = Field(description="Attempt identifier, e.g. 'att_0'")
    index: int = 0
    status: AttemptStatus = AttemptStatus.RUNNING
    step_cursor: int = 0
    max_iterations: int = 20
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    failure: FailureSummary | None = None
    pending_question: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @field_validator("started_at", "completed_at")
    @classmethod
    def _normalize_timestamps(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)


# ── Run Record ───────────────────────────────────────────────────────────────


class MotorRun(BaseModel):
    """A motor run: complete persisted execution state."""

    id: str
    task: str
    tools: list[str] = Field(default_factory=list)
    status: RunStatus = RunStatus.CREATED
    attempts: list[MotorAttempt] = Field(default_factory=list)
    current_attempt_index: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None
    energy_consumed: float = 0.0
    skill: str | None = Field(default=None, description="Skill being executed, if any")
    domains: list[str] = Field(default_factory=list, description="Allowed network domains")

    @field_validator("started_at", "completed_at")
    @classmethod
    def _normalize_timestamps(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def current_attempt(self) -> MotorAttempt | None:
        if 0 <= self.current_attempt_index < len(self.attempts):
            return self.attempts[self.current_attempt_index]
        return None


# ── Run Evidence ─────────────────────────────────────────────────────────────


class RunEvidence(BaseModel):
    """Deterministic observations from a run's tool calls.

    Shown in skill reviews.  When bash was used, network activity beyond the
    fetch tool is unobservable.
    """

    fetched_domains: list[str] = Field(default_factory=list)
    saved_credentials: list[str] = Field(default_factory=list)
    tools_used: list[str] = Field(default_factory=list)
    bash_used: bool = False

    @classmethod
    def from_run(cls, run: MotorRun) -> RunEvidence:
        domains: set[str] = set()
        credentials: set[str] = set()
        tools: set[str] = set()
        for attempt in run.attempts:
            for call in attempt.tool_calls:
                tools.add(call.tool)
                if call.tool == "fetch":
                    host = urlparse(str(call.args.get("url", ""))).hostname
                    if host:
                        domains.add(host.lower())
                elif call.tool == "save_credential":
                    name = call.args.get("name")
                    if isinstance(name, str) and name:
                        credentials.add(name)
        return cls(
            fetched_domains=sorted(domains),
            saved_credentials=sorted(credentials),
            tools_used=sorted(tools),
            bash_used="bash" in tools,
        )

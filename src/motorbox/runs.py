"""Run State Manager: SQLite-backed persistence for motor runs.

All runs live in one JSON document under a fixed storage key.  Writers
reload, merge and write back with a compare-and-swap on the document's
version number, so concurrent updaters cannot clobber each other; the loser
reloads and retries.  Every create/update is committed immediately because
these are the safety-critical transition points.

The single active-run rule is enforced inside the same CAS write: a run may
only enter an active status (created, running, awaiting_input) while no
other run holds one.
"""

from __future__ import annotations

import json
import logging
from typing import Callable

import aiosqlite

from motorbox.models import ACTIVE_STATUSES, MotorRun, RunStatus

logger = logging.getLogger(__name__)

MOTOR_RUNS_KEY = "motor-runs"

SCHEMA = """
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""


class RunNotFoundError(LookupError):
    """Update of a run id that is not stored (a caller bug)."""


class ActiveRunConflictError(RuntimeError):
    """Another run already occupies the active-run slot."""

    def __init__(self, run_id: str, active_id: str) -> None:
        super().__init__(f"Cannot activate run {run_id}: run {active_id} is already active")
        self.run_id = run_id
        self.active_id = active_id


class ConcurrentUpdateError(RuntimeError):
    """Compare-and-swap retries were exhausted."""


class RunStateManager:
    """CRUD over MotorRun records with async SQLite access."""

    def __init__(self, db_path: str, max_cas_retries: int = 5) -> None:
        self.db_path = db_path
        self.max_cas_retries = max_cas_retries
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open database and create tables."""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        await self._db.commit()
        logger.info("Run store initialized: %s", self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Run store not initialized; call initialize() first")
        return self._db

    # ── CRUD ─────────────────────────────────────────────────────────────

    async def create_run(self, run: MotorRun) -> MotorRun:
        """Persist a new run."""

        def apply(runs: list[MotorRun]) -> list[MotorRun]:
            if any(r.id == run.id for r in runs):
                raise ValueError(f"Run already exists: {run.id}")
            if run.is_active:
                active = _first_active(runs)
                if active is not None:
                    raise ActiveRunConflictError(run.id, active.id)
            return [*runs, run]

        await self._mutate(apply)
        logger.info("Motor run created: %s (task=%r)", run.id, run.task[:80])
        return run

    async def update_run(self, run: MotorRun) -> None:
        """Replace an existing run.  Raises RunNotFoundError for unknown ids."""

        def apply(runs: list[MotorRun]) -> list[MotorRun]:
            index = next((i for i, r in enumerate(runs) if r.id == run.id), None)
            if index is None:
                raise RunNotFoundError(f"Run not found: {run.id}")
            if run.is_active:
                others = [r for r in runs if r.id != run.id]
                active = _first_active(others)
                if active is not None:
                    raise ActiveRunConflictError(run.id, active.id)
            updated = list(runs)
            updated[index] = run
            return updated

        await self._mutate(apply)
        logger.debug("Motor run updated: %s (status=%s)", run.id, run.status.value)

    async def get_run(self, run_id: str) -> MotorRun | None:
        runs, _ = await self._load()
        return next((r for r in runs if r.id == run_id), None)

    async def list_runs(self, status: RunStatus | None = None) -> list[MotorRun]:
        """List runs, newest first, optionally filtered by status."""
        runs, _ = await self._load()
        if status is not None:
            runs = [r for r in runs if r.status == status]
        return sorted(runs, key=lambda r: r.started_at, reverse=True)

    async def get_active_run(self) -> MotorRun | None:
        """Return the single run in created/running/awaiting_input, if any.

        Stores written before the mutex was enforced may hold several; the
        most recently started one wins (ties broken by id) and the anomaly
        is logged.
        """
        runs, _ = await self._load()
        active = sorted(
            (r for r in runs if r.status in ACTIVE_STATUSES),
            key=lambda r: (r.started_at, r.id),
            reverse=True,
        )
        if len(active) > 1:
            logger.warning(
                "Multiple active runs stored (%s); using %s",
                ", ".join(r.id for r in active),
                active[0].id,
            )
        return active[0] if active else None

    # ── Storage ──────────────────────────────────────────────────────────

    async def _load(self) -> tuple[list[MotorRun], int | None]:
        """Return (runs, version); version is None when the key is absent."""
        cursor = await self.db.execute(
            "SELECT value, version FROM kv_store WHERE key = ?", (MOTOR_RUNS_KEY,)
        )
        row = await cursor.fetchone()
        if row is None:
            return [], None

        try:
            data = json.loads(row["value"])
            raw_runs = data["runs"]
            if not isinstance(raw_runs, list):
                raise TypeError("runs is not a list")
            runs = [MotorRun.model_validate(r) for r in raw_runs]
        except (ValueError, KeyError, TypeError):
            logger.warning("Invalid stored runs structure under %s, resetting", MOTOR_RUNS_KEY)
            return [], row["version"]
        return runs, row["version"]

    async def _mutate(self, apply: Callable[[list[MotorRun]], list[MotorRun]]) -> None:
        for attempt in range(self.max_cas_retries):
            runs, version = await self._load()
            updated = apply(runs)
            if await self._compare_and_swap(updated, version):
                return
            logger.debug("Run store version conflict, retrying (attempt %d)", attempt + 1)
        raise ConcurrentUpdateError(
            f"Run store update lost {self.max_cas_retries} version races"
        )

    async def _compare_and_swap(self, runs: list[MotorRun], version: int | None) -> bool:
        payload = json.dumps({"runs": [r.model_dump(mode="json") for r in runs]})
        if version is None:
            cursor = await self.db.execute(
                "INSERT OR IGNORE INTO kv_store (key, value, version) VALUES (?, ?, 1)",
                (MOTOR_RUNS_KEY, payload),
            )
        else:
            cursor = await self.db.execute(
                "UPDATE kv_store SET value = ?, version = version + 1, "
                "updated_at = CURRENT_TIMESTAMP WHERE key = ? AND version = ?",
                (payload, MOTOR_RUNS_KEY, version),
            )
        # Explicit flush: never defer a run transition.
        await self.db.commit()
        return cursor.rowcount == 1


def _first_active(runs: list[MotorRun]) -> MotorRun | None:
    return next((r for r in runs if r.status in ACTIVE_STATUSES), None)

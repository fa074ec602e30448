"""Execution plans: a fixed four-phase, dependency-chained decomposition."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypedDict

from agentctl.errors import DuplicatePlanError, PlanNotFoundError
from agentctl.store import JsonDocumentStore, utcnow

VALID_PHASE_STATUSES = {"pending", "in_progress", "completed", "failed", "skipped"}
PHASE_FINISHED_STATUSES = {"completed", "failed", "skipped"}

IMPLEMENTATION_LOC_BASE = 50
TESTING_LOC_BASE = 30
WORDS_PER_COMPLEXITY_STEP = 15
MIN_COMPLEXITY = 2
MAX_COMPLEXITY = 5


class PlanPhase(TypedDict):
    name: str
    description: str
    status: str
    estimated_loc: int
    dependencies: list[int]
    started_at: str | None
    completed_at: str | None


class ExecutionPlan(TypedDict):
    task_id: str
    description: str
    phases: list[PlanPhase]
    created_at: str
    updated_at: str


@dataclass
class PlanValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


def estimate_complexity(description: str) -> int:
    """Word-count-derived complexity factor, clamped to [2, 5]."""
    words = len(description.split())
    return min(MAX_COMPLEXITY, max(MIN_COMPLEXITY, math.ceil(words / WORDS_PER_COMPLEXITY_STEP)))


def _phase(name: str, description: str, loc: int, dependencies: list[int]) -> PlanPhase:
    return PlanPhase(
        name=name,
        description=description,
        status="pending",
        estimated_loc=loc,
        dependencies=dependencies,
        started_at=None,
        completed_at=None,
    )


def generate_phases(description: str) -> list[PlanPhase]:
    complexity = estimate_complexity(description)
    return [
        _phase("Analysis", "Analyze requirements and identify affected files", 0, []),
        _phase(
            "Implementation",
            "Write the core implementation",
            complexity * IMPLEMENTATION_LOC_BASE,
            [0],
        ),
        _phase("Testing", "Add or update tests for the changes", complexity * TESTING_LOC_BASE, [1]),
        _phase("Verification", "Run full verification suite", 0, [2]),
    ]


def validate_phases(phases: list[PlanPhase]) -> list[str]:
    """Return human-readable problems with *phases*; never raises."""
    errors: list[str] = []
    count = len(phases)
    for i, phase in enumerate(phases):
        for dep in phase.get("dependencies", []):
            if not isinstance(dep, int) or dep < 0 or dep >= count:
                errors.append(f'Phase {i} ("{phase["name"]}") has invalid dependency index: {dep}')
                continue
            if dep >= i:
                errors.append(
                    f'Phase {i} ("{phase["name"]}") depends on phase {dep} which comes later'
                )
            dependency = phases[dep]
            if phase["status"] == "in_progress" and dependency["status"] != "completed":
                errors.append(
                    f'Phase {i} ("{phase["name"]}") is in_progress but dependency phase '
                    f'{dep} ("{dependency["name"]}") is {dependency["status"]}'
                )
    return errors


class ExecutionPlanManager:
    """One plan per task id, persisted in ``plans.json``."""

    def __init__(self, path: Path) -> None:
        self._store = JsonDocumentStore(path, "plans")

    async def create_plan(self, task_id: str, description: str) -> ExecutionPlan:
        plans = await self._store.aload()
        if task_id in plans:
            raise DuplicatePlanError(f"Execution plan already exists for task_id={task_id}")
        now = utcnow()
        plan = ExecutionPlan(
            task_id=task_id,
            description=description.strip(),
            phases=generate_phases(description),
            created_at=now,
            updated_at=now,
        )
        plans[task_id] = plan
        await self._store.asave(plans)
        return plan

    async def get_plan(self, task_id: str) -> ExecutionPlan | None:
        plans = await self._store.aload()
        return plans.get(task_id)

    async def list_plans(self) -> list[ExecutionPlan]:
        plans = await self._store.aload()
        return list(plans.values())

    async def update_phase_status(
        self, task_id: str, phase_index: int, status: str
    ) -> ExecutionPlan:
        if status not in VALID_PHASE_STATUSES:
            raise ValueError(f"Invalid phase status '{status}'")
        plans = await self._store.aload()
        plan = plans.get(task_id)
        if plan is None:
            raise PlanNotFoundError(f"No execution plan found for task_id={task_id}")
        phases = plan["phases"]
        if phase_index < 0 or phase_index >= len(phases):
            raise IndexError(f"Phase index {phase_index} out of range (0-{len(phases) - 1})")

        phase = phases[phase_index]
        now = utcnow()
        if status == "in_progress" and not phase.get("started_at"):
            phase["started_at"] = now
        if status in PHASE_FINISHED_STATUSES:
            phase["completed_at"] = now
        phase["status"] = status
        plan["updated_at"] = now
        await self._store.asave(plans)
        return plan

    async def validate_plan(self, task_id: str) -> PlanValidation:
        plan = await self.get_plan(task_id)
        if plan is None:
            return PlanValidation(valid=False, errors=[f"No plan found for task_id={task_id}"])
        errors = validate_phases(plan["phases"])
        return PlanValidation(valid=not errors, errors=errors)

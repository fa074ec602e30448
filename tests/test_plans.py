"""Tests for execution plans."""

from __future__ import annotations

import pytest

from agentctl.errors import DuplicatePlanError, PlanNotFoundError
from agentctl.plans import ExecutionPlanManager, estimate_complexity, generate_phases, validate_phases


@pytest.fixture()
def plans(state_dir):
    return ExecutionPlanManager(state_dir / "plans.json")


@pytest.mark.parametrize(
    ("words", "expected"),
    [(1, 2), (15, 2), (31, 3), (60, 4), (500, 5)],
)
def test_estimate_complexity_clamped(words, expected):
    assert estimate_complexity(" ".join(["word"] * words)) == expected


def test_implementation_estimate_never_shrinks_with_longer_descriptions():
    estimates = [
        generate_phases(" ".join(["word"] * words))[1]["estimated_loc"] for words in range(1, 201)
    ]
    assert estimates == sorted(estimates)
    assert estimates[0] == 100
    assert estimates[-1] == 250


def test_generate_phases_shape():
    phases = generate_phases(" ".join(["word"] * 45))  # complexity 3
    assert [p["name"] for p in phases] == ["Analysis", "Implementation", "Testing", "Verification"]
    assert [p["dependencies"] for p in phases] == [[], [0], [1], [2]]
    assert [p["estimated_loc"] for p in phases] == [0, 150, 90, 0]
    assert all(p["status"] == "pending" for p in phases)


def test_validate_phases_reports_problems():
    phases = generate_phases("short")
    phases[0]["dependencies"] = [3]
    phases[2]["dependencies"] = [7]
    errors = validate_phases(phases)
    assert any("depends on phase 3 which comes later" in e for e in errors)
    assert any("invalid dependency index: 7" in e for e in errors)


@pytest.mark.asyncio
async def test_create_and_duplicate(plans):
    plan = await plans.create_plan("t1", "  Add a cache layer  ")
    assert plan["description"] == "Add a cache layer"
    assert len(plan["phases"]) == 4
    with pytest.raises(DuplicatePlanError):
        await plans.create_plan("t1", "again")


@pytest.mark.asyncio
async def test_update_phase_status_stamps_times(plans):
    await plans.create_plan("t1", "Add a cache layer")
    plan = await plans.update_phase_status("t1", 0, "in_progress")
    started = plan["phases"][0]["started_at"]
    assert started is not None
    assert plan["phases"][0]["completed_at"] is None

    plan = await plans.update_phase_status("t1", 0, "in_progress")
    assert plan["phases"][0]["started_at"] == started

    plan = await plans.update_phase_status("t1", 0, "completed")
    assert plan["phases"][0]["completed_at"] is not None


@pytest.mark.asyncio
async def test_update_phase_status_errors(plans):
    with pytest.raises(PlanNotFoundError):
        await plans.update_phase_status("missing", 0, "completed")
    await plans.create_plan("t1", "x")
    with pytest.raises(IndexError):
        await plans.update_phase_status("t1", 4, "completed")
    with pytest.raises(ValueError):
        await plans.update_phase_status("t1", 0, "done")


@pytest.mark.asyncio
async def test_in_progress_before_dependency_is_reported(plans):
    await plans.create_plan("t1", "x")
    # Not enforced on update; surfaced by validation.
    await plans.update_phase_status("t1", 2, "in_progress")
    validation = await plans.validate_plan("t1")
    assert validation.valid is False
    assert "dependency phase 1" in validation.errors[0]

    await plans.update_phase_status("t1", 1, "completed")
    assert (await plans.validate_plan("t1")).valid is True


@pytest.mark.asyncio
async def test_validate_missing_plan(plans):
    validation = await plans.validate_plan("missing")
    assert validation.valid is False
    assert validation.errors == ["No plan found for task_id=missing"]

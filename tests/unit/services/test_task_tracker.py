"""Unit tests for TaskTracker."""

from __future__ import annotations

from typing import Any

import pytest

from job_board_service.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from job_board_service.services.task_tracker import TaskTracker
from tests.unit.services.conftest import (
    POSTER_ID,
    WORKER_ID,
    Components,
    create_assigned_job,
    create_open_job,
    create_started_job,
    job_payload,
    save_card,
)


async def _draft(c: Components) -> dict[str, Any]:
    await save_card(c)
    return await c.jobs.create_job(POSTER_ID, job_payload(save_as_draft=True))


@pytest.mark.unit
def test_summarize_empty_checklist_is_complete() -> None:
    summary = TaskTracker.summarize([])

    assert summary == {
        "total": 0,
        "completed": 0,
        "percentage": 100,
        "bonus_total": "0.00",
        "bonus_earned": "0.00",
    }


@pytest.mark.unit
def test_summarize_counts_completed_and_bonus() -> None:
    tasks = [
        {"is_completed": 1, "bonus_amount": 250},
        {"is_completed": 0, "bonus_amount": 100},
        {"is_completed": 0, "bonus_amount": 0},
    ]

    summary = TaskTracker.summarize(tasks)

    assert summary["completed"] == 1
    assert summary["percentage"] == 33
    assert summary["bonus_total"] == "3.50"
    assert summary["bonus_earned"] == "2.50"


@pytest.mark.unit
async def test_add_task_bumps_version(components: Components) -> None:
    draft = await _draft(components)

    job = components.tasks.add_task(
        draft["job_id"],
        POSTER_ID,
        {"version": 1, "description": "Sand the panels", "bonus_amount": "2.00"},
    )

    assert job["version"] == 2
    assert [task["description"] for task in job["tasks"]] == ["Sand the panels"]
    assert job["tasks"][0]["bonus_amount"] == "2.00"
    assert job["tasks"][0]["position"] == 0


@pytest.mark.unit
async def test_add_task_to_open_job_allowed(components: Components) -> None:
    job = await create_open_job(components)

    updated = components.tasks.add_task(
        job["job_id"], POSTER_ID, {"version": job["version"], "description": "Sweep up"}
    )

    assert updated["progress"]["total"] == 1


@pytest.mark.unit
async def test_add_task_with_stale_version(components: Components) -> None:
    draft = await _draft(components)
    components.tasks.add_task(draft["job_id"], POSTER_ID, {"version": 1, "description": "A"})

    with pytest.raises(StateConflictError) as exc_info:
        components.tasks.add_task(draft["job_id"], POSTER_ID, {"version": 1, "description": "B"})

    assert exc_info.value.error == "VERSION_CONFLICT"


@pytest.mark.unit
async def test_tasks_locked_after_assignment(components: Components) -> None:
    job = await create_assigned_job(components)

    with pytest.raises(StateConflictError) as exc_info:
        components.tasks.add_task(
            job["job_id"], POSTER_ID, {"version": job["version"], "description": "Late"}
        )

    assert exc_info.value.error == "TASKS_LOCKED"


@pytest.mark.unit
async def test_task_limit_enforced(components: Components) -> None:
    draft = await _draft(components)
    version = draft["version"]
    for index in range(5):
        job = components.tasks.add_task(
            draft["job_id"], POSTER_ID, {"version": version, "description": f"Task {index}"}
        )
        version = job["version"]

    with pytest.raises(ValidationError) as exc_info:
        components.tasks.add_task(
            draft["job_id"], POSTER_ID, {"version": version, "description": "One too many"}
        )

    assert exc_info.value.error == "TOO_MANY_TASKS"


@pytest.mark.unit
async def test_initial_task_list_limit_enforced(components: Components) -> None:
    await save_card(components)
    tasks = [{"description": f"Task {index}"} for index in range(6)]

    with pytest.raises(ValidationError) as exc_info:
        await components.jobs.create_job(POSTER_ID, job_payload(tasks=tasks))

    assert exc_info.value.error == "TOO_MANY_TASKS"


@pytest.mark.unit
async def test_remove_task(components: Components) -> None:
    draft = await _draft(components)
    job = components.tasks.add_task(
        draft["job_id"], POSTER_ID, {"version": 1, "description": "Remove me"}
    )
    task_id = job["tasks"][0]["task_id"]

    updated = components.tasks.remove_task(
        draft["job_id"], task_id, POSTER_ID, {"version": job["version"]}
    )

    assert updated["tasks"] == []
    assert updated["version"] == job["version"] + 1


@pytest.mark.unit
async def test_remove_task_of_other_job(components: Components) -> None:
    draft = await _draft(components)
    other = await components.jobs.create_job(POSTER_ID, job_payload(save_as_draft=True))
    job = components.tasks.add_task(
        other["job_id"], POSTER_ID, {"version": 1, "description": "Elsewhere"}
    )

    with pytest.raises(NotFoundError) as exc_info:
        components.tasks.remove_task(
            draft["job_id"], job["tasks"][0]["task_id"], POSTER_ID, {"version": 1}
        )

    assert exc_info.value.error == "TASK_NOT_FOUND"


@pytest.mark.unit
async def test_only_poster_edits_tasks(components: Components) -> None:
    draft = await _draft(components)

    with pytest.raises(AuthorizationError):
        components.tasks.add_task(draft["job_id"], WORKER_ID, {"version": 1, "description": "X"})


@pytest.mark.unit
async def test_complete_tasks_publishes_progress(components: Components) -> None:
    job = await create_started_job(
        components, tasks=[{"description": "One"}, {"description": "Two", "bonus_amount": "4.00"}]
    )
    queue = components.events.subscribe(job["job_id"])
    first, second = (task["task_id"] for task in job["tasks"])

    halfway = components.tasks.complete_task(first, WORKER_ID)
    done = components.tasks.complete_task(second, WORKER_ID)

    assert halfway["progress"]["percentage"] == 50
    assert done["progress"]["percentage"] == 100
    assert done["progress"]["bonus_earned"] == "4.00"
    assert done["version"] == job["version"]
    types = [queue.get_nowait()["type"] for _ in range(queue.qsize())]
    assert types == ["task_completed", "task_completed", "all_tasks_completed"]


@pytest.mark.unit
async def test_complete_task_twice_is_noop(components: Components) -> None:
    job = await create_started_job(components, tasks=[{"description": "Only"}])
    task_id = job["tasks"][0]["task_id"]
    components.tasks.complete_task(task_id, WORKER_ID)
    queue = components.events.subscribe(job["job_id"])

    again = components.tasks.complete_task(task_id, WORKER_ID)

    assert again["progress"]["completed"] == 1
    assert queue.empty()


@pytest.mark.unit
async def test_complete_task_requires_in_progress(components: Components) -> None:
    job = await create_assigned_job(components, tasks=[{"description": "Only"}])

    with pytest.raises(StateConflictError) as exc_info:
        components.tasks.complete_task(job["tasks"][0]["task_id"], WORKER_ID)

    assert exc_info.value.error == "JOB_NOT_IN_PROGRESS"


@pytest.mark.unit
async def test_complete_task_requires_assigned_worker(components: Components) -> None:
    job = await create_started_job(components, tasks=[{"description": "Only"}])

    with pytest.raises(AuthorizationError):
        components.tasks.complete_task(job["tasks"][0]["task_id"], POSTER_ID)


@pytest.mark.unit
async def test_list_tasks(components: Components) -> None:
    job = await create_open_job(components, tasks=[{"description": "Only"}])

    listed = components.tasks.list_tasks(job["job_id"])

    assert listed["job_id"] == job["job_id"]
    assert len(listed["tasks"]) == 1
    assert listed["progress"]["total"] == 1

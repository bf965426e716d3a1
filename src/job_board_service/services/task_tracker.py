"""Sub-task checklist of a job and its completion and bonus accounting."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

from job_board_service.core.exceptions import NotFoundError, StateConflictError, ValidationError
from job_board_service.logging import get_logger
from job_board_service.services.job_guards import (
    job_status,
    load_job,
    require_assigned_worker,
    require_poster,
    version_conflict,
)
from job_board_service.services.job_status import PRE_ASSIGNMENT_STATUSES, JobStatus
from job_board_service.services.payload_fields import (
    format_cents,
    now_iso,
    optional_str,
    parse_amount,
    require_str,
    require_version,
    to_cents,
)
from job_board_service.services.views import job_to_response, task_to_response

if TYPE_CHECKING:
    from job_board_service.services.job_events import JobEventBus
    from job_board_service.services.job_store import JobStore


class TaskTracker:
    """
    Owns the tasks attached to a job.

    The poster edits the checklist before assignment; the assigned worker
    ticks tasks off while the job is in progress. Completing the last task
    publishes ``all_tasks_completed`` so consumers can prompt for job
    completion. It never completes the job by itself.
    """

    def __init__(
        self,
        store: JobStore,
        events: JobEventBus,
        max_tasks_per_job: int,
        max_description_length: int,
        max_location_length: int,
    ) -> None:
        self._store = store
        self._events = events
        self._max_tasks_per_job = max_tasks_per_job
        self._max_description_length = max_description_length
        self._max_location_length = max_location_length
        self._logger = get_logger(__name__)

    def _parse_task(self, raw: object) -> dict[str, Any]:
        if not isinstance(raw, dict):
            raise ValidationError("INVALID_PAYLOAD", "Each task must be a JSON object")
        bonus = raw.get("bonus_amount")
        return {
            "description": require_str(
                raw, "description", max_length=self._max_description_length
            ),
            "location": optional_str(raw, "location", max_length=self._max_location_length),
            "bonus_amount": 0
            if bonus is None
            else to_cents(parse_amount(bonus, "bonus_amount", allow_zero=True)),
        }

    def build_tasks(self, job_id: str, raw_tasks: object, timestamp: str) -> list[dict[str, Any]]:
        """Validate the initial checklist given at job creation."""
        if raw_tasks is None:
            return []
        if not isinstance(raw_tasks, list):
            raise ValidationError("INVALID_PAYLOAD", "tasks must be a list")
        if len(raw_tasks) > self._max_tasks_per_job:
            raise ValidationError(
                "TOO_MANY_TASKS",
                f"A job may have at most {self._max_tasks_per_job} tasks",
            )
        tasks = []
        for position, raw in enumerate(raw_tasks):
            fields = self._parse_task(raw)
            tasks.append(
                {
                    "task_id": f"task-{uuid.uuid4()}",
                    "job_id": job_id,
                    "position": position,
                    "is_completed": 0,
                    "completed_by": None,
                    "completed_at": None,
                    "created_at": timestamp,
                    **fields,
                }
            )
        return tasks

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    @staticmethod
    def summarize(tasks: list[dict[str, Any]]) -> dict[str, Any]:
        """
        Completion and bonus figures of a checklist.

        A job without tasks counts as 100% complete.
        """
        total = len(tasks)
        completed = sum(1 for task in tasks if task["is_completed"])
        bonus_total = sum(task["bonus_amount"] for task in tasks)
        bonus_earned = sum(task["bonus_amount"] for task in tasks if task["is_completed"])
        return {
            "total": total,
            "completed": completed,
            "percentage": 100 if total == 0 else completed * 100 // total,
            "bonus_total": format_cents(bonus_total),
            "bonus_earned": format_cents(bonus_earned),
        }

    def progress(self, job_id: str) -> dict[str, Any]:
        """Progress of a job's checklist."""
        return self.summarize(self._store.list_tasks(job_id))

    def all_completed(self, job_id: str) -> bool:
        summary = self.progress(job_id)
        return bool(summary["completed"] == summary["total"])

    def render_job(self, job: dict[str, Any]) -> dict[str, Any]:
        """Render a job together with its checklist."""
        tasks = self._store.list_tasks(job["job_id"])
        return job_to_response(job, tasks, self.summarize(tasks))

    def list_tasks(self, job_id: str) -> dict[str, Any]:
        load_job(self._store, job_id)
        tasks = self._store.list_tasks(job_id)
        return {
            "job_id": job_id,
            "tasks": [task_to_response(task) for task in tasks],
            "progress": self.summarize(tasks),
        }

    # ------------------------------------------------------------------
    # Checklist edits (poster, before assignment)
    # ------------------------------------------------------------------

    def _editable_job(self, job_id: str, actor_id: str, expected_version: int) -> dict[str, Any]:
        job = load_job(self._store, job_id)
        require_poster(job, actor_id)
        if job["version"] != expected_version:
            raise version_conflict(job_id, expected_version, job["version"])
        if job_status(job) not in PRE_ASSIGNMENT_STATUSES:
            raise StateConflictError(
                "TASKS_LOCKED",
                "Tasks can only be changed before a worker is assigned",
                {"job_id": job_id, "status": job["status"]},
            )
        return job

    def _touch(self, job: dict[str, Any], expected_version: int) -> None:
        """Advance the job version so the edit is serialized with transitions."""
        affected = self._store.update_job(
            job["job_id"],
            {"updated_at": now_iso()},
            expected_version=expected_version,
            expected_status=job["status"],
        )
        if affected == 0:
            current = self._store.get_job(job["job_id"])
            raise version_conflict(
                job["job_id"], expected_version, None if current is None else current["version"]
            )

    def add_task(self, job_id: str, actor_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Append a task to a job's checklist."""
        version = require_version(payload)
        job = self._editable_job(job_id, actor_id, version)
        fields = self._parse_task(payload)
        if len(self._store.list_tasks(job_id)) >= self._max_tasks_per_job:
            raise ValidationError(
                "TOO_MANY_TASKS",
                f"A job may have at most {self._max_tasks_per_job} tasks",
            )

        self._touch(job, version)
        task = {
            "task_id": f"task-{uuid.uuid4()}",
            "job_id": job_id,
            "position": self._store.next_task_position(job_id),
            "is_completed": 0,
            "completed_by": None,
            "completed_at": None,
            "created_at": now_iso(),
            **fields,
        }
        self._store.insert_task(task)
        self._events.publish(job_id, "task_added", {"task_id": task["task_id"]})
        return self.render_job(load_job(self._store, job_id))

    def remove_task(
        self,
        job_id: str,
        task_id: str,
        actor_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        """Remove a task from a job's checklist."""
        version = require_version(payload)
        job = self._editable_job(job_id, actor_id, version)
        task = self._store.get_task(task_id)
        if task is None or task["job_id"] != job_id:
            raise NotFoundError("TASK_NOT_FOUND", "Task not found", {"task_id": task_id})

        self._touch(job, version)
        self._store.delete_task(task_id)
        self._events.publish(job_id, "task_removed", {"task_id": task_id})
        return self.render_job(load_job(self._store, job_id))

    # ------------------------------------------------------------------
    # Completion (assigned worker, in progress)
    # ------------------------------------------------------------------

    def complete_task(self, task_id: str, actor_id: str) -> dict[str, Any]:
        """Tick off a task. Completing an already completed task is a no-op."""
        task = self._store.get_task(task_id)
        if task is None:
            raise NotFoundError("TASK_NOT_FOUND", "Task not found", {"task_id": task_id})
        job = load_job(self._store, task["job_id"])
        require_assigned_worker(job, actor_id)
        if job_status(job) != JobStatus.IN_PROGRESS:
            raise StateConflictError(
                "JOB_NOT_IN_PROGRESS",
                "Tasks can only be completed while the job is in progress",
                {"job_id": job["job_id"], "status": job["status"]},
            )

        changed = self._store.mark_task_completed(task_id, actor_id, now_iso())
        if changed == 0:
            return self.render_job(job)

        job_id = job["job_id"]
        summary = self.progress(job_id)
        self._logger.info(
            "Task completed",
            extra={"job_id": job_id, "task_id": task_id, "percentage": summary["percentage"]},
        )
        self._events.publish(
            job_id, "task_completed", {"task_id": task_id, "progress": summary}
        )
        if summary["completed"] == summary["total"]:
            self._events.publish(job_id, "all_tasks_completed", {"progress": summary})
        return self.render_job(job)

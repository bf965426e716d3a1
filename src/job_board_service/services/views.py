"""Response rendering for jobs and the rows a job owns."""

from __future__ import annotations

from typing import Any

from job_board_service.services.payload_fields import format_cents


def job_to_response(
    job: dict[str, Any],
    tasks: list[dict[str, Any]],
    progress: dict[str, Any],
) -> dict[str, Any]:
    """Render a job row with its version token, checklist and task progress."""
    return {
        "job_id": job["job_id"],
        "poster_id": job["poster_id"],
        "worker_id": job["worker_id"],
        "title": job["title"],
        "description": job["description"],
        "location": job["location"],
        "required_skills": job["required_skills"],
        "payment_amount": format_cents(job["payment_amount"]),
        "payment_type": job["payment_type"],
        "equipment_provided": bool(job["equipment_provided"]),
        "status": job["status"],
        "version": job["version"],
        "payment_method_id": job["payment_method_id"],
        "payment_error": job["payment_error"],
        "authorization_pending": bool(job["authorization_pending"]),
        "transfer_id": job["transfer_id"],
        "payout_started_at": job["payout_started_at"],
        "override_incomplete_tasks": bool(job["override_incomplete_tasks"]),
        "cancel_reason": job["cancel_reason"],
        "canceled_by": job["canceled_by"],
        "refund_rounds": job["refund_rounds"],
        "escalated": bool(job["escalated"]),
        "date_needed": job["date_needed"],
        "date_posted": job["date_posted"],
        "date_completed": job["date_completed"],
        "canceled_at": job["canceled_at"],
        "created_at": job["created_at"],
        "updated_at": job["updated_at"],
        "tasks": [task_to_response(task) for task in tasks],
        "progress": progress,
    }


def job_to_summary(job: dict[str, Any]) -> dict[str, Any]:
    """Compact job rendering for list endpoints."""
    return {
        "job_id": job["job_id"],
        "poster_id": job["poster_id"],
        "worker_id": job["worker_id"],
        "title": job["title"],
        "location": job["location"],
        "payment_amount": format_cents(job["payment_amount"]),
        "payment_type": job["payment_type"],
        "status": job["status"],
        "version": job["version"],
        "date_needed": job["date_needed"],
        "date_posted": job["date_posted"],
    }


def task_to_response(task: dict[str, Any]) -> dict[str, Any]:
    return {
        "task_id": task["task_id"],
        "job_id": task["job_id"],
        "description": task["description"],
        "location": task["location"],
        "position": task["position"],
        "bonus_amount": format_cents(task["bonus_amount"]),
        "is_completed": bool(task["is_completed"]),
        "completed_by": task["completed_by"],
        "completed_at": task["completed_at"],
    }


def application_to_response(application: dict[str, Any]) -> dict[str, Any]:
    return {
        "application_id": application["application_id"],
        "job_id": application["job_id"],
        "worker_id": application["worker_id"],
        "message": application["message"],
        "proposed_rate": format_cents(application["proposed_rate"]),
        "expected_duration": application["expected_duration"],
        "status": application["status"],
        "created_at": application["created_at"],
        "updated_at": application["updated_at"],
    }


def dispute_to_response(dispute: dict[str, Any]) -> dict[str, Any]:
    return {
        "dispute_id": dispute["dispute_id"],
        "job_id": dispute["job_id"],
        "reported_by": dispute["reported_by"],
        "dispute_type": dispute["dispute_type"],
        "description": dispute["description"],
        "expected_amount": format_cents(dispute["expected_amount"]),
        "evidence": dispute["evidence"],
        "status": dispute["status"],
        "outcome": dispute["outcome"],
        "resolution_amount": format_cents(dispute["resolution_amount"]),
        "resolution_notes": dispute["resolution_notes"],
        "processor_dispute_id": dispute["processor_dispute_id"],
        "created_at": dispute["created_at"],
        "reviewed_at": dispute["reviewed_at"],
        "resolved_at": dispute["resolved_at"],
    }


def review_to_response(review: dict[str, Any]) -> dict[str, Any]:
    return {
        "review_id": review["review_id"],
        "job_id": review["job_id"],
        "reviewer_id": review["reviewer_id"],
        "reviewee_id": review["reviewee_id"],
        "rating": review["rating"],
        "comment": review["comment"],
        "created_at": review["created_at"],
    }


def payment_method_to_response(method: dict[str, Any]) -> dict[str, Any]:
    """Display fields of a saved card. Never includes processor tokens."""
    return {
        "method_id": method["method_id"],
        "status": method["status"],
        "brand": method["brand"],
        "last4": method["last4"],
        "exp_month": method["exp_month"],
        "exp_year": method["exp_year"],
        "is_default": bool(method["is_default"]),
        "created_at": method["created_at"],
    }

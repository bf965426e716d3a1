"""API routers."""

from job_board_service.routers import applications, disputes, health, jobs, payments, reviews, tasks

__all__ = ["applications", "disputes", "health", "jobs", "payments", "reviews", "tasks"]

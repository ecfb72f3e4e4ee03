"""API routers."""

from milestone_escrow_service.routers import health, jobs, milestones

__all__ = ["health", "jobs", "milestones"]

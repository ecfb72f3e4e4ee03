"""Job and milestone state transitions with their guards."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from milestone_escrow_service.core.exceptions import ServiceError
from milestone_escrow_service.services.models import JobStatus, Milestone, Role

if TYPE_CHECKING:
    from milestone_escrow_service.services.models import Job

_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.DRAFT: frozenset({JobStatus.IN_PROGRESS, JobStatus.CANCELLED}),
    JobStatus.IN_PROGRESS: frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

_EDITABLE_STATUSES = frozenset({JobStatus.DRAFT, JobStatus.IN_PROGRESS})

_MILESTONE_PATCH_FIELDS = frozenset({"title", "description", "amount", "due_date"})


def _is_positive_int(value: object) -> bool:
    """Check if value is a positive integer (not float, not bool)."""
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def milestone_at(job: Job, index: int) -> Milestone:
    """Return the milestone at index or raise NOT_FOUND."""
    if index < 0 or index >= len(job.milestones):
        raise ServiceError(
            "NOT_FOUND",
            f"Milestone at index {index} not found",
            404,
            {"job_id": job.job_id, "milestone_index": index},
        )
    return job.milestones[index]


def require_status(job: Job, allowed: frozenset[JobStatus] | JobStatus, action: str) -> None:
    """Raise INVALID_STATE unless the job is in one of the allowed statuses."""
    statuses = allowed if isinstance(allowed, frozenset) else frozenset({allowed})
    if job.status not in statuses:
        expected = ", ".join(sorted(status.value for status in statuses))
        raise ServiceError(
            "INVALID_STATE",
            f"Cannot {action} for a job in '{job.status.value}' status, must be {expected}",
            409,
            {"job_id": job.job_id, "status": job.status.value},
        )


class MilestoneStateMachine:
    """
    Validates and applies every mutating operation on a Job and its Milestones.

    Methods mutate the job passed in; callers hand in a private copy and
    persist it only when the method returns. Identity lookups are resolved
    by the caller beforehand and passed in as roles.
    """

    @staticmethod
    def validate_new_milestone(data: Milestone) -> None:
        if not data.title.strip():
            raise ServiceError("INVALID", "Milestone title must be a non-empty string", 400, {})
        if not _is_positive_int(data.amount):
            raise ServiceError("INVALID", "Milestone amount must be a positive integer", 400, {})
        if data.is_completed or data.evidence_urls or data.reviewers or data.votes:
            raise ServiceError(
                "INVALID",
                "A new milestone must not carry evidence, reviewers, votes or completion",
                400,
                {},
            )

    def add_milestone(self, job: Job, milestone: Milestone) -> None:
        require_status(job, JobStatus.DRAFT, "add milestones")
        self.validate_new_milestone(milestone)
        job.milestones.append(milestone)
        job.total_amount += milestone.amount

    def update_milestone(self, job: Job, index: int, patch: dict[str, Any]) -> None:
        milestone = milestone_at(job, index)
        require_status(job, _EDITABLE_STATUSES, "update milestones")

        unknown = set(patch) - _MILESTONE_PATCH_FIELDS
        if unknown:
            raise ServiceError(
                "INVALID",
                f"Unknown milestone fields: {', '.join(sorted(unknown))}",
                400,
                {},
            )
        if milestone.is_completed:
            raise ServiceError(
                "INVALID_STATE",
                "Cannot update a milestone whose funds were already released",
                409,
                {"job_id": job.job_id, "milestone_index": index},
            )

        if "title" in patch and (not isinstance(patch["title"], str) or not patch["title"].strip()):
            raise ServiceError("INVALID", "Milestone title must be a non-empty string", 400, {})
        if "description" in patch and not isinstance(patch["description"], str):
            raise ServiceError("INVALID", "Milestone description must be a string", 400, {})
        if "due_date" in patch and patch["due_date"] is not None and not isinstance(
            patch["due_date"], str
        ):
            raise ServiceError("INVALID", "Milestone due_date must be a string or null", 400, {})

        if "amount" in patch:
            new_amount = patch["amount"]
            if not _is_positive_int(new_amount):
                raise ServiceError(
                    "INVALID", "Milestone amount must be a positive integer", 400, {}
                )
            if new_amount != milestone.amount:
                job.total_amount += new_amount - milestone.amount
                milestone.amount = new_amount

        for field_name in ("title", "description", "due_date"):
            if field_name in patch:
                setattr(milestone, field_name, patch[field_name])

    def update_details(
        self,
        job: Job,
        title: str | None,
        description: str | None,
        skills: list[str] | None,
    ) -> None:
        require_status(job, _EDITABLE_STATUSES, "update job details")
        if title is not None:
            if not title.strip():
                raise ServiceError("INVALID", "Title must be a non-empty string", 400, {})
            job.title = title
        if description is not None:
            job.description = description
        if skills is not None:
            job.skills = list(dict.fromkeys(skills))

    def activate(self, job: Job, freelancer_id: str, freelancer_role: Role | None) -> None:
        """Attach a freelancer to a draft job."""
        require_status(job, JobStatus.DRAFT, "assign a freelancer")
        if freelancer_role is None:
            raise ServiceError(
                "NOT_FOUND",
                f"Freelancer with ID {freelancer_id} not found",
                404,
                {"user_id": freelancer_id},
            )
        if freelancer_role != Role.FREELANCER:
            raise ServiceError(
                "INVALID",
                "Only freelancers can be assigned to jobs",
                400,
                {"user_id": freelancer_id, "role": freelancer_role.value},
            )
        job.freelancer_id = freelancer_id

    def change_status(self, job: Job, target: JobStatus) -> None:
        if target == job.status:
            return
        if target not in _ALLOWED_TRANSITIONS[job.status]:
            raise ServiceError(
                "INVALID_STATE",
                f"Cannot move job from '{job.status.value}' to '{target.value}'",
                409,
                {"job_id": job.job_id, "status": job.status.value},
            )
        if target == JobStatus.IN_PROGRESS and job.freelancer_id is None:
            raise ServiceError(
                "INVALID_STATE",
                "Cannot start job without a freelancer",
                409,
                {"job_id": job.job_id},
            )
        if target == JobStatus.COMPLETED:
            self.complete(job)
            return
        job.status = target

    def complete(self, job: Job) -> None:
        if not job.all_milestones_completed():
            raise ServiceError(
                "INVALID_STATE",
                "Cannot complete job with incomplete milestones",
                409,
                {"job_id": job.job_id},
            )
        job.status = JobStatus.COMPLETED

    def submit_evidence(self, job: Job, index: int, freelancer_id: str, urls: list[str]) -> None:
        if job.freelancer_id is None or job.freelancer_id != freelancer_id:
            raise ServiceError(
                "FORBIDDEN",
                "Only the assigned freelancer can submit work for this job",
                403,
                {},
            )
        require_status(job, JobStatus.IN_PROGRESS, "submit work")
        milestone = milestone_at(job, index)
        if milestone.is_completed:
            raise ServiceError(
                "INVALID_STATE",
                "This milestone is already completed",
                409,
                {"job_id": job.job_id, "milestone_index": index},
            )
        if not urls or any(not isinstance(url, str) or not url.strip() for url in urls):
            raise ServiceError(
                "INVALID", "Evidence must be a non-empty list of non-empty URLs", 400, {}
            )
        milestone.evidence_urls = list(urls)

    def check_reviewer_assignment(
        self, job: Job, index: int, client_id: str, reviewer_ids: list[str]
    ) -> Milestone:
        """Guards of assign_reviewers that need no identity lookup."""
        if client_id != job.client_id:
            raise ServiceError(
                "FORBIDDEN",
                "Only the client can assign reviewers for this job",
                403,
                {},
            )
        require_status(job, JobStatus.IN_PROGRESS, "assign reviewers")
        milestone = milestone_at(job, index)

        if not milestone.evidence_urls:
            raise ServiceError(
                "INVALID",
                "Cannot assign reviewers to a milestone that has not been submitted",
                400,
                {"job_id": job.job_id, "milestone_index": index},
            )
        if milestone.reviewers:
            raise ServiceError(
                "INVALID_STATE",
                "Reviewers are already assigned to this milestone",
                409,
                {"job_id": job.job_id, "milestone_index": index},
            )
        if not reviewer_ids:
            raise ServiceError("INVALID", "Reviewer set must not be empty", 400, {})
        if len(set(reviewer_ids)) != len(reviewer_ids):
            raise ServiceError("INVALID", "Reviewer IDs must be unique", 400, {})
        return milestone

    def assign_reviewers(
        self,
        job: Job,
        index: int,
        client_id: str,
        reviewer_ids: list[str],
        reviewer_roles: dict[str, Role | None],
    ) -> None:
        """
        Assign the reviewer set of a milestone, all-or-nothing.

        reviewer_roles maps every requested id to its resolved role (None when
        the identity provider does not know the user). The whole set is
        validated before the milestone is touched.
        """
        milestone = self.check_reviewer_assignment(job, index, client_id, reviewer_ids)

        invalid = [
            reviewer_id
            for reviewer_id in reviewer_ids
            if reviewer_roles.get(reviewer_id) != Role.REVIEWER
        ]
        if invalid:
            raise ServiceError(
                "INVALID",
                "One or more reviewer IDs are invalid or not reviewers",
                400,
                {"invalid_reviewer_ids": invalid},
            )
        milestone.reviewers = list(reviewer_ids)

    def ensure_removable(self, job: Job) -> None:
        require_status(job, JobStatus.DRAFT, "delete a job")

"""Service layer components."""

from milestone_escrow_service.services.job_locks import JobLockRegistry
from milestone_escrow_service.services.job_store import JobStore
from milestone_escrow_service.services.release_gate import ReleaseGate
from milestone_escrow_service.services.state_machine import MilestoneStateMachine
from milestone_escrow_service.services.voting import QuorumVotingEngine
from milestone_escrow_service.services.workflow import JobWorkflow

__all__ = [
    "JobLockRegistry",
    "JobStore",
    "JobWorkflow",
    "MilestoneStateMachine",
    "QuorumVotingEngine",
    "ReleaseGate",
]

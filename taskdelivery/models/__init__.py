"""Database models for the task delivery service."""

from .task import Task, TaskStatus
from .cost_proposal import TaskCostProposal, ProposalStatus
from .delivery_personnel import DeliveryPersonnel
from .delivery_earning import DeliveryEarning
from .queued_job import QueuedJob

__all__ = [
    'Task',
    'TaskStatus',
    'TaskCostProposal',
    'ProposalStatus',
    'DeliveryPersonnel',
    'DeliveryEarning',
    'QueuedJob',
]

"""Kernel ORM models."""

from efd_kernel.models.branch import (
    GENERIC_PARTICIPANTS,
    BranchModel,
    ParticipantModel,
)

__all__ = ["BranchModel", "ParticipantModel", "GENERIC_PARTICIPANTS"]

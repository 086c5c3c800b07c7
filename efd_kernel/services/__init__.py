"""Kernel services."""

from efd_kernel.services.branch_service import BranchInfo, BranchService

__all__ = ["BranchInfo", "BranchService"]

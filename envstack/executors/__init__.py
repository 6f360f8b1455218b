"""
Executor modules for envstack

This package applies resolved plans through a provisioning backend.
"""

from .threadpool import ApplyResult, NodeResult, PlanExecutor

__all__ = ["ApplyResult", "NodeResult", "PlanExecutor"]

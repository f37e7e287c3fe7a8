"""Workflow registration."""

from __future__ import annotations

from .base import WorkflowBody, WorkflowContext, WorkflowRegistry

__all__ = ["WorkflowBody", "WorkflowContext", "WorkflowRegistry"]

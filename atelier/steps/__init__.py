"""Step registration."""

from __future__ import annotations

from .registry import StepContext, StepDefinition, StepHandler, StepRegistry

__all__ = ["StepContext", "StepDefinition", "StepHandler", "StepRegistry"]

"""Atelier: durable look curation and try-on image workflows."""

from .config import AtelierConfig, load_config
from .engine import WorkflowEngine
from .executor import WorkflowExecutor
from .limiter import ConcurrencyLimiter
from .persistence import RunStatus, StepStatus, get_run_store
from .retry import RetryPolicy
from .steps import StepRegistry
from .workflows import WorkflowRegistry
from .workflows.batch import BatchResult
from .workflows.look_generation import LookGenerationDeps, LookImageResult
from .workflows.service import LookGenerationService, build_deps

__version__ = "0.1.0"
__all__ = [
    "AtelierConfig",
    "BatchResult",
    "ConcurrencyLimiter",
    "LookGenerationDeps",
    "LookGenerationService",
    "LookImageResult",
    "RetryPolicy",
    "RunStatus",
    "StepRegistry",
    "StepStatus",
    "WorkflowEngine",
    "WorkflowExecutor",
    "WorkflowRegistry",
    "build_deps",
    "get_run_store",
    "load_config",
]

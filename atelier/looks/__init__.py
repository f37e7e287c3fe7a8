from .models import Look, LookComposition, LookStatus
from .sql import SQLLookStore
from .store import InMemoryLookStore, LookStore, looks_by_status

__all__ = [
    "InMemoryLookStore",
    "Look",
    "LookComposition",
    "LookStatus",
    "LookStore",
    "SQLLookStore",
    "looks_by_status",
]

"""Storage backends and models."""

from cua_orchestrator.storage.base import CounterLimitError, OrchestratorStorage
from cua_orchestrator.storage.memory import InMemoryStorage
from cua_orchestrator.storage.models import (
    BatchRecord,
    MemoryFileRecord,
    MessageRecord,
    NewTask,
    TaskRecord,
)
from cua_orchestrator.storage.postgres import PostgresStorage

__all__ = [
    "BatchRecord",
    "CounterLimitError",
    "InMemoryStorage",
    "MemoryFileRecord",
    "MessageRecord",
    "NewTask",
    "OrchestratorStorage",
    "PostgresStorage",
    "TaskRecord",
]

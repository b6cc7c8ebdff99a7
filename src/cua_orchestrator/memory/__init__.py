"""Agent memory files and the memory tool command protocol."""

from cua_orchestrator.memory.commands import dispatch, parse_command, run_command
from cua_orchestrator.memory.store import (
    MemoryAlreadyExistsError,
    MemoryAmbiguousMatchError,
    MemoryNotFoundError,
    MemoryOutOfRangeError,
    MemoryStore,
    MemoryStoreError,
    normalize_path,
)

__all__ = [
    "MemoryAlreadyExistsError",
    "MemoryAmbiguousMatchError",
    "MemoryNotFoundError",
    "MemoryOutOfRangeError",
    "MemoryStore",
    "MemoryStoreError",
    "dispatch",
    "normalize_path",
    "parse_command",
    "run_command",
]

"""Agent memory files: six path-addressed operations over the storage backend."""

from __future__ import annotations

import logging

from cua_orchestrator.storage.base import OrchestratorStorage

logger = logging.getLogger(__name__)

MEMORY_PREFIX = "/memories/"


class MemoryStoreError(Exception):
    """Base class for memory failures the agent is expected to react to."""


class MemoryNotFoundError(MemoryStoreError):
    pass


class MemoryAlreadyExistsError(MemoryStoreError):
    pass


class MemoryAmbiguousMatchError(MemoryStoreError):
    pass


class MemoryOutOfRangeError(MemoryStoreError):
    pass


def normalize_path(path: str) -> str:
    """Strip the ``/memories/`` prefix the agent may send; other paths pass through."""
    if path.startswith(MEMORY_PREFIX):
        return path[len(MEMORY_PREFIX) :]
    return path


def _preview(text: str, limit: int = 50) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


class MemoryStore:
    """Every call round-trips to storage; nothing is cached."""

    def __init__(self, storage: OrchestratorStorage) -> None:
        self.storage = storage

    def view(self, path: str) -> str:
        record = self.storage.get_memory_file(normalize_path(path))
        if record is None:
            raise MemoryNotFoundError(f"File not found: {path}")
        return record.content

    def create(self, path: str, content: str) -> None:
        normalized = normalize_path(path)
        if self.storage.get_memory_file(normalized) is not None:
            raise MemoryAlreadyExistsError(f"File already exists: {path}")
        try:
            self.storage.insert_memory_file(normalized, content)
        except ValueError as exc:
            raise MemoryAlreadyExistsError(f"File already exists: {path}") from exc
        logger.info("memory event=created path=%s chars=%s", normalized, len(content))

    def str_replace(self, path: str, old: str, new: str) -> None:
        content = self.view(path)
        if not old:
            raise MemoryNotFoundError("Replacement target must not be empty")
        occurrences = content.count(old)
        if occurrences == 0:
            raise MemoryNotFoundError(f'String not found: "{_preview(old)}"')
        if occurrences > 1:
            raise MemoryAmbiguousMatchError(
                f'String "{_preview(old)}" appears {occurrences} times - must be unique'
            )
        self.storage.update_memory_file(normalize_path(path), content.replace(old, new, 1))
        logger.info("memory event=str_replace path=%s", normalize_path(path))

    def insert(self, path: str, line_index: int, text: str) -> None:
        content = self.view(path)
        lines = content.split("\n")
        if line_index < 0 or line_index > len(lines):
            raise MemoryOutOfRangeError(
                f"Invalid line number: {line_index} (file has {len(lines)} lines)"
            )
        lines.insert(line_index, text)
        self.storage.update_memory_file(normalize_path(path), "\n".join(lines))
        logger.info("memory event=insert path=%s line=%s", normalize_path(path), line_index)

    def delete(self, path: str) -> None:
        normalized = normalize_path(path)
        if not self.storage.delete_memory_file(normalized):
            raise MemoryNotFoundError(f"File not found: {path}")
        logger.info("memory event=deleted path=%s", normalized)

    def rename(self, old_path: str, new_path: str) -> None:
        source = normalize_path(old_path)
        destination = normalize_path(new_path)
        if self.storage.get_memory_file(source) is None:
            raise MemoryNotFoundError(f"File not found: {old_path}")
        if source == destination:
            return
        if self.storage.get_memory_file(destination) is not None:
            raise MemoryAlreadyExistsError(f"File already exists: {new_path}")
        try:
            self.storage.rename_memory_file(source, destination)
        except KeyError as exc:
            raise MemoryNotFoundError(f"File not found: {old_path}") from exc
        except ValueError as exc:
            raise MemoryAlreadyExistsError(f"File already exists: {new_path}") from exc
        logger.info("memory event=renamed from=%s to=%s", source, destination)

    def list_paths(self) -> list[str]:
        """Newest first; administration helper outside the agent command set."""
        return [record.path for record in self.storage.list_memory_files()]

"""Memory tool command protocol: validate an invocation and run it against MemoryStore."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter

from cua_orchestrator.memory.store import MemoryStore


class _Command(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ViewCommand(_Command):
    command: Literal["view"]
    path: str


class CreateCommand(_Command):
    command: Literal["create"]
    path: str
    file_text: str = Field(default="", validation_alias=AliasChoices("file_text", "content"))


class StrReplaceCommand(_Command):
    command: Literal["str_replace"]
    path: str
    old_str: str
    new_str: str = ""


class InsertCommand(_Command):
    command: Literal["insert"]
    path: str
    insert_line: int
    insert_text: str = Field(validation_alias=AliasChoices("insert_text", "new_str", "text"))


class DeleteCommand(_Command):
    command: Literal["delete"]
    path: str


class RenameCommand(_Command):
    command: Literal["rename"]
    old_path: str = Field(validation_alias=AliasChoices("old_path", "path"))
    new_path: str


MemoryCommand = Annotated[
    Union[
        ViewCommand,
        CreateCommand,
        StrReplaceCommand,
        InsertCommand,
        DeleteCommand,
        RenameCommand,
    ],
    Field(discriminator="command"),
]

_COMMAND = TypeAdapter(MemoryCommand)


def parse_command(payload: dict[str, Any]) -> MemoryCommand:
    """Raises pydantic ``ValidationError`` for unknown commands or missing fields."""
    return _COMMAND.validate_python(payload)


def run_command(store: MemoryStore, command: MemoryCommand) -> str:
    """Execute one command and return the text handed back to the agent.

    ``MemoryStoreError`` subclasses propagate so the caller can turn them into
    error tool results.
    """
    if isinstance(command, ViewCommand):
        return store.view(command.path)
    if isinstance(command, CreateCommand):
        store.create(command.path, command.file_text)
        return f"Created {command.path}"
    if isinstance(command, StrReplaceCommand):
        store.str_replace(command.path, command.old_str, command.new_str)
        return f"Updated {command.path}"
    if isinstance(command, InsertCommand):
        store.insert(command.path, command.insert_line, command.insert_text)
        return f"Inserted text at line {command.insert_line} of {command.path}"
    if isinstance(command, DeleteCommand):
        store.delete(command.path)
        return f"Deleted {command.path}"
    store.rename(command.old_path, command.new_path)
    return f"Renamed {command.old_path} to {command.new_path}"


def dispatch(store: MemoryStore, payload: dict[str, Any]) -> str:
    return run_command(store, parse_command(payload))

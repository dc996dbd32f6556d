"""Declared tool schemas.

Each tool's arguments are a pydantic model. The model both renders
the JSON schema sent to the provider and validates what the model
sends back.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class ToolArgs(BaseModel):
    """Base for tool argument models. Unknown keys are ignored."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ExecuteCommandArgs(ToolArgs):
    command: str = Field(
        min_length=1,
        description="The shell command to execute as a complete string.",
    )
    timeout: Optional[int] = Field(
        default=None, gt=0, description="Timeout in milliseconds (default: 30000)",
    )


class ReadFileArgs(ToolArgs):
    path: str = Field(
        min_length=1,
        description="Path to the file to read (relative to project root).",
    )


class WriteFileArgs(ToolArgs):
    path: str = Field(min_length=1, description="Path to the file to write")
    content: str = Field(description="Content to write to the file")


class CreateFileArgs(ToolArgs):
    path: str = Field(min_length=1, description="Path to the new file to create")
    content: str = Field(description="Content for the new file")


class EditFileArgs(ToolArgs):
    path: str = Field(min_length=1, description="Path to the existing file to edit")
    content: str = Field(description="New content for the file")


class ListFilesArgs(ToolArgs):
    path: str = Field(default=".", description="Directory path to list.")


class SearchFilesArgs(ToolArgs):
    pattern: str = Field(
        min_length=1,
        description='Glob pattern to match files, e.g. "**/*.py".',
    )
    directory: Optional[str] = Field(
        default=None, description="Directory to search in (optional).",
    )


class GrepCodebaseArgs(ToolArgs):
    pattern: str = Field(min_length=1, description="Regex pattern to search for.")
    flags: Optional[str] = Field(
        default=None, description='Regex flags, e.g. "i" for case-insensitive.',
    )
    max_results: int = Field(
        default=15, gt=0, alias="maxResults",
        description="Maximum number of results to return (default: 15)",
    )


class DockerExecuteArgs(ToolArgs):
    container: str = Field(min_length=1, description="Container or image to use")
    command: str = Field(min_length=1, description="Command to execute in the container")


class FileChange(ToolArgs):
    search: str = Field(description="The exact text to find and replace")
    replace: str = Field(description="The new text to replace with")


class ProposeFileChangesArgs(ToolArgs):
    path: str = Field(min_length=1, description="Path to the file to modify")
    changes: list[FileChange] = Field(
        min_length=1, description="Search/replace operations to apply",
    )
    description: Optional[str] = Field(
        default=None,
        description="Brief description of what these changes accomplish",
    )


class TaskCompleteArgs(ToolArgs):
    summary: str = Field(
        min_length=1, description="A brief summary of what was accomplished",
    )
    status: Optional[Literal["success", "partial", "failed"]] = Field(
        default=None,
        description="The completion status of the task (default: success)",
    )


class SpawnAgentEntry(ToolArgs):
    agent_type: str = Field(min_length=1, description="Agent type to spawn")
    prompt: str = Field(min_length=1, description="Specific task for this agent")


class SpawnAgentsArgs(ToolArgs):
    agents: list[SpawnAgentEntry] = Field(
        min_length=1, description="Agents to spawn with their prompts",
    )


@dataclass(frozen=True)
class ToolSpec:
    """A tool the model may call: name, description and argument model."""
    name: str
    description: str
    args_model: type[ToolArgs]

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.args_model.model_json_schema(by_alias=True)

    def to_api(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolCatalog:
    """Immutable name -> ToolSpec mapping built at startup."""

    def __init__(self, specs: Iterable[ToolSpec]) -> None:
        self._specs: Mapping[str, ToolSpec] = MappingProxyType(
            {spec.name: spec for spec in specs}
        )

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self):
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)

    @property
    def names(self) -> list[str]:
        return list(self._specs)

    def select(self, names: Iterable[str]) -> list[ToolSpec]:
        """Specs for *names*, in the given order. Unknown names are skipped."""
        return [self._specs[n] for n in names if n in self._specs]

    def with_specs(self, specs: Iterable[ToolSpec]) -> ToolCatalog:
        """Return a new catalog with *specs* added or replaced."""
        merged = dict(self._specs)
        merged.update({spec.name: spec for spec in specs})
        return ToolCatalog(merged.values())


BUILTIN_TOOL_SPECS: tuple[ToolSpec, ...] = (
    ToolSpec(
        "execute_command",
        "Execute a shell command on the local system. Returns stdout, "
        "stderr, and exit code.",
        ExecuteCommandArgs,
    ),
    ToolSpec(
        "read_file",
        "Read the contents of a file from the filesystem.",
        ReadFileArgs,
    ),
    ToolSpec(
        "write_file",
        "[DEPRECATED] Use create_file for new files or edit_file for "
        "modifications.",
        WriteFileArgs,
    ),
    ToolSpec(
        "create_file",
        "Create a new file with the specified content. Fails if the file "
        "already exists.",
        CreateFileArgs,
    ),
    ToolSpec(
        "edit_file",
        "Edit an existing file. Shows a diff preview and requires user "
        "approval before applying changes.",
        EditFileArgs,
    ),
    ToolSpec(
        "list_files",
        "List files and directories in a tree structure.",
        ListFilesArgs,
    ),
    ToolSpec(
        "search_files",
        "Search for files matching a glob pattern.",
        SearchFilesArgs,
    ),
    ToolSpec(
        "grep_codebase",
        "Search for text patterns in code files using regex. Returns "
        "matching lines with file paths and line numbers.",
        GrepCodebaseArgs,
    ),
    ToolSpec(
        "docker_execute",
        "Execute a command in a Docker container for safe exploration "
        "and testing.",
        DockerExecuteArgs,
    ),
    ToolSpec(
        "propose_file_changes",
        "Propose changes to a file with diff preview. Changes are NOT "
        "applied until the user approves.",
        ProposeFileChangesArgs,
    ),
    ToolSpec(
        "task_complete",
        "Signal that you have completed your assigned task and are ready "
        "to hand back control.",
        TaskCompleteArgs,
    ),
    ToolSpec(
        "spawn_agents",
        "Spawn one or more agents to help accomplish the task. Agents in "
        "one call run concurrently.",
        SpawnAgentsArgs,
    ),
)


def default_catalog() -> ToolCatalog:
    return ToolCatalog(BUILTIN_TOOL_SPECS)

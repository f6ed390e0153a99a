"""Tool catalog exposed to the model and typed tool arguments."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ai_cli.application.models import FunctionDefinition, Tool
from ai_cli.infrastructure.errors import UnknownToolError


class _ToolArgs(BaseModel):
    # モデルが余分なキーを付けてきても無視する
    model_config = ConfigDict(extra="ignore")


class ExecuteCommandArgs(_ToolArgs):
    """execute_command の引数."""

    command: str = Field(
        description="The shell command to execute (e.g., 'ls -la', 'git status', "
        "'npm install')"
    )
    reasoning: str = Field(
        description="Brief explanation of why this command is needed to accomplish "
        "the user's request"
    )


class ReadFileArgs(_ToolArgs):
    """read_file の引数."""

    path: str = Field(description="File path (relative or absolute)")


class WriteFileArgs(_ToolArgs):
    """write_file の引数."""

    path: str = Field(description="File path (relative or absolute)")
    content: str = Field(description="Content to write to the file")


class EditFileArgs(_ToolArgs):
    """edit_file の引数."""

    path: str = Field(description="File path (relative or absolute)")
    old_text: str = Field(
        description="Exact text to find and replace (must match exactly)"
    )
    new_text: str = Field(description="Text to replace with")


class SearchFilesArgs(_ToolArgs):
    """search_files の引数."""

    pattern: str = Field(description="Search pattern (supports regex)")
    path: str = Field(
        default="",
        description="Directory or file to search in (default: current directory)",
    )
    file_type: str = Field(
        default="",
        description="File type filter, e.g., 'go', 'js', 'py', 'ts' (optional)",
    )


class ListDirectoryArgs(_ToolArgs):
    """list_directory の引数."""

    path: str = Field(
        default="", description="Directory path (default: current directory)"
    )
    recursive: bool = Field(
        default=False, description="List recursively (default: false)"
    )


class DeleteFileArgs(_ToolArgs):
    """delete_file の引数."""

    path: str = Field(description="Path to the file to delete")


PlanStatus = Literal["pending", "in_progress", "completed"]


class PlanItem(_ToolArgs):
    """計画の1項目."""

    description: str = Field(description="What this step does")
    status: PlanStatus = Field(
        default="pending", description="pending, in_progress or completed"
    )


class UpdatePlanArgs(_ToolArgs):
    """update_plan の引数."""

    title: str = Field(description="Short title of the overall task")
    items: list[PlanItem] = Field(
        default_factory=list, description="Ordered list of plan steps"
    )


ToolArguments = (
    ExecuteCommandArgs
    | ReadFileArgs
    | WriteFileArgs
    | EditFileArgs
    | SearchFilesArgs
    | ListDirectoryArgs
    | DeleteFileArgs
    | UpdatePlanArgs
)

# ツール名 → (説明, 引数モデル)
_CATALOG: dict[str, tuple[str, type[_ToolArgs]]] = {
    "execute_command": (
        "Execute a shell command in the user's terminal and return the output. "
        "Use this to help users with system tasks, file operations, git commands, "
        "package management, and other terminal operations. The command will run "
        "in the user's current working directory.",
        ExecuteCommandArgs,
    ),
    "read_file": (
        "Read the contents of a file. Limited to 512KB. Use for viewing code, "
        "configs, or logs.",
        ReadFileArgs,
    ),
    "write_file": (
        "Create a new file or overwrite an existing file. Creates parent "
        "directories if needed. Use for creating new files or completely "
        "replacing content.",
        WriteFileArgs,
    ),
    "edit_file": (
        "Edit a file by finding and replacing text. Shows diff preview before "
        "applying. The old_text must match exactly (including whitespace and "
        "indentation). Use for surgical edits to existing files.",
        EditFileArgs,
    ),
    "search_files": (
        "Search for a pattern in files using ripgrep (with grep fallback). "
        "Returns matching lines with file paths and line numbers. Limited to 50 "
        "matches.",
        SearchFilesArgs,
    ),
    "list_directory": (
        "List contents of a directory with file sizes and permissions.",
        ListDirectoryArgs,
    ),
    "delete_file": (
        "Delete a file (not directories). Requires confirmation. Cannot delete "
        "system files. Use with caution.",
        DeleteFileArgs,
    ),
    "update_plan": (
        "Create or update a task plan shown to the user. Use it to break "
        "multi-step work into items and mark each one pending, in_progress or "
        "completed as you go.",
        UpdatePlanArgs,
    ),
}

TOOL_ARGUMENT_MODELS: dict[str, type[_ToolArgs]] = {
    name: model for name, (_, model) in _CATALOG.items()
}


def _parameters_schema(model: type[BaseModel]) -> dict[str, Any]:
    schema = model.model_json_schema()
    schema.pop("title", None)
    for prop in schema.get("properties", {}).values():
        prop.pop("title", None)
    schema.setdefault("required", [])
    return schema


def get_default_tools() -> list[Tool]:
    """
    モデルに提示するツール一覧を返す.

    Returns:
        8種類のツール定義
    """
    return [
        Tool(
            function=FunctionDefinition(
                name=name,
                description=description,
                parameters=_parameters_schema(model),
            )
        )
        for name, (description, model) in _CATALOG.items()
    ]


def parse_tool_arguments(name: str, raw: str) -> ToolArguments:
    """
    ツール呼び出しの引数（JSON文字列）を型付きの引数に変換する.

    Args:
        name: ツール名
        raw: 引数のJSON文字列（空文字は {} として扱う）

    Returns:
        ツールごとの引数モデル

    Raises:
        UnknownToolError: 未知のツール名の場合
        pydantic.ValidationError: JSONが不正、または必須の引数がない場合
    """
    model = TOOL_ARGUMENT_MODELS.get(name)
    if model is None:
        raise UnknownToolError(name)
    return model.model_validate_json(raw or "{}")  # type: ignore[return-value]

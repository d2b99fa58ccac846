"""Tool registry and the file tools exposed to the agent."""

import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Mapping

from voice_agent._types import ToolCall
from voice_agent.config import ToolsConfig
from voice_agent.summarizer import DirectorySummarizer

logger = logging.getLogger(__name__)

EXCLUDE_DIRS = frozenset(
    {
        "node_modules", ".git", ".next", "dist", "build", ".cache",
        "coverage", ".nyc_output", "tmp", "temp", ".tmp",
        "vendor", ".vscode", ".idea", "__pycache__", ".pytest_cache",
    }
)

EXCLUDE_FILES = frozenset(
    {
        ".DS_Store", "Thumbs.db", ".gitignore", ".env", ".env.local",
        "package-lock.json", "yarn.lock", "npm-debug.log",
    }
)

DETAIL_LIMIT = 100

_TYPE_CHECKS: dict[str, Callable[[Any], bool]] = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
}


class ToolError(RuntimeError):
    """A tool could not complete; the message is shown to the model."""

    pass


@dataclass(frozen=True)
class ToolDescriptor:
    """A named capability the agent may call.

    schema maps argument names to one of string, number, boolean, object or
    array; a trailing "?" marks the argument optional.
    """

    name: str
    description: str
    schema: Mapping[str, str]
    run: Callable[[dict], Any]

    def __post_init__(self):
        for arg, type_name in self.schema.items():
            if type_name.rstrip("?") not in _TYPE_CHECKS:
                raise ValueError(f"Unknown type {type_name!r} for argument {arg!r} of {self.name}")
        object.__setattr__(self, "schema", MappingProxyType(dict(self.schema)))


@dataclass
class WorkspaceState:
    """Mutable state shared by the file tools during agent runs."""

    last_directory: Path | None = None


class ToolRegistry:
    """Tools known to an agent, in registration order."""

    def __init__(self, tools: list[ToolDescriptor] | None = None):
        self._tools: dict[str, ToolDescriptor] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._tools:
            raise ValueError(f"Tool already registered: {descriptor.name}")
        self._tools[descriptor.name] = descriptor
        logger.debug("Registered tool %s", descriptor.name)

    def get(self, name: str) -> ToolDescriptor | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def catalog(self) -> str:
        """Tool lines for the system prompt."""
        return "\n".join(
            f"- {tool.name}: {tool.description} args={json.dumps(dict(tool.schema))}"
            for tool in self._tools.values()
        )

    def validate(self, call: ToolCall) -> list[str]:
        """Check a call's arguments against the tool schema.

        Returns:
            Problems found; empty when the call is valid
        """
        tool = self._tools.get(call.tool)
        if tool is None:
            return [f"unknown tool {call.tool!r}"]

        problems = []
        for arg, type_name in tool.schema.items():
            optional = type_name.endswith("?")
            expected = type_name.rstrip("?")
            if arg not in call.args or call.args[arg] is None:
                if not optional:
                    problems.append(f"missing required argument {arg!r}")
                continue
            if not _TYPE_CHECKS[expected](call.args[arg]):
                problems.append(
                    f"argument {arg!r} must be {expected}, got {type(call.args[arg]).__name__}"
                )

        for arg in call.args:
            if arg not in tool.schema:
                problems.append(f"unexpected argument {arg!r}")

        return problems


def expand_home(path: str) -> Path:
    return Path(path).expanduser()


def list_files(args: dict, workspace: WorkspaceState, default_max_files: int = 300) -> dict:
    """Recursively list a directory, skipping build and VCS noise."""
    directory = args["dir"]
    pattern = args.get("pattern")
    max_files = int(args.get("maxFiles") or default_max_files)
    if max_files <= 0:
        raise ToolError("maxFiles must be positive")

    root = expand_home(directory)
    if not root.exists():
        raise ToolError(f"Directory does not exist: {root}")
    if not root.is_dir():
        raise ToolError(f"Not a directory: {root}")
    workspace.last_directory = root

    try:
        regex = re.compile(pattern, re.IGNORECASE) if pattern else None
    except re.error as e:
        raise ToolError(f"Invalid pattern {pattern!r}: {e}") from e

    files: list[dict] = []

    def walk(current: Path, relative: str) -> None:
        if len(files) >= max_files:
            return
        with os.scandir(current) as it:
            entries = sorted(it, key=lambda entry: entry.name)

        for entry in entries:
            if len(files) >= max_files:
                break
            rel_path = f"{relative}/{entry.name}" if relative else entry.name

            if entry.is_dir(follow_symlinks=False):
                if entry.name not in EXCLUDE_DIRS and not entry.name.startswith("."):
                    walk(Path(entry.path), rel_path)
                continue

            if not entry.is_file() or entry.name in EXCLUDE_FILES or entry.name.startswith("."):
                continue
            if regex and not (regex.search(entry.name) or regex.search(rel_path)):
                continue

            extension = entry.name.rsplit(".", 1)[-1] if "." in entry.name else ""
            try:
                stats = entry.stat()
                files.append(
                    {
                        "path": rel_path,
                        "size": stats.st_size,
                        "extension": extension,
                        "modified": datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc)
                        .date()
                        .isoformat(),
                    }
                )
            except OSError:
                files.append(
                    {
                        "path": rel_path,
                        "size": 0,
                        "extension": extension,
                        "error": "Cannot access file stats",
                    }
                )

    try:
        walk(root, "")
    except OSError as e:
        raise ToolError(f"Failed to list files: {e}") from e

    files.sort(key=lambda f: f["path"])
    logger.info("list_files %s: %d files", root, len(files))

    return {
        "files": [f["path"] for f in files],
        "fileDetails": files[:DETAIL_LIMIT],
        "totalCount": len(files),
        "directory": directory,
        "pattern": pattern or "all files",
        "excluded": sorted(EXCLUDE_DIRS),
        "truncated": len(files) >= max_files,
    }


def read_text(args: dict, workspace: WorkspaceState, default_max_bytes: int = 20000) -> dict:
    """Read a file up to a byte limit.

    A relative path that does not exist as given is retried against the
    directory most recently used by list_files or summarize_dir.
    """
    path = args["path"]
    max_bytes = int(args.get("maxBytes") or default_max_bytes)
    if max_bytes <= 0:
        raise ToolError("maxBytes must be positive")

    resolved = expand_home(path)
    if not resolved.exists() and not resolved.is_absolute() and workspace.last_directory:
        candidate = workspace.last_directory / resolved
        if candidate.exists():
            resolved = candidate

    if not resolved.exists():
        raise ToolError(f"File does not exist: {path}")
    if not resolved.is_file():
        raise ToolError(f"Not a file: {path}")

    try:
        size = resolved.stat().st_size
        with open(resolved, "rb") as f:
            data = f.read(max_bytes)
    except OSError as e:
        raise ToolError(f"Failed to read file: {e}") from e

    logger.info("read_text %s: %d bytes", resolved, size)
    return {
        "text": data.decode("utf-8", errors="replace"),
        "size": size,
        "truncated": size > max_bytes,
        "path": str(resolved),
    }


async def summarize_dir(
    args: dict,
    workspace: WorkspaceState,
    summarizer: DirectorySummarizer,
    summary_limit: int = 8000,
) -> dict:
    """Summarize a directory's documents via the summarizer collaborator."""
    directory = expand_home(args["dir"])
    workspace.last_directory = directory

    options = {"include": args.get("include") or {"pdf": True, "docx": True, "csv": True, "md": True}}
    if args.get("mode"):
        options["mode"] = args["mode"]

    result = await summarizer.summarize(
        str(directory),
        args.get("prompt") or "Summarize key themes and findings.",
        options,
    )
    if not result.ok:
        raise ToolError(result.error or "Summarization failed")

    return {
        "summary": (result.output or "")[:summary_limit],
        "fileCount": result.file_count,
        "tokens": result.tokens,
    }


def build_default_registry(
    workspace: WorkspaceState,
    summarizer: DirectorySummarizer,
    config: ToolsConfig | None = None,
) -> ToolRegistry:
    """Registry with list_files, read_text and summarize_dir bound to a workspace."""
    config = config or ToolsConfig()
    registry = ToolRegistry()

    registry.register(
        ToolDescriptor(
            name="summarize_dir",
            description="Analyze and summarize documents in a directory with optional user prompt",
            schema={"dir": "string", "prompt": "string?", "include": "object?", "mode": "string?"},
            run=partial(summarize_dir, workspace=workspace, summarizer=summarizer, summary_limit=config.summary_limit),
        )
    )
    registry.register(
        ToolDescriptor(
            name="list_files",
            description=(
                "Recursively list files in a directory with smart filtering. Excludes "
                "node_modules, .git, and other dev directories. Use pattern to filter by "
                "regex (e.g., '\\.(js|ts)$' for JS/TS files)."
            ),
            schema={"dir": "string", "pattern": "string?", "maxFiles": "number?"},
            run=partial(list_files, workspace=workspace, default_max_files=config.max_files),
        )
    )
    registry.register(
        ToolDescriptor(
            name="read_text",
            description="Read text content from a file with size limits",
            schema={"path": "string", "maxBytes": "number?"},
            run=partial(read_text, workspace=workspace, default_max_bytes=config.max_bytes),
        )
    )
    return registry

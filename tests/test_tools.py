"""Tests for the tool registry and file tools."""

from unittest.mock import AsyncMock

import pytest

from voice_agent._types import ToolCall
from voice_agent.config import ToolsConfig
from voice_agent.summarizer import SummaryResult
from voice_agent.tools import (
    ToolDescriptor,
    ToolError,
    ToolRegistry,
    WorkspaceState,
    build_default_registry,
    list_files,
    read_text,
    summarize_dir,
)


@pytest.fixture
def tree(tmp_path):
    """A small project directory with noise to be skipped."""
    (tmp_path / "a.md").write_text("# Notes\n")
    (tmp_path / "b.txt").write_text("plain text")
    (tmp_path / ".env").write_text("SECRET=1")
    (tmp_path / "sub").mkdir()
    (tmp_path / "sub" / "c.py").write_text("print('hi')\n")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "x.js").write_text("module.exports = 1")
    (tmp_path / ".hidden").mkdir()
    (tmp_path / ".hidden" / "y.md").write_text("hidden")
    return tmp_path


def noop(args):
    return {}


class TestToolDescriptor:
    """Tests for ToolDescriptor."""

    def test_unknown_type_rejected(self):
        """Test schema types must be known."""
        with pytest.raises(ValueError, match="Unknown type"):
            ToolDescriptor(name="t", description="", schema={"x": "float"}, run=noop)

    def test_schema_is_read_only(self):
        """Test the schema cannot be mutated after registration."""
        tool = ToolDescriptor(name="t", description="", schema={"x": "string"}, run=noop)
        with pytest.raises(TypeError):
            tool.schema["y"] = "number"


class TestToolRegistry:
    """Tests for ToolRegistry."""

    @pytest.fixture
    def registry(self):
        return ToolRegistry(
            [
                ToolDescriptor(
                    name="list_files",
                    description="List files",
                    schema={"dir": "string", "pattern": "string?", "maxFiles": "number?"},
                    run=noop,
                )
            ]
        )

    def test_duplicate_name_rejected(self, registry):
        """Test tool names are unique."""
        with pytest.raises(ValueError, match="already registered"):
            registry.register(ToolDescriptor(name="list_files", description="", schema={}, run=noop))

    def test_lookup(self, registry):
        """Test get, names and membership."""
        assert registry.get("list_files").description == "List files"
        assert registry.get("missing") is None
        assert "list_files" in registry
        assert registry.names() == ["list_files"]
        assert len(registry) == 1

    def test_catalog(self, registry):
        """Test catalog lines carry name, description and schema."""
        assert registry.catalog() == (
            '- list_files: List files args={"dir": "string", "pattern": "string?", "maxFiles": "number?"}'
        )

    def test_valid_call(self, registry):
        """Test a well-formed call has no problems."""
        assert registry.validate(ToolCall(tool="list_files", args={"dir": "~", "maxFiles": 10})) == []

    def test_optional_null_allowed(self, registry):
        """Test optional arguments may be null."""
        assert registry.validate(ToolCall(tool="list_files", args={"dir": "~", "pattern": None})) == []

    def test_missing_required(self, registry):
        """Test a missing required argument is reported."""
        problems = registry.validate(ToolCall(tool="list_files", args={}))
        assert problems == ["missing required argument 'dir'"]

    def test_wrong_type(self, registry):
        """Test type mismatches are reported, bool is not a number."""
        problems = registry.validate(ToolCall(tool="list_files", args={"dir": 3, "maxFiles": True}))
        assert "argument 'dir' must be string, got int" in problems
        assert "argument 'maxFiles' must be number, got bool" in problems

    def test_unexpected_argument(self, registry):
        """Test arguments outside the schema are reported."""
        problems = registry.validate(ToolCall(tool="list_files", args={"dir": "~", "recursive": True}))
        assert problems == ["unexpected argument 'recursive'"]


class TestListFiles:
    """Tests for list_files."""

    def test_lists_recursively_with_exclusions(self, tree):
        """Test dev directories, dotfiles and excluded names are skipped."""
        workspace = WorkspaceState()
        result = list_files({"dir": str(tree)}, workspace)

        assert result["files"] == ["a.md", "b.txt", "sub/c.py"]
        assert result["totalCount"] == 3
        assert result["pattern"] == "all files"
        assert result["truncated"] is False
        assert "node_modules" in result["excluded"]
        assert workspace.last_directory == tree

    def test_file_details(self, tree):
        """Test details include size, extension and modified date."""
        result = list_files({"dir": str(tree)}, WorkspaceState())
        detail = result["fileDetails"][0]
        assert detail["path"] == "a.md"
        assert detail["size"] == len("# Notes\n")
        assert detail["extension"] == "md"
        assert len(detail["modified"]) == 10

    def test_pattern_filter(self, tree):
        """Test a regex narrows the listing."""
        result = list_files({"dir": str(tree), "pattern": r"\.MD$"}, WorkspaceState())
        assert result["files"] == ["a.md"]

    def test_max_files_truncates(self, tree):
        """Test the file cap is honored and flagged."""
        result = list_files({"dir": str(tree), "maxFiles": 2}, WorkspaceState())
        assert result["files"] == ["a.md", "b.txt"]
        assert result["truncated"] is True

    def test_missing_directory(self, tmp_path):
        """Test a missing directory is a ToolError."""
        with pytest.raises(ToolError, match="Directory does not exist"):
            list_files({"dir": str(tmp_path / "nope")}, WorkspaceState())

    def test_invalid_pattern(self, tree):
        """Test a bad regex is a ToolError."""
        with pytest.raises(ToolError, match="Invalid pattern"):
            list_files({"dir": str(tree), "pattern": "("}, WorkspaceState())


class TestReadText:
    """Tests for read_text."""

    def test_reads_file(self, tree):
        """Test full content and metadata for small files."""
        result = read_text({"path": str(tree / "b.txt")}, WorkspaceState())
        assert result["text"] == "plain text"
        assert result["size"] == 10
        assert result["truncated"] is False

    def test_max_bytes_truncates(self, tree):
        """Test reads stop at maxBytes."""
        result = read_text({"path": str(tree / "b.txt"), "maxBytes": 5}, WorkspaceState())
        assert result["text"] == "plain"
        assert result["truncated"] is True

    def test_relative_to_last_directory(self, tree, tmp_path_factory, monkeypatch):
        """Test relative paths resolve against the last listed directory."""
        monkeypatch.chdir(tmp_path_factory.mktemp("elsewhere"))
        workspace = WorkspaceState(last_directory=tree)

        result = read_text({"path": "sub/c.py"}, workspace)
        assert result["text"] == "print('hi')\n"
        assert result["path"] == str(tree / "sub" / "c.py")

    def test_missing_file(self, tree):
        """Test a missing file is a ToolError."""
        with pytest.raises(ToolError, match="File does not exist"):
            read_text({"path": str(tree / "missing.txt")}, WorkspaceState())

    def test_directory_is_not_a_file(self, tree):
        """Test directories are rejected."""
        with pytest.raises(ToolError, match="Not a file"):
            read_text({"path": str(tree / "sub")}, WorkspaceState())


class TestSummarizeDir:
    """Tests for summarize_dir."""

    @pytest.mark.asyncio
    async def test_success_truncates_summary(self, tree):
        """Test summaries are capped and counts passed through."""
        summarizer = AsyncMock()
        summarizer.summarize.return_value = SummaryResult(
            ok=True, output="x" * 10, file_count=2, tokens=5
        )
        workspace = WorkspaceState()

        result = await summarize_dir(
            {"dir": str(tree), "mode": "analyzer"}, workspace, summarizer, summary_limit=4
        )

        assert result == {"summary": "xxxx", "fileCount": 2, "tokens": 5}
        assert workspace.last_directory == tree
        dir_arg, prompt_arg, options = summarizer.summarize.call_args.args
        assert dir_arg == str(tree)
        assert prompt_arg == "Summarize key themes and findings."
        assert options["mode"] == "analyzer"
        assert options["include"]["md"] is True

    @pytest.mark.asyncio
    async def test_failure_raises_tool_error(self, tree):
        """Test summarizer failures surface as ToolError."""
        summarizer = AsyncMock()
        summarizer.summarize.return_value = SummaryResult(
            ok=False, error="No supported files found in the selected folder."
        )
        with pytest.raises(ToolError, match="No supported files"):
            await summarize_dir({"dir": str(tree)}, WorkspaceState(), summarizer)


class TestDefaultRegistry:
    """Tests for build_default_registry."""

    def test_registers_file_tools(self):
        """Test the three tools are registered in order."""
        registry = build_default_registry(WorkspaceState(), AsyncMock())
        assert registry.names() == ["summarize_dir", "list_files", "read_text"]

    def test_tools_share_workspace(self, tree):
        """Test list_files then a relative read_text resolve together."""
        registry = build_default_registry(WorkspaceState(), AsyncMock(), ToolsConfig(max_bytes=4))
        registry.get("list_files").run({"dir": str(tree)})

        result = registry.get("read_text").run({"path": "a.md"})
        assert result["text"] == "# No"
        assert result["truncated"] is True

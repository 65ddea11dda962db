# tests/test_mcp_server.py
"""Tests for the MCP server implementation."""
import datetime
from datetime import timezone
from unittest.mock import MagicMock, patch

import pytest

from gitnotes.exceptions import AmbiguousError, NotFoundError
from gitnotes.models.schema import GroupBy, NoteMetadata, OrderBy, Revision
from gitnotes.server.mcp_server import GitNotesMcpServer


def _capture_tools(registered):
    mock_mcp = MagicMock()

    def mock_tool_decorator(*args, **kwargs):
        def tool_wrapper(func):
            registered[kwargs.get("name")] = func
            return func
        return tool_wrapper

    mock_mcp.tool = mock_tool_decorator
    return mock_mcp


class TestMcpServer:
    """Tests for the GitNotesMcpServer class with a mocked service."""

    def setup_method(self):
        """Set up test environment before each test."""
        self.registered_tools = {}
        self.mock_mcp = _capture_tools(self.registered_tools)
        self.mock_service = MagicMock()
        self.mock_service.in_session = False
        self.mcp_patcher = patch("gitnotes.server.mcp_server.FastMCP", return_value=self.mock_mcp)
        self.atexit_patcher = patch("gitnotes.server.mcp_server.atexit")
        self.mcp_patcher.start()
        self.atexit_patcher.start()
        self.server = GitNotesMcpServer(service=self.mock_service)

    def teardown_method(self):
        """Clean up after each test."""
        self.mcp_patcher.stop()
        self.atexit_patcher.stop()

    def test_tools_registered(self):
        expected = {
            "gn_add", "gn_edit", "gn_cat", "gn_mv", "gn_rm", "gn_find", "gn_grep",
            "gn_tree", "gn_ls", "gn_log", "gn_run", "gn_undo", "gn_add_resource",
            "gn_rebuild", "gn_sync", "gn_remote", "gn_status", "gn_begin", "gn_commit",
            "gn_abort", "gn_update_links",
        }
        assert expected <= set(self.registered_tools)

    def test_add_tool(self):
        self.mock_service.add_note.return_value = NoteMetadata(id=7, path="2024/test")
        result = self.registered_tools["gn_add"](path="2024/test", content="Hello", tags="x, y")

        assert "ID: 7" in result
        self.mock_service.add_note.assert_called_with("2024/test", "Hello", ["x", "y"])

    def test_add_tool_rejects_huge_content(self):
        result = self.registered_tools["gn_add"](path="big", content="x" * 1_000_001)
        assert result.startswith("Error:")
        self.mock_service.add_note.assert_not_called()

    def test_edit_tool(self):
        self.mock_service.edit_note.return_value = NoteMetadata(id=1, path="a", tags=["n"])
        self.registered_tools["gn_edit"](note="a", add_tags="n", remove_tags="o")
        self.mock_service.edit_note.assert_called_with(
            "a", content=None, add_tags=["n"], remove_tags=["o"], clear_tags=False
        )

    def test_cat_tool_extracts_code(self):
        self.mock_service.read_note.return_value = "text\n```python\nprint(1)\n```\n"
        result = self.registered_tools["gn_cat"](note="a", revision="HEAD~1", only_code=True)
        assert result == "print(1)\n"
        self.mock_service.read_note.assert_called_with("a", "HEAD~1")

    def test_domain_errors_are_formatted(self):
        self.mock_service.read_note.side_effect = NotFoundError("missing")
        result = self.registered_tools["gn_cat"](note="missing")
        assert result == "Error: Note 'missing' not found"

    def test_ambiguous_rm(self):
        self.mock_service.remove_notes.side_effect = AmbiguousError("dir", ["dir/a", "dir/b"])
        result = self.registered_tools["gn_rm"](pattern="dir")
        assert "matches 2 notes" in result

    def test_unexpected_errors_hide_details(self):
        self.mock_service.rebuild.side_effect = RuntimeError("internal detail")
        result = self.registered_tools["gn_rebuild"]()
        assert "internal detail" not in result
        assert "ref:" in result

    def test_find_tool_parses_filters(self):
        self.mock_service.find.return_value = [NoteMetadata(id=1, path="a", tags=["t"])]
        result = self.registered_tools["gn_find"](tags="t", created="2024-03", order_by="id")

        assert "a [t]" in result
        self.mock_service.find.assert_called_with(
            tags=["t"], path_glob=None, id_pattern=None, created=[2024, 3],
            updated=None, order_by=OrderBy.ID, include_deleted=False,
        )

    def test_find_tool_invalid_order(self):
        result = self.registered_tools["gn_find"](order_by="size")
        assert result.startswith("Invalid order")

    def test_find_tool_invalid_date(self):
        result = self.registered_tools["gn_find"](created="March")
        assert result.startswith("Error:")

    def test_tree_tool_invalid_grouping(self):
        result = self.registered_tools["gn_tree"](group_by="color")
        assert result.startswith("Invalid grouping")
        self.registered_tools["gn_tree"](group_by="tags")
        self.mock_service.tree.assert_called_with(GroupBy.TAGS, None)

    def test_log_tool(self):
        self.mock_service.history.return_value = [
            Revision(
                id="abcdef1234567890", message="Updated note 'a'.",
                timestamp=datetime.datetime(2024, 1, 2, tzinfo=timezone.utc),
            )
        ]
        result = self.registered_tools["gn_log"](note="a")
        assert result.startswith("abcdef1 2024-01-02")
        assert "Updated note 'a'." in result

    def test_remote_tool_validates_arguments(self):
        assert self.registered_tools["gn_remote"](action="add", name="origin").startswith("Error")
        assert self.registered_tools["gn_remote"](action="rename").startswith("Invalid action")
        self.mock_service.list_remotes.return_value = {}
        assert self.registered_tools["gn_remote"]() == "No remotes configured."

    def test_session_tools(self):
        self.mock_service.transactions.pending_message = "Added note 'a' (id: 1)."
        self.mock_service.commit.return_value = Revision(
            id="abcdef1234567890", message="Added note 'a' (id: 1).",
            timestamp=datetime.datetime(2024, 1, 2, tzinfo=timezone.utc),
        )
        assert self.registered_tools["gn_begin"]().startswith("Session started")
        result = self.registered_tools["gn_commit"]()
        assert result == "Created revision abcdef1:\nAdded note 'a' (id: 1)."
        self.mock_service.commit.assert_called_with(None)

        self.mock_service.commit.return_value = None
        assert self.registered_tools["gn_commit"](message="m") == "Session closed, nothing to commit."
        assert self.registered_tools["gn_abort"]().startswith("Session aborted")
        self.mock_service.abort.assert_called_once()

    def test_staged_results_are_marked(self):
        self.mock_service.in_session = True
        self.mock_service.add_note.return_value = NoteMetadata(id=3, path="a")
        result = self.registered_tools["gn_add"](path="a")
        assert result.endswith("(staged, gn_commit to save)")


class TestMcpServerIntegration:
    """Tools exercised against a real notebook."""

    @pytest.fixture
    def tools(self, notes_service):
        registered = {}
        with patch("gitnotes.server.mcp_server.FastMCP", return_value=_capture_tools(registered)), \
                patch("gitnotes.server.mcp_server.atexit"):
            GitNotesMcpServer(service=notes_service)
        return registered

    def test_add_edit_cat(self, tools):
        assert "ID: 1" in tools["gn_add"](path="2024/test", content="Hello\n", tags="x")
        tools["gn_edit"](note="1", add_tags="y")
        assert tools["gn_cat"](note="2024/test") == "Hello\n"
        assert "2024/test [x, y]" in tools["gn_find"](tags="y")

    def test_grep_and_tree(self, tools):
        tools["gn_add"](path="dir/a", content="needle\n")
        assert tools["gn_grep"](pattern="NEEDLE") == "dir/a:1: needle"
        tree = tools["gn_tree"]()
        assert "dir/" in tree
        assert "a (1)" in tree

    def test_ls_and_rm(self, tools):
        tools["gn_add"](path="dir/a")
        tools["gn_add"](path="dir/b")
        assert "dir/" in tools["gn_ls"]()
        assert tools["gn_rm"](pattern="dir").startswith("Error:")
        assert tools["gn_rm"](pattern="dir", recursive=True).startswith("Deleted 2 note(s)")
        assert tools["gn_ls"]() == "Empty notebook."

    def test_status(self, tools):
        tools["gn_add"](path="a")
        status = tools["gn_status"]()
        assert "Notes: 1 (0 deleted)" in status
        assert "Next ID: 2" in status

    def test_session_groups_changes_into_one_revision(self, tools, notes_service):
        tools["gn_add"](path="base", content="x\n")
        before = notes_service.storage.revision_count()

        tools["gn_begin"]()
        assert "staged" in tools["gn_add"](path="a", content="one\n")
        assert "staged" in tools["gn_edit"](note="base", add_tags="t")
        assert "staged" in tools["gn_mv"](source="a", destination="dir/a")
        assert "Session: open" in tools["gn_status"]()
        assert notes_service.storage.revision_count() == before

        result = tools["gn_commit"]()
        assert result.startswith("Created revision")
        assert "Added note 'a' (id: 2)." in result
        assert notes_service.storage.revision_count() == before + 1
        assert tools["gn_cat"](note="dir/a") == "one\n"

    def test_session_abort(self, tools, notes_service):
        tools["gn_begin"]()
        tools["gn_add"](path="draft", content="x")
        assert tools["gn_sync"]().startswith("Error:")
        tools["gn_abort"]()
        assert notes_service.storage.head() is None
        assert tools["gn_commit"]().startswith("Error:")

    def test_update_links(self, tools, notes_service):
        tools["gn_add"](path="dir/a", content="x")
        link = notes_service.storage.repo_path / "dir" / "a.md"
        link.unlink()
        assert tools["gn_update_links"]() == "Linked 1 notes."
        assert link.read_text() == "x"

"""MCP server implementation for gitnotes."""

import atexit
import logging
import uuid
from pathlib import Path
from typing import List, Optional

from mcp.server.fastmcp import FastMCP

from gitnotes.config import config
from gitnotes.exceptions import GitNotesError
from gitnotes.models.schema import GroupBy, NoteMetadata, OrderBy
from gitnotes.observability import metrics, timed_operation
from gitnotes.services.notes_service import NotesService
from gitnotes.services.search_service import SearchService

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 1_000_000  # 1 MB
MAX_GREP_RESULTS = 500


def _validate_content_length(content: Optional[str]) -> None:
    """Validate input string lengths at the MCP boundary."""
    if content and len(content) > MAX_CONTENT_LENGTH:
        raise ValueError(
            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters"
        )


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_date(value: Optional[str]) -> Optional[List[int]]:
    """``"2024"``, ``"2024-03"`` or ``"2024-03-05"`` to date parts."""
    if not value:
        return None
    try:
        return [int(part) for part in value.split("-")]
    except ValueError:
        raise ValueError(f"Invalid date '{value}', expected YYYY[-MM[-DD]]")


def _format_note_line(note: NoteMetadata) -> str:
    tags = f" [{', '.join(note.tags)}]" if note.tags else ""
    deleted = " (deleted)" if note.is_deleted else ""
    return f"{note.id:>5}  {note.path}{tags}{deleted}"


class GitNotesMcpServer:
    """MCP server for a gitnotes notebook."""

    def __init__(self, service: Optional[NotesService] = None):
        """Initialize the MCP server.

        Args:
            service: Pre-configured notes service. When None, the configured
                     notebook is opened (and created if missing).
        """
        self.mcp = FastMCP(config.server_name, version=config.server_version)
        self.service = service or NotesService.open()
        self.initialize()
        atexit.register(self._shutdown)
        self._register_tools()

    def initialize(self) -> None:
        """Initialize services."""
        logger.info(f"gitnotes MCP server initialized for {self.service.storage.repo_path}")

    def _shutdown(self) -> None:
        """Clean up resources on server exit."""
        self.service.stop()
        self.service.close()

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Args:
            error: The exception that occurred

        Returns:
            Formatted error message with appropriate level of detail
        """
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, GitNotesError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message}"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: {str(error)}"
        elif isinstance(error, (IOError, OSError)):
            logger.error(f"File system error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: A file system error occurred (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _staged_suffix(self) -> str:
        return " (staged, gn_commit to save)" if self.service.in_session else ""

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="gn_add")
        def gn_add(path: str, content: str = "", tags: Optional[str] = None) -> str:
            """Add a new note.
            Args:
                path: Virtual path of the note, e.g. "2024/meeting"
                content: Markdown content
                tags: Comma-separated list of tags; derived from the code
                    snippets in the content when omitted
            """
            with timed_operation("gn_add", path=path[:30]) as op:
                try:
                    _validate_content_length(content)
                    note = self.service.add_note(path, content, _split_list(tags))
                    op["note_id"] = note.id
                    return f"Added note '{note.path}' with ID: {note.id}{self._staged_suffix()}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_edit")
        def gn_edit(
            note: str,
            content: Optional[str] = None,
            add_tags: Optional[str] = None,
            remove_tags: Optional[str] = None,
            clear_tags: bool = False,
        ) -> str:
            """Replace the content and/or change the tags of a note.
            Args:
                note: Note id or path
                content: New content (unchanged when omitted)
                add_tags: Comma-separated tags to add
                remove_tags: Comma-separated tags to remove
                clear_tags: Remove all tags before adding
            """
            with timed_operation("gn_edit", note=note[:30]) as op:
                try:
                    _validate_content_length(content)
                    updated = self.service.edit_note(
                        note,
                        content=content,
                        add_tags=_split_list(add_tags),
                        remove_tags=_split_list(remove_tags),
                        clear_tags=clear_tags,
                    )
                    op["note_id"] = updated.id
                    return f"Note '{updated.path}' (id: {updated.id}) is up to date{self._staged_suffix()}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_cat")
        def gn_cat(
            note: str,
            revision: Optional[str] = None,
            only_code: bool = False,
            only_output: bool = False,
        ) -> str:
            """Print the content of a note.
            Args:
                note: Note id or path
                revision: Read the note as of this revision (hash, branch, HEAD~2, ...)
                only_code: Only print the code snippets
                only_output: Only print the snippet output blocks
            """
            with timed_operation("gn_cat", note=note[:30]):
                try:
                    content = self.service.read_note(note, revision)
                    return SearchService.extract_content(content, only_code, only_output)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_mv")
        def gn_mv(source: str, destination: str, force: bool = False) -> str:
            """Move a note to another path.
            Args:
                source: Note id or path
                destination: New path
                force: Replace (delete) a note already at the destination
            """
            with timed_operation("gn_mv", source=source[:30]):
                try:
                    note = self.service.move_note(source, destination, force)
                    return f"Note {note.id} is now at '{note.path}'{self._staged_suffix()}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_rm")
        def gn_rm(pattern: str, recursive: bool = False) -> str:
            """Delete notes.
            Args:
                pattern: Note id, path, glob or directory
                recursive: Delete every note the pattern selects
            """
            with timed_operation("gn_rm", pattern=pattern[:30]) as op:
                try:
                    removed = self.service.remove_notes(pattern, recursive)
                    op["count"] = len(removed)
                    lines = [f"Deleted {len(removed)} note(s){self._staged_suffix()}:"]
                    lines.extend(f"  {n.path}" for n in removed)
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_find")
        def gn_find(
            tags: Optional[str] = None,
            path: Optional[str] = None,
            id_pattern: Optional[str] = None,
            created: Optional[str] = None,
            updated: Optional[str] = None,
            order_by: str = "path",
            include_deleted: bool = False,
        ) -> str:
            """Find notes by their properties.
            Args:
                tags: Comma-separated tags that must all be present
                path: Glob or directory the path must match
                id_pattern: Regular expression the id must match
                created: Creation date, YYYY, YYYY-MM or YYYY-MM-DD
                updated: Update date, same format
                order_by: path, id, created or updated
                include_deleted: Also list deleted notes
            """
            with timed_operation("gn_find") as op:
                try:
                    try:
                        order = OrderBy(order_by.lower())
                    except ValueError:
                        return f"Invalid order: {order_by}. Valid orders are: {', '.join(o.value for o in OrderBy)}"
                    notes = self.service.find(
                        tags=_split_list(tags),
                        path_glob=path,
                        id_pattern=id_pattern,
                        created=_parse_date(created),
                        updated=_parse_date(updated),
                        order_by=order,
                        include_deleted=include_deleted,
                    )
                    op["result_count"] = len(notes)
                    if not notes:
                        return "No matching notes."
                    return "\n".join(_format_note_line(n) for n in notes)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_grep")
        def gn_grep(
            pattern: str,
            path: Optional[str] = None,
            historic: bool = False,
            case_sensitive: bool = False,
            start: Optional[str] = None,
            end: Optional[str] = None,
        ) -> str:
            """Search note content with a regular expression.
            Args:
                pattern: Regular expression
                path: Only search notes below this path or matching this glob
                historic: Search the whole history, including deleted notes
                case_sensitive: Match case
                start: Newest revision of a historic search (default HEAD)
                end: Revision where a historic search stops (excluded)
            """
            with timed_operation("gn_grep", pattern=pattern[:30]) as op:
                try:
                    lines = []
                    for match in self.service.grep(
                        pattern,
                        historic=historic,
                        path_filter=path,
                        ignore_case=not case_sensitive,
                        start=start,
                        end=end,
                    ):
                        where = f"{match.revision[:7]} " if match.revision else ""
                        lines.append(f"{where}{match.note.path}:{match.line_number}: {match.line}")
                        if len(lines) >= MAX_GREP_RESULTS:
                            lines.append(f"... stopped after {MAX_GREP_RESULTS} matches")
                            break
                    op["result_count"] = len(lines)
                    return "\n".join(lines) if lines else "No matches."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_tree")
        def gn_tree(group_by: str = "path", prefix: Optional[str] = None) -> str:
            """Show the notes as a tree.
            Args:
                group_by: path, created (YYYY/MM/DD) or tags
                prefix: Only show the subtree below this path
            """
            with timed_operation("gn_tree"):
                try:
                    try:
                        grouping = GroupBy(group_by.lower())
                    except ValueError:
                        return f"Invalid grouping: {group_by}. Valid groupings are: {', '.join(g.value for g in GroupBy)}"
                    root = self.service.tree(grouping, prefix)
                    lines = [root.path or "."]
                    for depth, node in root.walk():
                        marker = f" ({node.note.id})" if node.note is not None else "/"
                        lines.append(f"{'  ' * (depth + 1)}{node.name}{marker}")
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_ls")
        def gn_ls(path: Optional[str] = None) -> str:
            """List the entries of a directory.
            Args:
                path: Directory path (the root when omitted)
            """
            with timed_operation("gn_ls"):
                try:
                    entries = self.service.list_directory(path)
                    if not entries:
                        return "Empty notebook."
                    lines = []
                    for entry in entries:
                        updated = entry.last_updated
                        stamp = updated.strftime("%Y-%m-%d %H:%M") if updated else ""
                        suffix = "" if entry.is_leaf else "/"
                        lines.append(f"{stamp:16}  {entry.name}{suffix}")
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_log")
        def gn_log(note: Optional[str] = None, limit: int = 20) -> str:
            """Show recent revisions of the notebook or of one note.
            Args:
                note: Note id or path (whole notebook when omitted)
                limit: Maximum number of revisions
            """
            with timed_operation("gn_log") as op:
                try:
                    revisions = self.service.history(note, limit)
                    op["count"] = len(revisions)
                    if not revisions:
                        return "No history yet."
                    lines = []
                    for revision in revisions:
                        summary = revision.message.strip().splitlines()
                        lines.append(
                            f"{revision.short_id} {revision.timestamp.isoformat()} "
                            f"{summary[0] if summary else ''}"
                        )
                    return "\n".join(lines)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_run")
        def gn_run(note: str, save: bool = False) -> str:
            """Run the code snippets of a note.
            Args:
                note: Note id or path
                save: Store the output below each snippet in the note
            """
            with timed_operation("gn_run", note=note[:30]):
                try:
                    result = self.service.run_note_snippets(note, save_output=save)
                    if result.replacement is None:
                        return "The note has no code snippets."
                    return result.output or "(no output)"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_undo")
        def gn_undo(revision: str) -> str:
            """Revert the changes of a revision in a new commit.
            Args:
                revision: The revision to undo
            """
            with timed_operation("gn_undo", revision=revision[:12]):
                try:
                    result = self.service.undo(revision)
                    if result is None:
                        return "Nothing to undo."
                    return f"Created revision {result.short_id}: {result.message.strip()}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_add_resource")
        def gn_add_resource(source: str, destination: Optional[str] = None) -> str:
            """Copy a local file into the notebook resources.
            Args:
                source: Path of the local file
                destination: Path below resources/ (the file name when omitted)
            """
            with timed_operation("gn_add_resource"):
                try:
                    result = self.service.add_resource_file(source, destination)
                    if self.service.in_session:
                        return f"Staged resource '{destination or Path(source).name}'"
                    if result is None:
                        return "Resource unchanged."
                    return result.message.strip()
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_rebuild")
        def gn_rebuild() -> str:
            """Rebuild the note catalog from the repository history."""
            with timed_operation("gn_rebuild") as op:
                try:
                    count = self.service.rebuild()
                    op["count"] = count
                    live = len(self.service.catalog.notes())
                    return f"Catalog rebuilt: {live} notes ({count - live} deleted)"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_sync")
        def gn_sync(remote: Optional[str] = None, branch: Optional[str] = None) -> str:
            """Synchronize the notebook with a remote repository.
            Args:
                remote: Remote name (configured default when omitted)
                branch: Branch name (current branch when omitted)
            """
            with timed_operation("gn_sync"):
                try:
                    result = self.service.synchronize(remote, branch)
                    pulled = "fetched new revisions" if result["pulled"] else "already up to date"
                    return f"Synchronized with {result['remote']}/{result['branch']}: {pulled}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_remote")
        def gn_remote(
            action: str = "list", name: Optional[str] = None, url: Optional[str] = None
        ) -> str:
            """Manage remote repositories.
            Args:
                action: list, add or remove
                name: Remote name (add, remove)
                url: Remote URL (add)
            """
            with timed_operation("gn_remote", action=action):
                try:
                    if action == "list":
                        remotes = self.service.list_remotes()
                        if not remotes:
                            return "No remotes configured."
                        return "\n".join(f"{n}\t{u}" for n, u in sorted(remotes.items()))
                    if action == "add":
                        if not name or not url:
                            return "Error: 'add' requires name and url"
                        self.service.add_remote(name, url)
                        return f"Added remote '{name}'"
                    if action == "remove":
                        if not name:
                            return "Error: 'remove' requires name"
                        self.service.remove_remote(name)
                        return f"Removed remote '{name}'"
                    return f"Invalid action: {action}. Valid actions are: list, add, remove"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_begin")
        def gn_begin() -> str:
            """Start a session: later changes are staged and saved together by gn_commit."""
            with timed_operation("gn_begin"):
                try:
                    self.service.begin()
                    return "Session started. Changes are staged until gn_commit or gn_abort."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_commit")
        def gn_commit(message: Optional[str] = None) -> str:
            """Save every change staged since gn_begin as one revision.
            Args:
                message: Commit message (derived from the staged changes when omitted)
            """
            with timed_operation("gn_commit") as op:
                try:
                    pending = self.service.transactions.pending_message
                    revision = self.service.commit(message)
                    if revision is None:
                        return "Session closed, nothing to commit."
                    op["revision"] = revision.short_id
                    return f"Created revision {revision.short_id}:\n{message or pending}"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_abort")
        def gn_abort() -> str:
            """Discard every change staged since gn_begin."""
            with timed_operation("gn_abort"):
                try:
                    self.service.abort()
                    return "Session aborted, staged changes discarded."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_update_links")
        def gn_update_links() -> str:
            """Recreate the symbolic link of every note in the notebook directory."""
            with timed_operation("gn_update_links") as op:
                try:
                    count = self.service.update_links()
                    op["count"] = count
                    return f"Linked {count} notes."
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="gn_status")
        def gn_status() -> str:
            """Show notebook statistics and operation metrics."""
            try:
                catalog = self.service.catalog
                live = catalog.notes()
                total = catalog.notes(include_deleted=True)
                summary = metrics.get_summary()
                output = f"Notebook: {self.service.storage.repo_path}\n"
                output += f"Head: {catalog.head[:12] if catalog.head else '(empty)'}\n"
                output += f"Notes: {len(live)} ({len(total) - len(live)} deleted)\n"
                output += f"Next ID: {catalog.next_id}\n"
                if self.service.in_session:
                    output += "Session: open (uncommitted changes are staged)\n"
                output += f"Operations: {summary['total_operations']}"
                output += f" ({summary['total_errors']} errors)\n"
                return output
            except Exception as e:
                return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()

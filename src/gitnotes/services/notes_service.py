"""Service layer for notebook operations.

Wires the storage engine, catalog, transaction manager and search service
together for one notebook and exposes the operations the MCP server and
an HTTP front end need.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from gitnotes.config import GitNotesConfig, config as default_config
from gitnotes.exceptions import ConflictError, ErrorCode, NotFoundError
from gitnotes.models.schema import (
    NEXT_ID_PATH,
    ByPath,
    GroupBy,
    NoteMetadata,
    NoteRef,
    NoteRefType,
    Revision,
    normalize_note_path,
)
from gitnotes.services.search_service import GrepMatch, GrepScope, SearchService
from gitnotes.services.snippets import (
    SnippetOutput,
    SnippetRunner,
    SubprocessSnippetRunner,
    run_snippets,
)
from gitnotes.services.transaction_manager import (
    AddNote,
    AddResource,
    DeleteNote,
    EditContent,
    EditTags,
    MoveNote,
    Operation,
    TransactionManager,
)
from gitnotes.storage.catalog import Catalog, NoteTree
from gitnotes.storage.catalog_cache import CatalogCache
from gitnotes.storage.git_storage import GitStorage
from gitnotes.storage.link_tree import NoteLinkTree

logger = logging.getLogger(__name__)

RefLike = Union[NoteRefType, str, int]


def _as_ref(ref: RefLike) -> NoteRefType:
    if isinstance(ref, (NoteRef.ById, NoteRef.ByPath)):
        return ref
    return NoteRef.parse(ref)


class NotesService:
    """Facade over one notebook repository."""

    def __init__(
        self,
        storage: GitStorage,
        catalog: Catalog,
        config: Optional[GitNotesConfig] = None,
        snippet_runner: Optional[SnippetRunner] = None,
    ):
        self.config = config or default_config
        self.storage = storage
        self.catalog = catalog
        self.transactions = TransactionManager(storage, catalog)
        self.search = SearchService(storage, catalog)
        self.snippet_runner = snippet_runner or SubprocessSnippetRunner()
        self._stop_requested = threading.Event()

    @classmethod
    def open(
        cls,
        repo_path: Optional[Path] = None,
        create: bool = True,
        config: Optional[GitNotesConfig] = None,
        snippet_runner: Optional[SnippetRunner] = None,
    ) -> "NotesService":
        """Open (or create) a notebook and load its catalog.

        Args:
            repo_path: Notebook location; defaults to the configured repository
            create: Initialize a new repository if none exists
        """
        config = config or default_config
        repo_path = Path(repo_path) if repo_path else config.get_repository_path()
        kwargs = dict(
            user_name=config.user_name,
            user_email=config.user_email,
            timeout=config.git_timeout,
        )
        if (repo_path / ".git").exists() or not create:
            storage = GitStorage.open(repo_path, **kwargs)
        else:
            storage = GitStorage.init(repo_path, **kwargs)

        links = NoteLinkTree(storage.repo_path) if config.symlinks else None
        catalog = Catalog.load(
            storage, CatalogCache.for_repository(storage.repo_path), links
        )
        logger.info(f"Opened notebook {storage.repo_path} ({len(catalog.notes())} notes)")
        return cls(storage, catalog, config=config, snippet_runner=snippet_runner)

    def close(self) -> None:
        if self.catalog.cache is not None:
            self.catalog.cache.close()

    def _require_idle(self, operation: str) -> None:
        if self.transactions.is_open:
            raise ConflictError(
                f"Cannot run {operation} while a transaction is open",
                operation=operation, code=ErrorCode.TRANSACTION_ALREADY_OPEN,
            )

    # -- interactive session ---------------------------------------------------

    def begin(self) -> None:
        """Open a session: later changes are staged until :meth:`commit`."""
        self.transactions.begin()

    def commit(self, message: Optional[str] = None) -> Optional[Revision]:
        """Write everything staged since :meth:`begin` as one revision."""
        return self.transactions.commit(message)

    def abort(self) -> None:
        self.transactions.abort()

    @property
    def in_session(self) -> bool:
        return self.transactions.is_open

    def _apply(
        self, ops: Union[Operation, Sequence[Operation]], message: Optional[str] = None
    ) -> Optional[Revision]:
        """Stage into the open session, or commit right away when there is none.

        Returns:
            The new revision; None while a session is open
        """
        if not self.transactions.is_open:
            return self.transactions.run(ops, message)
        if not isinstance(ops, (list, tuple)):
            ops = [ops]
        for op in ops:
            self.transactions.stage(op)
        return None

    # -- notes ---------------------------------------------------------------

    def get_note(self, ref: RefLike, include_deleted: bool = False) -> NoteMetadata:
        return self.catalog.resolve(_as_ref(ref), include_deleted=include_deleted)

    def read_note(self, ref: RefLike, revision: Optional[str] = None) -> str:
        """Content of a note, optionally as of an older revision.

        Deleted notes can be read at old revisions only when
        ``tombstone_history`` is enabled.
        """
        include_deleted = revision is not None and self.config.tombstone_history
        note = self.get_note(ref, include_deleted=include_deleted)
        if revision is None:
            staged = self.catalog.staged_content(note.id)
            if staged is not None:
                return staged.decode("utf-8", errors="replace")
        data = self.storage.read_content(note.content_path, revision)
        return data.decode("utf-8", errors="replace")

    def add_note(
        self, path: str, content: str = "", tags: Sequence[str] = ()
    ) -> NoteMetadata:
        self._apply(AddNote(path=path, content=content, tags=tuple(tags)))
        return self.catalog.resolve(ByPath(normalize_note_path(path)))

    def edit_note(
        self,
        ref: RefLike,
        content: Optional[str] = None,
        add_tags: Sequence[str] = (),
        remove_tags: Sequence[str] = (),
        clear_tags: bool = False,
    ) -> NoteMetadata:
        """Change content and/or tags of one note in a single commit."""
        note = self.get_note(ref)
        ops: List[Operation] = []
        if content is not None:
            ops.append(EditContent(NoteRef.ById(note.id), content))
        if add_tags or remove_tags or clear_tags:
            ops.append(EditTags(
                NoteRef.ById(note.id), add=tuple(add_tags),
                remove=tuple(remove_tags), clear=clear_tags,
            ))
        if ops:
            self._apply(ops)
        return self.catalog.resolve(NoteRef.ById(note.id))

    def move_note(self, source: RefLike, destination: str, force: bool = False) -> NoteMetadata:
        note = self.get_note(source)
        self._apply(MoveNote(NoteRef.ById(note.id), destination, force))
        return self.catalog.resolve(NoteRef.ById(note.id))

    def remove_notes(self, pattern: str, recursive: bool = False) -> List[NoteMetadata]:
        """Delete the note at ``pattern``; with ``recursive``, every note it selects.

        Raises:
            AmbiguousError: If the pattern selects several notes and
                ``recursive`` is not set
        """
        if recursive:
            notes = self.catalog.match(pattern)
            if not notes:
                raise NotFoundError(pattern)
        else:
            notes = [self.get_note(pattern)]
        self._apply([DeleteNote(NoteRef.ById(n.id)) for n in notes])
        return notes

    def add_resource_file(self, source: Path, destination: Optional[str] = None) -> Optional[Revision]:
        """Copy a local file into the notebook's resources."""
        source = Path(source).expanduser()
        if not source.is_file():
            raise NotFoundError(str(source), message=f"Resource '{source}' not found")
        return self._apply(AddResource(
            destination=destination or source.name,
            data=source.read_bytes(),
            source=str(source),
        ))

    def run_note_snippets(self, ref: RefLike, save_output: bool = False) -> SnippetOutput:
        """Run the snippets of a note; optionally commit the updated output blocks."""
        note = self.get_note(ref)
        result = run_snippets(self.read_note(NoteRef.ById(note.id)), self.snippet_runner)
        if save_output and result.replacement is not None:
            self._apply(
                EditContent(NoteRef.ById(note.id), result.replacement),
                message=f"Saved run output for note '{note.path}'.",
            )
        return result

    def undo(self, revision: str) -> Optional[Revision]:
        """Commit the inverse of ``revision``.

        Raises:
            ConflictError: If a later commit changed one of the same files
        """
        self._require_idle("undo")
        target = self.storage.revision(revision)
        files: Dict[str, Optional[bytes]] = {}
        for change in target.changes:
            if change.path == NEXT_ID_PATH:
                continue
            current = self.storage.blob_id(change.path)
            if current != self.storage.blob_id(change.path, target.id):
                raise ConflictError(
                    f"'{change.path}' changed after {target.short_id}; cannot undo",
                    path=change.path, operation="undo",
                )
            try:
                files[change.path] = self.storage.read_content(change.path, f"{target.id}^")
            except NotFoundError:
                files[change.path] = None

        revision_obj = self.storage.commit(
            f"Undo commit '{target.short_id}'.", files, expected_head=self.catalog.head
        )
        self.catalog.ensure_current()
        return revision_obj

    # -- queries -------------------------------------------------------------

    def find(self, **filters: Any) -> List[NoteMetadata]:
        return self.search.find(**filters)

    def grep(
        self,
        pattern: str,
        historic: bool = False,
        path_filter: Optional[str] = None,
        ignore_case: bool = True,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> Iterator[GrepMatch]:
        scope = GrepScope.HISTORIC if historic else GrepScope.CURRENT
        return self.search.grep(
            pattern, scope=scope, path_filter=path_filter,
            ignore_case=ignore_case, start=start, end=end,
        )

    def tree(self, group_by: Union[GroupBy, str] = GroupBy.PATH, prefix: Optional[str] = None) -> NoteTree:
        return self.catalog.tree(group_by, prefix=prefix)

    def list_directory(self, path: Optional[str] = None) -> List[NoteTree]:
        return self.catalog.list_directory(path)

    def history(self, ref: Optional[RefLike] = None, limit: Optional[int] = 20) -> List[Revision]:
        """Recent revisions, optionally only those touching one note."""
        path_filter = None
        if ref is not None:
            note = self.get_note(ref, include_deleted=True)
            path_filter = [note.content_path, note.metadata_path]
        return list(self.storage.log(path_filter=path_filter, limit=limit))

    def rebuild(self) -> int:
        self._require_idle("rebuild")
        return self.catalog.rebuild()

    def update_links(self) -> int:
        """Recreate the symbolic link of every live note in the working tree.

        Returns:
            Number of notes linked
        """
        self._require_idle("update links")
        links = self.catalog.links or NoteLinkTree(self.storage.repo_path)
        return links.sync_all(self.catalog.notes())

    # -- remotes -------------------------------------------------------------

    def list_remotes(self) -> Dict[str, str]:
        return self.storage.list_remotes()

    def add_remote(self, name: str, url: str) -> None:
        self.storage.add_remote(name, url)

    def remove_remote(self, name: str) -> None:
        self.storage.remove_remote(name)

    def synchronize(self, remote: Optional[str] = None, branch: Optional[str] = None) -> Dict[str, Any]:
        """Fast-forward from the remote, refresh the catalog, then push."""
        self._require_idle("sync")
        remote = remote or self.config.sync_default_remote
        branch = branch or self.config.sync_default_branch or self.storage.current_branch() or "master"
        pulled = self.storage.pull_remote(remote, branch)
        rebuilt = self.catalog.ensure_current()
        self.storage.push_remote(remote, branch)
        logger.info(f"Synchronized with {remote}/{branch}")
        return {"remote": remote, "branch": branch, "pulled": pulled, "rebuilt": rebuilt}

    # -- HTTP front end contract ---------------------------------------------

    def read_content(self, path: str) -> str:
        return self.read_note(ByPath(normalize_note_path(path)))

    def write_content(self, path: str, content: str) -> Optional[Revision]:
        """Create or replace the note at ``path`` in an implicit single-note transaction."""
        normalized = normalize_note_path(path)
        existing = self.catalog.by_path(normalized)
        if existing is None:
            return self._apply(AddNote(path=normalized, content=content))
        return self._apply(EditContent(NoteRef.ById(existing.id), content))

    def run_snippet(self, content: str, runner: Optional[SnippetRunner] = None) -> SnippetOutput:
        return run_snippets(content, runner or self.snippet_runner)

    def add_resource(self, note_ref: RefLike, filename: str, data: bytes) -> Optional[Revision]:
        """Attach an uploaded file to the notebook; the note must exist."""
        note = self.get_note(note_ref)
        logger.debug(f"Adding resource {filename} ({len(data)} bytes) for note {note.id}")
        return self._apply(AddResource(destination=filename, data=data))

    def stop(self) -> None:
        """Signal the front end to shut down."""
        self._stop_requested.set()

    def wait_for_stop(self, timeout: Optional[float] = None) -> bool:
        return self._stop_requested.wait(timeout)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

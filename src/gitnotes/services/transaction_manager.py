"""Transactions: staged note operations flushed as exactly one commit."""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Union

from gitnotes.exceptions import ConflictError, GitNotesError, TransactionStateError
from gitnotes.models.schema import (
    RESOURCES_DIR,
    ById,
    ByPath,
    NoteMetadata,
    NoteRef,
    NoteRefType,
    Revision,
    normalize_note_path,
    utc_now,
    validate_tag,
)
from gitnotes.observability import traced
from gitnotes.services.snippets import automatic_tags
from gitnotes.storage.catalog import Catalog
from gitnotes.storage.git_storage import GitStorage

logger = logging.getLogger(__name__)

RefLike = Union[NoteRefType, str, int]


def _as_ref(ref: RefLike) -> NoteRefType:
    if isinstance(ref, (ById, ByPath)):
        return ref
    return NoteRef.parse(ref)


def _as_bytes(content: Union[str, bytes]) -> bytes:
    return content.encode("utf-8") if isinstance(content, str) else content


@dataclass(frozen=True)
class AddNote:
    path: str
    content: Union[str, bytes] = ""
    tags: Sequence[str] = ()


@dataclass(frozen=True)
class EditContent:
    ref: RefLike
    content: Union[str, bytes]


@dataclass(frozen=True)
class EditTags:
    ref: RefLike
    add: Sequence[str] = ()
    remove: Sequence[str] = ()
    clear: bool = False


@dataclass(frozen=True)
class DeleteNote:
    ref: RefLike


@dataclass(frozen=True)
class MoveNote:
    ref: RefLike
    destination: str
    force: bool = False


@dataclass(frozen=True)
class AddResource:
    destination: str
    data: bytes
    source: Optional[str] = None


Operation = Union[AddNote, EditContent, EditTags, DeleteNote, MoveNote, AddResource]


class TransactionState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    COMMITTED = "committed"
    ABORTED = "aborted"


class TransactionManager:
    """Stages operations against the catalog and commits them as one revision.

    Only one transaction can be open at a time. Nothing reaches the
    repository before :meth:`commit`; a failure while staging or
    committing aborts the whole transaction.
    """

    def __init__(self, storage: GitStorage, catalog: Catalog):
        self.storage = storage
        self.catalog = catalog
        self._state = TransactionState.CLOSED
        self._messages: List[str] = []
        self._resources: Dict[str, bytes] = {}
        self._base_head: Optional[str] = None

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state == TransactionState.OPEN

    @property
    def pending_message(self) -> str:
        return "\n".join(self._messages)

    def _require_open(self, operation: str) -> None:
        if self._state != TransactionState.OPEN:
            raise TransactionStateError(operation, self._state.name)

    def _reset(self, state: TransactionState) -> None:
        self.catalog.discard_staged()
        self._messages = []
        self._resources = {}
        self._base_head = None
        self._state = state

    def _note(self, line: str) -> None:
        if line not in self._messages:
            self._messages.append(line)

    # -- state machine -----------------------------------------------------

    def begin(self) -> None:
        """Open a transaction.

        Raises:
            TransactionStateError: If a transaction is already open
        """
        if self._state == TransactionState.OPEN:
            raise TransactionStateError("begin", self._state.name)
        self.catalog.ensure_current()
        self._reset(TransactionState.OPEN)
        self._base_head = self.catalog.head
        logger.debug(f"Transaction opened at {self._base_head[:7] if self._base_head else 'empty'}")

    def stage(self, op: Operation) -> Optional[NoteMetadata]:
        """Validate an operation against the catalog (including earlier staged
        operations) and stage it.

        Returns:
            The note as it will look after commit, or None for resources and deletes
        """
        self._require_open("stage")
        try:
            if isinstance(op, AddNote):
                return self._add(op)
            if isinstance(op, EditContent):
                return self._edit_content(op)
            if isinstance(op, EditTags):
                return self._edit_tags(op)
            if isinstance(op, DeleteNote):
                return self._delete(op)
            if isinstance(op, MoveNote):
                return self._move(op)
            if isinstance(op, AddResource):
                return self._add_resource(op)
            raise TypeError(f"Unknown operation: {op!r}")
        except (GitNotesError, ValueError, TypeError):
            logger.debug(f"Staging {type(op).__name__} failed, aborting transaction")
            self._reset(TransactionState.ABORTED)
            raise

    @traced("transaction.commit")
    def commit(self, message: Optional[str] = None) -> Optional[Revision]:
        """Write every staged operation as one commit.

        Returns:
            The new revision, or None if nothing was staged or nothing changed

        Raises:
            TransactionStateError: If no transaction is open
            ConflictError: If the repository moved since :meth:`begin`
        """
        self._require_open("commit")
        files = self.catalog.staged_files()
        files.update(self._resources)
        if not files:
            logger.debug("Empty transaction, nothing to commit")
            self._reset(TransactionState.COMMITTED)
            return None

        commit_message = message or self.pending_message or "Updated notes."
        try:
            revision = self.storage.commit(
                commit_message, files, expected_head=self._base_head
            )
        except ConflictError:
            logger.warning("Repository changed during the transaction, aborting")
            self._reset(TransactionState.ABORTED)
            raise
        except GitNotesError:
            self._reset(TransactionState.ABORTED)
            raise

        try:
            if revision is not None:
                self.catalog.apply_staged(revision)
        finally:
            self._reset(TransactionState.COMMITTED)
        return revision

    def abort(self) -> None:
        """Discard all staged operations; the repository is never touched."""
        self._require_open("abort")
        self._reset(TransactionState.ABORTED)
        logger.debug("Transaction aborted")

    def run(
        self, ops: Union[Operation, Sequence[Operation]], message: Optional[str] = None
    ) -> Optional[Revision]:
        """Stage and commit in one call (an implicit begin/stage/commit)."""
        if not isinstance(ops, (list, tuple)):
            ops = [ops]
        self.begin()
        for op in ops:
            self.stage(op)
        return self.commit(message)

    @contextmanager
    def session(self) -> Iterator["TransactionManager"]:
        """Open a transaction committed on exit, or aborted if the block raises.

        Example:
            with manager.session() as tx:
                tx.stage(AddNote("2024/a", "text"))
                tx.stage(EditTags("2024/a", add=["x"]))
        """
        self.begin()
        try:
            yield self
        except BaseException:
            if self.is_open:
                self.abort()
            raise
        if self.is_open:
            self.commit()

    # -- operations --------------------------------------------------------

    def _add(self, op: AddNote) -> NoteMetadata:
        path = normalize_note_path(op.path)
        content = _as_bytes(op.content)
        tags = sorted({validate_tag(t) for t in op.tags})
        if not tags:
            tags = automatic_tags(content.decode("utf-8", errors="replace"))

        existing = self.catalog.by_path(path)
        if existing is not None:
            raise ConflictError(
                f"A note already exists at '{path}'",
                path=path, note_id=existing.id, operation="add",
            )

        now = utc_now()
        note = NoteMetadata(
            id=self.catalog.allocate_id(), path=path, tags=tags,
            created_at=now, updated_at=now,
        )
        self.catalog.stage_put(note, content)
        tags_str = f" using tags: {', '.join(note.tags)}" if note.tags else ""
        self._note(f"Added note '{path}' (id: {note.id}){tags_str}.")
        return note

    def _current_content(self, note: NoteMetadata) -> bytes:
        staged = self.catalog.staged_content(note.id)
        if staged is not None:
            return staged
        return self.storage.read_content(note.content_path)

    def _edit_content(self, op: EditContent) -> NoteMetadata:
        note = self.catalog.resolve(_as_ref(op.ref))
        content = _as_bytes(op.content)
        if self._current_content(note) == content:
            return note

        updated = note.model_copy(update={"updated_at": utc_now()})
        self.catalog.stage_put(updated, content, by_id=True)
        self._note(f"Updated note '{note.path}'.")
        return updated

    def _edit_tags(self, op: EditTags) -> NoteMetadata:
        note = self.catalog.resolve(_as_ref(op.ref))
        tags = set() if op.clear else set(note.tags)
        tags |= {validate_tag(t) for t in op.add}
        tags -= {t.strip() for t in op.remove}
        if sorted(tags) == note.tags:
            return note

        updated = note.model_copy(update={"tags": sorted(tags), "updated_at": utc_now()})
        self.catalog.stage_put(updated, by_id=True)
        self._note(f"Updated note '{note.path}'.")
        return updated

    def _delete(self, op: DeleteNote) -> None:
        note = self.catalog.resolve(_as_ref(op.ref))
        self.catalog.stage_delete(note)
        self._note(f"Deleted note '{note.path}'.")
        return None

    def _move(self, op: MoveNote) -> NoteMetadata:
        note = self.catalog.resolve(_as_ref(op.ref))
        destination = normalize_note_path(op.destination, "destination")
        if destination == note.path:
            return note

        occupant = self.catalog.by_path(destination)
        if occupant is not None:
            if not op.force:
                raise ConflictError(
                    f"A note already exists at '{destination}'",
                    path=destination, note_id=occupant.id, operation="move",
                )
            self.catalog.stage_delete(occupant)
            self._note(f"Deleted note '{occupant.path}'.")

        moved = note.model_copy(update={"path": destination, "updated_at": utc_now()})
        self.catalog.stage_put(moved, by_id=True)
        self._note(f"Moved note from '{note.path}' to '{destination}'.")
        return moved

    def _add_resource(self, op: AddResource) -> None:
        destination = normalize_note_path(op.destination, "destination")
        self._resources[f"{RESOURCES_DIR}/{destination}"] = op.data
        if op.source:
            self._note(f"Added resource '{destination}' (from {op.source}).")
        else:
            self._note(f"Added resource '{destination}'.")
        return None

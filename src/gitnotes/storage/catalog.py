"""The note catalog: id/path mapping and metadata for every note.

The catalog is an owned object built at startup from the SQLite cache (or
by replaying the history when the cache is stale) and passed to the
services that need it. Mutations are staged in an overlay that only the
owning process can see until the transaction manager commits them.
"""

import fnmatch
import logging
from typing import Dict, Iterator, List, Optional, Tuple, Union

from gitnotes.exceptions import (
    AmbiguousError,
    CatalogRebuildError,
    ConflictError,
    ErrorCode,
    GitNotesError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from gitnotes.models.schema import (
    NEXT_ID_PATH,
    NOTES_DIR,
    ById,
    ByPath,
    GroupBy,
    NoteMetadata,
    NoteRefType,
    is_glob_pattern,
    normalize_path_pattern,
    parse_store_path,
    utc_now,
)
from gitnotes.observability import timed_operation
from gitnotes.storage.catalog_cache import CatalogCache
from gitnotes.storage.git_storage import GitStorage
from gitnotes.storage.link_tree import NoteLinkTree

logger = logging.getLogger(__name__)

UNTAGGED = "untagged"


class NoteTree:
    """A node of a hierarchical note listing.

    Children are only grouped on first access, so building a tree over a
    large catalog costs nothing until it is walked.
    """

    def __init__(
        self,
        name: str = "",
        path: str = "",
        entries: Optional[List[Tuple[Tuple[str, ...], NoteMetadata]]] = None,
        note: Optional[NoteMetadata] = None,
    ):
        self.name = name
        self.path = path
        self.note = note
        self._entries = entries or []
        self._children: Optional[Dict[str, "NoteTree"]] = None

    @property
    def children(self) -> Dict[str, "NoteTree"]:
        if self._children is None:
            grouped: Dict[str, List[Tuple[Tuple[str, ...], NoteMetadata]]] = {}
            leaves: Dict[str, NoteMetadata] = {}
            for segments, note in self._entries:
                head, rest = segments[0], segments[1:]
                if rest:
                    grouped.setdefault(head, []).append((rest, note))
                else:
                    leaves[head] = note
                    grouped.setdefault(head, [])
            self._children = {
                name: NoteTree(
                    name=name,
                    path=f"{self.path}/{name}" if self.path else name,
                    entries=grouped[name],
                    note=leaves.get(name),
                )
                for name in sorted(grouped)
            }
            self._entries = []
        return self._children

    @property
    def is_leaf(self) -> bool:
        return self.note is not None and not self.children

    @property
    def last_updated(self):
        """Most recent ``updated_at`` of any note at or below this node."""
        stamps = [n.updated_at for n in self.notes()]
        return max(stamps) if stamps else None

    def notes(self) -> Iterator[NoteMetadata]:
        if self.note is not None:
            yield self.note
        if self._children is None:
            for _, note in self._entries:
                yield note
            return
        for child in self._children.values():
            yield from child.notes()

    def find(self, path: str) -> Optional["NoteTree"]:
        node = self
        for segment in [s for s in path.split("/") if s]:
            node = node.children.get(segment)
            if node is None:
                return None
        return node

    def walk(self, depth: int = 0) -> Iterator[Tuple[int, "NoteTree"]]:
        """Depth-first traversal yielding ``(depth, node)`` below this node."""
        for child in self.children.values():
            yield depth, child
            yield from child.walk(depth + 1)


class Catalog:
    """Mapping between note ids, virtual paths and note metadata."""

    def __init__(
        self,
        storage: GitStorage,
        cache: Optional[CatalogCache] = None,
        links: Optional[NoteLinkTree] = None,
    ):
        self.storage = storage
        self.cache = cache
        self.links = links
        self._notes: Dict[int, NoteMetadata] = {}
        self._paths: Dict[str, int] = {}
        self._next_id = 1
        self._head: Optional[str] = None
        # Overlay of the open transaction; None marks a staged deletion
        self._staged: Dict[int, Optional[NoteMetadata]] = {}
        self._staged_content: Dict[int, bytes] = {}
        self._staged_next_id: Optional[int] = None

    @classmethod
    def load(
        cls,
        storage: GitStorage,
        cache: Optional[CatalogCache] = None,
        links: Optional[NoteLinkTree] = None,
    ) -> "Catalog":
        """Build the catalog from the cache, rebuilding if it does not match HEAD."""
        catalog = cls(storage, cache, links)
        head = storage.head()
        cached = cache.load() if cache is not None else None
        if cached is not None and cached.head == head:
            catalog._install(
                {n.id: n for n in cached.notes}, cached.next_id, head
            )
            logger.debug(f"Catalog loaded from cache ({len(cached.notes)} notes)")
        else:
            if cached is not None:
                logger.info("Catalog cache is stale, rebuilding from history")
            catalog.rebuild()
        return catalog

    @property
    def head(self) -> Optional[str]:
        return self._head

    @property
    def next_id(self) -> int:
        return self._next_id

    @property
    def has_staged(self) -> bool:
        return bool(self._staged) or self._staged_next_id not in (None, self._next_id)

    def _install(self, notes: Dict[int, NoteMetadata], next_id: int, head: Optional[str]) -> None:
        paths: Dict[str, int] = {}
        for note in sorted(notes.values(), key=lambda n: n.id):
            if not note.is_deleted:
                paths[note.path] = note.id
        self._notes = notes
        self._paths = paths
        self._next_id = max([next_id] + [i + 1 for i in notes])
        self._head = head
        self.discard_staged()

    # -- merged (committed + staged) views ---------------------------------

    def _lookup(self, note_id: int) -> Optional[NoteMetadata]:
        if note_id in self._staged:
            return self._staged[note_id]
        return self._notes.get(note_id)

    def _path_index(self) -> Dict[str, int]:
        if not self._staged:
            return self._paths
        index = {p: i for p, i in self._paths.items() if i not in self._staged}
        for note_id, note in self._staged.items():
            if note is not None:
                index[note.path] = note_id
        return index

    def get(self, note_id: int) -> Optional[NoteMetadata]:
        """Note (live or tombstone) with this id, including staged changes."""
        note = self._lookup(note_id)
        if note is None and note_id in self._staged:
            return self._tombstone(note_id)
        return note

    def notes(self, include_deleted: bool = False) -> List[NoteMetadata]:
        ids = sorted(set(self._notes) | set(self._staged))
        result = []
        for note_id in ids:
            note = self._lookup(note_id)
            if note is not None and not note.is_deleted:
                result.append(note)
            elif include_deleted and note_id in self._notes:
                result.append(self._tombstone(note_id))
        return result

    # -- resolution --------------------------------------------------------

    def by_path(self, path: str) -> Optional[NoteMetadata]:
        """Live note at exactly ``path`` (no pattern matching)."""
        note_id = self._path_index().get(path)
        return self._lookup(note_id) if note_id is not None else None

    def _tombstone(self, note_id: int) -> Optional[NoteMetadata]:
        """Committed note, marked deleted if its deletion is staged."""
        note = self._notes.get(note_id)
        if note is None or note.is_deleted or self._staged.get(note_id, note) is not None:
            return note
        return note.model_copy(update={"deleted_at": utc_now()})

    def _tombstone_at(self, path: str) -> Optional[NoteMetadata]:
        candidates = [
            t for t in (self._tombstone(i) for i in self._notes)
            if t.is_deleted and t.path == path
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda n: (n.deleted_at, n.id))

    def match(self, pattern: str) -> List[NoteMetadata]:
        """All live notes selected by a path pattern.

        The first non-empty rule wins: exact path, then glob, then
        directory prefix.
        """
        pattern = normalize_path_pattern(pattern)
        index = self._path_index()
        if pattern in index:
            return [self._lookup(index[pattern])]
        matches: List[str] = []
        if is_glob_pattern(pattern):
            matches = [p for p in index if fnmatch.fnmatchcase(p, pattern)]
        if not matches:
            matches = [p for p in index if p.startswith(pattern + "/")]
        return [self._lookup(index[p]) for p in sorted(matches)]

    def resolve(self, ref: NoteRefType, include_deleted: bool = False) -> NoteMetadata:
        """Resolve a reference to exactly one note.

        Raises:
            NotFoundError: If nothing matches
            AmbiguousError: If a path pattern matches more than one note
        """
        if isinstance(ref, ById):
            note = self._lookup(ref.id)
            if note is not None and not note.is_deleted:
                return note
            if include_deleted:
                tombstone = self._tombstone(ref.id)
                if tombstone is not None:
                    return tombstone
            raise NotFoundError(str(ref.id), message=f"Note with id {ref.id} not found")

        if not isinstance(ref, ByPath):
            raise ValidationError(f"Not a note reference: {ref!r}", field="ref")

        matches = self.match(ref.pattern)
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            raise AmbiguousError(ref.pattern, [n.path for n in matches])
        if include_deleted:
            tombstone = self._tombstone_at(ref.pattern)
            if tombstone is not None:
                return tombstone
        raise NotFoundError(ref.pattern)

    # -- staging -----------------------------------------------------------

    def allocate_id(self) -> int:
        """Reserve the next id; the counter is persisted by the next commit only."""
        if self._staged_next_id is None:
            self._staged_next_id = self._next_id
        note_id = self._staged_next_id
        self._staged_next_id += 1
        return note_id

    def stage_put(
        self, note: NoteMetadata, content: Optional[bytes] = None, by_id: bool = False
    ) -> NoteMetadata:
        """Stage a new or changed note (and optionally its content).

        Raises:
            ConflictError: If another live note holds the path, or the path is
                taken and the note was not addressed by id
        """
        holder = self._path_index().get(note.path)
        if holder is not None and (holder != note.id or not by_id):
            raise ConflictError(
                f"A note already exists at '{note.path}'",
                path=note.path, note_id=holder, operation="put",
            )
        self._staged[note.id] = note
        if content is not None:
            self._staged_content[note.id] = content
        return note

    def stage_delete(self, note: NoteMetadata) -> None:
        current = self._lookup(note.id)
        if current is None or current.is_deleted:
            raise NotFoundError(str(note.id), message=f"Note with id {note.id} not found")
        self._staged_content.pop(note.id, None)
        if note.id in self._notes:
            self._staged[note.id] = None
        else:
            # Created and deleted inside the same transaction
            self._staged.pop(note.id, None)

    def staged_content(self, note_id: int) -> Optional[bytes]:
        return self._staged_content.get(note_id)

    def staged_files(self) -> Dict[str, Optional[bytes]]:
        """Repository changes needed to persist the overlay, in staging order."""
        files: Dict[str, Optional[bytes]] = {}
        for note_id, note in self._staged.items():
            committed = self._notes.get(note_id)
            if note is None:
                files[committed.content_path] = None
                files[committed.metadata_path] = None
                continue
            if note_id in self._staged_content:
                files[note.content_path] = self._staged_content[note_id]
            files[note.metadata_path] = note.to_metadata_bytes()
        if self._staged_next_id is not None and self._staged_next_id != self._next_id:
            files[NEXT_ID_PATH] = f"{self._staged_next_id}\n".encode("utf-8")
        return files

    def discard_staged(self) -> None:
        self._staged = {}
        self._staged_content = {}
        self._staged_next_id = None

    def apply_staged(self, revision) -> None:
        """Fold the overlay into the committed state after ``revision`` was written."""
        changed = set(revision.changed_paths)
        unlinked: List[NoteMetadata] = []
        linked: List[NoteMetadata] = []
        for note_id, note in self._staged.items():
            previous = self._notes.get(note_id)
            if previous is not None and not previous.is_deleted:
                if self._paths.get(previous.path) == note_id:
                    del self._paths[previous.path]
                if note is None or note.path != previous.path:
                    unlinked.append(previous)
            if note is None:
                self._notes[note_id] = previous.model_copy(
                    update={"deleted_at": revision.timestamp, "last_commit": revision.id}
                )
                continue
            if note.metadata_path in changed or note.content_path in changed:
                note = note.model_copy(update={"last_commit": revision.id})
            elif previous is not None:
                note = previous
            self._notes[note_id] = note
            self._paths[note.path] = note_id
            linked.append(note)

        if self.links is not None:
            for note in unlinked:
                self.links.unlink_note(note)
            for note in linked:
                self.links.link_note(note)

        if self._staged_next_id is not None:
            self._next_id = max(self._next_id, self._staged_next_id)
        self._head = revision.id
        self.discard_staged()
        self.save()

    # -- history replay ----------------------------------------------------

    def rebuild(self) -> int:
        """Rebuild the catalog by replaying the full history oldest-first.

        Returns:
            Number of notes (live and tombstones) in the rebuilt catalog

        Raises:
            CatalogRebuildError: If any revision cannot be replayed
        """
        head = self.storage.head()
        notes: Dict[int, NoteMetadata] = {}
        paths: Dict[str, int] = {}
        revision_id = None

        with timed_operation("catalog.rebuild", head=head[:7] if head else None) as op:
            try:
                if head is not None:
                    for revision in self.storage.log(
                        path_filter=NOTES_DIR, start=head, oldest_first=True
                    ):
                        revision_id = revision.id
                        self._replay(revision, notes, paths)
                next_id = self._read_counter(head)
            except CatalogRebuildError:
                raise
            except (GitNotesError, ValueError) as e:
                raise CatalogRebuildError(
                    f"Could not rebuild catalog: {e}",
                    revision=revision_id, original_error=e,
                ) from e
            op["notes"] = len(notes)

        self._install(notes, next_id, head)
        logger.info(f"Catalog rebuilt: {len(paths)} live notes, {len(notes)} total")
        if self.links is not None:
            self.links.sync_all(self.notes())
        self.save()
        return len(notes)

    def _replay(self, revision, notes: Dict[int, NoteMetadata], paths: Dict[str, int]) -> None:
        touched: Dict[int, Dict[str, str]] = {}
        for change in revision.changes:
            parsed = parse_store_path(change.path)
            if parsed is not None:
                note_id, ext = parsed
                touched.setdefault(note_id, {})[ext] = change.status

        for note_id in sorted(touched):
            statuses = touched[note_id]
            previous = notes.get(note_id)
            meta_status = statuses.get(".metadata")

            if meta_status in ("A", "M"):
                data = self.storage.read_content(
                    f"{NOTES_DIR}/{note_id}.metadata", revision.id
                )
                note = NoteMetadata.from_metadata_bytes(data, last_commit=revision.id)
                if note.id != note_id:
                    raise CatalogRebuildError(
                        f"Metadata of note {note_id} claims id {note.id}",
                        revision=revision.id,
                    )
                if previous is not None and paths.get(previous.path) == note_id:
                    del paths[previous.path]
                holder = paths.get(note.path)
                if holder is not None and holder != note_id:
                    logger.warning(
                        f"Revision {revision.short_id}: notes {holder} and {note_id} "
                        f"share path '{note.path}', keeping {note_id}"
                    )
                paths[note.path] = note_id
                notes[note_id] = note
            elif meta_status == "D":
                if previous is None:
                    continue
                if paths.get(previous.path) == note_id:
                    del paths[previous.path]
                notes[note_id] = previous.model_copy(
                    update={"deleted_at": revision.timestamp, "last_commit": revision.id}
                )
            elif previous is not None:
                notes[note_id] = previous.model_copy(update={"last_commit": revision.id})

    def _read_counter(self, head: Optional[str]) -> int:
        if head is None:
            return 1
        try:
            raw = self.storage.read_content(NEXT_ID_PATH, head)
        except NotFoundError:
            return 1
        try:
            return int(raw.decode("utf-8").strip())
        except ValueError:
            logger.warning(f"Ignoring malformed id counter in {NEXT_ID_PATH}")
            return 1

    def ensure_current(self) -> bool:
        """Rebuild if the repository head moved underneath the catalog.

        Returns:
            True if a rebuild happened
        """
        if self.storage.head() == self._head:
            return False
        logger.info("Repository head changed outside gitnotes, rebuilding catalog")
        self.rebuild()
        return True

    def save(self) -> None:
        """Write the committed state to the cache.

        A failed write only leaves a stale cache behind, which the next
        :meth:`load` detects and rebuilds, so it is logged and not raised.
        """
        if self.cache is None:
            return
        try:
            self.cache.save(self._head, self._next_id, self._notes.values())
        except StorageError as e:
            logger.warning(f"Could not save catalog cache: {e.message}")

    def snapshot(self) -> dict:
        """Comparable representation of the committed catalog state."""
        return {
            "head": self._head,
            "next_id": self._next_id,
            "notes": {i: self._notes[i].model_dump() for i in sorted(self._notes)},
            "paths": dict(sorted(self._paths.items())),
        }

    # -- views -------------------------------------------------------------

    def tree(self, group_by: Union[GroupBy, str] = GroupBy.PATH, prefix: Optional[str] = None) -> NoteTree:
        """Hierarchical view of the live notes.

        Raises:
            NotFoundError: If ``prefix`` does not exist in the tree
        """
        group_by = GroupBy(group_by)
        entries: List[Tuple[Tuple[str, ...], NoteMetadata]] = []
        for note in self.notes():
            segments = tuple(note.path.split("/"))
            if group_by == GroupBy.CREATED:
                created = note.created_at
                entries.append(
                    ((f"{created.year:04d}", f"{created.month:02d}", f"{created.day:02d}") + segments, note)
                )
            elif group_by == GroupBy.TAGS:
                for tag in note.tags or [UNTAGGED]:
                    entries.append(((tag,) + segments, note))
            else:
                entries.append((segments, note))

        root = NoteTree(entries=entries)
        if not prefix:
            return root
        node = root.find(normalize_path_pattern(prefix))
        if node is None:
            raise NotFoundError(prefix)
        return node

    def list_directory(self, path: Optional[str] = None) -> List[NoteTree]:
        """Entries directly below ``path`` in the path hierarchy.

        Raises:
            NotFoundError: If the directory does not exist
            ValidationError: If ``path`` is a note rather than a directory
        """
        node = self.tree(GroupBy.PATH, prefix=path)
        if node.is_leaf:
            raise ValidationError(
                f"'{path}' is a note, not a directory",
                field="path", value=path, code=ErrorCode.INVALID_PATH,
            )
        return list(node.children.values())

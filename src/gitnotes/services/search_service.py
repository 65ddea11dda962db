"""Service for finding notes by metadata and searching their content."""

import difflib
import fnmatch
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Pattern, Sequence, Union

from gitnotes.exceptions import ErrorCode, NotFoundError, ValidationError
from gitnotes.models.schema import (
    NOTE_CONTENT_EXT,
    NOTES_DIR,
    DateRange,
    NoteMetadata,
    OrderBy,
    metadata_path_for,
    parse_store_path,
)
from gitnotes.observability import timed_operation
from gitnotes.services.snippets import OUTPUT_LANGUAGE, parse_code_blocks
from gitnotes.storage.catalog import Catalog
from gitnotes.storage.git_storage import GitStorage

logger = logging.getLogger(__name__)

DateFilter = Union[DateRange, Sequence[int], None]


class GrepScope(str, Enum):
    CURRENT = "current"
    HISTORIC = "historic"


@dataclass(frozen=True)
class GrepMatch:
    """A matching line; ``revision`` is set for historic matches."""

    note: NoteMetadata
    line_number: int
    line: str
    revision: Optional[str] = None


def _date_range(value: DateFilter) -> Optional[DateRange]:
    if value is None or isinstance(value, DateRange):
        return value
    return DateRange.from_parts(list(value))


def _compile(pattern: str, ignore_case: bool) -> Pattern:
    try:
        return re.compile(pattern, re.IGNORECASE if ignore_case else 0)
    except re.error as e:
        raise ValidationError(
            f"Invalid pattern: {e}", field="pattern", value=pattern,
            code=ErrorCode.INVALID_PATTERN,
        )


def _path_selected(path: str, path_filter: Optional[str]) -> bool:
    if not path_filter:
        return True
    path_filter = path_filter.strip("/")
    return (
        path == path_filter
        or path.startswith(path_filter + "/")
        or fnmatch.fnmatchcase(path, path_filter)
    )


class SearchService:
    """Property search over the catalog and grep over note content.

    Nothing here writes; results are computed from the catalog and the
    repository at the time of the call.
    """

    def __init__(self, storage: GitStorage, catalog: Catalog):
        self.storage = storage
        self.catalog = catalog

    def find(
        self,
        tags: Optional[Iterable[str]] = None,
        path_glob: Optional[str] = None,
        id_pattern: Optional[str] = None,
        created: DateFilter = None,
        updated: DateFilter = None,
        order_by: Union[OrderBy, str] = OrderBy.PATH,
        include_deleted: bool = False,
    ) -> List[NoteMetadata]:
        """Notes matching every given filter.

        Args:
            tags: Notes must carry all of these tags
            path_glob: Glob over the virtual path (a plain directory also matches)
            id_pattern: Regular expression searched in the decimal id
            created: Date range or partial date ``[year, month, ...]``
            updated: Same, applied to the last update time
            order_by: Sort key; path ascending by default
        """
        required = set(tags or [])
        id_rx = _compile(id_pattern, False) if id_pattern else None
        created_range = _date_range(created)
        updated_range = _date_range(updated)
        order_by = OrderBy(order_by)

        with timed_operation("search.find") as op:
            results = []
            for note in self.catalog.notes(include_deleted=include_deleted):
                if required and not required.issubset(note.tags):
                    continue
                if path_glob and not _path_selected(note.path, path_glob):
                    continue
                if id_rx and not id_rx.search(str(note.id)):
                    continue
                if created_range and not created_range.contains(note.created_at):
                    continue
                if updated_range and not updated_range.contains(note.updated_at):
                    continue
                results.append(note)

            if order_by == OrderBy.ID:
                results.sort(key=lambda n: n.id)
            elif order_by == OrderBy.CREATED:
                results.sort(key=lambda n: (n.created_at, n.id))
            elif order_by == OrderBy.UPDATED:
                results.sort(key=lambda n: (n.updated_at, n.id))
            else:
                results.sort(key=lambda n: (n.path, n.id))
            op["result_count"] = len(results)
        return results

    def grep(
        self,
        pattern: str,
        scope: Union[GrepScope, str] = GrepScope.CURRENT,
        path_filter: Optional[str] = None,
        ignore_case: bool = True,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> Iterator[GrepMatch]:
        """Search note content line by line.

        ``CURRENT`` scans the live notes. ``HISTORIC`` walks the history
        oldest-first (from ``start``, default HEAD, back to but excluding
        ``end``) and reports each matching line once, at the revision that
        introduced it; deleted notes are included.

        Raises:
            ValidationError: If the pattern is not a valid regular expression
        """
        rx = _compile(pattern, ignore_case)
        if GrepScope(scope) == GrepScope.HISTORIC:
            return self._grep_historic(rx, path_filter, start, end)
        return self._grep_current(rx, path_filter)

    def _grep_current(self, rx: Pattern, path_filter: Optional[str]) -> Iterator[GrepMatch]:
        for note in self.catalog.notes():
            if not _path_selected(note.path, path_filter):
                continue
            content = self.catalog.staged_content(note.id)
            if content is None:
                content = self.storage.read_content(note.content_path)
            text = content.decode("utf-8", errors="replace")
            for number, line in enumerate(text.splitlines(), 1):
                if rx.search(line):
                    yield GrepMatch(note=note, line_number=number, line=line)

    def _grep_historic(
        self,
        rx: Pattern,
        path_filter: Optional[str],
        start: Optional[str],
        end: Optional[str],
    ) -> Iterator[GrepMatch]:
        walk = self.storage.log(
            path_filter=f"{NOTES_DIR}/*{NOTE_CONTENT_EXT}",
            start=start, end=end, oldest_first=True,
        )
        try:
            for revision in walk:
                for change in revision.changes:
                    parsed = parse_store_path(change.path)
                    if parsed is None or parsed[1] != NOTE_CONTENT_EXT:
                        continue
                    if change.status not in ("A", "M"):
                        continue
                    yield from self._introduced_matches(rx, revision, parsed[0], change.path, path_filter)
        finally:
            walk.close()

    def _introduced_matches(
        self, rx: Pattern, revision, note_id: int, store_path: str, path_filter: Optional[str]
    ) -> Iterator[GrepMatch]:
        new_blob = self.storage.blob_id(store_path, revision.id)
        old_blob = self.storage.blob_id(store_path, f"{revision.id}^")
        if new_blob is None or new_blob == old_blob:
            return

        note = self._note_at(note_id, revision.id)
        if note is None or not _path_selected(note.path, path_filter):
            return

        new_lines = self.storage.read_blob(new_blob).decode("utf-8", errors="replace").splitlines()
        old_lines: List[str] = []
        if old_blob is not None:
            old_lines = self.storage.read_blob(old_blob).decode("utf-8", errors="replace").splitlines()

        matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)
        for tag, _i1, _i2, j1, j2 in matcher.get_opcodes():
            if tag not in ("replace", "insert"):
                continue
            for index in range(j1, j2):
                if rx.search(new_lines[index]):
                    yield GrepMatch(
                        note=note, line_number=index + 1,
                        line=new_lines[index], revision=revision.id,
                    )

    def _note_at(self, note_id: int, revision: str) -> Optional[NoteMetadata]:
        """Note metadata as of ``revision``, falling back to the catalog."""
        try:
            data = self.storage.read_content(metadata_path_for(note_id), revision)
            return NoteMetadata.from_metadata_bytes(data, last_commit=revision)
        except (NotFoundError, ValidationError):
            logger.debug(f"No readable metadata for note {note_id} at {revision[:7]}")
            return self.catalog.get(note_id)

    @staticmethod
    def extract_content(content: str, only_code: bool = False, only_output: bool = False) -> str:
        """Keep only snippet sources (``only_code``), only ``output`` blocks
        (``only_output``), or both; the content is returned unchanged if neither is set.
        """
        if not only_code and not only_output:
            return content
        parts = []
        for block in parse_code_blocks(content):
            is_output = block.language == OUTPUT_LANGUAGE
            if (is_output and only_output) or (not is_output and only_code):
                parts.append(block.source)
        return "".join(parts)

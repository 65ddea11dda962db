"""Symbolic link view of a notebook.

Mirrors the virtual note paths onto the working tree: a live note
``2024/test`` gets a relative link ``<repo>/2024/test.md`` pointing at its
content file ``notes/<id>.md``, so the notebook can be browsed and opened
with ordinary tools. The links are never committed.
"""
import logging
import os
from pathlib import Path
from typing import Iterable, Optional

from gitnotes.models.schema import NOTE_CONTENT_EXT, NOTES_DIR, RESOURCES_DIR, NoteMetadata

logger = logging.getLogger(__name__)

RESERVED_ROOTS = (NOTES_DIR, RESOURCES_DIR)


class NoteLinkTree:
    """Keeps one symbolic link per live note below the repository root.

    Failures are logged and never raised: the links are a convenience view
    that :meth:`sync_all` can always recreate from the catalog.

    Args:
        root: Working tree of the notebook repository.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def link_path(self, note: NoteMetadata) -> Optional[Path]:
        """Location of the link for ``note``; None where it would shadow repository data."""
        segments = note.path.split("/")
        if segments[0].startswith(".") or (len(segments) > 1 and segments[0] in RESERVED_ROOTS):
            return None
        return self.root.joinpath(*segments[:-1], segments[-1] + NOTE_CONTENT_EXT)

    def link_note(self, note: NoteMetadata) -> bool:
        """Create or refresh the link of one note.

        Returns:
            True if the link now points at the note's content
        """
        link = self.link_path(note)
        if link is None:
            logger.debug(f"Not linking note {note.id}: '{note.path}' overlaps repository data")
            return False

        depth = len(link.relative_to(self.root).parts) - 1
        target = Path(*([os.pardir] * depth), note.content_path)
        try:
            link.parent.mkdir(parents=True, exist_ok=True)
            if link.is_symlink():
                link.unlink()
            link.symlink_to(target)
        except OSError as e:
            logger.warning(f"Failed to link note {note.id} at {link}: {e}")
            return False
        logger.debug(f"Linked {link} -> {target}")
        return True

    def unlink_note(self, note: NoteMetadata) -> None:
        """Remove the link of a note that was moved or deleted."""
        link = self.link_path(note)
        if link is not None and link.is_symlink():
            self._remove_link(link)

    def sync_all(self, notes: Iterable[NoteMetadata]) -> int:
        """Full re-sync: remove every note link, then link all ``notes``.

        Returns:
            Number of notes linked.
        """
        self._clean_old_links()
        count = 0
        for note in notes:
            if self.link_note(note):
                count += 1
        logger.info(f"Linked {count} notes below {self.root}")
        return count

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _is_note_link(path: Path) -> bool:
        try:
            target = Path(os.readlink(path))
        except OSError:
            return False
        return NOTES_DIR in target.parts

    def _remove_link(self, link: Path) -> bool:
        try:
            link.unlink()
        except OSError as e:
            logger.warning(f"Failed to remove note link {link}: {e}")
            return False
        self._prune(link.parent)
        return True

    def _prune(self, directory: Path) -> None:
        """Remove directories left empty by removed links, up to the root."""
        while directory != self.root and self.root in directory.parents:
            try:
                directory.rmdir()
            except OSError:
                return
            directory = directory.parent

    def _clean_old_links(self) -> None:
        """Remove existing note links (other files are left alone)."""
        cleaned = 0
        for entry in sorted(self.root.iterdir()):
            if entry.name in RESERVED_ROOTS or entry.name.startswith("."):
                continue
            if entry.is_symlink():
                if self._is_note_link(entry) and self._remove_link(entry):
                    cleaned += 1
                continue
            if not entry.is_dir():
                continue
            for dirpath, _dirnames, filenames in os.walk(entry, topdown=False):
                for name in filenames:
                    path = Path(dirpath) / name
                    if path.is_symlink() and self._is_note_link(path) and self._remove_link(path):
                        cleaned += 1
        if cleaned:
            logger.info(f"Removed {cleaned} old note links before re-sync")

"""Tests for the symbolic link view of the notebook."""
import os

import pytest

from gitnotes.models.schema import ById, NoteMetadata
from gitnotes.services.transaction_manager import AddNote, DeleteNote, MoveNote, TransactionManager
from gitnotes.storage.catalog import Catalog
from gitnotes.storage.catalog_cache import CatalogCache
from gitnotes.storage.link_tree import NoteLinkTree


@pytest.fixture
def links(storage):
    return NoteLinkTree(storage.repo_path)


@pytest.fixture
def linked_catalog(storage, links):
    cache = CatalogCache.for_repository(storage.repo_path)
    catalog = Catalog.load(storage, cache, links)
    yield catalog
    cache.close()


@pytest.fixture
def tx(storage, linked_catalog):
    return TransactionManager(storage, linked_catalog)


class TestLinkPaths:
    def test_relative_target(self, links, storage):
        note = NoteMetadata(id=7, path="2024/test")
        assert links.link_path(note) == storage.repo_path / "2024" / "test.md"
        assert links.link_note(note)
        assert os.readlink(storage.repo_path / "2024" / "test.md") == os.path.join("..", "notes", "7.md")

    def test_paths_overlapping_repository_data_are_skipped(self, links):
        assert links.link_path(NoteMetadata(id=1, path="notes/x")) is None
        assert links.link_path(NoteMetadata(id=2, path="resources/x")) is None
        assert links.link_path(NoteMetadata(id=3, path=".hidden")) is None
        assert links.link_path(NoteMetadata(id=4, path="notes")) is not None
        assert links.link_note(NoteMetadata(id=1, path="notes/x")) is False

    def test_existing_regular_file_is_kept(self, links, storage):
        (storage.repo_path / "mine.md").write_text("user file")
        assert links.link_note(NoteMetadata(id=1, path="mine")) is False
        assert (storage.repo_path / "mine.md").read_text() == "user file"


class TestLinksFollowCommits:
    """Tests for links refreshed as transactions are committed."""

    def test_add_move_delete(self, tx, storage):
        root = storage.repo_path
        tx.run(AddNote("2024/test", "hello"))
        assert (root / "2024" / "test.md").read_text() == "hello"

        tx.run(MoveNote(ById(1), "archive/test"))
        assert not (root / "2024").exists()
        assert (root / "archive" / "test.md").read_text() == "hello"

        tx.run(DeleteNote(ById(1)))
        assert not (root / "archive").exists()

    def test_path_swapped_in_one_transaction(self, tx, storage):
        tx.run(AddNote("a", "first"))
        tx.run([MoveNote(ById(1), "b"), AddNote("a", "second")])
        assert (storage.repo_path / "a.md").read_text() == "second"
        assert (storage.repo_path / "b.md").read_text() == "first"

    def test_rebuild_recreates_links(self, tx, linked_catalog, storage):
        tx.run([AddNote("x/one", "1"), AddNote("two", "2")])
        stray = storage.repo_path / "x" / "stale.md"
        stray.symlink_to(os.path.join("..", "notes", "99.md"))
        (storage.repo_path / "two.md").unlink()
        (storage.repo_path / "keep.txt").write_text("unrelated")

        linked_catalog.rebuild()

        assert not stray.is_symlink()
        assert (storage.repo_path / "two.md").read_text() == "2"
        assert (storage.repo_path / "x" / "one.md").read_text() == "1"
        assert (storage.repo_path / "keep.txt").read_text() == "unrelated"

    def test_links_are_never_committed(self, tx, storage):
        tx.run(AddNote("a", "x"))
        tx.run(AddNote("b", "y"))
        assert storage.blob_id("a.md") is None
        assert storage.blob_id("b.md") is None

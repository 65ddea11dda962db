"""Tests for the notes service facade."""
import subprocess

import pytest

from gitnotes.exceptions import AmbiguousError, ConflictError, NotFoundError, ValidationError
from gitnotes.services.notes_service import NotesService
from tests.fakes import FakeSnippetRunner


class TestOpen:
    def test_creates_notebook_in_base_dir(self, notes_service, test_config):
        assert notes_service.storage.repo_path == test_config.get_repository_path().resolve()
        assert (notes_service.storage.repo_path / ".git").is_dir()

    def test_reopen_uses_cache(self, notes_service, test_config):
        notes_service.add_note("a", "text")
        notes_service.close()

        reopened = NotesService.open(config=test_config, snippet_runner=FakeSnippetRunner())
        try:
            assert reopened.get_note("a").id == 1
            assert reopened.catalog.snapshot() == notes_service.catalog.snapshot()
        finally:
            reopened.close()

    def test_missing_notebook_without_create(self, temp_dir, test_config):
        with pytest.raises(Exception):
            NotesService.open(temp_dir / "absent", create=False, config=test_config)


class TestNotes:
    """Tests for note operations."""

    def test_add_and_read(self, notes_service):
        note = notes_service.add_note("2024/test", "Hello\n", ["x"])
        assert note.id == 1
        assert note.tags == ["x"]
        assert notes_service.read_note("2024/test") == "Hello\n"
        assert notes_service.read_note(1) == "Hello\n"

    def test_digit_paths_need_dot_prefix(self, notes_service):
        notes_service.add_note("2024", "year note")
        with pytest.raises(NotFoundError):
            notes_service.get_note("2024")
        assert notes_service.get_note("./2024").path == "2024"

    def test_edit_content_and_tags_in_one_revision(self, notes_service):
        notes_service.add_note("a", "v1", ["old"])
        before = notes_service.storage.revision_count()
        note = notes_service.edit_note("a", content="v2", add_tags=["new"], remove_tags=["old"])

        assert note.tags == ["new"]
        assert notes_service.read_note("a") == "v2"
        assert notes_service.storage.revision_count() == before + 1

    def test_read_older_revision(self, notes_service):
        notes_service.add_note("a", "v1")
        first = notes_service.storage.head()
        notes_service.edit_note("a", content="v2")
        assert notes_service.read_note("a", revision=first) == "v1"

    def test_read_deleted_note_at_old_revision(self, notes_service, test_config, monkeypatch):
        notes_service.add_note("a", "v1")
        first = notes_service.storage.head()
        notes_service.remove_notes("a")

        assert notes_service.read_note(1, revision=first) == "v1"
        monkeypatch.setattr(test_config, "tombstone_history", False)
        with pytest.raises(NotFoundError):
            notes_service.read_note(1, revision=first)

    def test_move(self, notes_service):
        notes_service.add_note("a", "x")
        moved = notes_service.move_note("a", "dir/b")
        assert moved.path == "dir/b"
        assert moved.id == 1

    def test_remove_ambiguous_needs_recursive(self, notes_service):
        notes_service.add_note("dir/a")
        notes_service.add_note("dir/b")
        with pytest.raises(AmbiguousError):
            notes_service.remove_notes("dir")

        removed = notes_service.remove_notes("dir", recursive=True)
        assert [n.path for n in removed] == ["dir/a", "dir/b"]
        assert notes_service.catalog.notes() == []

    def test_remove_nothing(self, notes_service):
        with pytest.raises(NotFoundError):
            notes_service.remove_notes("nothing", recursive=True)

    def test_history_of_one_note(self, notes_service):
        notes_service.add_note("a", "1")
        notes_service.add_note("b", "1")
        notes_service.edit_note("a", content="2")

        history = notes_service.history("a")
        assert [r.message for r in history] == ["Updated note 'a'.", "Added note 'a' (id: 1)."]
        assert len(notes_service.history()) == 3

    def test_find_and_grep(self, notes_service):
        notes_service.add_note("a", "alpha\n", ["t"])
        notes_service.add_note("b", "beta\n")
        assert [n.path for n in notes_service.find(tags=["t"])] == ["a"]
        assert [m.note.path for m in notes_service.grep("ALPHA")] == ["a"]
        assert [m.note.path for m in notes_service.grep("beta", historic=True)] == ["b"]

    def test_tree_and_ls(self, notes_service):
        notes_service.add_note("x/y/z", "")
        assert [c.name for c in notes_service.list_directory()] == ["x"]
        assert [c.name for c in notes_service.list_directory("x")] == ["y"]
        assert notes_service.tree(prefix="x/y").children["z"].note.id == 1


class TestSession:
    """Changes made while a session is open are committed together."""

    def test_changes_are_staged_until_commit(self, notes_service):
        notes_service.add_note("a", "v1")
        before = notes_service.storage.revision_count()

        notes_service.begin()
        assert notes_service.in_session
        notes_service.add_note("b", "new")
        notes_service.edit_note("a", content="v2", add_tags=["t"])
        notes_service.remove_notes("b")
        assert notes_service.read_note("a") == "v2"
        assert notes_service.storage.revision_count() == before

        revision = notes_service.commit()
        assert not notes_service.in_session
        assert notes_service.storage.revision_count() == before + 1
        assert revision.message.splitlines() == [
            "Added note 'b' (id: 2).", "Updated note 'a'.", "Deleted note 'b'.",
        ]
        assert notes_service.get_note("a").tags == ["t"]
        assert notes_service.catalog.next_id == 3

    def test_abort_discards_staged_changes(self, notes_service):
        notes_service.begin()
        notes_service.write_content("web/page", "draft")
        notes_service.abort()
        assert notes_service.storage.head() is None
        with pytest.raises(NotFoundError):
            notes_service.get_note("web/page")

    def test_failed_change_aborts_session(self, notes_service):
        notes_service.add_note("a")
        notes_service.begin()
        notes_service.add_note("b")
        with pytest.raises(ConflictError):
            notes_service.add_note("a")
        assert not notes_service.in_session
        assert notes_service.catalog.by_path("b") is None

    def test_maintenance_refused_during_session(self, notes_service):
        notes_service.begin()
        for operation in (notes_service.rebuild, notes_service.update_links):
            with pytest.raises(ConflictError):
                operation()
        with pytest.raises(ConflictError):
            notes_service.undo("HEAD")
        notes_service.abort()


class TestLinks:
    def test_notes_are_linked_in_working_tree(self, notes_service):
        notes_service.add_note("2024/test", "Hello\n")
        link = notes_service.storage.repo_path / "2024" / "test.md"
        assert link.is_symlink()
        assert link.read_text() == "Hello\n"

        notes_service.move_note("2024/test", "done")
        assert not link.exists()
        assert (notes_service.storage.repo_path / "done.md").read_text() == "Hello\n"

    def test_links_disabled(self, test_config, monkeypatch, temp_dir):
        monkeypatch.setattr(test_config, "symlinks", False)
        service = NotesService.open(temp_dir / "plain", config=test_config,
                                    snippet_runner=FakeSnippetRunner())
        try:
            service.add_note("a", "x")
            assert not (service.storage.repo_path / "a.md").exists()
            assert service.update_links() == 1
            assert (service.storage.repo_path / "a.md").is_symlink()
        finally:
            service.close()


class TestResourcesAndSnippets:
    def test_add_resource_file(self, notes_service, temp_dir):
        source = temp_dir / "image.png"
        source.write_bytes(b"png-bytes")
        revision = notes_service.add_resource_file(source)

        assert notes_service.storage.read_content("resources/image.png") == b"png-bytes"
        assert revision.message == f"Added resource 'image.png' (from {source})."

    def test_add_missing_resource_file(self, notes_service, temp_dir):
        with pytest.raises(NotFoundError):
            notes_service.add_resource_file(temp_dir / "missing.png")

    def test_run_and_save_snippet_output(self, notes_service, snippet_runner):
        snippet_runner.outputs["print(1)\n"] = "1\n"
        notes_service.add_note("code", "```python\nprint(1)\n```\n")

        result = notes_service.run_note_snippets("code", save_output=True)
        assert result.output == "1\n"
        assert notes_service.read_note("code").endswith("```output\n1\n```\n")
        assert notes_service.storage.revision(
            notes_service.storage.head()
        ).message == "Saved run output for note 'code'."

    def test_run_without_saving(self, notes_service):
        notes_service.add_note("code", "```sh\nls\n```\n")
        head = notes_service.storage.head()
        notes_service.run_note_snippets("code")
        assert notes_service.storage.head() == head


class TestUndo:
    def test_undo_edit(self, notes_service):
        notes_service.add_note("a", "v1")
        notes_service.edit_note("a", content="v2")
        edit = notes_service.storage.head()

        revision = notes_service.undo(edit)
        assert revision.message == f"Undo commit '{edit[:7]}'."
        assert notes_service.read_note("a") == "v1"

    def test_undo_add_removes_note(self, notes_service):
        notes_service.add_note("a", "v1")
        notes_service.undo("HEAD")
        assert notes_service.catalog.notes() == []
        assert notes_service.catalog.next_id == 2

    def test_undo_with_later_changes_conflicts(self, notes_service):
        notes_service.add_note("a", "v1")
        notes_service.edit_note("a", content="v2")
        edit = notes_service.storage.head()
        notes_service.edit_note("a", content="v3")

        with pytest.raises(ConflictError):
            notes_service.undo(edit)


class TestFrontEndContract:
    """Operations used by an HTTP editing front end."""

    def test_write_content_creates_then_updates(self, notes_service):
        notes_service.write_content("web/page", "first")
        notes_service.write_content("web/page", "second")
        assert notes_service.read_content("web/page") == "second"
        assert notes_service.get_note("web/page").id == 1

    def test_read_content_rejects_traversal(self, notes_service):
        with pytest.raises(ValidationError):
            notes_service.read_content("../secret")

    def test_run_snippet(self, notes_service):
        result = notes_service.run_snippet("```sh\necho x\n```\n")
        assert result.output == "sh: echo x\n"

    def test_add_resource_for_note(self, notes_service):
        notes_service.add_note("a", "")
        notes_service.add_resource("a", "upload.bin", b"\x00\x01")
        assert notes_service.storage.read_content("resources/upload.bin") == b"\x00\x01"
        with pytest.raises(NotFoundError):
            notes_service.add_resource("missing", "x.bin", b"")

    def test_stop(self, notes_service):
        assert not notes_service.stop_requested
        notes_service.stop()
        assert notes_service.stop_requested
        assert notes_service.wait_for_stop(timeout=0)


class TestSynchronize:
    @pytest.fixture
    def remote(self, temp_dir):
        path = temp_dir / "remote.git"
        subprocess.run(["git", "init", "--bare", "--quiet", str(path)], check=True)
        return path

    def test_sync_between_two_notebooks(self, notes_service, remote, temp_dir, test_config):
        notes_service.add_note("shared", "from one")
        notes_service.add_remote("origin", str(remote))
        result = notes_service.synchronize(branch="main")
        assert result["pulled"] is False

        other = NotesService.open(temp_dir / "other", config=test_config,
                                  snippet_runner=FakeSnippetRunner())
        try:
            other.add_remote("origin", str(remote))
            result = other.synchronize(branch="main")
            assert result["pulled"] is True
            assert result["rebuilt"] is True
            assert other.read_note("shared") == "from one"
            assert other.catalog.next_id == 2
        finally:
            other.close()

    def test_sync_refused_during_transaction(self, notes_service):
        notes_service.transactions.begin()
        with pytest.raises(ConflictError):
            notes_service.synchronize()
        notes_service.transactions.abort()

    def test_remote_management(self, notes_service, remote):
        notes_service.add_remote("backup", str(remote))
        assert notes_service.list_remotes() == {"backup": str(remote)}
        notes_service.remove_remote("backup")
        assert notes_service.list_remotes() == {}

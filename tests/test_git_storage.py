"""Tests for the git storage engine."""

import subprocess
from datetime import datetime
from unittest.mock import patch

import pytest

from gitnotes.exceptions import ConflictError, ErrorCode, NotFoundError, StorageError
from gitnotes.storage.git_storage import GitStorage


def _git(repo, *args):
    return subprocess.run(
        ["git", "-C", str(repo), *args], check=True, capture_output=True, text=True
    ).stdout.strip()


class TestInit:
    """Tests for creating and opening repositories."""

    def test_init_creates_repository(self, repo_dir):
        storage = GitStorage.init(repo_dir)
        assert (repo_dir / ".git").is_dir()
        assert storage.head() is None
        assert storage.revision_count() == 0

    def test_init_refuses_existing_repository(self, storage, repo_dir):
        with pytest.raises(StorageError) as exc:
            GitStorage.init(repo_dir)
        assert exc.value.code == ErrorCode.STORAGE_INIT_FAILED

    def test_use_existing(self, storage, repo_dir):
        reopened = GitStorage.init(repo_dir, use_existing=True)
        assert reopened.repo_path == storage.repo_path

    def test_open_requires_repository(self, temp_dir):
        with pytest.raises(StorageError) as exc:
            GitStorage.open(temp_dir / "missing")
        assert exc.value.code == ErrorCode.STORAGE_INIT_FAILED

    def test_init_on_file_fails(self, temp_dir):
        target = temp_dir / "file.txt"
        target.write_text("not a directory")
        with pytest.raises(StorageError):
            GitStorage.init(target)

    def test_init_on_bare_repository_fails(self, temp_dir):
        bare = temp_dir / "bare.git"
        subprocess.run(["git", "init", "--bare", "--quiet", str(bare)], check=True)
        with pytest.raises(StorageError):
            GitStorage.init(bare)


class TestCommit:
    """Tests for atomic commits."""

    def test_commit_creates_one_revision(self, storage):
        revision = storage.commit("First", {"notes/1.md": b"hello\n", "notes/1.metadata": b"id: 1\n"})

        assert revision is not None
        assert revision.id == storage.head()
        assert revision.message == "First"
        assert sorted(revision.changed_paths) == ["notes/1.md", "notes/1.metadata"]
        assert {c.status for c in revision.changes} == {"A"}
        assert isinstance(revision.timestamp, datetime)
        assert storage.revision_count() == 1

    def test_commit_updates_working_tree_and_index(self, storage):
        storage.commit("First", {"notes/1.md": b"hello\n"})
        assert (storage.repo_path / "notes" / "1.md").read_bytes() == b"hello\n"
        assert _git(storage.repo_path, "status", "--porcelain") == ""

    def test_delete_removes_file_and_empty_directory(self, storage):
        storage.commit("Add", {"resources/a/b.txt": b"x"})
        revision = storage.commit("Delete", {"resources/a/b.txt": None})

        assert [(c.status, c.path) for c in revision.changes] == [("D", "resources/a/b.txt")]
        assert not (storage.repo_path / "resources").exists()
        with pytest.raises(NotFoundError):
            storage.read_content("resources/a/b.txt")

    def test_unchanged_tree_is_not_committed(self, storage):
        storage.commit("First", {"notes/1.md": b"same"})
        head = storage.head()
        assert storage.commit("Again", {"notes/1.md": b"same"}) is None
        assert storage.head() == head

    def test_stale_expected_head_conflicts(self, storage):
        storage.commit("First", {"notes/1.md": b"a"})
        with pytest.raises(ConflictError) as exc:
            storage.commit("Second", {"notes/1.md": b"b"}, expected_head=None)
        assert exc.value.code == ErrorCode.STALE_CATALOG
        assert storage.read_content("notes/1.md") == b"a"

    def test_escaping_paths_are_rejected(self, storage):
        for path in ["../outside", "/abs", ".git/config", "a//b"]:
            with pytest.raises(StorageError):
                storage.commit("Bad", {path: b"x"})
        assert storage.head() is None

    def test_failed_commit_leaves_repository_untouched(self, storage):
        storage.commit("First", {"notes/1.md": b"a"})
        head = storage.head()
        original = storage._run_git

        def failing(args, **kwargs):
            if args and args[0] == "commit-tree":
                raise StorageError("boom", operation="commit-tree")
            return original(args, **kwargs)

        with patch.object(storage, "_run_git", side_effect=failing):
            with pytest.raises(StorageError):
                storage.commit("Second", {"notes/1.md": b"b", "notes/2.md": b"c"})

        assert storage.head() == head
        assert storage.read_content("notes/1.md") == b"a"
        assert (storage.repo_path / "notes" / "1.md").read_bytes() == b"a"
        assert not (storage.repo_path / "notes" / "2.md").exists()


class TestReading:
    def test_read_content_at_revision(self, storage):
        first = storage.commit("v1", {"notes/1.md": b"one"})
        storage.commit("v2", {"notes/1.md": b"two"})

        assert storage.read_content("notes/1.md") == b"two"
        assert storage.read_content("notes/1.md", first.id) == b"one"
        assert storage.read_content("notes/1.md", "HEAD~1") == b"one"

    def test_read_content_of_empty_repository(self, storage):
        with pytest.raises(NotFoundError) as exc:
            storage.read_content("notes/1.md")
        assert exc.value.code == ErrorCode.CONTENT_NOT_FOUND

    def test_unknown_revision(self, storage):
        storage.commit("v1", {"notes/1.md": b"one"})
        with pytest.raises(NotFoundError) as exc:
            storage.read_content("notes/1.md", "no-such-branch")
        assert exc.value.code == ErrorCode.REVISION_NOT_FOUND

    def test_blob_ids(self, storage):
        storage.commit("v1", {"notes/1.md": b"one", "resources/x": b"x"})
        assert storage.blob_id("notes/1.md") is not None
        assert storage.blob_id("notes/2.md") is None
        assert storage.read_blob(storage.blob_id("resources/x")) == b"x"


class TestLog:
    """Tests for the streaming history walker."""

    @pytest.fixture
    def history(self, storage):
        revisions = [
            storage.commit("one", {"notes/1.md": b"1"}),
            storage.commit("two", {"resources/r": b"r"}),
            storage.commit("three\n\nwith a body", {"notes/1.md": b"1b"}),
        ]
        return revisions

    def test_empty_repository_has_no_history(self, storage):
        assert list(storage.log()) == []

    def test_newest_first(self, storage, history):
        assert [r.id for r in storage.log()] == [r.id for r in reversed(history)]

    def test_oldest_first(self, storage, history):
        assert [r.id for r in storage.log(oldest_first=True)] == [r.id for r in history]

    def test_path_filter(self, storage, history):
        messages = [r.message.splitlines()[0] for r in storage.log(path_filter="notes")]
        assert messages == ["three", "one"]

    def test_limit(self, storage, history):
        assert len(list(storage.log(limit=2))) == 2

    def test_range_excludes_end(self, storage, history):
        ids = [r.id for r in storage.log(start=history[2].id, end=history[0].id)]
        assert ids == [history[2].id, history[1].id]

    def test_multiline_message(self, storage, history):
        assert storage.revision(history[2].id).message == "three\n\nwith a body"

    def test_closing_the_walk_early(self, storage, history):
        walk = storage.log()
        first = next(walk)
        walk.close()
        assert first.id == history[2].id

    def test_timeout_becomes_storage_error(self, storage, history):
        class SlowLog(subprocess.Popen):
            def wait(self, timeout=None):
                if "log" in self.args and timeout is not None:
                    raise subprocess.TimeoutExpired(self.args, timeout)
                return super().wait(timeout)

        with patch("gitnotes.storage.git_storage.subprocess.Popen", SlowLog):
            with pytest.raises(StorageError) as exc:
                list(storage.log())
        assert exc.value.details["operation"] == "log"


class TestRemotes:
    """Tests for remote management and synchronization."""

    @pytest.fixture
    def remote(self, temp_dir):
        path = temp_dir / "remote.git"
        subprocess.run(["git", "init", "--bare", "--quiet", str(path)], check=True)
        return path

    def test_add_list_remove(self, storage, remote):
        storage.add_remote("origin", str(remote))
        assert storage.list_remotes() == {"origin": str(remote)}
        storage.remove_remote("origin")
        assert storage.list_remotes() == {}

    def test_remove_unknown_remote(self, storage):
        with pytest.raises(NotFoundError):
            storage.remove_remote("nope")

    def test_push_then_pull_fast_forwards(self, storage, remote, temp_dir):
        storage.commit("v1", {"notes/1.md": b"one"})
        storage.add_remote("origin", str(remote))
        storage.push_remote("origin", "main")

        clone = GitStorage.init(temp_dir / "clone")
        clone.add_remote("origin", str(remote))
        assert clone.pull_remote("origin", "main") is True
        assert clone.head() == storage.head()
        assert (clone.repo_path / "notes" / "1.md").read_bytes() == b"one"

        storage.commit("v2", {"notes/1.md": b"two"})
        storage.push_remote("origin", "main")
        assert clone.pull_remote("origin", "main") is True
        assert clone.read_content("notes/1.md") == b"two"
        assert (clone.repo_path / "notes" / "1.md").read_bytes() == b"two"
        assert clone.pull_remote("origin", "main") is False

    def test_pull_of_missing_branch(self, storage, remote):
        storage.add_remote("origin", str(remote))
        assert storage.pull_remote("origin", "main") is False

    def test_diverged_histories(self, storage, remote, temp_dir):
        storage.commit("v1", {"notes/1.md": b"one"})
        storage.add_remote("origin", str(remote))
        storage.push_remote("origin", "main")

        other = GitStorage.init(temp_dir / "other")
        other.commit("elsewhere", {"notes/9.md": b"nine"})
        other.add_remote("origin", str(remote))
        with pytest.raises(StorageError) as exc:
            other.pull_remote("origin", "main")
        assert exc.value.code == ErrorCode.STORAGE_REMOTE_FAILED

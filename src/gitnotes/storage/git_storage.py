"""Git-backed storage engine.

All writes go through git plumbing: blobs are hashed into the object
database, a tree is assembled in a private temporary index and the branch
is moved with a compare-and-swap ``update-ref``. The real index, the
working tree and HEAD are only touched after the new commit exists, so a
failure at any step leaves the repository exactly as it was (apart from
unreferenced objects, which ``git gc`` collects).
"""

import logging
import os
import subprocess
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Union

from gitnotes.exceptions import (
    ConflictError,
    ErrorCode,
    NotFoundError,
    StorageError,
)
from gitnotes.models.schema import FileChange, Revision
from gitnotes.observability import timed_operation

logger = logging.getLogger(__name__)

RECORD_SEP = "\x1e"
FIELD_SEP = "\x1f"
LOG_FORMAT = "--format=%x1e%H%x1f%ct%x1f%B%x1f"
NULL_OID = "0" * 40
FILE_MODE = "100644"

# Sentinel for "do not check the current head" in commit()
_UNCHECKED = object()


def _check_store_path(path: str) -> str:
    """Ensure a repository-relative path cannot escape the working tree."""
    if not path or path.startswith("/") or "\\" in path or "\x00" in path:
        raise StorageError(
            f"Invalid repository path: {path!r}", path=path,
            code=ErrorCode.STORAGE_WRITE_FAILED
        )
    segments = path.split("/")
    if any(seg in ("", ".", "..") for seg in segments) or segments[0] == ".git":
        raise StorageError(
            f"Invalid repository path: {path!r}", path=path,
            code=ErrorCode.STORAGE_WRITE_FAILED
        )
    return path


class GitStorage:
    """Atomic wrapper over a non-bare git repository.

    The repository is driven through the ``git`` binary; ``repo_path`` is
    passed with ``-C`` to every command.
    """

    def __init__(
        self,
        repo_path: Path,
        user_name: Optional[str] = None,
        user_email: Optional[str] = None,
        timeout: int = 30,
    ):
        self.repo_path = Path(repo_path).expanduser().resolve()
        self.user_name = user_name
        self.user_email = user_email
        self.timeout = timeout

    # -- construction ----------------------------------------------------

    @classmethod
    def init(
        cls,
        location: Union[str, Path],
        use_existing: bool = False,
        **kwargs,
    ) -> "GitStorage":
        """Create a repository at ``location`` or adopt an existing one.

        Raises:
            StorageError: If the location is a file, not writable, a bare
                repository, or does not match ``use_existing``
        """
        location = Path(location).expanduser()
        storage = cls(location, **kwargs)

        if location.exists() and not location.is_dir():
            raise StorageError(
                f"'{location}' is a file, not a directory",
                operation="init", path=str(location),
                code=ErrorCode.STORAGE_INIT_FAILED
            )

        is_repo = (location / ".git").exists()
        if location.is_dir() and not is_repo and storage._is_bare_repository():
            raise StorageError(
                f"'{location}' is a bare repository",
                operation="init", path=str(location),
                code=ErrorCode.STORAGE_INIT_FAILED
            )

        if use_existing:
            if not is_repo:
                raise StorageError(
                    f"'{location}' is not a git repository",
                    operation="init", path=str(location),
                    code=ErrorCode.STORAGE_INIT_FAILED
                )
            logger.debug(f"Using existing repository at {storage.repo_path}")
            return storage

        if is_repo:
            raise StorageError(
                f"A repository already exists at '{location}'",
                operation="init", path=str(location),
                code=ErrorCode.STORAGE_INIT_FAILED
            )

        writable_parent = location
        while not writable_parent.exists():
            writable_parent = writable_parent.parent
        if not os.access(writable_parent, os.W_OK):
            raise StorageError(
                f"'{writable_parent}' is not writable",
                operation="init", path=str(location),
                code=ErrorCode.STORAGE_INIT_FAILED
            )

        try:
            location.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(
                f"Could not create '{location}'",
                operation="init", path=str(location),
                code=ErrorCode.STORAGE_INIT_FAILED, original_error=e
            ) from e

        logger.info(f"Initializing git repository at {storage.repo_path}")
        storage._run_git(["init", "--quiet"])
        # Fall back to a local identity so commit-tree never prompts
        if storage._config_value("user.name") is None:
            storage._run_git(["config", "user.name", "gitnotes"])
        if storage._config_value("user.email") is None:
            storage._run_git(["config", "user.email", "gitnotes@localhost"])
        return storage

    @classmethod
    def open(cls, location: Union[str, Path], **kwargs) -> "GitStorage":
        """Open an existing repository (``init(location, use_existing=True)``)."""
        return cls.init(location, use_existing=True, **kwargs)

    # -- subprocess plumbing ---------------------------------------------

    def _identity_args(self) -> List[str]:
        args: List[str] = []
        if self.user_name:
            args += ["-c", f"user.name={self.user_name}"]
        if self.user_email:
            args += ["-c", f"user.email={self.user_email}"]
        return args

    def _command(self, args: Sequence[str]) -> List[str]:
        return (
            ["git", "-C", str(self.repo_path), "-c", "core.quotePath=false"]
            + self._identity_args()
            + list(args)
        )

    def _run_git(
        self,
        args: Sequence[str],
        check: bool = True,
        input: Optional[bytes] = None,
        env: Optional[Mapping[str, str]] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
    ) -> subprocess.CompletedProcess:
        """Run a git command and capture its (binary) output.

        Lock contention is not retried; the command fails immediately.

        Raises:
            StorageError: If check=True and the command fails, times out or
                git is missing
        """
        cmd = self._command(args)
        full_env = dict(os.environ)
        full_env["GIT_TERMINAL_PROMPT"] = "0"
        if env:
            full_env.update(env)

        try:
            result = subprocess.run(
                cmd,
                check=False,
                input=input,
                capture_output=True,
                env=full_env,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise StorageError(
                f"Git command timed out: {' '.join(args)}",
                operation=args[0], command=cmd, code=code, original_error=e
            ) from e
        except FileNotFoundError as e:
            raise StorageError(
                "Git is not installed or not in PATH",
                operation=args[0], command=cmd, code=code, original_error=e
            ) from e

        if check and result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise StorageError(
                f"Git command failed: {' '.join(args)}",
                operation=args[0],
                command=cmd,
                returncode=result.returncode,
                stderr=stderr or None,
                code=code,
            )
        return result

    def _git_text(self, args: Sequence[str], **kwargs) -> str:
        result = self._run_git(args, **kwargs)
        return result.stdout.decode("utf-8", errors="replace").strip()

    def _config_value(self, key: str) -> Optional[str]:
        result = self._run_git(["config", "--get", key], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.decode("utf-8").strip() or None

    def _is_bare_repository(self) -> bool:
        result = self._run_git(
            ["rev-parse", "--is-bare-repository", "--git-dir"], check=False
        )
        if result.returncode != 0:
            return False
        lines = result.stdout.decode("utf-8").split()
        return len(lines) == 2 and lines[0] == "true" and lines[1] == "."

    @property
    def git_dir(self) -> Path:
        return self.repo_path / ".git"

    # -- revisions ---------------------------------------------------------

    def head(self) -> Optional[str]:
        """Hash of the current HEAD commit, None for an empty repository."""
        result = self._run_git(["rev-parse", "--verify", "-q", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.decode("utf-8").strip() or None

    def current_branch(self) -> Optional[str]:
        result = self._run_git(["symbolic-ref", "--short", "-q", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.decode("utf-8").strip() or None

    def revision_count(self) -> int:
        if self.head() is None:
            return 0
        return int(self._git_text(["rev-list", "--count", "HEAD"]))

    def resolve_revision(self, rev: str) -> str:
        """Resolve a revision expression (hash, ``HEAD~2``, branch) to a commit hash.

        Raises:
            NotFoundError: If the revision does not exist
        """
        result = self._run_git(
            ["rev-parse", "--verify", "-q", f"{rev}^{{commit}}"], check=False
        )
        if result.returncode != 0:
            raise NotFoundError(
                rev,
                message=f"Revision '{rev}' not found",
                revision=rev,
                code=ErrorCode.REVISION_NOT_FOUND,
            )
        return result.stdout.decode("utf-8").strip()

    def revision(self, rev: str = "HEAD") -> Revision:
        """Load a single revision with its changed files."""
        commit = self.resolve_revision(rev)
        for found in self.log(start=commit, limit=1):
            return found
        raise NotFoundError(rev, revision=rev, code=ErrorCode.REVISION_NOT_FOUND)

    # -- reading -----------------------------------------------------------

    def read_content(self, path: str, revision: Optional[str] = None) -> bytes:
        """Read the content of ``path`` as committed at ``revision`` (default HEAD).

        Raises:
            NotFoundError: If the revision or the path at that revision does not exist
        """
        if revision is None:
            if self.head() is None:
                raise NotFoundError(path, code=ErrorCode.CONTENT_NOT_FOUND)
            commit = "HEAD"
        else:
            commit = self.resolve_revision(revision)

        result = self._run_git(["cat-file", "blob", f"{commit}:{path}"], check=False)
        if result.returncode != 0:
            raise NotFoundError(
                path,
                message=f"'{path}' does not exist at {revision or 'HEAD'}",
                revision=revision,
                code=ErrorCode.CONTENT_NOT_FOUND,
            )
        return result.stdout

    def read_blob(self, blob_id: str) -> bytes:
        return self._run_git(["cat-file", "blob", blob_id]).stdout

    def blob_id(self, path: str, revision: Optional[str] = None) -> Optional[str]:
        """Content hash of ``path`` at ``revision``; None if absent."""
        if revision is None and self.head() is None:
            return None
        result = self._run_git(
            ["rev-parse", "--verify", "-q", f"{revision or 'HEAD'}:{path}"], check=False
        )
        if result.returncode != 0:
            return None
        return result.stdout.decode("utf-8").strip()

    # -- history -----------------------------------------------------------

    def log(
        self,
        path_filter: Optional[Union[str, Sequence[str]]] = None,
        limit: Optional[int] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        oldest_first: bool = False,
    ) -> Iterator[Revision]:
        """Lazily walk the history, newest first unless ``oldest_first``.

        Revisions are parsed from a single streaming ``git log`` process as
        they are produced; closing the generator terminates the process.

        Args:
            path_filter: Pathspec(s) restricting the walk (e.g. ``notes/*.md``)
            limit: Maximum number of revisions
            start: Revision to walk back from (default HEAD)
            end: Revision whose ancestry is excluded from the walk
            oldest_first: Yield revisions in chronological order
        """
        if self.head() is None:
            return

        args = [
            "log", LOG_FORMAT, "--name-status", "--no-renames", "--no-color",
            "--first-parent",
        ]
        if limit is not None:
            args.append(f"-n{int(limit)}")
        if oldest_first:
            args.append("--reverse")

        tip = self.resolve_revision(start) if start else "HEAD"
        if end:
            args.append(f"{self.resolve_revision(end)}..{tip}")
        else:
            args.append(tip)

        if path_filter:
            paths = [path_filter] if isinstance(path_filter, str) else list(path_filter)
            args += ["--"] + paths

        cmd = self._command(args)
        logger.debug(f"Streaming history: {' '.join(args)}")
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
        )
        finished = False
        try:
            record: List[bytes] = []
            for line in proc.stdout:
                if line.startswith(RECORD_SEP.encode()) and record:
                    yield self._parse_log_record(b"".join(record))
                    record = []
                record.append(line)
            if record:
                yield self._parse_log_record(b"".join(record))

            try:
                returncode = proc.wait(timeout=self.timeout)
            except subprocess.TimeoutExpired as e:
                raise StorageError(
                    "Git log timed out",
                    operation="log", command=cmd, original_error=e,
                ) from e
            finished = True
            if returncode != 0:
                stderr = proc.stderr.read().decode("utf-8", errors="replace").strip()
                raise StorageError(
                    "Git log failed",
                    operation="log", command=cmd,
                    returncode=returncode, stderr=stderr or None,
                )
        finally:
            if not finished and proc.poll() is None:
                proc.terminate()
                proc.wait()
            proc.stdout.close()
            proc.stderr.close()

    @staticmethod
    def _parse_log_record(raw: bytes) -> Revision:
        """Parse one ``%x1e%H%x1f%ct%x1f%B%x1f`` record followed by name-status lines."""
        text = raw.decode("utf-8", errors="replace").lstrip(RECORD_SEP)
        commit_hash, timestamp, body, rest = text.split(FIELD_SEP, 3)
        changes = []
        for line in rest.splitlines():
            if "\t" not in line:
                continue
            status, path = line.split("\t", 1)
            changes.append(FileChange(status=status[:1], path=path))
        return Revision(
            id=commit_hash.strip(),
            timestamp=datetime.fromtimestamp(int(timestamp), tz=timezone.utc),
            message=body.strip(),
            changes=tuple(changes),
        )

    # -- writing -----------------------------------------------------------

    def commit(
        self,
        message: str,
        files: Mapping[str, Optional[bytes]],
        expected_head=_UNCHECKED,
        allow_empty: bool = False,
    ) -> Optional[Revision]:
        """Write ``files`` as exactly one commit on top of HEAD.

        Args:
            message: Commit message
            files: Ordered mapping of repository path to new content;
                ``None`` deletes the path
            expected_head: If given, HEAD must still point at this commit
                (``None`` meaning an empty repository)
            allow_empty: Create the commit even if the tree is unchanged

        Returns:
            The new revision, or None when nothing changed

        Raises:
            ConflictError: If HEAD is not ``expected_head`` or moved during the commit
            StorageError: If git fails; HEAD, index and working tree are untouched
        """
        for path in files:
            _check_store_path(path)

        with timed_operation("storage.commit", files=len(files)) as op:
            old_head = self.head()
            if expected_head is not _UNCHECKED and old_head != expected_head:
                raise ConflictError(
                    "Repository head moved since the catalog was read",
                    operation="commit",
                    code=ErrorCode.STALE_CATALOG,
                )

            index_info = self._write_blobs(files)
            tree = self._build_tree(old_head, index_info)

            if old_head is not None and not allow_empty:
                old_tree = self._git_text(["rev-parse", f"{old_head}^{{tree}}"])
                if old_tree == tree:
                    logger.debug("Nothing to commit, tree unchanged")
                    op["skipped"] = True
                    return None

            commit_args = ["commit-tree", tree]
            if old_head is not None:
                commit_args += ["-p", old_head]
            new_head = self._git_text(
                commit_args, input=message.encode("utf-8"),
                code=ErrorCode.STORAGE_COMMIT_FAILED,
            )

            result = self._run_git(
                ["update-ref", "-m", "gitnotes: commit", "HEAD", new_head, old_head or ""],
                check=False,
            )
            if result.returncode != 0:
                stderr = result.stderr.decode("utf-8", errors="replace").strip()
                if self.head() != old_head:
                    raise ConflictError(
                        "Repository head moved during commit",
                        operation="commit",
                        code=ErrorCode.STALE_CATALOG,
                    )
                raise StorageError(
                    "Could not move HEAD to the new commit",
                    operation="update-ref",
                    returncode=result.returncode,
                    stderr=stderr or None,
                    code=ErrorCode.STORAGE_COMMIT_FAILED,
                )

            op["commit"] = new_head[:7]
            self._sync_worktree(files, index_info)

        logger.info(f"Committed {new_head[:7]}: {message.splitlines()[0] if message else ''}")
        return self.revision(new_head)

    def _write_blobs(self, files: Mapping[str, Optional[bytes]]) -> bytes:
        """Hash file contents into the object database; return ``update-index -z --index-info`` input."""
        entries = []
        for path, data in files.items():
            if data is None:
                entries.append(f"0 {NULL_OID}\t{path}\0")
                continue
            blob = self._git_text(
                ["hash-object", "-w", "--stdin"], input=data,
                code=ErrorCode.STORAGE_WRITE_FAILED,
            )
            entries.append(f"{FILE_MODE} {blob}\t{path}\0")
        return "".join(entries).encode("utf-8")

    def _build_tree(self, base: Optional[str], index_info: bytes) -> str:
        """Assemble a tree from ``base`` plus changes in a throwaway index."""
        with tempfile.TemporaryDirectory(prefix="gitnotes-index-") as tmp:
            env = {"GIT_INDEX_FILE": str(Path(tmp) / "index")}
            if base is not None:
                self._run_git(["read-tree", base], env=env,
                              code=ErrorCode.STORAGE_COMMIT_FAILED)
            if index_info:
                self._run_git(["update-index", "-z", "--index-info"], input=index_info,
                              env=env, code=ErrorCode.STORAGE_COMMIT_FAILED)
            return self._git_text(["write-tree"], env=env,
                                  code=ErrorCode.STORAGE_COMMIT_FAILED)

    def _sync_worktree(self, files: Mapping[str, Optional[bytes]], index_info: bytes) -> None:
        """Mirror a committed change into the working tree and the real index.

        The commit is already published at this point; failures here only
        leave the checkout stale and are logged.
        """
        try:
            for path, data in files.items():
                target = self.repo_path / path
                if data is None:
                    if target.exists():
                        target.unlink()
                    self._prune_empty_dirs(target.parent)
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.write_bytes(data)
            if index_info:
                self._run_git(["update-index", "-z", "--index-info"], input=index_info)
        except (OSError, StorageError) as e:
            logger.warning(f"Working tree not updated after commit: {e}")

    def _prune_empty_dirs(self, directory: Path) -> None:
        while directory != self.repo_path and directory.is_dir() and not any(directory.iterdir()):
            directory.rmdir()
            directory = directory.parent

    # -- remotes -----------------------------------------------------------

    def list_remotes(self) -> Dict[str, str]:
        """Map remote names to their fetch URLs."""
        remotes: Dict[str, str] = {}
        for line in self._git_text(["remote", "-v"]).splitlines():
            parts = line.split()
            if len(parts) >= 3 and parts[2] == "(fetch)":
                remotes[parts[0]] = parts[1]
        return remotes

    def add_remote(self, name: str, url: str) -> None:
        self._run_git(["remote", "add", name, url], code=ErrorCode.STORAGE_REMOTE_FAILED)
        logger.info(f"Added remote '{name}' ({url})")

    def remove_remote(self, name: str) -> None:
        if name not in self.list_remotes():
            raise NotFoundError(name, message=f"Remote '{name}' not found")
        self._run_git(["remote", "remove", name], code=ErrorCode.STORAGE_REMOTE_FAILED)
        logger.info(f"Removed remote '{name}'")

    def push_remote(self, remote: str, branch: str) -> None:
        """Push HEAD to ``remote``/``branch``."""
        if self.head() is None:
            logger.debug("Nothing to push, repository is empty")
            return
        self._run_git(
            ["push", "--quiet", remote, f"HEAD:refs/heads/{branch}"],
            code=ErrorCode.STORAGE_REMOTE_FAILED,
        )
        logger.info(f"Pushed to {remote}/{branch}")

    def pull_remote(self, remote: str, branch: str) -> bool:
        """Fetch ``remote``/``branch`` and fast-forward HEAD to it.

        Returns:
            True if HEAD moved

        Raises:
            StorageError: If the fetch fails or the histories diverged
        """
        fetch = self._run_git(
            ["fetch", "--quiet", remote, f"refs/heads/{branch}"],
            check=False,
        )
        if fetch.returncode != 0:
            stderr = fetch.stderr.decode("utf-8", errors="replace").strip()
            if "couldn't find remote ref" in stderr:
                logger.debug(f"Remote branch {remote}/{branch} does not exist yet")
                return False
            raise StorageError(
                f"Could not fetch from '{remote}'",
                operation="fetch", returncode=fetch.returncode,
                stderr=stderr or None, code=ErrorCode.STORAGE_REMOTE_FAILED,
            )

        fetched = self._git_text(["rev-parse", "FETCH_HEAD"])
        old_head = self.head()
        if old_head == fetched:
            return False

        if old_head is not None:
            behind = self._run_git(
                ["merge-base", "--is-ancestor", old_head, fetched], check=False
            ).returncode == 0
            if not behind:
                ahead = self._run_git(
                    ["merge-base", "--is-ancestor", fetched, old_head], check=False
                ).returncode == 0
                if ahead:
                    return False
                raise StorageError(
                    f"Local history and {remote}/{branch} have diverged; "
                    "cannot fast-forward",
                    operation="pull", code=ErrorCode.STORAGE_REMOTE_FAILED,
                )

        self._run_git(
            ["update-ref", "-m", f"gitnotes: pull {remote}/{branch}", "HEAD",
             fetched, old_head or ""],
            code=ErrorCode.STORAGE_REMOTE_FAILED,
        )
        if old_head is None:
            self._run_git(["read-tree", "-u", "--reset", "HEAD"])
        else:
            self._run_git(["read-tree", "-u", "-m", old_head, "HEAD"])
        logger.info(f"Fast-forwarded to {remote}/{branch} ({fetched[:7]})")
        return True

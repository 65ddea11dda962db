"""Configuration module for gitnotes."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from gitnotes import __version__

# Load environment variables from the project root .env file.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the notebooks
_USER_ENV = Path.home() / ".gitnotes" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class GitNotesConfig(BaseModel):
    """Configuration for gitnotes."""

    # Directory holding all notebooks, the user .env and the logs
    base_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("GITNOTES_BASE_DIR", str(Path.home() / ".gitnotes"))
        )
    )
    # Active notebook; relative names resolve against base_dir
    repository: Path = Field(
        default_factory=lambda: Path(os.getenv("GITNOTES_REPOSITORY", "main"))
    )
    # Commit identity; falls back to git's own configuration when unset
    user_name: Optional[str] = Field(
        default_factory=lambda: os.getenv("GITNOTES_USER_NAME") or None
    )
    user_email: Optional[str] = Field(
        default_factory=lambda: os.getenv("GITNOTES_USER_EMAIL") or None
    )
    # Sync configuration
    sync_default_remote: str = Field(
        default_factory=lambda: os.getenv("GITNOTES_SYNC_REMOTE", "origin")
    )
    # None means the currently checked out branch
    sync_default_branch: Optional[str] = Field(
        default_factory=lambda: os.getenv("GITNOTES_SYNC_BRANCH") or None
    )
    # When True, deleted notes stay readable at old revisions by id
    tombstone_history: bool = Field(
        default_factory=lambda: _env_flag("GITNOTES_TOMBSTONE_HISTORY", "true")
    )
    # Keep a symbolic link per note path in the working tree
    symlinks: bool = Field(
        default_factory=lambda: _env_flag("GITNOTES_SYMLINKS", "true")
    )
    # Seconds before a git subprocess is killed
    git_timeout: int = Field(
        default_factory=lambda: int(os.getenv("GITNOTES_GIT_TIMEOUT", "30"))
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("GITNOTES_LOG_LEVEL", "INFO")
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("GITNOTES_SERVER_NAME", "gitnotes"))
    server_version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_config(self) -> "GitNotesConfig":
        """Validate numeric limits and the log level."""
        if self.git_timeout < 1:
            raise ValueError("git_timeout must be >= 1")
        if self.log_level.upper() not in logging._nameToLevel:
            raise ValueError(f"Unknown log level: {self.log_level}")
        if bool(self.user_name) != bool(self.user_email):
            logger.warning(
                "Only one of GITNOTES_USER_NAME / GITNOTES_USER_EMAIL is set; "
                "git configuration will supply the other."
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        path = path.expanduser()
        if path.is_absolute():
            return path
        return self.base_dir.expanduser() / path

    def get_repository_path(self) -> Path:
        """Get the absolute path of the active notebook repository."""
        return self.get_absolute_path(self.repository)

    def get_log_dir(self) -> Path:
        """Get the log directory, creating it if needed."""
        log_dir = self.base_dir.expanduser() / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir


# Create a global config instance
config = GitNotesConfig()

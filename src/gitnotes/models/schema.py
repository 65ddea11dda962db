"""Data models for gitnotes."""

import datetime
import re
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, Field, field_validator

from gitnotes.exceptions import ErrorCode, ValidationError

NOTES_DIR = "notes"
RESOURCES_DIR = "resources"
STATE_DIR = ".gitnotes"
NEXT_ID_PATH = f"{STATE_DIR}/next_id"
NOTE_CONTENT_EXT = ".md"
NOTE_METADATA_EXT = ".metadata"

# Control characters (C0 and DEL) are never valid inside a path or tag
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
GLOB_CHARS = frozenset("*?[")
_TAG_PATTERN = re.compile(r"^[^\s,]+$")


def _check_path_text(value: str, field_name: str) -> List[str]:
    if value is None or not value.strip():
        raise ValidationError(
            f"{field_name} cannot be empty", field=field_name, code=ErrorCode.INVALID_PATH
        )
    value = value.strip()
    if _CONTROL_CHARS.search(value):
        raise ValidationError(
            f"{field_name} cannot contain control characters",
            field=field_name, value=value, code=ErrorCode.INVALID_PATH
        )
    if "\\" in value:
        raise ValidationError(
            f"{field_name} cannot contain backslashes",
            field=field_name, value=value, code=ErrorCode.INVALID_PATH
        )
    if value.startswith("/"):
        raise ValidationError(
            f"{field_name} must be relative",
            field=field_name, value=value, code=ErrorCode.PATH_TRAVERSAL_DETECTED
        )

    segments = value.split("/")
    # A leading "./" is accepted and dropped
    while len(segments) > 1 and segments[0] == ".":
        segments.pop(0)
    if any(seg == ".." for seg in segments):
        raise ValidationError(
            f"{field_name} cannot contain '..' (path traversal)",
            field=field_name, value=value, code=ErrorCode.PATH_TRAVERSAL_DETECTED
        )
    if any(not seg or seg == "." for seg in segments):
        raise ValidationError(
            f"{field_name} cannot have empty segments (no trailing or double slashes)",
            field=field_name, value=value, code=ErrorCode.INVALID_PATH
        )
    return segments


def normalize_note_path(value: str, field_name: str = "path") -> str:
    """Normalize a virtual note path and validate that it stays inside the notes root.

    Rejects absolute paths, ``..`` segments, empty segments, backslashes,
    control characters and glob metacharacters.

    Raises:
        ValidationError: If the path is not a valid note path
    """
    segments = _check_path_text(value, field_name)
    joined = "/".join(segments)
    if any(ch in GLOB_CHARS or ch == "]" for ch in joined):
        raise ValidationError(
            f"{field_name} cannot contain glob characters (*, ?, [, ])",
            field=field_name, value=value, code=ErrorCode.INVALID_PATH
        )
    return joined


def normalize_path_pattern(value: str) -> str:
    """Normalize a path or glob pattern used to look notes up.

    Same rules as :func:`normalize_note_path` except that glob characters are
    allowed and a trailing slash (directory query) is tolerated.
    """
    value = value.strip() if value else value
    if value and value != "/" and value.endswith("/"):
        value = value.rstrip("/")
    return "/".join(_check_path_text(value, "pattern"))


def is_glob_pattern(value: str) -> bool:
    return any(ch in GLOB_CHARS for ch in value)


def validate_tag(tag: str) -> str:
    """Validate a single tag (no whitespace, commas or control characters)."""
    if not isinstance(tag, str) or not tag.strip():
        raise ValidationError("Tag cannot be empty", field="tags", code=ErrorCode.INVALID_TAG)
    tag = tag.strip()
    if _CONTROL_CHARS.search(tag) or not _TAG_PATTERN.match(tag):
        raise ValidationError(
            "Tags cannot contain whitespace, commas or control characters",
            field="tags", value=tag, code=ErrorCode.INVALID_TAG
        )
    return tag


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: datetime.datetime) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC."""
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def content_path_for(note_id: int) -> str:
    return f"{NOTES_DIR}/{note_id}{NOTE_CONTENT_EXT}"


def metadata_path_for(note_id: int) -> str:
    return f"{NOTES_DIR}/{note_id}{NOTE_METADATA_EXT}"


def parse_store_path(store_path: str) -> Optional[Tuple[int, str]]:
    """Split ``notes/<id>.<ext>`` into ``(id, ext)``; None for any other path."""
    match = re.match(r"^notes/(\d+)(\.md|\.metadata)$", store_path)
    if not match:
        return None
    return int(match.group(1)), match.group(2)


class NoteMetadata(BaseModel):
    """Catalog entry for one note.

    Tombstones (deleted notes) keep their last metadata and carry
    ``deleted_at``; their path no longer counts as taken.
    """

    id: int = Field(..., ge=1, description="Numeric id, allocated once and never reused")
    path: str = Field(..., description="Normalized virtual path")
    tags: List[str] = Field(default_factory=list, description="Tags, kept sorted")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)
    last_commit: Optional[str] = Field(
        default=None, description="Latest commit touching the note"
    )
    deleted_at: Optional[datetime.datetime] = Field(default=None)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        return normalize_note_path(v)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: List[str]) -> List[str]:
        return sorted({validate_tag(t) for t in v})

    @field_validator("created_at", "updated_at", "deleted_at")
    @classmethod
    def validate_timestamps(
        cls, v: Optional[datetime.datetime]
    ) -> Optional[datetime.datetime]:
        if v is None:
            return None
        return ensure_timezone_aware(v)

    @property
    def content_path(self) -> str:
        return content_path_for(self.id)

    @property
    def metadata_path(self) -> str:
        return metadata_path_for(self.id)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def name(self) -> str:
        """Last segment of the virtual path."""
        return self.path.rsplit("/", 1)[-1]

    def to_metadata_bytes(self) -> bytes:
        """Serialize the persisted part of the metadata as YAML."""
        data = {
            "id": self.id,
            "path": self.path,
            "tags": list(self.tags),
            "created": self.created_at.isoformat(),
            "updated": self.updated_at.isoformat(),
        }
        return yaml.safe_dump(data, sort_keys=False, allow_unicode=True).encode("utf-8")

    @classmethod
    def from_metadata_bytes(
        cls, data: bytes, last_commit: Optional[str] = None
    ) -> "NoteMetadata":
        """Parse a metadata file written by :meth:`to_metadata_bytes`.

        Raises:
            ValidationError: If the file is not valid metadata
        """
        try:
            raw = yaml.safe_load(data.decode("utf-8"))
        except (yaml.YAMLError, UnicodeDecodeError) as e:
            raise ValidationError(f"Invalid note metadata: {e}", field="metadata")
        if not isinstance(raw, dict) or "id" not in raw or "path" not in raw:
            raise ValidationError("Note metadata is missing id or path", field="metadata")

        def _timestamp(value: Any) -> datetime.datetime:
            if isinstance(value, datetime.datetime):
                return value
            try:
                return datetime.datetime.fromisoformat(str(value))
            except ValueError:
                raise ValidationError(
                    "Invalid timestamp in note metadata",
                    field="metadata", value=value, code=ErrorCode.INVALID_DATE
                )

        return cls(
            id=int(raw["id"]),
            path=str(raw["path"]),
            tags=[str(t) for t in raw.get("tags") or []],
            created_at=_timestamp(raw.get("created")),
            updated_at=_timestamp(raw.get("updated", raw.get("created"))),
            last_commit=last_commit,
        )


@dataclass(frozen=True)
class ById:
    """Reference to a note by its numeric id."""
    id: int


@dataclass(frozen=True)
class ByPath:
    """Reference to a note by path, glob pattern or directory prefix."""
    pattern: str


class NoteRef:
    """Constructors for note references; a reference is ``ById`` or ``ByPath``."""

    ById = ById
    ByPath = ByPath

    @staticmethod
    def parse(text: Union[str, int]) -> Union[ById, ByPath]:
        """Build a reference from user input.

        All-digit text is an id; anything else is a path pattern. A note whose
        path is all digits can still be reached as ``./<digits>``.
        """
        if isinstance(text, int):
            return ById(text)
        stripped = text.strip()
        if stripped.isdigit():
            return ById(int(stripped))
        return ByPath(normalize_path_pattern(stripped))


NoteRefType = Union[ById, ByPath]


class GroupBy(str, Enum):
    """How :class:`NoteTree` groups notes."""

    PATH = "path"
    CREATED = "created"
    TAGS = "tags"


class OrderBy(str, Enum):
    """Sort orders for find results."""

    PATH = "path"
    ID = "id"
    CREATED = "created"
    UPDATED = "updated"


@dataclass(frozen=True)
class FileChange:
    """One file touched by a revision (``A``, ``M`` or ``D``)."""
    status: str
    path: str


@dataclass(frozen=True)
class Revision:
    """A commit as seen by the log walker."""
    id: str
    timestamp: datetime.datetime
    message: str
    changes: Tuple[FileChange, ...] = field(default_factory=tuple)

    @property
    def changed_paths(self) -> List[str]:
        return [c.path for c in self.changes]

    @property
    def short_id(self) -> str:
        return self.id[:7]


@dataclass(frozen=True)
class DateRange:
    """Inclusive start, exclusive end; either side may be open."""
    start: Optional[datetime.datetime] = None
    end: Optional[datetime.datetime] = None

    def contains(self, value: datetime.datetime) -> bool:
        value = ensure_timezone_aware(value)
        if self.start is not None and value < ensure_timezone_aware(self.start):
            return False
        if self.end is not None and value >= ensure_timezone_aware(self.end):
            return False
        return True

    @classmethod
    def from_parts(cls, parts: List[int]) -> "DateRange":
        """Range covering a partial date ``[year, month, day, hour, minute, second]``.

        ``[2024]`` covers the whole year, ``[2024, 3]`` the whole of March.
        """
        if not parts or len(parts) > 6:
            raise ValidationError(
                "Date must have between 1 and 6 parts",
                field="date", value=parts, code=ErrorCode.INVALID_DATE
            )
        names = ["year", "month", "day", "hour", "minute", "second"]
        values: Dict[str, int] = {"month": 1, "day": 1}
        values.update(dict(zip(names, parts)))
        try:
            start = datetime.datetime(tzinfo=timezone.utc, **values)
        except ValueError as e:
            raise ValidationError(
                f"Invalid date: {e}", field="date", value=parts, code=ErrorCode.INVALID_DATE
            )

        precision = names[len(parts) - 1]
        if precision == "year":
            end = start.replace(year=start.year + 1)
        elif precision == "month":
            end = (
                start.replace(year=start.year + 1, month=1)
                if start.month == 12
                else start.replace(month=start.month + 1)
            )
        else:
            step = {
                "day": datetime.timedelta(days=1),
                "hour": datetime.timedelta(hours=1),
                "minute": datetime.timedelta(minutes=1),
                "second": datetime.timedelta(seconds=1),
            }[precision]
            end = start + step
        return cls(start=start, end=end)

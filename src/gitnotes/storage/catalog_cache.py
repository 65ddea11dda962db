"""SQLite persistence for the note catalog."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from gitnotes.exceptions import ErrorCode, StorageError, ValidationError
from gitnotes.models.db_models import (
    CACHE_SCHEMA_VERSION,
    DBCatalogState,
    DBNote,
    DBTag,
    create_cache_engine,
    get_session_factory,
    note_tags,
)
from gitnotes.models.schema import NoteMetadata, ensure_timezone_aware

logger = logging.getLogger(__name__)


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite has no timezone support; store naive UTC
    if value is None:
        return None
    return ensure_timezone_aware(value).astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


@dataclass
class CachedCatalog:
    head: Optional[str]
    next_id: int
    notes: List[NoteMetadata]


class CatalogCache:
    """Reads and writes a catalog snapshot in a SQLite file."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._engine = None
        self._session_factory = None

    @classmethod
    def for_repository(cls, repo_path: Path) -> "CatalogCache":
        """Cache kept inside the repository's git directory, so it is never committed."""
        return cls(Path(repo_path) / ".git" / "gitnotes" / "catalog.db")

    def _sessions(self):
        if self._session_factory is None:
            self._engine = create_cache_engine(self.db_path)
            self._session_factory = get_session_factory(self._engine)
        return self._session_factory

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None

    def load(self) -> Optional[CachedCatalog]:
        """Load the cached catalog.

        Returns:
            The cached state, or None if the cache is missing, from another
            schema version or unreadable (the caller then rebuilds)
        """
        if not self.db_path.exists():
            return None
        try:
            with self._sessions()() as session:
                state = session.get(DBCatalogState, 1)
                if state is None or state.schema_version != CACHE_SCHEMA_VERSION:
                    return None
                notes = [
                    NoteMetadata(
                        id=row.id,
                        path=row.path,
                        tags=[t.name for t in row.tags],
                        created_at=_from_db(row.created_at),
                        updated_at=_from_db(row.updated_at),
                        last_commit=row.last_commit,
                        deleted_at=_from_db(row.deleted_at),
                    )
                    for row in session.query(DBNote).order_by(DBNote.id)
                ]
                return CachedCatalog(head=state.head, next_id=state.next_id, notes=notes)
        except (SQLAlchemyError, ValueError, ValidationError) as e:
            logger.warning(f"Catalog cache at {self.db_path} is unreadable, rebuilding: {e}")
            self.close()
            return None

    def save(self, head: Optional[str], next_id: int, notes: Iterable[NoteMetadata]) -> None:
        """Replace the cached snapshot in a single transaction.

        Raises:
            StorageError: If the cache cannot be written
        """
        try:
            with self._sessions()() as session:
                session.execute(note_tags.delete())
                session.query(DBNote).delete()
                session.query(DBTag).delete()
                session.flush()

                tags: Dict[str, DBTag] = {}
                for note in notes:
                    row = DBNote(
                        id=note.id,
                        path=note.path,
                        created_at=_to_db(note.created_at),
                        updated_at=_to_db(note.updated_at),
                        last_commit=note.last_commit,
                        deleted_at=_to_db(note.deleted_at),
                    )
                    for name in note.tags:
                        if name not in tags:
                            tags[name] = DBTag(name=name)
                        row.tags.append(tags[name])
                    session.add(row)

                state = session.get(DBCatalogState, 1)
                if state is None:
                    state = DBCatalogState(id=1)
                    session.add(state)
                state.head = head
                state.next_id = next_id
                state.schema_version = CACHE_SCHEMA_VERSION
                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(
                "Could not write the catalog cache",
                operation="save_cache",
                path=str(self.db_path),
                code=ErrorCode.CACHE_CORRUPTED,
                original_error=e,
            ) from e
        logger.debug(f"Saved catalog cache at head {head[:7] if head else None}")

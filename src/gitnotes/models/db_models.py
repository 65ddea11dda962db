"""SQLAlchemy models for the on-disk catalog cache.

The cache is never authoritative: it only saves replaying the whole
history on startup and is thrown away whenever it disagrees with the
repository head.
"""
from pathlib import Path
from typing import Union

from sqlalchemy import (Column, DateTime, ForeignKey, Integer, String, Table,
                        create_engine, event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

# Bumped whenever the tables change; a mismatch forces a rebuild
CACHE_SCHEMA_VERSION = 1

Base = declarative_base()

note_tags = Table(
    "note_tags",
    Base.metadata,
    Column("note_id", Integer, ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class DBNote(Base):
    """Cached catalog entry (live note or tombstone)."""
    __tablename__ = "notes"
    id = Column(Integer, primary_key=True, autoincrement=False)
    path = Column(String(1024), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    last_commit = Column(String(64), nullable=True)
    deleted_at = Column(DateTime, nullable=True, index=True)

    tags = relationship("DBTag", secondary=note_tags, back_populates="notes")

    def __repr__(self) -> str:
        return f"<Note(id={self.id}, path='{self.path}')>"


class DBTag(Base):
    __tablename__ = "tags"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), unique=True, nullable=False)

    notes = relationship("DBNote", secondary=note_tags, back_populates="tags")

    def __repr__(self) -> str:
        return f"<Tag(id={self.id}, name='{self.name}')>"


class DBCatalogState(Base):
    """Single row recording which head the cache was built from."""
    __tablename__ = "catalog_state"
    id = Column(Integer, primary_key=True)
    head = Column(String(64), nullable=True)
    next_id = Column(Integer, nullable=False, default=1)
    schema_version = Column(Integer, nullable=False, default=CACHE_SCHEMA_VERSION)

    def __repr__(self) -> str:
        return f"<CatalogState(head='{self.head}', next_id={self.next_id})>"


def create_cache_engine(db_path: Union[str, Path]) -> Engine:
    """Create the SQLite engine for a cache file and make sure the tables exist."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(f"sqlite:///{db_path}")

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine):
    """Get a session factory for the cache database."""
    return sessionmaker(bind=engine)

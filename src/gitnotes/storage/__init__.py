"""Storage layer for gitnotes."""

from gitnotes.storage.catalog import Catalog, NoteTree
from gitnotes.storage.catalog_cache import CatalogCache
from gitnotes.storage.git_storage import GitStorage
from gitnotes.storage.link_tree import NoteLinkTree

__all__ = [
    "GitStorage",
    "Catalog",
    "CatalogCache",
    "NoteLinkTree",
    "NoteTree",
]

"""
gitnotes - a notes and snippet manager backed by a git repository.

Notes are addressed through a virtual file system (paths and numeric IDs)
that is independent of how their content is laid out in the repository.
Every mutation becomes exactly one git commit and the note catalog can
always be rebuilt from history.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("gitnotes")
except PackageNotFoundError:
    __version__ = "0.3.0"

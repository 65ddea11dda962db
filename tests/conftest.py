"""Common test fixtures for gitnotes."""

import tempfile
from pathlib import Path

import pytest

from gitnotes.config import config
from gitnotes.observability import metrics
from gitnotes.services.notes_service import NotesService
from gitnotes.services.search_service import SearchService
from gitnotes.services.transaction_manager import TransactionManager
from gitnotes.storage.catalog import Catalog
from gitnotes.storage.catalog_cache import CatalogCache
from gitnotes.storage.git_storage import GitStorage
from tests.fakes import FakeSnippetRunner


@pytest.fixture
def temp_dir():
    """Create a temporary directory removed after the test."""
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def repo_dir(temp_dir):
    """Location of a notebook repository that does not exist yet."""
    return temp_dir / "notebook"


@pytest.fixture
def storage(repo_dir):
    """A freshly initialized, empty repository."""
    return GitStorage.init(repo_dir)


@pytest.fixture
def catalog(storage):
    """A catalog backed by a SQLite cache inside the repository."""
    cache = CatalogCache.for_repository(storage.repo_path)
    catalog = Catalog.load(storage, cache)
    yield catalog
    cache.close()


@pytest.fixture
def transactions(storage, catalog):
    return TransactionManager(storage, catalog)


@pytest.fixture
def search(storage, catalog):
    return SearchService(storage, catalog)


@pytest.fixture
def test_config(temp_dir, monkeypatch):
    """Point the global config at a temporary base directory (auto-restored)."""
    monkeypatch.setattr(config, "base_dir", temp_dir)
    monkeypatch.setattr(config, "repository", Path("notebook"))
    monkeypatch.setattr(config, "sync_default_branch", None)
    monkeypatch.setattr(config, "tombstone_history", True)
    monkeypatch.setattr(config, "symlinks", True)
    yield config


@pytest.fixture
def snippet_runner():
    return FakeSnippetRunner()


@pytest.fixture
def notes_service(test_config, snippet_runner):
    """A notes service over a new notebook created in the temporary base directory."""
    service = NotesService.open(config=test_config, snippet_runner=snippet_runner)
    yield service
    service.close()


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield

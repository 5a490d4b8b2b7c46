"""
Configurazione pytest e fixture comuni.
"""
import pytest

from core.config import ImporterConfig
from importer.batch_processor import BatchProcessor
from importer.pipeline import ImportPipeline
from importer.service import ImportService
from importer.tracker import ProgressTracker
from importer.validation_cache import ValidationCache
from tests.mocks import FakeReferenceSource, InMemoryInventoryStore, InMemoryJobStore


@pytest.fixture
def config():
    """Configurazione di test (nessun backoff reale)."""
    return ImporterConfig(
        database_url="sqlite+aiosqlite:///:memory:",
        backoff_delay_seconds=0,
        batch_timeout_seconds=5,
        retry_attempts=3,
    )


@pytest.fixture
def reference_source():
    return FakeReferenceSource()


@pytest.fixture
def inventory_store():
    return InMemoryInventoryStore()


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def tracker():
    return ProgressTracker(memory_reader=lambda: 64.0, cpu_reader=lambda: 1.0)


@pytest.fixture
def pipeline(config, inventory_store, job_store, tracker):
    """Pipeline completa su store in memoria."""
    cache = ValidationCache.from_config(inventory_store, config)
    processor = BatchProcessor.from_config(config, cache=cache)
    processor.memory_reader = lambda: 64.0
    return ImportPipeline.from_config(
        config,
        inventory_store,
        job_store,
        cache=cache,
        batch_processor=processor,
        tracker=tracker,
    )


@pytest.fixture
def service(pipeline, job_store):
    return ImportService(pipeline, job_store)

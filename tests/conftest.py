"""Shared fixtures for promptstore tests."""

import os

# Settings are read at import time; pin a test-friendly environment first.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("USE_IN_MEMORY_BACKENDS", "true")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")

import pytest

from promptstore.app.api.metrics import reset_metrics_collector
from promptstore.app.middleware.rate_limit import reset_rate_governor
from promptstore.app.services.blob_store import InMemoryBlobStore
from promptstore.app.services.bulk_delete import BulkDeletionEngine, reset_deletion_engine
from promptstore.app.services.metadata_store import InMemoryMetadataStore, ResourceRecord


@pytest.fixture(autouse=True)
def reset_singletons():
    """Give every test fresh process-wide collectors and engines."""
    reset_metrics_collector()
    reset_rate_governor()
    reset_deletion_engine()
    yield
    reset_metrics_collector()
    reset_rate_governor()
    reset_deletion_engine()


@pytest.fixture
def metadata_store():
    return InMemoryMetadataStore(
        [
            ResourceRecord(id="A", owner_id="U1", blob_key="blobs/A"),
            ResourceRecord(id="B", owner_id="U1", blob_key="blobs/B"),
            ResourceRecord(id="C", owner_id="U2", blob_key="blobs/C"),
        ]
    )


@pytest.fixture
def blob_store():
    store = InMemoryBlobStore()
    for key in ("blobs/A", "blobs/B", "blobs/C"):
        store.put(key, b"payload")
    return store


@pytest.fixture
def engine(metadata_store, blob_store):
    return BulkDeletionEngine(
        metadata_store, blob_store, blob_concurrency=4, blob_timeout=1.0
    )

"""
Pytest configuration and fixtures for blobserve tests.
"""

import os
import sys
import tempfile
import shutil
import pytest

# Add python directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'python'))


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    tmp = tempfile.mkdtemp(prefix="blobserve-test-")
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def log_path(temp_dir):
    """Location of the object log inside the temp storage root."""
    return os.path.join(temp_dir, "_db")


@pytest.fixture
def metadata_store(log_path):
    """Create an initialized MetadataStore over a fresh log."""
    from blobserve.objects import MetadataStore
    store = MetadataStore(log_path)
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def secret():
    return b"testing"


@pytest.fixture
def event_broker():
    """Create a fresh EventBroker instance."""
    from blobserve.api_server import EventBroker
    return EventBroker(history_size=10)


@pytest.fixture
def client(metadata_store, secret, temp_dir, event_broker):
    """Create a test client for the API server."""
    from fastapi.testclient import TestClient
    from blobserve.api_server import create_app
    app = create_app(metadata_store, secret, temp_dir, broker=event_broker)
    return TestClient(app)


# Pytest markers
def pytest_configure(config):
    config.addinivalue_line("markers", "p0: Priority 0 (critical) tests")
    config.addinivalue_line("markers", "p1: Priority 1 (high) tests")
    config.addinivalue_line("markers", "p2: Priority 2 (medium) tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
    config.addinivalue_line("markers", "integration: Integration tests")

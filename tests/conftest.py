"""
Pytest configuration and fixtures for the PDF to PSD backend tests.
"""

import pytest
from fastapi.testclient import TestClient

from helpers import ChainRecorder, FakeStrategy, make_pdf_bytes
from pdf2psd_backend.broadcaster import ProgressBroadcaster
from pdf2psd_backend.configuration import load_config
from pdf2psd_backend.job_manager import JobOrchestrator
from pdf2psd_backend.job_store import JobStore
from pdf2psd_backend.main import create_app
from pdf2psd_backend.quota import QuotaGate
from pdf2psd_backend.user_store import UserStore

ADMIN_KEY = "test-admin-key-12345"
MAX_UPLOAD_BYTES = 5 * 1024 * 1024


@pytest.fixture
def test_dirs(tmp_path):
    """Per-test upload/output directories and user database path."""
    return {
        "upload": tmp_path / "uploads",
        "output": tmp_path / "downloads",
        "database": tmp_path / "users.db",
    }


@pytest.fixture
def config(test_dirs):
    return load_config(
        {
            "storage": {"upload_dir": str(test_dirs["upload"]), "output_dir": str(test_dirs["output"])},
            "upload": {"max_bytes": MAX_UPLOAD_BYTES},
            "auth": {"admin_key": ADMIN_KEY},
            "database": {"path": str(test_dirs["database"])},
            "s3": {"bucket": ""},
            "server": {"websocket_heartbeat_seconds": 1},
        }
    )


@pytest.fixture
def chain():
    """Two healthy fake strategies; the first one always wins."""
    return ChainRecorder(FakeStrategy("primary"), FakeStrategy("fallback"))


@pytest.fixture
def app(config, chain):
    return create_app(config, chain_factory=chain)


@pytest.fixture
def client(app):
    """Test client with the app lifespan running, so background conversions execute."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def sample_pdf():
    """A minimal one-page PDF."""
    return make_pdf_bytes()


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
def users(test_dirs):
    return UserStore(str(test_dirs["database"]))


@pytest.fixture
def broadcaster():
    return ProgressBroadcaster()


@pytest.fixture
def orchestrator(store, users, broadcaster, chain, test_dirs):
    return JobOrchestrator(
        store=store,
        quota=QuotaGate(users),
        broadcaster=broadcaster,
        chain_factory=chain,
        upload_root=test_dirs["upload"],
        output_root=test_dirs["output"],
        max_upload_bytes=MAX_UPLOAD_BYTES,
        chunk_bytes=64 * 1024,
    )

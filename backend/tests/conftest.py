"""Shared test fixtures and configuration for backend tests."""
import httpx
import pytest
from fastapi.testclient import TestClient

from campus_storage.config import SandboxSettings, reset_config
from campus_storage.leave.service import LeaveRequestService
from campus_storage.main import app
from campus_storage.storage.service import ObjectStorageService

SANDBOX_URL = "http://sandbox"


@pytest.fixture
def sandbox_settings(tmp_path):
    """Sandbox settings rooted in a per-test temp directory."""
    return SandboxSettings(
        data_dir=str(tmp_path / "data"),
        db_path=str(tmp_path / "metadata.duckdb"),
        leave_db_path=str(tmp_path / "leave.duckdb"),
        signing_secret="test-secret",
    )


@pytest.fixture
def sandbox(sandbox_settings):
    """Fresh storage + leave services backed by temp DuckDB files."""
    reset_config()
    ObjectStorageService.reset_instance()
    LeaveRequestService.reset_instance()
    storage = ObjectStorageService.get_instance(sandbox_settings)
    LeaveRequestService.get_instance(sandbox_settings)
    yield storage
    LeaveRequestService.reset_instance()
    ObjectStorageService.reset_instance()
    reset_config()


@pytest.fixture
def api_client(sandbox):
    """TestClient for the sandbox app (lifespan not run; services come from `sandbox`)."""
    return TestClient(app)


@pytest.fixture
def sandbox_http(sandbox):
    """Factory for httpx.AsyncClient instances wired to the sandbox app in-process."""
    def make() -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url=SANDBOX_URL,
        )
    return make

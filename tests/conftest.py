"""Shared pytest fixtures for fsgate tests.

A single FastAPI app is created per test session to avoid duplicate
Prometheus metric registration errors (the instrumentator registers
gauges in the global prometheus_client registry).

The storage components are re-attached to a fresh ``tmp_path`` for every
test, and initialized by hand since the lifespan does not run under
ASGITransport.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from fsgate.config import AuthConfig, FsgateConfig, ServerConfig, StorageConfig
from fsgate.server import attach_storage, create_app

ACCESS_KEY = "test-key"

MAX_REQUEST_SIZE = 1024 * 1024


def auth_header(access_key: str = ACCESS_KEY) -> str:
    """Build a SigV4-shaped Authorization header claiming ``access_key``."""
    return (
        f"AWS4-HMAC-SHA256 Credential={access_key}/20260101/us-east-1/s3/aws4_request, "
        "SignedHeaders=host;x-amz-date, Signature=0000"
    )


@pytest.fixture(scope="session")
def config(tmp_path_factory) -> FsgateConfig:
    """Create a test FsgateConfig with the gate enabled and a 1 MiB body cap."""
    return FsgateConfig(
        server=ServerConfig(host="127.0.0.1", port=9010, max_request_size=MAX_REQUEST_SIZE),
        auth=AuthConfig(enabled=True, allowed_access_keys=[ACCESS_KEY, "other-key"]),
        storage=StorageConfig(root_dir=str(tmp_path_factory.mktemp("session-root"))),
    )


@pytest.fixture(scope="session")
def app(config: FsgateConfig):
    """Create a single test FastAPI application for the whole session."""
    return create_app(config)


@pytest.fixture
async def store_root(app, tmp_path):
    """Point the app's storage at a fresh directory for one test."""
    old = (app.state.objects, app.state.uploads, app.state.listing)
    root = tmp_path / "data"
    objects = attach_storage(app, root)
    await objects.init()
    yield root
    app.state.objects, app.state.uploads, app.state.listing = old


@pytest.fixture
async def client(app, store_root) -> AsyncClient:
    """Async client that presents an allow-listed access key on every request."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://testserver",
        headers={"Authorization": auth_header()},
    ) as ac:
        yield ac


@pytest.fixture
async def anon_client(app, store_root) -> AsyncClient:
    """Async client that sends no Authorization header."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

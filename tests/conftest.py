"""Shared pytest fixtures for sigv4auth tests.

A single FastAPI app is created per test session to avoid duplicate
Prometheus metric registration errors (the instrumentator registers
gauges in the global prometheus_client registry). Tests that need a
different resolver or auth switched off swap ``app.state`` and restore it.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from sigv4_signing import (
    ACCESS_KEY,
    REGION,
    SECRET_KEY,
    SERVICE,
    SESSION_TOKEN,
    TOKEN_ACCESS_KEY,
    TOKEN_SECRET_KEY,
)
from sigv4auth.config import (
    AuthConfig,
    CredentialConfig,
    ServerConfig,
    SigV4AuthConfig,
)
from sigv4auth.resolvers import StaticCredential, StaticSigningKeyResolver
from sigv4auth.server import create_app


@pytest.fixture(scope="session")
def config() -> SigV4AuthConfig:
    """Create a test config with auth enabled and two known credentials."""
    return SigV4AuthConfig(
        server=ServerConfig(host="127.0.0.1", port=9010),
        auth=AuthConfig(
            service=SERVICE,
            region=REGION,
            allow_presigned=True,
            allow_unsigned_payload=True,
            normalize_uri_path=False,
            credentials=[
                CredentialConfig(access_key=ACCESS_KEY, secret_key=SECRET_KEY),
                CredentialConfig(
                    access_key=TOKEN_ACCESS_KEY,
                    secret_key=TOKEN_SECRET_KEY,
                    session_token=SESSION_TOKEN,
                ),
            ],
        ),
    )


@pytest.fixture(scope="session")
def app(config: SigV4AuthConfig):
    """Create a single test FastAPI application for the whole session."""
    return create_app(config)


@pytest.fixture
async def client(app) -> AsyncClient:
    """Create an async test client for the app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
def resolver() -> StaticSigningKeyResolver:
    """A resolver holding the same credentials as the test app."""
    return StaticSigningKeyResolver(
        {
            ACCESS_KEY: SECRET_KEY,
            TOKEN_ACCESS_KEY: StaticCredential(
                secret_key=TOKEN_SECRET_KEY, session_token=SESSION_TOKEN
            ),
        }
    )

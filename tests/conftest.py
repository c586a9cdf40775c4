"""Shared fixtures: an in-memory entitlement store and fake collaborators."""

from __future__ import annotations

import os

# Must be set before storefront modules read configuration at import time.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront.db import Base
from storefront.main import app
from storefront.routes.deps import get_download_issuer, get_entitlement_store
from storefront.services.download_issuer import DownloadIssuer
from storefront.services.entitlements import EntitlementStore
from tests.fakes import FakeIdentityProvider, FakeSigner


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        engine.dispose()


@pytest.fixture
def store(session_factory) -> EntitlementStore:
    return EntitlementStore(session_factory)


@pytest.fixture
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def issuer(identity, store, signer) -> DownloadIssuer:
    return DownloadIssuer(identity=identity, store=store, signer=signer, ttl_seconds=900)


@pytest.fixture
def client(issuer, store):
    app.dependency_overrides[get_download_issuer] = lambda: issuer
    app.dependency_overrides[get_entitlement_store] = lambda: store
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()

from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from remindrelay.core.config import get_settings
from remindrelay.persistence.db import build_sessionmaker, create_schema
from remindrelay.services import resilience
from remindrelay.services.telemetry import reset_telemetry


@pytest.fixture(autouse=True)
def delivery_settings(monkeypatch) -> None:
    # Point every test at a fake gateway, in-process leases and no pacing delays.
    monkeypatch.setenv("GATEWAY_BASE_URL", "http://gateway.test")
    monkeypatch.setenv("GATEWAY_INSTANCE", "instance-1")
    monkeypatch.setenv("GATEWAY_API_KEY", "test-key")
    monkeypatch.setenv("JOB_LEASE_BACKEND", "local")
    monkeypatch.setenv("JOB_EXECUTION_MODE", "inline")
    monkeypatch.setenv("JOB_DEFAULT_INTERVAL_S", "0")
    monkeypatch.setenv("JOB_RECOVER_ON_STARTUP", "false")
    monkeypatch.setenv("QUEUE_REDELIVERY_INTERVAL_MS", "0")
    get_settings.cache_clear()
    reset_telemetry()
    resilience._local_leases.clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def sessionmaker(tmp_path: Path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    # File-backed sqlite so concurrent sessions from job tasks get their own connections.
    factory = build_sessionmaker(f"sqlite+aiosqlite:///{tmp_path / 'remindrelay.db'}")
    await create_schema(factory)
    yield factory
    await factory.kw["bind"].dispose()

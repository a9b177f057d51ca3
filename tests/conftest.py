from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from relay.config import Settings
from relay.main import create_app
from relay.rate_limit import MemoryRateLimiter
from relay.services import RelayServices, build_services


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Hermetic settings: documents under tmp_path, no cooldown, tiny debounce."""

    return Settings(
        cooldown_ms=0,
        store_dir=tmp_path / "data",
        flush_debounce_ms=10,
    )


@pytest.fixture()
def services(settings: Settings) -> RelayServices:
    return build_services(settings, limiter=MemoryRateLimiter(cooldown_ms=settings.cooldown_ms))


@pytest.fixture()
def client(services: RelayServices) -> Generator[TestClient, None, None]:
    """Shared fixture for HTTP tests; the app uses the `services` fixture as its state."""

    with TestClient(create_app(services=services)) as c:
        yield c

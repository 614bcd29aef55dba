"""
Shared pytest fixtures for provisioner tests.

This module provides:
- Settings pointed at a temporary output directory
- An InMemoryBackend running a fake scraper, and a MemoryObjectStore
- Log-context and settings-cache isolation between tests

Usage:
    @pytest.mark.asyncio
    async def test_job(runner, backend, store):
        result = await runner.run(make_job("hotel-123"))
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from provisioner.backend.memory import InMemoryBackend
from provisioner.core.settings import ProvisionerSettings, get_settings, get_storage_settings
from provisioner.logging.context import clear_context
from provisioner.pipeline.publisher import MemoryObjectStore
from provisioner.pipeline.runner import ProvisionRunner
from tests._support.builders import csv_rows, scraper


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        markers = {mark.name for mark in item.iter_markers()}
        if "integration" not in markers:
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Isolation
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Fresh log context and settings cache; no PROVISIONER_/R2_ env leaks in."""
    import os

    for key in list(os.environ):
        if key.startswith(("PROVISIONER_", "R2_")):
            monkeypatch.delenv(key)
    clear_context()
    get_settings.cache_clear()
    get_storage_settings.cache_clear()
    yield
    clear_context()
    get_settings.cache_clear()
    get_storage_settings.cache_clear()


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    return tmp_path / "exports"


@pytest.fixture
def settings(output_dir: Path) -> ProvisionerSettings:
    return ProvisionerSettings(
        _env_file=None,
        output_dir=output_dir,
        job_deadline_seconds=5.0,
    )


@pytest.fixture
def store() -> MemoryObjectStore:
    return MemoryObjectStore(bucket="reviews")


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend(program=scraper(csv_rows(10)))


@pytest.fixture
def runner(
    settings: ProvisionerSettings,
    backend: InMemoryBackend,
    store: MemoryObjectStore,
) -> ProvisionRunner:
    return ProvisionRunner(settings, lambda: backend, store)

"""Pytest fixtures for mail-dispatch tests."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path

import pytest
import pytest_asyncio

# Ensure the package is importable when running pytest from the repo root
# without ``pip install -e .``
_src = Path(__file__).resolve().parent.parent / "src"
if _src.is_dir() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from mail_dispatch.envelope import TaskEnvelope  # noqa: E402
from mail_dispatch.memory import (  # noqa: E402
    InMemoryDeliveryExecutor,
    InMemoryQueueAdapter,
)

QUEUE = "email_queue"


@pytest.fixture
def envelope() -> TaskEnvelope:
    """Sample task envelope."""
    return TaskEnvelope(recipient="a@example.com", subject="S", body="B")


@pytest.fixture
def executor() -> InMemoryDeliveryExecutor:
    return InMemoryDeliveryExecutor()


@pytest_asyncio.fixture
async def broker() -> InMemoryQueueAdapter:
    """Connected in-memory broker with the work queue declared."""
    adapter = InMemoryQueueAdapter()
    await adapter.connect()
    await adapter.ensure_queue(QUEUE)
    return adapter


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Poll *predicate* until it holds or fail after *timeout* seconds."""

    async def wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met within timeout")
            await asyncio.sleep(0.01)

    return wait

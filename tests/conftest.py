"""
Registrar - Test Configuration

Pytest fixtures and configuration for all tests.
"""
from typing import AsyncIterator

import pytest

from config import (
    Environment,
    IdempotencyBackend,
    IdempotencyConfig,
    LoggingConfig,
    PipelineConfig,
    PolicyConfig,
    QueryConfig,
    RegistrarConfig,
)
from core.clock import FrozenClock
from registrar import Registrar, create_registrar
from tests.helpers import add_course, add_student


@pytest.fixture
def clock() -> FrozenClock:
    """Clock frozen at the start of the fall term."""
    return FrozenClock()


@pytest.fixture
def config() -> RegistrarConfig:
    """Explicit configuration, independent of the environment."""
    return RegistrarConfig(
        env=Environment.TESTING,
        policy=PolicyConfig(credit_hour_ceiling=21),
        query=QueryConfig(default_page_size=20, max_page_size=100),
        idempotency=IdempotencyConfig(ttl_seconds=3600, backend=IdempotencyBackend.MEMORY),
        pipeline=PipelineConfig(max_concurrency_retries=3, dispatch_max_attempts=1),
        logging=LoggingConfig(level="WARNING", json_format=False),
    )


@pytest.fixture
async def registrar(config, clock) -> AsyncIterator[Registrar]:
    """A fully wired Registrar over in-memory adapters."""
    async with create_registrar(config, clock=clock) as service:
        yield service


@pytest.fixture
async def cs101(registrar) -> str:
    """CS101, 3 credit hours, offered in FALL2024 with 30 seats."""
    return await add_course(registrar, "CS101")


@pytest.fixture
async def student(registrar) -> str:
    """An active student S1."""
    return await add_student(registrar, "S1")

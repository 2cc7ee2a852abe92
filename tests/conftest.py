"""Pytest fixtures shared across all ledgerscan tests."""

from __future__ import annotations

import pytest
from factories import (
    ALCHEMY_KEY,
    BSCSCAN_KEY,
    ETHERSCAN_KEY,
    ExplorerStub,
    FakeClock,
    RPCStub,
)
from loguru import logger

from ledgerscan.config import (
    APIConfig,
    GatewayConfig,
    LedgerscanConfig,
    LoggingConfig,
    OutputConfig,
)

# ── Config fixtures ───────────────────────────────────────────────────────────


@pytest.fixture
def sample_config() -> LedgerscanConfig:
    """Config with every credential set and all pacing disabled."""
    return LedgerscanConfig(
        api=APIConfig(
            etherscan_api_key=ETHERSCAN_KEY,
            bscscan_api_key=BSCSCAN_KEY,
            alchemy_api_key=ALCHEMY_KEY,
        ),
        gateway=GatewayConfig(
            page_pause=0.0,
            source_pause=0.0,
            lookup_pause=0.0,
            calls_per_second=1000,
        ),
        output=OutputConfig(default_format="json", color=False),
        logging=LoggingConfig(level="WARNING"),
    )


@pytest.fixture
def empty_config() -> LedgerscanConfig:
    """Config with no credentials at all."""
    return LedgerscanConfig(gateway=GatewayConfig(calls_per_second=1000))


# ── Timing fixtures ───────────────────────────────────────────────────────────


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested through the injected sleep."""
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ── HTTP stubs ────────────────────────────────────────────────────────────────


@pytest.fixture
def explorer_stub() -> ExplorerStub:
    return ExplorerStub()


@pytest.fixture
def rpc_stub() -> RPCStub:
    return RPCStub()


@pytest.fixture(autouse=True)
def _reset_loguru():
    """Drop sinks added by a test (e.g. the CLI's stderr sink)."""
    yield
    logger.remove()

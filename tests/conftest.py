"""Shared fixtures."""
import pytest

from fakes import (
    FakeGasOracle, FakeMempool, FakeMetadataProvider, FakePriceFeed, FakeRelay, FakeSigner, make_settings
)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def metadata():
    return FakeMetadataProvider.scenario_a()


@pytest.fixture
def price_feed():
    return FakePriceFeed()


@pytest.fixture
def gas_oracle():
    return FakeGasOracle()


@pytest.fixture
def mempool():
    return FakeMempool()


@pytest.fixture
def signer():
    return FakeSigner(next_nonce=42)


@pytest.fixture
def relay():
    return FakeRelay()

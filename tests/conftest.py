"""
conftest.py - Shared pytest fixtures for levindex tests

Provides common fixtures used across unit, functional and conformance tests:
- Token ledger with WETH, DAI, WBTC and USDC registered
- Full markets (fee-free and 0.3% mock routers)
- A leveraged ETH index, fresh and with one share issued
"""

import pytest
from decimal import Decimal

from tests.market import build_market, create_eth_index, new_ledger


@pytest.fixture
def ledger():
    """Token ledger with WETH, DAI, WBTC and USDC registered."""
    return new_ledger()


@pytest.fixture
def market():
    """Full market with a fee-free mock router."""
    return build_market()


@pytest.fixture
def fee_market():
    """Full market whose mock router charges 0.3% per hop."""
    return build_market(router_fee=Decimal("0.003"))


@pytest.fixture
def eth_index(market):
    """ETH3X index on the mock venue; returns (market, symbol)."""
    create_eth_index(market)
    return market, "ETH3X"


@pytest.fixture
def issued_index(eth_index):
    """ETH3X with 1 share issued to alice."""
    market, symbol = eth_index
    market.protocol.issue(symbol, "alice", Decimal("1"), max_cost=Decimal("1"))
    return market, symbol

"""
test_registry.py - Unit tests for the integration registry
"""

import pytest
from decimal import Decimal

from levindex import (
    InvalidState, StaticPriceOracle, FixedPriceRouter, ConstantProductRouter,
    IntegrationModule, IntegrationRegistry, SwapVenue,
)
from levindex.gateways.registry import as_venue


@pytest.fixture
def routers(ledger):
    oracle = StaticPriceOracle({"WETH": Decimal("1000"), "DAI": Decimal("1")})
    return FixedPriceRouter(ledger, oracle), ConstantProductRouter(ledger)


class TestVenueNames:

    def test_enum_passthrough(self):
        assert as_venue(SwapVenue.MOCK) is SwapVenue.MOCK

    def test_string_is_case_insensitive(self):
        assert as_venue("uniswap") is SwapVenue.UNISWAP

    def test_unknown_name(self):
        with pytest.raises(InvalidState, match="Unknown swap venue"):
            as_venue("SUSHI")


class TestResolve:

    def test_module_default(self, routers):
        mock, _ = routers
        registry = IntegrationRegistry()
        registry.register(IntegrationModule.LEVERAGE, SwapVenue.MOCK, mock)
        assert registry.resolve("ETH3X", IntegrationModule.LEVERAGE, "MOCK") is mock

    def test_index_override_wins(self, routers):
        mock, uniswap = routers
        registry = IntegrationRegistry()
        registry.register(IntegrationModule.LEVERAGE, SwapVenue.UNISWAP, uniswap)
        registry.register(IntegrationModule.LEVERAGE, SwapVenue.UNISWAP, mock, index="ETH3X")
        assert registry.resolve("ETH3X", IntegrationModule.LEVERAGE, SwapVenue.UNISWAP) is mock
        assert registry.resolve("BTC2X", IntegrationModule.LEVERAGE, SwapVenue.UNISWAP) is uniswap

    def test_modules_are_separate(self, routers):
        mock, _ = routers
        registry = IntegrationRegistry()
        registry.register(IntegrationModule.LEVERAGE, SwapVenue.MOCK, mock)
        with pytest.raises(InvalidState, match="No MOCK integration for COMPOSITE"):
            registry.resolve("ETH3X", IntegrationModule.COMPOSITE, SwapVenue.MOCK)

    def test_unregister(self, routers):
        mock, _ = routers
        registry = IntegrationRegistry()
        registry.register(IntegrationModule.LEVERAGE, SwapVenue.MOCK, mock)
        registry.unregister(IntegrationModule.LEVERAGE, SwapVenue.MOCK)
        with pytest.raises(InvalidState):
            registry.resolve("ETH3X", IntegrationModule.LEVERAGE, SwapVenue.MOCK)

    def test_rejects_non_gateway(self):
        with pytest.raises(TypeError):
            IntegrationRegistry().register(IntegrationModule.LEVERAGE, SwapVenue.MOCK, object())

    def test_gateways_distinct(self, routers):
        mock, uniswap = routers
        registry = IntegrationRegistry()
        for module in IntegrationModule:
            registry.register(module, SwapVenue.MOCK, mock)
        registry.register(IntegrationModule.LEVERAGE, SwapVenue.UNISWAP, uniswap, index="ETH3X")
        gateways = registry.gateways()
        assert len(gateways) == 2
        assert any(g is mock for g in gateways) and any(g is uniswap for g in gateways)

"""
Streaming Fee Conformance Tests

INVARIANT: Fee accrual moves ownership, never assets.

    f = rate * elapsed / SECONDS_PER_YEAR
    supply' = supply / (1 - f)
    multiplier' = multiplier * (1 - f)

    ∀ component c:  unit'(c) * supply' = unit(c) * supply
    recipient's share of supply' = f

Collateral and debt held by the index are untouched; every holder is
diluted by exactly f.
"""

from datetime import timedelta
from decimal import Decimal
from hypothesis import given, settings
from hypothesis import strategies as st

from tests.market import T0, build_market, create_eth_index
from levindex import SECONDS_PER_YEAR


INDEX = "ETH3X"
REL = Decimal("1e-15")
WEI = Decimal("1e-18")


def close(actual, expected, rel=REL):
    if expected == 0:
        return abs(actual) <= rel
    return abs(actual - expected) <= abs(expected) * rel


fee_rates = st.decimals(min_value=Decimal("0"), max_value=Decimal("0.09"), places=4)
elapsed_seconds = st.integers(min_value=0, max_value=2 * int(SECONDS_PER_YEAR))
quantities = st.decimals(min_value=Decimal("0.5"), max_value=Decimal("50"), places=3)


def levered_index(rate, quantity):
    market = build_market()
    create_eth_index(market, fee=rate)
    market.protocol.issue(INDEX, "alice", quantity)
    market.protocol.lever(INDEX, "manager", "DAI", "WETH", quantity * 500, Decimal("0"))
    return market


class TestFeeConservation:

    @given(fee_rates, elapsed_seconds, quantities)
    @settings(max_examples=40, deadline=None)
    def test_aggregate_holdings_unchanged(self, rate, seconds, quantity):
        """
        PROPERTY: unit * supply is the same before and after accrual for
        collateral and debt.
        """
        market = levered_index(rate, quantity)
        protocol = market.protocol
        supply = protocol.total_supply(INDEX)
        collateral = protocol.default_unit(INDEX, "WETH") * supply
        debt = protocol.external_unit(INDEX, "DAI") * supply

        market.ledger.advance_time(T0 + timedelta(seconds=seconds))
        protocol.accrue_fee(INDEX)

        supply_after = protocol.total_supply(INDEX)
        assert supply_after >= supply
        assert close(protocol.default_unit(INDEX, "WETH") * supply_after, collateral)
        assert close(protocol.external_unit(INDEX, "DAI") * supply_after, debt)

    @given(fee_rates, elapsed_seconds, quantities)
    @settings(max_examples=40, deadline=None)
    def test_recipient_share_is_fee_fraction(self, rate, seconds, quantity):
        """
        PROPERTY: After one accrual the recipient owns f of the supply, up to
        the one-wei rounding of the minted shares.
        """
        market = levered_index(rate, quantity)
        protocol = market.protocol

        market.ledger.advance_time(T0 + timedelta(seconds=seconds))
        accrual = protocol.accrue_fee(INDEX)

        fraction = rate * Decimal(seconds) / SECONDS_PER_YEAR
        share = protocol.balance_of(INDEX, "treasury") / protocol.total_supply(INDEX)
        # the mint is floored to 18 decimals, moving the share by at most 1e-18 / supply
        assert fraction - WEI / quantity <= share <= fraction
        assert close(accrual.position_multiplier, Decimal("1") - fraction)

    @given(fee_rates, st.lists(st.integers(min_value=1, max_value=86_400 * 90), min_size=1, max_size=6))
    @settings(max_examples=30, deadline=None)
    def test_multiplier_compounds(self, rate, steps):
        """
        PROPERTY: Accruing in steps multiplies the (1 - f_i) factors.
        """
        market = levered_index(rate, Decimal("1"))
        expected = Decimal("1")
        now = T0
        for seconds in steps:
            now += timedelta(seconds=seconds)
            market.ledger.advance_time(now)
            market.protocol.accrue_fee(INDEX)
            expected *= Decimal("1") - rate * Decimal(seconds) / SECONDS_PER_YEAR

        assert close(market.protocol.position_multiplier(INDEX), expected, rel=Decimal("1e-12"))

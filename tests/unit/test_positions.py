"""
test_positions.py - Unit tests for the position ledger

Tests:
- Index factory validation and initial state
- Real/virtual unit conversion under a position multiplier
- Supply excludes the system wallet
- compute_sync for default and external positions, zero supply, idempotency
- Manager and initialization guards
- Reset and reseed after a full redemption
"""

import pytest
from decimal import Decimal

from tests.fake_view import FakeView
from levindex import (
    SYSTEM_WALLET, UNIT_TYPE_INDEX,
    InvalidState, Unauthorized, token,
)
from levindex.positions import (
    MODULE_LEVERAGE,
    create_index, load_index,
    calculate_real_unit, calculate_virtual_unit, calculate_unit_from_balance,
    get_total_supply, get_default_unit, get_external_unit, get_components, get_default_positions,
    require_manager, require_initialized,
    compute_sync, compute_set_default_unit, compute_set_external_unit,
    compute_reset_positions, compute_mint, compute_burn,
)


def make_index(**kwargs):
    params = dict(symbol="IDX", name="Index", manager="manager", components={"aWETH": Decimal("1")})
    params.update(kwargs)
    return create_index(**params)


def view_with(holdings, unit=None, state_overrides=None):
    unit = unit or make_index()
    states = None
    if state_overrides:
        states = {unit.symbol: {**unit.state, **state_overrides}}
    balances = {wallet: {unit.symbol: Decimal(str(q))} for wallet, q in holdings.items()}
    return FakeView(balances=balances, units={unit.symbol: unit}, states=states)


def new_state(pending):
    assert len(pending.state_changes) == 1
    return pending.state_changes[0].new_state


# ============================================================================
# FACTORY
# ============================================================================

class TestCreateIndex:

    def test_initial_state(self):
        unit = make_index()
        state = unit.state
        assert unit.unit_type == UNIT_TYPE_INDEX
        assert state['position_multiplier'] == Decimal("1")
        assert state['default_positions'] == {"aWETH": Decimal("1")}
        assert state['external_positions'] == {}
        assert state['initial_units'] == {"aWETH": Decimal("1")}
        assert state['leverage_config'] is None
        assert state['fee_config'] is None

    def test_empty_symbol_rejected(self):
        with pytest.raises(ValueError, match="symbol"):
            make_index(symbol="  ")

    def test_empty_manager_rejected(self):
        with pytest.raises(ValueError, match="manager"):
            make_index(manager="")

    def test_no_components_rejected(self):
        with pytest.raises(ValueError, match="component"):
            make_index(components={})

    def test_non_positive_seed_rejected(self):
        with pytest.raises(ValueError, match="positive"):
            make_index(components={"aWETH": Decimal("0")})

    def test_load_index_rejects_token(self):
        view = FakeView(balances={}, units={"WETH": token("WETH", "Wrapped Ether")})
        with pytest.raises(InvalidState):
            load_index(view, "WETH")


# ============================================================================
# PURE CALCULATIONS
# ============================================================================

class TestUnitConversion:

    def test_real_unit(self):
        assert calculate_real_unit(Decimal("2"), Decimal("0.98")) == Decimal("1.96")

    def test_virtual_unit(self):
        assert calculate_virtual_unit(Decimal("1.96"), Decimal("0.98")) == Decimal("2")

    def test_virtual_unit_needs_positive_multiplier(self):
        with pytest.raises(InvalidState):
            calculate_virtual_unit(Decimal("1"), Decimal("0"))

    def test_unit_from_balance(self):
        assert calculate_unit_from_balance(Decimal("5"), Decimal("2")) == Decimal("2.5")

    def test_unit_from_balance_zero_supply(self):
        with pytest.raises(InvalidState):
            calculate_unit_from_balance(Decimal("5"), Decimal("0"))


# ============================================================================
# ADAPTERS
# ============================================================================

class TestReads:

    def test_supply_excludes_system_wallet(self):
        view = view_with({SYSTEM_WALLET: "-3", "alice": "2", "bob": "1"})
        assert get_total_supply(view, "IDX") == Decimal("3")

    def test_default_unit_scaled_by_multiplier(self):
        view = view_with({"alice": "1"}, state_overrides={'position_multiplier': Decimal("0.5")})
        assert get_default_unit(view, "IDX", "aWETH") == Decimal("0.5")

    def test_unknown_component_reads_zero(self):
        view = view_with({"alice": "1"})
        assert get_default_unit(view, "IDX", "aWBTC") == Decimal("0")
        assert get_external_unit(view, "IDX", MODULE_LEVERAGE, "DAI") == Decimal("0")

    def test_components_order(self):
        view = view_with({"alice": "1"}, state_overrides={
            'external_positions': {"DAI": {MODULE_LEVERAGE: Decimal("800")}},
        })
        assert get_components(view, "IDX") == ["aWETH", "DAI"]
        assert get_default_positions(view, "IDX") == {"aWETH": Decimal("1")}

    def test_require_manager(self):
        state = load_index(view_with({}), "IDX")
        require_manager(state, "manager")
        with pytest.raises(Unauthorized):
            require_manager(state, "alice")

    def test_require_initialized(self):
        state = load_index(view_with({}), "IDX")
        with pytest.raises(InvalidState, match="leverage"):
            require_initialized(state)
        with pytest.raises(InvalidState, match="fee"):
            require_initialized(state, leverage=False)
        require_initialized(state, leverage=False, fee=False)


# ============================================================================
# TRANSACTION BUILDERS
# ============================================================================

class TestSync:

    def test_sync_default_position(self):
        view = view_with({"alice": "2"})
        pending = compute_sync(view, "IDX", "aWETH", Decimal("5"))
        assert new_state(pending)['default_positions']["aWETH"] == Decimal("2.5")

    def test_sync_stores_virtual_unit(self):
        view = view_with({"alice": "2"}, state_overrides={'position_multiplier': Decimal("0.5")})
        pending = compute_sync(view, "IDX", "aWETH", Decimal("5"))
        assert new_state(pending)['default_positions']["aWETH"] == Decimal("5")

    def test_sync_external_position(self):
        view = view_with({"alice": "2"})
        pending = compute_sync(view, "IDX", "DAI", Decimal("1600"), module=MODULE_LEVERAGE)
        assert new_state(pending)['external_positions'] == {"DAI": {MODULE_LEVERAGE: Decimal("800")}}

    def test_sync_zero_supply_is_noop(self):
        view = view_with({})
        assert compute_sync(view, "IDX", "aWETH", Decimal("5")).is_empty()

    def test_sync_is_idempotent(self):
        view = view_with({"alice": "2"}, state_overrides={
            'default_positions': {"aWETH": Decimal("2.5")},
        })
        assert compute_sync(view, "IDX", "aWETH", Decimal("5")).is_empty()

    def test_set_external_unit_stores_magnitude(self):
        view = view_with({"alice": "1"})
        pending = compute_set_external_unit(view, "IDX", MODULE_LEVERAGE, "DAI", Decimal("-800"))
        assert new_state(pending)['external_positions']["DAI"][MODULE_LEVERAGE] == Decimal("800")

    def test_set_default_unit_adds_component(self):
        view = view_with({"alice": "1"})
        pending = compute_set_default_unit(view, "IDX", "DAI", Decimal("3"))
        assert new_state(pending)['default_positions'] == {"aWETH": Decimal("1"), "DAI": Decimal("3")}


class TestResetAndShares:

    def test_reset_zeroes_every_unit(self):
        view = view_with({}, state_overrides={
            'default_positions': {"aWETH": Decimal("3.24")},
            'external_positions': {"DAI": {MODULE_LEVERAGE: Decimal("2240")}},
            'position_multiplier': Decimal("0.9"),
        })
        state = new_state(compute_reset_positions(view, "IDX", reseed=False))
        assert state['default_positions'] == {"aWETH": Decimal("0")}
        assert state['external_positions'] == {"DAI": {MODULE_LEVERAGE: Decimal("0")}}
        assert state['position_multiplier'] == Decimal("1")

    def test_reseed_restores_initial_units(self):
        view = view_with({}, state_overrides={'default_positions': {"aWETH": Decimal("0")}})
        state = new_state(compute_reset_positions(view, "IDX", reseed=True))
        assert state['default_positions'] == {"aWETH": Decimal("1")}

    def test_mint_and_burn_use_system_wallet(self):
        view = view_with({"alice": "1"})
        mint = compute_mint(view, "IDX", "bob", Decimal("2"))
        assert (mint.moves[0].source, mint.moves[0].dest) == (SYSTEM_WALLET, "bob")
        burn = compute_burn(view, "IDX", "alice", Decimal("1"))
        assert (burn.moves[0].source, burn.moves[0].dest) == ("alice", SYSTEM_WALLET)

"""
positions.py - Position Ledger for index tokens

An index is a Unit of type INDEX in the token ledger. Its shares are ordinary
balances; what one share represents lives in the unit's state. That state is
the single source of truth for per-share accounting.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASS (explicit input):
   - IndexState: typed snapshot of the unit state

2. PURE CALCULATION FUNCTIONS (calculate_*):
   - Real/virtual unit conversion and balance-to-unit math

3. ADAPTER FUNCTIONS (load_index, get_*):
   - The only places that read the LedgerView

4. TRANSACTION BUILDERS (compute_*):
   - Return PendingTransactions with UnitStateChanges and mint/burn moves;
     callers commit them to the ledger

Position model:
    default_positions[asset]            virtual collateral unit per share
    external_positions[asset][module]   virtual debt unit per share (magnitude)
    real_unit = virtual_unit * position_multiplier

A debt unit is economically negative; it is stored as a positive magnitude
keyed by the module that controls it.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

from .core import (
    LedgerView, Move, PendingTransaction, Unit, UnitStateChange,
    OriginType, TransactionOrigin,
    SYSTEM_WALLET, UNIT_TYPE_INDEX, DEFAULT_TOKEN_DECIMALS,
    InvalidState, Unauthorized,
    build_transaction, empty_pending_transaction,
    _freeze_state,
)
from .fixed_point import ZERO, ONE, precise_div, precise_mul, to_decimal, to_wad


# Controlling module for debt positions opened by lever.
MODULE_LEVERAGE = "LEVERAGE"

DEFAULT_INITIAL_UNIT = ONE


# ============================================================================
# FROZEN DATACLASS
# ============================================================================

@dataclass(frozen=True, slots=True)
class IndexState:
    """
    Immutable snapshot of an index's position state.

    Unit maps hold VIRTUAL units; use real_default_unit() / real_external_unit()
    for per-share amounts.
    """
    symbol: str
    manager: str
    position_multiplier: Decimal
    default_positions: Mapping[str, Decimal]
    external_positions: Mapping[str, Mapping[str, Decimal]]
    initial_units: Mapping[str, Decimal]
    leverage_config: Optional[Dict[str, Any]]
    fee_config: Optional[Dict[str, Any]]
    composite: bool
    composite_config: Optional[Dict[str, Any]] = None

    def real_default_unit(self, asset: str) -> Decimal:
        return calculate_real_unit(self.default_positions.get(asset, ZERO), self.position_multiplier)

    def real_external_unit(self, module: str, asset: str) -> Decimal:
        virtual = self.external_positions.get(asset, {}).get(module, ZERO)
        return calculate_real_unit(virtual, self.position_multiplier)

    @property
    def components(self) -> List[str]:
        """Default components first, then debt-only components, in insertion order."""
        seen = list(self.default_positions)
        for asset in self.external_positions:
            if asset not in seen:
                seen.append(asset)
        return seen


def to_state_dict(state: IndexState) -> Dict[str, Any]:
    """Serialize an IndexState back into unit state."""
    return {
        'manager': state.manager,
        'position_multiplier': state.position_multiplier,
        'default_positions': dict(state.default_positions),
        'external_positions': {a: dict(m) for a, m in state.external_positions.items()},
        'initial_units': dict(state.initial_units),
        'leverage_config': state.leverage_config,
        'fee_config': state.fee_config,
        'composite': state.composite,
        'composite_config': state.composite_config,
    }


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_real_unit(virtual_unit: Decimal, multiplier: Decimal) -> Decimal:
    """real = virtual * multiplier, at WAD precision."""
    return precise_mul(virtual_unit, multiplier)


def calculate_virtual_unit(real_unit: Decimal, multiplier: Decimal) -> Decimal:
    """
    virtual = real / multiplier, at WAD precision.

    Raises:
        InvalidState: If the multiplier is not positive
    """
    if multiplier <= 0:
        raise InvalidState(f"Position multiplier must be positive, got {multiplier}")
    return precise_div(real_unit, multiplier)


def calculate_unit_from_balance(balance: Decimal, total_supply: Decimal) -> Decimal:
    """Per-share unit implied by an aggregate balance."""
    if total_supply <= 0:
        raise InvalidState("Cannot derive a unit with zero supply")
    return precise_div(balance, total_supply)


# ============================================================================
# FACTORY
# ============================================================================

def create_index(
    symbol: str,
    name: str,
    manager: str,
    components: Mapping[str, Decimal],
    composite: bool = False,
    decimals: int = DEFAULT_TOKEN_DECIMALS,
) -> Unit:
    """
    Create an index unit with its default positions seeded.

    Args:
        symbol: Index symbol; also the ledger wallet that holds its assets
        name: Human-readable name
        manager: Wallet allowed to configure the index
        components: Asset -> real unit per share at creation (multiplier 1)
        composite: True for a multi-component index held outright
        decimals: Share decimals

    Returns:
        A Unit of type INDEX with zero supply.

    Raises:
        ValueError: On an empty symbol or manager, no components, or a
            non-positive seed unit
    """
    if not symbol or not symbol.strip():
        raise ValueError("Index symbol cannot be empty")
    if not manager or not manager.strip():
        raise ValueError("Index manager cannot be empty")
    if not components:
        raise ValueError("Index needs at least one component")
    seeds = {}
    for asset, unit in components.items():
        unit = to_wad(to_decimal(unit))
        if unit <= 0:
            raise ValueError(f"Seed unit for {asset} must be positive, got {unit}")
        seeds[asset] = unit

    state = {
        'manager': manager,
        'position_multiplier': ONE,
        'default_positions': dict(seeds),
        'external_positions': {},
        'initial_units': dict(seeds),
        'leverage_config': None,
        'fee_config': None,
        'composite': composite,
        'composite_config': None,
    }
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_INDEX,
        min_balance=ZERO,
        decimal_places=decimals,
        _frozen_state=_freeze_state(state),
    )


# ============================================================================
# ADAPTERS
# ============================================================================

def load_index(view: LedgerView, symbol: str) -> IndexState:
    """
    Read an index's unit state into an IndexState.

    Raises:
        InvalidState: If the unit is not an index
        UnitNotRegistered: If the unit does not exist
    """
    unit = view.get_unit(symbol)
    if unit.unit_type != UNIT_TYPE_INDEX:
        raise InvalidState(f"{symbol} is not an index (type {unit.unit_type})")
    state = view.get_unit_state(symbol)
    return IndexState(
        symbol=symbol,
        manager=state['manager'],
        position_multiplier=state['position_multiplier'],
        default_positions=dict(state.get('default_positions', {})),
        external_positions={a: dict(m) for a, m in state.get('external_positions', {}).items()},
        initial_units=dict(state.get('initial_units', {})),
        leverage_config=state.get('leverage_config'),
        fee_config=state.get('fee_config'),
        composite=state.get('composite', False),
        composite_config=state.get('composite_config'),
    )


def get_total_supply(view: LedgerView, index: str) -> Decimal:
    """Shares outstanding: every holder except the system wallet."""
    return sum(
        (q for wallet, q in view.get_positions(index).items() if wallet != SYSTEM_WALLET),
        ZERO,
    )


def get_position_multiplier(view: LedgerView, index: str) -> Decimal:
    return load_index(view, index).position_multiplier


def get_default_unit(view: LedgerView, index: str, asset: str) -> Decimal:
    """Real collateral unit per share (zero if asset is not a component)."""
    return load_index(view, index).real_default_unit(asset)


def get_external_unit(view: LedgerView, index: str, module: str, asset: str) -> Decimal:
    """Real debt unit per share controlled by module, as a positive magnitude."""
    return load_index(view, index).real_external_unit(module, asset)


def get_components(view: LedgerView, index: str) -> List[str]:
    return load_index(view, index).components


def get_default_positions(view: LedgerView, index: str) -> Dict[str, Decimal]:
    """Asset -> real unit for every default position."""
    state = load_index(view, index)
    return {asset: state.real_default_unit(asset) for asset in state.default_positions}


def require_manager(state: IndexState, caller: str) -> None:
    """
    Raises:
        Unauthorized: If caller is not the index manager
    """
    if caller != state.manager:
        raise Unauthorized(f"Must be the manager of {state.symbol}")


def require_initialized(state: IndexState, leverage: bool = True, fee: bool = True) -> None:
    """
    Raises:
        InvalidState: If a required configuration is missing
    """
    if leverage and not state.leverage_config:
        raise InvalidState(f"{state.symbol} has no leverage configuration")
    if fee and not state.fee_config:
        raise InvalidState(f"{state.symbol} has no fee configuration")


# ============================================================================
# TRANSACTION BUILDERS
# ============================================================================

def _origin(index: str, event: str, origin_type: OriginType = OriginType.LEVERAGE) -> TransactionOrigin:
    return TransactionOrigin(origin_type, "positions", index, event)


def compute_state_update(
    view: LedgerView,
    index: str,
    updates: Mapping[str, Any],
    event: str,
    origin_type: OriginType = OriginType.SYSTEM,
) -> PendingTransaction:
    """Build a state change that merges updates into the index state."""
    old_state = view.get_unit_state(index)
    new_state = {**old_state, **updates}
    changes = [UnitStateChange(unit=index, old_state=old_state, new_state=new_state)]
    return build_transaction(view, [], changes, origin=_origin(index, event, origin_type))


def compute_set_default_unit(view: LedgerView, index: str, asset: str, real_unit: Decimal) -> PendingTransaction:
    """setUnit for a default (collateral) position."""
    state = load_index(view, index)
    defaults = dict(state.default_positions)
    defaults[asset] = calculate_virtual_unit(to_wad(real_unit), state.position_multiplier)
    return compute_state_update(
        view, index, {'default_positions': defaults}, "SET_DEFAULT_UNIT", OriginType.LEVERAGE
    )


def compute_set_external_unit(
    view: LedgerView, index: str, module: str, asset: str, real_unit: Decimal
) -> PendingTransaction:
    """setUnit for an external (debt) position, stored as a magnitude."""
    state = load_index(view, index)
    externals = {a: dict(m) for a, m in state.external_positions.items()}
    externals.setdefault(asset, {})[module] = calculate_virtual_unit(
        to_wad(abs(real_unit)), state.position_multiplier
    )
    return compute_state_update(
        view, index, {'external_positions': externals}, "SET_EXTERNAL_UNIT", OriginType.LEVERAGE
    )


def compute_sync(
    view: LedgerView,
    index: str,
    asset: str,
    balance: Decimal,
    module: Optional[str] = None,
) -> PendingTransaction:
    """
    Recompute a unit from an observed aggregate balance.

    A default position is synced when module is None, otherwise the external
    position controlled by module. With zero supply there is nothing to
    divide by and the result is empty.
    """
    supply = get_total_supply(view, index)
    if supply <= 0:
        return empty_pending_transaction(view)
    real_unit = calculate_unit_from_balance(balance, supply)
    state = load_index(view, index)
    if module is None:
        if asset in state.default_positions and state.real_default_unit(asset) == real_unit:
            return empty_pending_transaction(view)
        return compute_set_default_unit(view, index, asset, real_unit)
    if state.real_external_unit(module, asset) == real_unit and asset in state.external_positions:
        return empty_pending_transaction(view)
    return compute_set_external_unit(view, index, module, asset, real_unit)


def compute_reset_positions(view: LedgerView, index: str, reseed: bool) -> PendingTransaction:
    """
    Zero every unit (after a full redemption) or restore the creation seeds.

    The multiplier returns to 1 in both cases; with zero supply no holder's
    claim depends on it.
    """
    state = load_index(view, index)
    if reseed:
        defaults = dict(state.initial_units)
        for asset in state.default_positions:
            defaults.setdefault(asset, ZERO)
    else:
        defaults = {asset: ZERO for asset in state.default_positions}
    externals = {a: {m: ZERO for m in mods} for a, mods in state.external_positions.items()}
    return compute_state_update(
        view, index,
        {'default_positions': defaults, 'external_positions': externals, 'position_multiplier': ONE},
        "RESEED" if reseed else "RESET",
        OriginType.ISSUANCE,
    )


def compute_mint(view: LedgerView, index: str, recipient: str, quantity: Decimal,
                 event: str = "MINT", origin_type: OriginType = OriginType.ISSUANCE) -> PendingTransaction:
    """Mint shares from the system wallet."""
    move = Move(quantity, index, SYSTEM_WALLET, recipient, f"{index}:{event.lower()}")
    return build_transaction(view, [move], origin=_origin(index, event, origin_type))


def compute_burn(view: LedgerView, index: str, holder: str, quantity: Decimal) -> PendingTransaction:
    """Burn shares back into the system wallet."""
    move = Move(quantity, index, holder, SYSTEM_WALLET, f"{index}:burn")
    return build_transaction(view, [move], origin=_origin(index, "BURN", OriginType.ISSUANCE))

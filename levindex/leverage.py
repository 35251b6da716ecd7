"""
leverage.py - Leverage Controller

Moves an index along its leverage curve through the lending and swap
gateways, then re-derives the per-share units from the balances the
lending market reports.

    lever:   borrow -> swap borrow for collateral -> deposit -> sync
    delever: withdraw -> swap collateral for borrow -> repay -> sync

Pair state machine, per (collateral, borrow):

    not configured --------------------------> BorrowNotEnabled
    configured, never levered --- lever -----> active
    configured, never levered --- delever ---> BorrowNotEnabled
    active ------------------- lever/delever -> active

lever and delever are manager calls. auto_lever and auto_delever have the
same economics but are gated by the bot permission map only:

    allowed = any_bot_allowed AND caller_permission[caller]

The manager gets no implicit bot rights.

Positions tracked by sync:
    default  aWETH          receipt balance / supply
    external DAI/LEVERAGE   debt balance / supply
    default  DAI            idle wallet balance / supply (delever excess)
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from .core import (
    OriginType, Unauthorized, BorrowNotEnabled, InvalidState,
    SlippageExceeded, SlippageBelowMinimum,
)
from .fixed_point import ZERO, ONE, to_decimal, to_native
from .ledger import Ledger
from .atomic import TransactionManager
from .gateways.lending import LendingGateway, RATE_MODE_VARIABLE
from .gateways.registry import IntegrationModule, IntegrationRegistry, SwapVenue, VenueKey, as_venue
from .gateways.swap import SwapGateway
from .positions import (
    MODULE_LEVERAGE, IndexState,
    load_index, get_total_supply, require_manager, require_initialized,
    compute_state_update, compute_sync,
)


Pair = Tuple[str, str]


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class LeverageConfig:
    """
    Leverage settings of one index.

    enabled_assets lists the (collateral, borrow) pairs that may be levered;
    it defaults to the single configured pair. active_pairs records pairs
    that have been levered at least once.
    """
    collateral_asset: str
    borrow_asset: str
    quote_asset: Optional[str] = None
    enabled_assets: Tuple[Pair, ...] = ()
    any_bot_allowed: bool = False
    caller_permission: Mapping[str, bool] = field(default_factory=dict)
    swap_venue: SwapVenue = SwapVenue.UNISWAP
    active_pairs: FrozenSet[Pair] = frozenset()

    def __post_init__(self):
        if not self.collateral_asset or not self.borrow_asset:
            raise ValueError("collateral_asset and borrow_asset are required")
        if self.collateral_asset == self.borrow_asset:
            raise ValueError(f"collateral and borrow asset must differ, got {self.collateral_asset}")
        pairs = tuple(tuple(p) for p in self.enabled_assets) or ((self.collateral_asset, self.borrow_asset),)
        for collateral, borrow in pairs:
            if collateral == borrow:
                raise ValueError(f"Pair ({collateral}, {borrow}) borrows its own collateral")
        object.__setattr__(self, 'enabled_assets', pairs)
        object.__setattr__(self, 'caller_permission', dict(self.caller_permission))
        object.__setattr__(self, 'swap_venue', as_venue(self.swap_venue))
        object.__setattr__(self, 'active_pairs', frozenset(tuple(p) for p in self.active_pairs))

    def is_enabled(self, collateral: str, borrow: str) -> bool:
        return (collateral, borrow) in self.enabled_assets

    def is_active(self, collateral: str, borrow: str) -> bool:
        return (collateral, borrow) in self.active_pairs

    def bot_allowed(self, caller: str) -> bool:
        return self.any_bot_allowed and self.caller_permission.get(caller, False)

    def tracked_assets(self) -> List[str]:
        """Every asset that appears in an enabled pair, collateral first."""
        assets: List[str] = []
        for pair in self.enabled_assets:
            for asset in pair:
                if asset not in assets:
                    assets.append(asset)
        return assets

    def to_state(self) -> Dict[str, Any]:
        return {
            'collateral_asset': self.collateral_asset,
            'borrow_asset': self.borrow_asset,
            'quote_asset': self.quote_asset,
            'enabled_assets': [list(p) for p in self.enabled_assets],
            'any_bot_allowed': self.any_bot_allowed,
            'caller_permission': dict(self.caller_permission),
            'swap_venue': self.swap_venue.value,
            'active_pairs': sorted(list(p) for p in self.active_pairs),
        }

    @classmethod
    def from_state(cls, state: Dict[str, Any]) -> LeverageConfig:
        return cls(
            collateral_asset=state['collateral_asset'],
            borrow_asset=state['borrow_asset'],
            quote_asset=state.get('quote_asset'),
            enabled_assets=tuple(tuple(p) for p in state.get('enabled_assets', ())),
            any_bot_allowed=state.get('any_bot_allowed', False),
            caller_permission=state.get('caller_permission', {}),
            swap_venue=state.get('swap_venue', SwapVenue.UNISWAP.value),
            active_pairs=frozenset(tuple(p) for p in state.get('active_pairs', ())),
        )

    def replace(self, **changes) -> LeverageConfig:
        state = self.to_state()
        state.update(changes)
        return LeverageConfig.from_state(state)


@dataclass(frozen=True, slots=True)
class LeverResult:
    """Realized amounts of one lever."""
    index: str
    borrow_asset: str
    collateral_asset: str
    borrowed: Decimal
    collateral_received: Decimal


@dataclass(frozen=True, slots=True)
class DeleverResult:
    """Realized amounts of one delever; idle is swap output left unrepaid."""
    index: str
    collateral_asset: str
    borrow_asset: str
    collateral_withdrawn: Decimal
    borrow_received: Decimal
    repaid: Decimal
    idle: Decimal


def calculate_swap_path(config: LeverageConfig, token_in: str, token_out: str) -> List[str]:
    """Route through the quote asset unless it is one of the endpoints."""
    quote = config.quote_asset
    if quote and quote not in (token_in, token_out):
        return [token_in, quote, token_out]
    return [token_in, token_out]


def require_bot(config: LeverageConfig, caller: str) -> None:
    """
    Raises:
        Unauthorized: Unless bots are enabled and caller is whitelisted
    """
    if not config.bot_allowed(caller):
        raise Unauthorized("Must be the authorized caller")


def load_leverage_config(state: IndexState) -> LeverageConfig:
    if not state.leverage_config:
        raise InvalidState(f"{state.symbol} has no leverage configuration")
    return LeverageConfig.from_state(state.leverage_config)


# ============================================================================
# CONTROLLER
# ============================================================================

class LeverageController:
    """
    Lever/delever processor for lending-backed indices.

    Holds no index state of its own: configuration, permissions and units
    live in the index unit state.

    Example:
        controller = LeverageController(ledger, pool, registry, tm)
        controller.initialize("LEV3X", "manager", LeverageConfig("WETH", "DAI"))
        controller.lever("LEV3X", "manager", "DAI", "WETH", Decimal("800"), Decimal("0.75"))
    """

    def __init__(
        self,
        ledger: Ledger,
        lending: LendingGateway,
        registry: IntegrationRegistry,
        tm: TransactionManager,
    ):
        self.ledger = ledger
        self.lending = lending
        self.registry = registry
        self.tm = tm
        self.verbose = ledger.verbose

    # ------------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------------

    def initialize(self, index: str, caller: str, config: LeverageConfig) -> LeverageConfig:
        """
        Attach a leverage configuration.

        Raises:
            Unauthorized: If caller is not the manager
            InvalidState: If already initialized, or the configured collateral
                is not the index's default component
        """
        with self.tm.transaction(index):
            state = load_index(self.ledger, index)
            require_manager(state, caller)
            if state.leverage_config:
                raise InvalidState(f"{index} leverage configuration already initialized")
            receipt = self.lending.receipt_asset(config.collateral_asset)
            if receipt not in state.default_positions:
                raise InvalidState(f"{index} does not hold {receipt}; cannot lever {config.collateral_asset}")
            for collateral, borrow in config.enabled_assets:
                self.lending.receipt_asset(collateral)
                self.lending.debt_asset(borrow)
                self.ledger.get_unit(borrow)
            stored = config.replace(active_pairs=[])
            self._store(index, stored, "INIT_LEVERAGE")
            return stored

    def add_enabled_pair(self, index: str, caller: str, collateral: str, borrow: str) -> LeverageConfig:
        with self.tm.transaction(index):
            state = load_index(self.ledger, index)
            require_manager(state, caller)
            config = load_leverage_config(state)
            if config.is_enabled(collateral, borrow):
                return config
            if collateral == borrow:
                raise ValueError(f"Pair ({collateral}, {borrow}) borrows its own collateral")
            self.lending.receipt_asset(collateral)
            self.lending.debt_asset(borrow)
            updated = config.replace(enabled_assets=[list(p) for p in config.enabled_assets] + [[collateral, borrow]])
            self._store(index, updated, "ENABLE_PAIR")
            return updated

    def update_any_bot_allowed(self, index: str, caller: str, allowed: bool) -> LeverageConfig:
        """Manager-only switch for all bot calls on the index."""
        with self.tm.transaction(index):
            state = load_index(self.ledger, index)
            require_manager(state, caller)
            updated = load_leverage_config(state).replace(any_bot_allowed=bool(allowed))
            self._store(index, updated, "UPDATE_ANY_BOT_ALLOWED")
            return updated

    def set_caller_permission(self, index: str, caller: str, bot: str, allowed: bool) -> LeverageConfig:
        """Manager-only whitelist update for one bot."""
        with self.tm.transaction(index):
            state = load_index(self.ledger, index)
            require_manager(state, caller)
            config = load_leverage_config(state)
            permissions = dict(config.caller_permission)
            permissions[bot] = bool(allowed)
            updated = config.replace(caller_permission=permissions)
            self._store(index, updated, "SET_CALLER_PERMISSION")
            return updated

    def get_config(self, index: str) -> LeverageConfig:
        return load_leverage_config(load_index(self.ledger, index))

    # ------------------------------------------------------------------------
    # Lever / delever
    # ------------------------------------------------------------------------

    def lever(
        self,
        index: str,
        caller: str,
        borrow_asset: str,
        collateral_asset: str,
        borrow_quantity: Decimal,
        min_collateral_out: Decimal,
        venue: Optional[VenueKey] = None,
    ) -> LeverResult:
        """
        Borrow, swap into collateral and deposit it.

        Raises:
            Unauthorized: If caller is not the manager
            BorrowNotEnabled: If the pair is not enabled
            SlippageExceeded: If the swap returns less than min_collateral_out
        """
        with self.tm.transaction(index):
            state = load_index(self.ledger, index)
            require_manager(state, caller)
            return self._lever(state, borrow_asset, collateral_asset, borrow_quantity, min_collateral_out, venue)

    def auto_lever(
        self,
        index: str,
        caller: str,
        borrow_asset: str,
        collateral_asset: str,
        borrow_quantity: Decimal,
        min_collateral_out: Decimal,
        venue: Optional[VenueKey] = None,
    ) -> LeverResult:
        """lever() for whitelisted bots."""
        with self.tm.transaction(index):
            state = load_index(self.ledger, index)
            require_initialized(state)
            require_bot(load_leverage_config(state), caller)
            return self._lever(state, borrow_asset, collateral_asset, borrow_quantity, min_collateral_out, venue)

    def delever(
        self,
        index: str,
        caller: str,
        collateral_asset: str,
        borrow_asset: str,
        collateral_quantity: Decimal,
        min_repay: Decimal,
        venue: Optional[VenueKey] = None,
    ) -> DeleverResult:
        """
        Withdraw collateral, swap it to the borrow asset and repay.

        Swap output above the outstanding debt stays in the index wallet.

        Raises:
            Unauthorized: If caller is not the manager
            BorrowNotEnabled: If the pair is not enabled or was never levered
            SlippageBelowMinimum: If the swap returns less than min_repay
        """
        with self.tm.transaction(index):
            state = load_index(self.ledger, index)
            require_manager(state, caller)
            return self._delever(state, collateral_asset, borrow_asset, collateral_quantity, min_repay, venue)

    def auto_delever(
        self,
        index: str,
        caller: str,
        collateral_asset: str,
        borrow_asset: str,
        collateral_quantity: Decimal,
        min_repay: Decimal,
        venue: Optional[VenueKey] = None,
    ) -> DeleverResult:
        """delever() for whitelisted bots."""
        with self.tm.transaction(index):
            state = load_index(self.ledger, index)
            require_initialized(state)
            require_bot(load_leverage_config(state), caller)
            return self._delever(state, collateral_asset, borrow_asset, collateral_quantity, min_repay, venue)

    def _lever(self, state: IndexState, borrow_asset: str, collateral_asset: str,
               borrow_quantity: Decimal, min_collateral_out: Decimal,
               venue: Optional[VenueKey]) -> LeverResult:
        require_initialized(state)
        index = state.symbol
        config = load_leverage_config(state)
        if not config.is_enabled(collateral_asset, borrow_asset):
            raise BorrowNotEnabled("Borrow not enabled")
        quantity = to_native(self.ledger, borrow_asset, to_decimal(borrow_quantity))
        if quantity <= 0:
            raise ValueError(f"borrow_quantity must be positive, got {borrow_quantity}")
        gateway = self.resolve_gateway(index, config, venue)

        borrowed = self.lending.borrow(borrow_asset, quantity, RATE_MODE_VARIABLE, 0, on_behalf_of=index)
        received = gateway.swap_exact_in(
            calculate_swap_path(config, borrow_asset, collateral_asset),
            borrowed, ZERO, sender=index, to=index,
        )
        if received < to_decimal(min_collateral_out):
            raise SlippageExceeded(
                f"Lever received {received} {collateral_asset}, minimum {min_collateral_out}"
            )
        self.lending.deposit(collateral_asset, received, on_behalf_of=index, sender=index)

        if not config.is_active(collateral_asset, borrow_asset):
            config = config.replace(
                active_pairs=sorted([list(p) for p in config.active_pairs] + [[collateral_asset, borrow_asset]])
            )
            self._store(index, config, "ENABLE_BORROW")
        self._sync_positions(index)

        if self.verbose:
            print(f"[LEVER] {index}: borrowed {borrowed} {borrow_asset} -> {received} {collateral_asset}")
        return LeverResult(index, borrow_asset, collateral_asset, borrowed, received)

    def _delever(self, state: IndexState, collateral_asset: str, borrow_asset: str,
                 collateral_quantity: Decimal, min_repay: Decimal,
                 venue: Optional[VenueKey]) -> DeleverResult:
        require_initialized(state)
        config = load_leverage_config(state)
        if not config.is_enabled(collateral_asset, borrow_asset):
            raise BorrowNotEnabled("Borrow not enabled")
        if not config.is_active(collateral_asset, borrow_asset):
            raise BorrowNotEnabled("Borrow not enabled")
        result = self.delever_step(state.symbol, collateral_asset, borrow_asset,
                                   collateral_quantity, min_repay, venue)
        self._sync_positions(state.symbol)
        if self.verbose:
            print(f"[DELEVER] {state.symbol}: {result.collateral_withdrawn} {collateral_asset} -> "
                  f"repaid {result.repaid} {borrow_asset}, idle {result.idle}")
        return result

    # ------------------------------------------------------------------------
    # Delever primitives (no permission check, no sync)
    # ------------------------------------------------------------------------

    def delever_step(
        self,
        index: str,
        collateral_asset: str,
        borrow_asset: str,
        collateral_quantity: Decimal,
        min_repay: Decimal,
        venue: Optional[VenueKey] = None,
        repay_cap: Optional[Decimal] = None,
    ) -> DeleverResult:
        """
        Sell an exact amount of collateral and repay with the proceeds.

        Repayment is limited to the outstanding debt and, if given, repay_cap.
        Whatever is not repaid stays in the index wallet.

        Raises:
            SlippageBelowMinimum: If the swap returns less than min_repay
        """
        with self.tm.transaction(index):
            config = load_leverage_config(load_index(self.ledger, index))
            gateway = self.resolve_gateway(index, config, venue)
            quantity = to_native(self.ledger, collateral_asset, to_decimal(collateral_quantity))
            if quantity <= 0:
                raise ValueError(f"collateral_quantity must be positive, got {collateral_quantity}")

            withdrawn = self.lending.withdraw(collateral_asset, quantity, to=index, owner=index)
            received = gateway.swap_exact_in(
                calculate_swap_path(config, collateral_asset, borrow_asset),
                withdrawn, ZERO, sender=index, to=index,
            )
            if received < to_decimal(min_repay):
                raise SlippageBelowMinimum(f"Delever received {received} {borrow_asset}, minimum {min_repay}")
            repaid = self._repay(index, borrow_asset, received, repay_cap)
            return DeleverResult(index, collateral_asset, borrow_asset, withdrawn, received, repaid, received - repaid)

    def delever_to_exact_repay(
        self,
        index: str,
        collateral_asset: str,
        borrow_asset: str,
        repay_quantity: Decimal,
        max_collateral: Decimal,
        venue: Optional[VenueKey] = None,
    ) -> DeleverResult:
        """
        Sell just enough collateral to repay repay_quantity of debt.

        Raises:
            SlippageExceeded: If the required collateral exceeds max_collateral
        """
        with self.tm.transaction(index):
            config = load_leverage_config(load_index(self.ledger, index))
            gateway = self.resolve_gateway(index, config, venue)
            path = calculate_swap_path(config, collateral_asset, borrow_asset)
            target = to_native(self.ledger, borrow_asset, to_decimal(repay_quantity), round_up=True)
            if target <= 0:
                raise ValueError(f"repay_quantity must be positive, got {repay_quantity}")

            needed = gateway.quote_in(path, target)
            if needed > to_decimal(max_collateral):
                raise SlippageExceeded(
                    f"Repaying {target} {borrow_asset} needs {needed} {collateral_asset}, maximum {max_collateral}"
                )
            withdrawn = self.lending.withdraw(collateral_asset, needed, to=index, owner=index)
            spent = gateway.swap_for_exact_out(path, target, withdrawn, sender=index, to=index)
            if withdrawn > spent:
                self.lending.deposit(collateral_asset, withdrawn - spent, on_behalf_of=index, sender=index)
            repaid = self._repay(index, borrow_asset, target, None)
            return DeleverResult(index, collateral_asset, borrow_asset, spent, target, repaid, target - repaid)

    def _repay(self, index: str, borrow_asset: str, available: Decimal, cap: Optional[Decimal]) -> Decimal:
        owed = self.lending.balance_of(self.lending.debt_asset(borrow_asset), index)
        amount = min(available, owed)
        if cap is not None:
            amount = min(amount, to_decimal(cap))
        amount = to_native(self.ledger, borrow_asset, amount)
        if amount <= 0:
            return ZERO
        return self.lending.repay(borrow_asset, amount, RATE_MODE_VARIABLE, on_behalf_of=index, sender=index)

    # ------------------------------------------------------------------------
    # Sync and reads
    # ------------------------------------------------------------------------

    def sync(self, index: str, asset: Optional[str] = None) -> None:
        """
        Re-derive tracked units from gateway and wallet balances.

        With asset, only that component is synced. The underlying (WETH) and
        its lending receipt (aWETH) both select the supplied, owed and idle
        positions of that asset.
        """
        with self.tm.transaction(index):
            self._sync_positions(index, asset)

    def _sync_positions(self, index: str, only: Optional[str] = None) -> None:
        state = load_index(self.ledger, index)
        if not state.leverage_config or get_total_supply(self.ledger, index) <= 0:
            return
        config = load_leverage_config(state)
        for asset in config.tracked_assets():
            receipt = self.lending.receipt_asset(asset)
            if only is not None and only not in (asset, receipt):
                continue
            supplied = self.lending.balance_of(receipt, index)
            if supplied > 0 or receipt in state.default_positions:
                self.ledger.commit(compute_sync(self.ledger, index, receipt, supplied))

            owed = self.lending.balance_of(self.lending.debt_asset(asset), index)
            if owed > 0 or asset in state.external_positions:
                self.ledger.commit(compute_sync(self.ledger, index, asset, owed, module=MODULE_LEVERAGE))

            idle = self.ledger.get_balance(index, asset)
            if idle > 0 or asset in state.default_positions:
                self.ledger.commit(compute_sync(self.ledger, index, asset, idle))

    def get_leverage_ratio(self, index: str) -> Decimal:
        """
        Collateral value over equity value at oracle prices.

        Returns 1 for an index with no collateral.

        Raises:
            InvalidState: If debt is worth at least the collateral
        """
        config = load_leverage_config(load_index(self.ledger, index))
        collateral_value = ZERO
        debt_value = ZERO
        for asset in config.tracked_assets():
            price = self.lending.get_asset_price(asset)
            collateral_value += self.lending.balance_of(self.lending.receipt_asset(asset), index) * price
            collateral_value += self.ledger.get_balance(index, asset) * price
            debt_value += self.lending.balance_of(self.lending.debt_asset(asset), index) * price
        if collateral_value <= 0:
            return ONE
        equity = collateral_value - debt_value
        if equity <= 0:
            raise InvalidState(f"{index} is insolvent: debt {debt_value} >= collateral {collateral_value}")
        return collateral_value / equity

    def resolve_gateway(self, index: str, config: LeverageConfig, venue: Optional[VenueKey]) -> SwapGateway:
        return self.registry.resolve(index, IntegrationModule.LEVERAGE, venue or config.swap_venue)

    def _store(self, index: str, config: LeverageConfig, event: str) -> None:
        self.ledger.commit(compute_state_update(
            self.ledger, index, {'leverage_config': config.to_state()}, event, OriginType.LEVERAGE
        ))

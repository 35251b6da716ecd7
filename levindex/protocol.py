"""
protocol.py - Index token surface

LeveragedIndexProtocol wires one ledger, a price oracle, a lending gateway,
swap venues and the engines into the operations holders, managers and bots
call. Every mutating call runs inside the TransactionManager scope of its
index.

Example:
    ledger = Ledger("main", datetime(2025, 1, 1), verbose=False)
    oracle = StaticPriceOracle({"WETH": Decimal("1000"), "DAI": Decimal("1")})
    protocol = LeveragedIndexProtocol(ledger, oracle)
    protocol.add_reserve(ReserveConfig("WETH", ltv=0.8, liquidation_threshold=0.825))
    protocol.add_reserve(ReserveConfig("DAI", ltv=0.75, liquidation_threshold=0.8))
    protocol.register_venue(SwapVenue.MOCK, FixedPriceRouter(ledger, oracle))

    protocol.create_leveraged_index(
        "ETH2X", "ETH 2x", "manager",
        LeverageConfig("WETH", "DAI", swap_venue=SwapVenue.MOCK),
        FeeConfig("treasury", Decimal("0.02"), Decimal("0.05")),
    )
    protocol.issue("ETH2X", "alice", Decimal("1"), "alice", max_cost=Decimal("1"))
    protocol.lever("ETH2X", "manager", "DAI", "WETH", Decimal("800"), Decimal("0.79"))
"""

from __future__ import annotations
from decimal import Decimal
from typing import Dict, Mapping, Optional

from .core import InvalidState, Unit
from .fixed_point import ZERO, ONE, to_decimal
from .ledger import Ledger
from .oracle import PriceOracle
from .atomic import Restorable, TransactionManager
from .gateways.lending import LendingGateway, ReserveConfig, SimulatedLendingPool
from .gateways.registry import IntegrationModule, IntegrationRegistry, SwapVenue, VenueKey
from .gateways.swap import SwapGateway
from .positions import (
    MODULE_LEVERAGE, IndexState,
    create_index, load_index, get_total_supply, get_position_multiplier,
    get_default_unit, get_external_unit,
)
from .fees import FeeAccrual, FeeAccrualEngine, FeeConfig
from .leverage import DeleverResult, LeverageConfig, LeverageController, LeverResult
from .issuance import IssuanceEngine, IssueResult, RedeemResult
from .composite import (
    CompositeIssuanceEngine, CompositeIssueResult, CompositeRedeemResult, create_composite_index,
)


class LeveragedIndexProtocol:
    """
    Facade over the index engines.

    accrue_before_actions makes issue, redeem and lever/delever accrue the
    streaming fee first, so fee timestamps never lag a ledger-affecting call.
    """

    def __init__(
        self,
        ledger: Ledger,
        oracle: PriceOracle,
        lending: Optional[LendingGateway] = None,
        registry: Optional[IntegrationRegistry] = None,
        accrue_before_actions: bool = True,
    ):
        self.ledger = ledger
        self.oracle = oracle
        self.lending = lending if lending is not None else SimulatedLendingPool(ledger, oracle)
        self.registry = registry if registry is not None else IntegrationRegistry()
        self.tm = TransactionManager(ledger)
        if isinstance(self.lending, Restorable):
            self.tm.add_participant(self.lending)
        self.accrue_before_actions = accrue_before_actions

        self.fees = FeeAccrualEngine(ledger, self.tm)
        self.leverage = LeverageController(ledger, self.lending, self.registry, self.tm)
        self.issuance = IssuanceEngine(ledger, self.lending, self.leverage, self.tm)
        self.composite = CompositeIssuanceEngine(ledger, self.registry, self.tm)

    # ------------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------------

    def add_reserve(self, config: ReserveConfig) -> None:
        """List a reserve on the simulated lending pool."""
        if not isinstance(self.lending, SimulatedLendingPool):
            raise InvalidState("Reserves can only be listed on the simulated lending pool")
        self.lending.list_reserve(config)

    def register_venue(self, venue: VenueKey, gateway: SwapGateway, index: Optional[str] = None) -> None:
        """Bind a swap venue for every module, optionally for one index only."""
        for module in IntegrationModule:
            self.registry.register(module, venue, gateway, index=index)
        if isinstance(gateway, Restorable):
            self.tm.add_participant(gateway)

    def create_leveraged_index(
        self,
        symbol: str,
        name: str,
        manager: str,
        leverage_config: LeverageConfig,
        fee_config: FeeConfig,
        initial_unit: Decimal = ONE,
    ) -> IndexState:
        """
        Register an index seeded with initial_unit of collateral per share and
        initialize both configurations.
        """
        receipt = self.lending.receipt_asset(leverage_config.collateral_asset)
        self._register(create_index(symbol, name, manager, {receipt: to_decimal(initial_unit)}), manager)
        self.leverage.initialize(symbol, manager, leverage_config)
        self.fees.initialize(symbol, manager, fee_config)
        return load_index(self.ledger, symbol)

    def create_composite_index(
        self,
        symbol: str,
        name: str,
        manager: str,
        components: Mapping[str, Decimal],
        venue: VenueKey = SwapVenue.UNISWAP,
        fee_config: Optional[FeeConfig] = None,
    ) -> IndexState:
        self._register(create_composite_index(symbol, name, manager, components), manager)
        self.composite.initialize(symbol, manager, venue)
        if fee_config is not None:
            self.fees.initialize(symbol, manager, fee_config)
        return load_index(self.ledger, symbol)

    def _register(self, unit: Unit, manager: str) -> None:
        self.ledger.register_unit(unit)
        self.ledger.ensure_wallet(unit.symbol)
        self.ledger.ensure_wallet(manager)

    # ------------------------------------------------------------------------
    # Holder operations
    # ------------------------------------------------------------------------

    def issue(self, index: str, caller: str, quantity: Decimal, recipient: Optional[str] = None,
              max_cost: Decimal = Decimal("Infinity")) -> IssueResult:
        with self.tm.transaction(index):
            self._accrue(index)
            return self.issuance.issue(index, caller, quantity, recipient or caller, max_cost)

    def redeem(self, index: str, caller: str, quantity: Decimal, recipient: Optional[str] = None,
               min_received: Decimal = ZERO, venue: Optional[VenueKey] = None) -> RedeemResult:
        with self.tm.transaction(index):
            self._accrue(index)
            return self.issuance.redeem(index, caller, quantity, recipient or caller, min_received, venue)

    def issue_composite(self, index: str, caller: str, quantity: Decimal, quote_asset: str,
                        recipient: Optional[str] = None, max_cost: Decimal = Decimal("Infinity"),
                        venue: Optional[VenueKey] = None) -> CompositeIssueResult:
        with self.tm.transaction(index):
            self._accrue(index)
            return self.composite.issue(index, caller, quantity, recipient or caller,
                                        quote_asset, max_cost, venue)

    def redeem_composite(self, index: str, caller: str, quantity, quote_asset: str,
                         recipient: Optional[str] = None, min_received: Decimal = ZERO,
                         venue: Optional[VenueKey] = None) -> CompositeRedeemResult:
        with self.tm.transaction(index):
            self._accrue(index)
            return self.composite.redeem(index, caller, quantity, recipient or caller,
                                         quote_asset, min_received, venue)

    # ------------------------------------------------------------------------
    # Leverage operations
    # ------------------------------------------------------------------------

    def lever(self, index: str, caller: str, borrow_asset: str, collateral_asset: str,
              borrow_quantity: Decimal, min_collateral_out: Decimal,
              venue: Optional[VenueKey] = None) -> LeverResult:
        with self.tm.transaction(index):
            self._accrue(index)
            return self.leverage.lever(index, caller, borrow_asset, collateral_asset,
                                       borrow_quantity, min_collateral_out, venue)

    def delever(self, index: str, caller: str, collateral_asset: str, borrow_asset: str,
                collateral_quantity: Decimal, min_repay: Decimal,
                venue: Optional[VenueKey] = None) -> DeleverResult:
        with self.tm.transaction(index):
            self._accrue(index)
            return self.leverage.delever(index, caller, collateral_asset, borrow_asset,
                                         collateral_quantity, min_repay, venue)

    def auto_lever(self, index: str, caller: str, borrow_asset: str, collateral_asset: str,
                   borrow_quantity: Decimal, min_collateral_out: Decimal,
                   venue: Optional[VenueKey] = None) -> LeverResult:
        with self.tm.transaction(index):
            self._accrue(index)
            return self.leverage.auto_lever(index, caller, borrow_asset, collateral_asset,
                                            borrow_quantity, min_collateral_out, venue)

    def auto_delever(self, index: str, caller: str, collateral_asset: str, borrow_asset: str,
                     collateral_quantity: Decimal, min_repay: Decimal,
                     venue: Optional[VenueKey] = None) -> DeleverResult:
        with self.tm.transaction(index):
            self._accrue(index)
            return self.leverage.auto_delever(index, caller, collateral_asset, borrow_asset,
                                              collateral_quantity, min_repay, venue)

    def sync(self, index: str, asset: Optional[str] = None) -> None:
        """Re-derive units from balances; with asset, only that component."""
        if load_index(self.ledger, index).composite:
            self.composite.sync(index, asset)
        else:
            self.leverage.sync(index, asset)

    def update_any_bot_allowed(self, index: str, caller: str, allowed: bool) -> LeverageConfig:
        return self.leverage.update_any_bot_allowed(index, caller, allowed)

    def set_caller_permission(self, index: str, caller: str, bot: str, allowed: bool) -> LeverageConfig:
        return self.leverage.set_caller_permission(index, caller, bot, allowed)

    def accrue_fee(self, index: str) -> FeeAccrual:
        return self.fees.accrue_fee(index)

    def _accrue(self, index: str) -> None:
        if self.accrue_before_actions and load_index(self.ledger, index).fee_config:
            self.fees.accrue_fee(index)

    # ------------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------------

    def default_unit(self, index: str, asset: str) -> Decimal:
        """
        Real default unit. For a leveraged index, an underlying collateral
        symbol resolves to its lending receipt (WETH -> aWETH).
        """
        state = load_index(self.ledger, index)
        if asset not in state.default_positions and state.leverage_config:
            receipt = self.lending.receipt_asset(asset)
            if receipt in state.default_positions:
                asset = receipt
        return get_default_unit(self.ledger, index, asset)

    def external_unit(self, index: str, asset: str, module: str = MODULE_LEVERAGE) -> Decimal:
        return get_external_unit(self.ledger, index, module, asset)

    def total_supply(self, index: str) -> Decimal:
        return get_total_supply(self.ledger, index)

    def position_multiplier(self, index: str) -> Decimal:
        return get_position_multiplier(self.ledger, index)

    def balance_of(self, index: str, holder: str) -> Decimal:
        if not self.ledger.is_registered(holder):
            return ZERO
        return self.ledger.get_balance(holder, index)

    def leverage_ratio(self, index: str) -> Decimal:
        return self.leverage.get_leverage_ratio(index)

    def units(self, index: str) -> Dict[str, Decimal]:
        """Every real unit of an index; debt units are reported negative."""
        state = load_index(self.ledger, index)
        units = {asset: state.real_default_unit(asset) for asset in state.default_positions}
        for asset, modules in state.external_positions.items():
            for module in modules:
                units[f"{asset}:{module}"] = -state.real_external_unit(module, asset)
        return units

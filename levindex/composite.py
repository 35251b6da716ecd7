"""
composite.py - Multi-component index issued and redeemed in a quote asset

A composite index holds its components outright in the index wallet (no
lending, no debt). Issuers pay in a quote asset; the engine buys each
component with an exact-output swap. Redeemers receive the quote asset
from selling their pro-rata component balances.

Example (0.1 WETH + 0.01 WBTC per share, WETH=1000, WBTC=10000 DAI):
    issue 1     -> pays 100 + 100 = 200 DAI
    redeem 0.5  -> receives 100 DAI
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Mapping, Optional, Union

from .core import (
    Move, OriginType, TransactionOrigin, Unit,
    InsufficientBalance, InvalidState, SlippageExceeded, SlippageBelowMinimum,
    build_transaction,
)
from .fixed_point import ZERO, precise_div, to_decimal, to_native
from .ledger import Ledger
from .atomic import TransactionManager
from .gateways.registry import IntegrationModule, IntegrationRegistry, SwapVenue, VenueKey, as_venue
from .gateways.swap import SwapGateway
from .positions import (
    IndexState,
    create_index, load_index, get_total_supply, require_manager,
    compute_state_update, compute_sync, compute_mint, compute_burn, compute_reset_positions,
)


class _RedeemAll:
    def __repr__(self):
        return "REDEEM_ALL"


# Pass as quantity to redeem the caller's whole balance.
REDEEM_ALL = _RedeemAll()


def create_composite_index(
    symbol: str,
    name: str,
    manager: str,
    components: Mapping[str, Decimal],
) -> Unit:
    """Create a composite index; components map asset -> units per share."""
    return create_index(symbol, name, manager, components, composite=True)


@dataclass(frozen=True, slots=True)
class CompositeIssueResult:
    index: str
    quantity: Decimal
    recipient: str
    quote_asset: str
    cost: Decimal
    components: Dict[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CompositeRedeemResult:
    index: str
    quantity: Decimal
    recipient: str
    quote_asset: str
    proceeds: Decimal
    components: Dict[str, Decimal] = field(default_factory=dict)


class CompositeIssuanceEngine:
    """
    Issue and redeem composite indices through a swap venue.

    Example:
        engine = CompositeIssuanceEngine(ledger, registry, tm)
        ledger.register_unit(create_composite_index("DPI", "DeFi Pulse", "manager",
                                                     {"WETH": Decimal("0.1"), "WBTC": Decimal("0.01")}))
        engine.initialize("DPI", "manager", SwapVenue.MOCK)
        engine.issue("DPI", "alice", Decimal("1"), "alice", "DAI", max_cost=Decimal("210"))
    """

    def __init__(self, ledger: Ledger, registry: IntegrationRegistry, tm: TransactionManager):
        self.ledger = ledger
        self.registry = registry
        self.tm = tm
        self.verbose = ledger.verbose

    def initialize(self, index: str, caller: str, venue: VenueKey = SwapVenue.UNISWAP) -> None:
        """
        Raises:
            Unauthorized: If caller is not the manager
            InvalidState: If the index is not composite or already initialized
        """
        with self.tm.transaction(index):
            state = load_index(self.ledger, index)
            require_manager(state, caller)
            if not state.composite:
                raise InvalidState(f"{index} is not a composite index")
            if state.composite_config:
                raise InvalidState(f"{index} composite configuration already initialized")
            self.ledger.ensure_wallet(index)
            self.ledger.commit(compute_state_update(
                self.ledger, index, {'composite_config': {'swap_venue': as_venue(venue).value}},
                "INIT_COMPOSITE", OriginType.ISSUANCE,
            ))

    # ------------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------------

    def get_component_amounts(self, index: str, quantity: Decimal) -> Dict[str, Decimal]:
        """Component amounts backing quantity shares, rounded up."""
        state = self._load(index)
        units = self._live_units(state)
        return {
            asset: to_native(self.ledger, asset, unit * to_decimal(quantity), round_up=True)
            for asset, unit in units.items() if unit > 0
        }

    def get_required_issue_amount(self, index: str, quantity: Decimal, quote_asset: str,
                                  venue: Optional[VenueKey] = None) -> Decimal:
        """Quote-asset cost of issuing quantity shares at current venue prices."""
        quantity = to_decimal(quantity)
        if quantity <= 0:
            raise ValueError(f"quantity must be positive, got {quantity}")
        state = self._load(index)
        gateway = self._gateway(state, venue)
        return sum(
            (self._quote_cost(gateway, quote_asset, asset, amount)
             for asset, amount in self.get_component_amounts(index, quantity).items()),
            ZERO,
        )

    # ------------------------------------------------------------------------
    # Issue / redeem
    # ------------------------------------------------------------------------

    def issue(
        self,
        index: str,
        caller: str,
        quantity: Decimal,
        recipient: str,
        quote_asset: str,
        max_cost: Decimal,
        venue: Optional[VenueKey] = None,
    ) -> CompositeIssueResult:
        """
        Buy every component for caller's quote asset and mint quantity.

        Raises:
            SlippageExceeded: If the total quote cost is above max_cost
            InsufficientBalance: If caller cannot pay
        """
        with self.tm.transaction(index):
            state = self._load(index)
            quantity = to_native(self.ledger, index, to_decimal(quantity))
            if quantity <= 0:
                raise ValueError(f"quantity must be positive, got {quantity}")
            if get_total_supply(self.ledger, index) <= 0:
                self.ledger.commit(compute_reset_positions(self.ledger, index, reseed=True))
            else:
                self._sync(index)

            gateway = self._gateway(state, venue)
            amounts = self.get_component_amounts(index, quantity)
            quotes = {asset: self._quote_cost(gateway, quote_asset, asset, amount)
                      for asset, amount in amounts.items()}
            if sum(quotes.values(), ZERO) > to_decimal(max_cost):
                raise SlippageExceeded("amount exceeded slippage")

            cost = ZERO
            for asset, amount in amounts.items():
                if asset == quote_asset:
                    self._transfer(index, asset, amount, caller, index, "ISSUE_QUOTE")
                    cost += amount
                else:
                    cost += gateway.swap_for_exact_out(
                        [quote_asset, asset], amount, quotes[asset], sender=caller, to=index
                    )
            if cost > to_decimal(max_cost):
                raise SlippageExceeded("amount exceeded slippage")

            self.ledger.ensure_wallet(recipient)
            self.ledger.commit(compute_mint(self.ledger, index, recipient, quantity, "ISSUE"))
            self._sync(index)

            if self.verbose:
                print(f"[ISSUE] {index}: {quantity} to {recipient} for {cost} {quote_asset}")
            return CompositeIssueResult(index, quantity, recipient, quote_asset, cost, amounts)

    def redeem(
        self,
        index: str,
        caller: str,
        quantity: Union[Decimal, _RedeemAll],
        recipient: str,
        quote_asset: str,
        min_received: Decimal = ZERO,
        venue: Optional[VenueKey] = None,
    ) -> CompositeRedeemResult:
        """
        Sell caller's pro-rata component balances into quote_asset.

        Raises:
            InsufficientBalance: If caller holds fewer than quantity shares
            SlippageBelowMinimum: If proceeds are below min_received
        """
        with self.tm.transaction(index):
            state = self._load(index)
            held = self.ledger.get_balance(caller, index) if self.ledger.is_registered(caller) else ZERO
            if quantity is REDEEM_ALL:
                quantity = held
            quantity = to_native(self.ledger, index, to_decimal(quantity))
            if quantity <= 0:
                raise ValueError(f"quantity must be positive, got {quantity}")
            if quantity > held:
                raise InsufficientBalance("Not enough index")

            self._sync(index)
            supply = get_total_supply(self.ledger, index)
            full = quantity == supply
            fraction = precise_div(quantity, supply)
            gateway = self._gateway(state, venue)
            self.ledger.ensure_wallet(recipient)

            proceeds = ZERO
            sold: Dict[str, Decimal] = {}
            for asset in state.components:
                balance = self.ledger.get_balance(index, asset)
                amount = balance if full else to_native(self.ledger, asset, balance * fraction)
                if amount <= 0:
                    continue
                sold[asset] = amount
                if asset == quote_asset:
                    self._transfer(index, asset, amount, index, recipient, "REDEEM_QUOTE")
                    proceeds += amount
                else:
                    proceeds += gateway.swap_exact_in([asset, quote_asset], amount, ZERO,
                                                      sender=index, to=recipient)
            if proceeds < to_decimal(min_received):
                raise SlippageBelowMinimum("amount less than slippage")

            self.ledger.commit(compute_burn(self.ledger, index, caller, quantity))
            if full:
                self.ledger.commit(compute_reset_positions(self.ledger, index, reseed=False))
            else:
                self._sync(index)

            if self.verbose:
                print(f"[REDEEM] {index}: {quantity} for {proceeds} {quote_asset}")
            return CompositeRedeemResult(index, quantity, recipient, quote_asset, proceeds, sold)

    def sync(self, index: str, asset: Optional[str] = None) -> None:
        with self.tm.transaction(index):
            self._sync(index, asset)

    # ------------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------------

    def _load(self, index: str) -> IndexState:
        state = load_index(self.ledger, index)
        if not state.composite:
            raise InvalidState(f"{index} is not a composite index")
        if not state.composite_config:
            raise InvalidState(f"{index} has no composite configuration")
        return state

    def _live_units(self, state: IndexState) -> Dict[str, Decimal]:
        supply = get_total_supply(self.ledger, state.symbol)
        if supply <= 0:
            return {asset: state.initial_units.get(asset, ZERO) for asset in state.default_positions}
        return {
            asset: precise_div(self.ledger.get_balance(state.symbol, asset), supply)
            for asset in state.default_positions
        }

    def _sync(self, index: str, only: Optional[str] = None) -> None:
        for asset in load_index(self.ledger, index).default_positions:
            if only is not None and asset != only:
                continue
            balance = self.ledger.get_balance(index, asset)
            self.ledger.commit(compute_sync(self.ledger, index, asset, balance))

    def _gateway(self, state: IndexState, venue: Optional[VenueKey]) -> SwapGateway:
        default = state.composite_config.get('swap_venue', SwapVenue.UNISWAP.value)
        return self.registry.resolve(state.symbol, IntegrationModule.COMPOSITE, venue or default)

    def _quote_cost(self, gateway: SwapGateway, quote_asset: str, asset: str, amount: Decimal) -> Decimal:
        if asset == quote_asset:
            return amount
        return gateway.quote_in([quote_asset, asset], amount)

    def _transfer(self, index: str, asset: str, amount: Decimal, source: str, dest: str, event: str) -> None:
        origin = TransactionOrigin(OriginType.ISSUANCE, "composite", index, event)
        move = Move(amount, asset, source, dest, f"{index}:{event.lower()}")
        self.ledger.commit(build_transaction(self.ledger, [move], origin=origin))

"""
issuance.py - Issuance Engine for lending-backed indices

issue(quantity):
    equity_unit = sum((supplied + idle - debt) * price) / price(collateral) / supply
    cost        = ceil(equity_unit * quantity)      in collateral native decimals
    pull cost from the issuer, deposit it, mint quantity

redeem(quantity):
    f = quantity / supply
    debt cannot be handed to the redeemer, so the redeemer's share of the
    debt is repaid first with the redeemer's share of the collateral:

    while remaining_debt > DEBT_EPSILON (at most MAX_DELEVER_ITERATIONS):
        needed = quote_in(collateral -> borrow, remaining_debt)
        limit  = min(max_withdrawable, collateral share not yet spent)
        if needed <= limit:  withdraw needed, swap for exact remaining_debt, repay
        else:                withdraw limit, swap it all, repay

    then withdraw (collateral share - spent) to the recipient and burn.

A full redemption repays the whole debt and withdraws everything left;
both units are then zero and the next issue starts from the seed units.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from .core import (
    Move, OriginType, TransactionOrigin,
    InsufficientBalance, InvalidState, SlippageExceeded, SlippageBelowMinimum,
    build_transaction,
)
from .fixed_point import ZERO, precise_div, to_decimal, to_native
from .ledger import Ledger
from .atomic import TransactionManager
from .gateways.lending import LendingGateway
from .gateways.registry import VenueKey
from .leverage import LeverageController, LeverageConfig, calculate_swap_path, load_leverage_config
from .positions import (
    IndexState,
    load_index, get_total_supply, require_initialized,
    compute_mint, compute_burn, compute_reset_positions,
)


MAX_DELEVER_ITERATIONS = 32

DEBT_EPSILON = Decimal("1e-12")


@dataclass(frozen=True, slots=True)
class IssueResult:
    """Realized amounts of one issue."""
    index: str
    quantity: Decimal
    recipient: str
    collateral_asset: str
    cost: Decimal


@dataclass(frozen=True, slots=True)
class RedeemResult:
    """
    Realized amounts of one redemption.

    collateral_spent is the collateral sold to repay debt; residual is debt
    left unresolved below DEBT_EPSILON. idle_received holds pro-rata idle
    balances paid out alongside the collateral.
    """
    index: str
    quantity: Decimal
    recipient: str
    collateral_asset: str
    collateral_received: Decimal
    debt_repaid: Decimal
    collateral_spent: Decimal
    iterations: int
    residual: Decimal
    idle_received: Dict[str, Decimal] = field(default_factory=dict)


class IssuanceEngine:
    """
    Issue and redeem shares of a lending-backed index.

    Example:
        engine = IssuanceEngine(ledger, pool, controller, tm)
        engine.issue("LEV3X", "alice", Decimal("1"), "alice", max_cost=Decimal("1"))
        engine.redeem("LEV3X", "alice", Decimal("1"), "alice", min_received=Decimal("0.9"))
    """

    def __init__(
        self,
        ledger: Ledger,
        lending: LendingGateway,
        controller: LeverageController,
        tm: TransactionManager,
    ):
        self.ledger = ledger
        self.lending = lending
        self.controller = controller
        self.tm = tm
        self.verbose = ledger.verbose

    # ------------------------------------------------------------------------
    # Valuation
    # ------------------------------------------------------------------------

    def get_equity_unit(self, index: str) -> Decimal:
        """Net value of one share, in units of the collateral asset."""
        state = load_index(self.ledger, index)
        config = load_leverage_config(state)
        return self._equity_unit(state, config)

    def _equity_unit(self, state: IndexState, config: LeverageConfig) -> Decimal:
        index = state.symbol
        supply = get_total_supply(self.ledger, index)
        receipt = self.lending.receipt_asset(config.collateral_asset)
        if supply <= 0:
            return state.initial_units.get(receipt, ZERO)

        value = ZERO
        for asset in config.tracked_assets():
            held = self.lending.balance_of(self.lending.receipt_asset(asset), index)
            held += self.ledger.get_balance(index, asset)
            owed = self.lending.balance_of(self.lending.debt_asset(asset), index)
            if held == owed:
                continue
            value += (held - owed) * self.lending.get_asset_price(asset)
        equity = value / self.lending.get_asset_price(config.collateral_asset) / supply
        if equity <= 0:
            raise InvalidState(f"{index} has no positive equity per share")
        return equity

    def get_required_issue_amount(self, index: str, quantity: Decimal) -> Decimal:
        """Collateral an issuer would pay for quantity shares right now."""
        quantity = to_decimal(quantity)
        if quantity <= 0:
            raise ValueError(f"quantity must be positive, got {quantity}")
        state = load_index(self.ledger, index)
        config = load_leverage_config(state)
        return to_native(self.ledger, config.collateral_asset,
                         self._equity_unit(state, config) * quantity, round_up=True)

    # ------------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------------

    def issue(
        self,
        index: str,
        caller: str,
        quantity: Decimal,
        recipient: str,
        max_cost: Decimal,
    ) -> IssueResult:
        """
        Mint quantity shares to recipient for their equity in collateral.

        Raises:
            InvalidState: If the index is not fully initialized
            SlippageExceeded: If the cost is above max_cost
            InsufficientBalance: If caller cannot pay the cost
        """
        with self.tm.transaction(index):
            state = load_index(self.ledger, index)
            require_initialized(state)
            config = load_leverage_config(state)
            quantity = to_native(self.ledger, index, to_decimal(quantity))
            if quantity <= 0:
                raise ValueError(f"quantity must be positive, got {quantity}")

            if get_total_supply(self.ledger, index) <= 0:
                self.ledger.commit(compute_reset_positions(self.ledger, index, reseed=True))
            else:
                self.controller.sync(index)
            state = load_index(self.ledger, index)

            cost = to_native(self.ledger, config.collateral_asset,
                             self._equity_unit(state, config) * quantity, round_up=True)
            if cost > to_decimal(max_cost):
                raise SlippageExceeded("amount exceeded slippage")

            self.ledger.ensure_wallet(recipient)
            self.lending.deposit(config.collateral_asset, cost, on_behalf_of=index, sender=caller)
            self.ledger.commit(compute_mint(self.ledger, index, recipient, quantity, "ISSUE"))
            self.controller.sync(index)

            if self.verbose:
                print(f"[ISSUE] {index}: {quantity} to {recipient} for {cost} {config.collateral_asset}")
            return IssueResult(index, quantity, recipient, config.collateral_asset, cost)

    # ------------------------------------------------------------------------
    # Redeem
    # ------------------------------------------------------------------------

    def redeem(
        self,
        index: str,
        caller: str,
        quantity: Decimal,
        recipient: str,
        min_received: Decimal = ZERO,
        venue: Optional[VenueKey] = None,
    ) -> RedeemResult:
        """
        Burn quantity of caller's shares and pay recipient their collateral.

        Raises:
            InsufficientBalance: If caller holds fewer than quantity shares
            SlippageBelowMinimum: If the collateral paid is below min_received
            InvalidState: If the debt share cannot be repaid within
                MAX_DELEVER_ITERATIONS rounds
        """
        with self.tm.transaction(index):
            state = load_index(self.ledger, index)
            require_initialized(state)
            quantity = to_native(self.ledger, index, to_decimal(quantity))
            if quantity <= 0:
                raise ValueError(f"quantity must be positive, got {quantity}")
            held = self.ledger.get_balance(caller, index) if self.ledger.is_registered(caller) else ZERO
            if quantity > held:
                raise InsufficientBalance("Not enough index")

            self.controller.sync(index)
            config = load_leverage_config(load_index(self.ledger, index))
            collateral = config.collateral_asset
            receipt = self.lending.receipt_asset(collateral)
            supply = get_total_supply(self.ledger, index)
            full = quantity == supply
            self.ledger.ensure_wallet(recipient)

            idle_before = {a: self.ledger.get_balance(index, a) for a in config.tracked_assets()}
            total_collateral = self.lending.balance_of(receipt, index)
            share = total_collateral if full else self._pro_rata(collateral, total_collateral, quantity, supply)

            spent = ZERO
            repaid = ZERO
            residual = ZERO
            iterations = 0
            for asset in config.tracked_assets():
                total_debt = self.lending.balance_of(self.lending.debt_asset(asset), index)
                if total_debt <= 0:
                    continue
                owed = total_debt if full else self._pro_rata(asset, total_debt, quantity, supply, round_up=True)
                result = self._resolve_debt(index, config, asset, owed, share - spent, venue)
                spent += result['spent']
                repaid += result['repaid']
                residual += result['remaining']
                iterations += result['iterations']

            if full:
                received = self.lending.balance_of(receipt, index)
            else:
                received = max(ZERO, share - spent)
            if received < to_decimal(min_received):
                raise SlippageBelowMinimum("amount less than slippage")
            if received > 0:
                self.lending.withdraw(collateral, received, to=recipient, owner=index)

            idle_received = self._pay_out_extras(index, config, recipient, quantity, supply, full, idle_before)
            self.ledger.commit(compute_burn(self.ledger, index, caller, quantity))
            if full:
                self.ledger.commit(compute_reset_positions(self.ledger, index, reseed=False))
            else:
                self.controller.sync(index)

            if self.verbose:
                print(f"[REDEEM] {index}: {quantity} for {received} {collateral} "
                      f"(repaid {repaid}, sold {spent}, {iterations} rounds)")
            return RedeemResult(
                index=index,
                quantity=quantity,
                recipient=recipient,
                collateral_asset=collateral,
                collateral_received=received,
                debt_repaid=repaid,
                collateral_spent=spent,
                iterations=iterations,
                residual=residual,
                idle_received=idle_received,
            )

    def _pro_rata(self, asset: str, total: Decimal, quantity: Decimal, supply: Decimal,
                  round_up: bool = False) -> Decimal:
        return to_native(self.ledger, asset, total * precise_div(quantity, supply), round_up=round_up)

    def _resolve_debt(self, index: str, config: LeverageConfig, borrow: str,
                      owed: Decimal, budget: Decimal, venue: Optional[VenueKey]) -> Dict:
        """Repay owed of borrow by selling at most budget collateral."""
        collateral = config.collateral_asset
        gateway = self.controller.resolve_gateway(index, config, venue)
        path = calculate_swap_path(config, collateral, borrow)
        debt_token = self.lending.debt_asset(borrow)

        remaining = owed
        spent = ZERO
        repaid = ZERO
        iterations = 0
        while remaining > DEBT_EPSILON:
            remaining = min(remaining, self.lending.balance_of(debt_token, index))
            if remaining <= DEBT_EPSILON:
                break
            if iterations >= MAX_DELEVER_ITERATIONS:
                raise InvalidState(
                    f"{index}: delever did not converge after {iterations} rounds, "
                    f"{remaining} {borrow} outstanding"
                )
            iterations += 1

            limit = min(self.lending.max_withdrawable(collateral, index), budget - spent)
            needed = gateway.quote_in(path, remaining)
            if needed <= limit:
                step = self.controller.delever_to_exact_repay(index, collateral, borrow, remaining, limit, venue)
            else:
                if limit <= 0:
                    raise InvalidState(f"{index}: no withdrawable {collateral} left to repay {remaining} {borrow}")
                step = self.controller.delever_step(index, collateral, borrow, limit, ZERO, venue,
                                                    repay_cap=remaining)
            spent += step.collateral_withdrawn
            repaid += step.repaid
            remaining -= step.repaid

        return {'spent': spent, 'repaid': repaid, 'remaining': max(remaining, ZERO), 'iterations': iterations}

    def _pay_out_extras(self, index: str, config: LeverageConfig, recipient: str,
                        quantity: Decimal, supply: Decimal, full: bool,
                        idle_before: Dict[str, Decimal]) -> Dict[str, Decimal]:
        """
        Pay the redeemer's share of idle balances and secondary collateral.

        Idle produced while repaying this redemption's debt belongs to the
        redeemer in full.
        """
        paid: Dict[str, Decimal] = {}
        moves: List[Move] = []
        for asset in config.tracked_assets():
            idle_now = self.ledger.get_balance(index, asset)
            before = idle_before.get(asset, ZERO)
            amount = idle_now if full else (idle_now - before) + self._pro_rata(asset, before, quantity, supply)
            amount = min(amount, idle_now)
            if amount > 0:
                moves.append(Move(amount, asset, index, recipient, f"{index}:redeem_idle"))
                paid[asset] = amount

            if asset == config.collateral_asset:
                continue
            supplied = self.lending.balance_of(self.lending.receipt_asset(asset), index)
            if supplied <= 0:
                continue
            extra = supplied if full else self._pro_rata(asset, supplied, quantity, supply)
            if extra > 0:
                self.lending.withdraw(asset, extra, to=recipient, owner=index)
                paid[self.lending.receipt_asset(asset)] = extra

        if moves:
            origin = TransactionOrigin(OriginType.ISSUANCE, "issuance", index, "REDEEM_IDLE")
            self.ledger.commit(build_transaction(self.ledger, moves, origin=origin))
        return paid

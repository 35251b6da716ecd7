"""
lending.py - Lending Gateway boundary and a simulated Aave-style pool

The index core talks to the lending market only through the LendingGateway
protocol. SimulatedLendingPool implements it on top of the token ledger so
issuance, leverage and redemption can be exercised end to end.

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASSES:
   - ReserveConfig: risk and rate parameters of a listed asset
   - AccountData: valuation of a holder's position at a point in time

2. PURE CALCULATION FUNCTIONS (calculate_*):
   - Utilization, two-slope borrow rate, supply rate, index growth,
     health factor. No pool, no ledger.

3. SimulatedLendingPool:
   - Holds underlying tokens in its own ledger wallet
   - Tracks scaled supply and scaled debt per holder; balances are
     scaled * index, so interest shows up without touching the ledger
   - Reads prices from a PriceOracle at ledger time

Key Formulas:
    utilization     = total_debt / total_supplied
    borrow_rate     = base + u/u_opt * slope1                 (u <= u_opt)
                    = base + slope1 + (u-u_opt)/(1-u_opt) * slope2
    supply_rate     = borrow_rate * u * (1 - reserve_factor)
    index'          = index * (1 + rate * elapsed / YEAR)
    health_factor   = sum(collateral_value * liq_threshold) / debt_value
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional, Protocol, Set, runtime_checkable
import copy

from ..core import (
    Move, OriginType, TransactionOrigin, SECONDS_PER_YEAR,
    LendingError, build_transaction,
)
from ..fixed_point import (
    ZERO, ONE, precise_div, precise_mul, to_decimal, to_native, to_wad,
)
from ..ledger import Ledger
from ..oracle import PriceOracle, require_price


RATE_MODE_STABLE = 1
RATE_MODE_VARIABLE = 2

RECEIPT_PREFIX = "a"
DEBT_PREFIX = "variableDebt"

INFINITE_HEALTH = Decimal("Infinity")


# ============================================================================
# LENDING GATEWAY PROTOCOL
# ============================================================================

@dataclass(frozen=True, slots=True)
class AccountData:
    """
    Valuation of a holder's lending position, in the oracle's base currency.

    health_factor is Infinity for a holder without debt.
    """
    total_collateral_value: Decimal
    total_debt_value: Decimal
    available_borrows_value: Decimal
    ltv: Decimal
    liquidation_threshold: Decimal
    health_factor: Decimal


@runtime_checkable
class LendingGateway(Protocol):
    """
    Uniform interface to a lending market on behalf of an index.

    Amounts are in the asset's native precision. Balances drift between calls
    as interest accrues; callers re-read them instead of tracking them.
    """

    def deposit(self, asset: str, amount: Decimal, on_behalf_of: str, sender: Optional[str] = None) -> Decimal:
        ...

    def withdraw(self, asset: str, amount: Decimal, to: str, owner: str) -> Decimal:
        ...

    def borrow(
        self, asset: str, amount: Decimal, rate_mode: int, referral_code: int, on_behalf_of: str
    ) -> Decimal:
        ...

    def repay(
        self, asset: str, amount: Decimal, rate_mode: int, on_behalf_of: str, sender: Optional[str] = None
    ) -> Decimal:
        ...

    def balance_of(self, receipt_asset: str, holder: str) -> Decimal:
        ...

    def get_account_data(self, holder: str) -> AccountData:
        ...

    def receipt_asset(self, asset: str) -> str:
        ...

    def debt_asset(self, asset: str) -> str:
        ...

    def get_asset_price(self, asset: str) -> Decimal:
        ...

    def max_withdrawable(self, asset: str, holder: str) -> Decimal:
        ...


# ============================================================================
# RESERVE CONFIGURATION AND STATE
# ============================================================================

@dataclass(frozen=True, slots=True)
class ReserveConfig:
    """
    Risk and interest parameters of a listed reserve.

    Rates are annual fractions (0.04 == 4% per year).
    """
    asset: str
    ltv: Decimal
    liquidation_threshold: Decimal
    base_rate: Decimal = Decimal("0")
    slope1: Decimal = Decimal("0.04")
    slope2: Decimal = Decimal("0.75")
    optimal_utilization: Decimal = Decimal("0.8")
    reserve_factor: Decimal = Decimal("0.1")
    borrowing_enabled: bool = True

    def __post_init__(self):
        for name in ('ltv', 'liquidation_threshold', 'base_rate', 'slope1', 'slope2',
                     'optimal_utilization', 'reserve_factor'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, Decimal(str(value)))
        if not ZERO <= self.ltv <= self.liquidation_threshold <= ONE:
            raise ValueError(
                f"Reserve {self.asset}: need 0 <= ltv <= liquidation_threshold <= 1, "
                f"got {self.ltv} / {self.liquidation_threshold}"
            )
        if not ZERO < self.optimal_utilization < ONE:
            raise ValueError(f"Reserve {self.asset}: optimal_utilization must be in (0, 1)")
        if not ZERO <= self.reserve_factor < ONE:
            raise ValueError(f"Reserve {self.asset}: reserve_factor must be in [0, 1)")
        if self.base_rate < 0 or self.slope1 < 0 or self.slope2 < 0:
            raise ValueError(f"Reserve {self.asset}: rates cannot be negative")


@dataclass(slots=True)
class ReserveState:
    """Mutable accounting state of one reserve."""
    liquidity_index: Decimal
    borrow_index: Decimal
    last_update: datetime
    scaled_supply: Dict[str, Decimal] = field(default_factory=dict)
    scaled_debt: Dict[str, Decimal] = field(default_factory=dict)


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_utilization(total_debt: Decimal, total_supplied: Decimal) -> Decimal:
    """Fraction of supplied liquidity that is borrowed."""
    if total_supplied <= 0:
        return ZERO
    return min(ONE, total_debt / total_supplied)


def calculate_borrow_rate(config: ReserveConfig, utilization: Decimal) -> Decimal:
    """Two-slope variable borrow rate."""
    if utilization <= config.optimal_utilization:
        return config.base_rate + utilization / config.optimal_utilization * config.slope1
    excess = (utilization - config.optimal_utilization) / (ONE - config.optimal_utilization)
    return config.base_rate + config.slope1 + excess * config.slope2


def calculate_supply_rate(config: ReserveConfig, utilization: Decimal, borrow_rate: Decimal) -> Decimal:
    """Rate earned by suppliers after the reserve factor."""
    return borrow_rate * utilization * (ONE - config.reserve_factor)


def calculate_index_growth(index: Decimal, rate: Decimal, elapsed_seconds: Decimal) -> Decimal:
    """Linear index growth over elapsed_seconds at an annual rate."""
    if elapsed_seconds <= 0 or rate == 0:
        return index
    return index * (ONE + rate * elapsed_seconds / SECONDS_PER_YEAR)


def calculate_health_factor(weighted_collateral_value: Decimal, debt_value: Decimal) -> Decimal:
    """
    Health factor from liquidation-threshold-weighted collateral.

    Returns Infinity when there is no debt.
    """
    if debt_value <= 0:
        return INFINITE_HEALTH
    return weighted_collateral_value / debt_value


# ============================================================================
# SIMULATED POOL
# ============================================================================

class SimulatedLendingPool:
    """
    In-memory Aave-style lending market settled on the token ledger.

    Example:
        pool = SimulatedLendingPool(ledger, oracle)
        pool.list_reserve(ReserveConfig("WETH", ltv=0.8, liquidation_threshold=0.825))
        pool.list_reserve(ReserveConfig("DAI", ltv=0.75, liquidation_threshold=0.8))
        pool.deposit("WETH", Decimal("1"), on_behalf_of="alice", sender="alice")
        pool.borrow("DAI", Decimal("500"), RATE_MODE_VARIABLE, 0, on_behalf_of="alice")
    """

    def __init__(self, ledger: Ledger, oracle: PriceOracle, wallet: str = "lending_pool"):
        self.ledger = ledger
        self.oracle = oracle
        self.wallet = ledger.ensure_wallet(wallet)
        self.configs: Dict[str, ReserveConfig] = {}
        self.reserves: Dict[str, ReserveState] = {}

    # ------------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------------

    def list_reserve(self, config: ReserveConfig) -> None:
        """
        List an asset so it can be supplied and borrowed.

        Raises:
            ValueError: If the asset is already listed
        """
        if config.asset in self.configs:
            raise ValueError(f"Reserve {config.asset} already listed")
        self.ledger.get_unit(config.asset)
        self.configs[config.asset] = config
        self.reserves[config.asset] = ReserveState(
            liquidity_index=ONE,
            borrow_index=ONE,
            last_update=self.ledger.current_time,
        )

    def listed_assets(self) -> Set[str]:
        return set(self.configs)

    def snapshot(self) -> Dict[str, ReserveState]:
        """Copy of reserve state for the atomic operation scope."""
        return copy.deepcopy(self.reserves)

    def restore(self, state: Dict[str, ReserveState]) -> None:
        self.reserves = copy.deepcopy(state)

    # ------------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------------

    def receipt_asset(self, asset: str) -> str:
        """Symbol of the interest-bearing receipt for a supplied asset (aWETH)."""
        self._require_reserve(asset)
        return f"{RECEIPT_PREFIX}{asset}"

    def debt_asset(self, asset: str) -> str:
        """Symbol of the variable debt token for a borrowed asset (variableDebtDAI)."""
        self._require_reserve(asset)
        return f"{DEBT_PREFIX}{asset}"

    def _underlying(self, receipt_or_debt: str) -> tuple:
        if receipt_or_debt.startswith(DEBT_PREFIX) and receipt_or_debt[len(DEBT_PREFIX):] in self.configs:
            return receipt_or_debt[len(DEBT_PREFIX):], True
        if receipt_or_debt.startswith(RECEIPT_PREFIX) and receipt_or_debt[len(RECEIPT_PREFIX):] in self.configs:
            return receipt_or_debt[len(RECEIPT_PREFIX):], False
        raise LendingError(f"Unknown receipt or debt asset {receipt_or_debt}")

    # ------------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------------

    def get_asset_price(self, asset: str) -> Decimal:
        """Oracle price of an asset in base currency at ledger time."""
        return require_price(self.oracle, asset, self.ledger.current_time)

    def balance_of(self, receipt_asset: str, holder: str) -> Decimal:
        """
        Current balance of a receipt (supply) or debt token, interest included.

        Raises:
            LendingError: If the symbol is neither a receipt nor a debt token
        """
        asset, is_debt = self._underlying(receipt_asset)
        liquidity_index, borrow_index = self._current_indexes(asset)
        reserve = self.reserves[asset]
        if is_debt:
            scaled = reserve.scaled_debt.get(holder, ZERO)
            return to_native(self.ledger, asset, precise_mul(scaled, borrow_index), round_up=True)
        scaled = reserve.scaled_supply.get(holder, ZERO)
        return to_native(self.ledger, asset, precise_mul(scaled, liquidity_index))

    def supplied(self, asset: str, holder: str) -> Decimal:
        return self.balance_of(self.receipt_asset(asset), holder)

    def debt(self, asset: str, holder: str) -> Decimal:
        return self.balance_of(self.debt_asset(asset), holder)

    def total_supplied(self, asset: str) -> Decimal:
        liquidity_index, _ = self._current_indexes(asset)
        return precise_mul(sum(self.reserves[asset].scaled_supply.values(), ZERO), liquidity_index)

    def total_debt(self, asset: str) -> Decimal:
        _, borrow_index = self._current_indexes(asset)
        return precise_mul(sum(self.reserves[asset].scaled_debt.values(), ZERO), borrow_index)

    def available_liquidity(self, asset: str) -> Decimal:
        return self.ledger.get_balance(self.wallet, asset)

    def get_reserve_rates(self, asset: str) -> Dict[str, Decimal]:
        """Current utilization, borrow rate and supply rate of a reserve."""
        config = self._require_reserve(asset)
        utilization = calculate_utilization(self.total_debt(asset), self.total_supplied(asset))
        borrow_rate = calculate_borrow_rate(config, utilization)
        return {
            'utilization': utilization,
            'borrow_rate': borrow_rate,
            'supply_rate': calculate_supply_rate(config, utilization, borrow_rate),
        }

    def get_account_data(self, holder: str) -> AccountData:
        """Value a holder's supplied collateral and debt at oracle prices."""
        collateral_value = ZERO
        ltv_weighted = ZERO
        threshold_weighted = ZERO
        debt_value = ZERO

        for asset in sorted(self.configs):
            config = self.configs[asset]
            supplied = self.supplied(asset, holder)
            owed = self.debt(asset, holder)
            if supplied <= 0 and owed <= 0:
                continue
            price = self.get_asset_price(asset)
            if supplied > 0:
                value = supplied * price
                collateral_value += value
                ltv_weighted += value * config.ltv
                threshold_weighted += value * config.liquidation_threshold
            if owed > 0:
                debt_value += owed * price

        ltv = ltv_weighted / collateral_value if collateral_value > 0 else ZERO
        threshold = threshold_weighted / collateral_value if collateral_value > 0 else ZERO
        return AccountData(
            total_collateral_value=collateral_value,
            total_debt_value=debt_value,
            available_borrows_value=max(ZERO, ltv_weighted - debt_value),
            ltv=ltv,
            liquidation_threshold=threshold,
            health_factor=calculate_health_factor(threshold_weighted, debt_value),
        )

    def max_withdrawable(self, asset: str, holder: str) -> Decimal:
        """
        Largest withdrawal of asset that keeps the holder's health factor >= 1.

        Also capped by the pool's idle liquidity.
        """
        config = self._require_reserve(asset)
        supplied = self.supplied(asset, holder)
        if supplied <= 0:
            return ZERO
        data = self.get_account_data(holder)
        cap = min(supplied, self.available_liquidity(asset))
        if data.total_debt_value <= 0:
            return cap
        if config.liquidation_threshold <= 0:
            return cap
        price = self.get_asset_price(asset)
        # Weighted collateral that must stay behind to cover the debt
        weighted = data.liquidation_threshold * data.total_collateral_value
        spare_value = weighted - data.total_debt_value
        if spare_value <= 0:
            return ZERO
        limit = spare_value / (price * config.liquidation_threshold)
        return to_native(self.ledger, asset, min(cap, limit))

    # ------------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------------

    def deposit(self, asset: str, amount: Decimal, on_behalf_of: str, sender: Optional[str] = None) -> Decimal:
        """
        Supply asset from sender, crediting the receipt to on_behalf_of.

        Returns:
            The amount supplied.
        """
        self._require_reserve(asset)
        amount = self._require_amount(asset, amount)
        sender = sender or on_behalf_of
        reserve = self._accrue(asset)
        self._transfer(asset, amount, sender, self.wallet, "DEPOSIT")
        scaled = precise_div(amount, reserve.liquidity_index)
        reserve.scaled_supply[on_behalf_of] = reserve.scaled_supply.get(on_behalf_of, ZERO) + scaled
        return amount

    def withdraw(self, asset: str, amount: Decimal, to: str, owner: str) -> Decimal:
        """
        Withdraw supplied asset from owner to a recipient.

        Raises:
            LendingError: If the owner has less supplied, the pool lacks
                liquidity, or the withdrawal would push health below 1
        """
        self._require_reserve(asset)
        amount = self._require_amount(asset, amount)
        reserve = self._accrue(asset)
        supplied = self.supplied(asset, owner)
        if amount > supplied:
            raise LendingError(f"Withdraw {amount} {asset} exceeds supplied {supplied}")
        if amount > self.available_liquidity(asset):
            raise LendingError(f"Not enough {asset} liquidity to withdraw {amount}")
        if amount > self.max_withdrawable(asset, owner):
            raise LendingError(f"Withdrawal of {amount} {asset} would leave {owner} under-collateralized")

        if amount == supplied:
            reserve.scaled_supply.pop(owner, None)
        else:
            scaled = precise_div(amount, reserve.liquidity_index)
            reserve.scaled_supply[owner] = max(ZERO, reserve.scaled_supply.get(owner, ZERO) - scaled)
        self._transfer(asset, amount, self.wallet, to, "WITHDRAW")
        return amount

    def borrow(
        self,
        asset: str,
        amount: Decimal,
        rate_mode: int,
        referral_code: int,
        on_behalf_of: str,
        to: Optional[str] = None,
    ) -> Decimal:
        """
        Borrow asset against on_behalf_of's collateral.

        Raises:
            LendingError: Unsupported rate mode, borrowing disabled, not enough
                collateral, or not enough liquidity
        """
        config = self._require_reserve(asset)
        if rate_mode != RATE_MODE_VARIABLE:
            raise LendingError(f"Rate mode {rate_mode} not supported; use variable ({RATE_MODE_VARIABLE})")
        if not config.borrowing_enabled:
            raise LendingError(f"Borrowing {asset} is disabled")
        amount = self._require_amount(asset, amount)
        reserve = self._accrue(asset)

        data = self.get_account_data(on_behalf_of)
        requested_value = amount * self.get_asset_price(asset)
        if requested_value > data.available_borrows_value:
            raise LendingError(
                f"Borrow of {amount} {asset} exceeds available borrows "
                f"({data.available_borrows_value} base)"
            )
        if amount > self.available_liquidity(asset):
            raise LendingError(f"Not enough {asset} liquidity to borrow {amount}")

        scaled = precise_div(amount, reserve.borrow_index)
        reserve.scaled_debt[on_behalf_of] = reserve.scaled_debt.get(on_behalf_of, ZERO) + scaled
        self._transfer(asset, amount, self.wallet, to or on_behalf_of, "BORROW")
        return amount

    def repay(
        self,
        asset: str,
        amount: Decimal,
        rate_mode: int,
        on_behalf_of: str,
        sender: Optional[str] = None,
    ) -> Decimal:
        """
        Repay up to amount of on_behalf_of's debt, paid by sender.

        Returns:
            The amount actually repaid (capped at the outstanding debt).
        """
        self._require_reserve(asset)
        if rate_mode != RATE_MODE_VARIABLE:
            raise LendingError(f"Rate mode {rate_mode} not supported; use variable ({RATE_MODE_VARIABLE})")
        amount = self._require_amount(asset, amount)
        reserve = self._accrue(asset)
        owed = self.debt(asset, on_behalf_of)
        if owed <= 0:
            raise LendingError(f"{on_behalf_of} has no {asset} debt to repay")

        payment = min(amount, owed)
        self._transfer(asset, payment, sender or on_behalf_of, self.wallet, "REPAY")
        if payment == owed:
            reserve.scaled_debt.pop(on_behalf_of, None)
        else:
            scaled = precise_div(payment, reserve.borrow_index)
            reserve.scaled_debt[on_behalf_of] = max(ZERO, reserve.scaled_debt.get(on_behalf_of, ZERO) - scaled)
        return payment

    # ------------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------------

    def _require_reserve(self, asset: str) -> ReserveConfig:
        config = self.configs.get(asset)
        if config is None:
            raise LendingError(f"Reserve {asset} is not listed")
        return config

    def _require_amount(self, asset: str, amount: Decimal) -> Decimal:
        native = to_native(self.ledger, asset, to_decimal(amount))
        if native <= 0:
            raise LendingError(f"Amount of {asset} must be positive, got {amount}")
        return native

    def _current_indexes(self, asset: str) -> tuple:
        """Indexes as of ledger time, without persisting them."""
        config = self._require_reserve(asset)
        reserve = self.reserves[asset]
        elapsed = Decimal((self.ledger.current_time - reserve.last_update).total_seconds())
        if elapsed <= 0:
            return reserve.liquidity_index, reserve.borrow_index
        total_supplied = precise_mul(sum(reserve.scaled_supply.values(), ZERO), reserve.liquidity_index)
        total_debt = precise_mul(sum(reserve.scaled_debt.values(), ZERO), reserve.borrow_index)
        utilization = calculate_utilization(total_debt, total_supplied)
        borrow_rate = calculate_borrow_rate(config, utilization)
        supply_rate = calculate_supply_rate(config, utilization, borrow_rate)
        return (
            to_wad(calculate_index_growth(reserve.liquidity_index, supply_rate, elapsed)),
            to_wad(calculate_index_growth(reserve.borrow_index, borrow_rate, elapsed)),
        )

    def _accrue(self, asset: str) -> ReserveState:
        reserve = self.reserves[asset]
        reserve.liquidity_index, reserve.borrow_index = self._current_indexes(asset)
        reserve.last_update = self.ledger.current_time
        return reserve

    def _transfer(self, asset: str, amount: Decimal, source: str, dest: str, event: str) -> None:
        self.ledger.ensure_wallet(dest)
        origin = TransactionOrigin(OriginType.GATEWAY, "lending_pool", asset, event)
        move = Move(amount, asset, source, dest, f"lending:{event.lower()}")
        self.ledger.commit(build_transaction(self.ledger, [move], origin=origin))

    def __repr__(self):
        return f"SimulatedLendingPool({sorted(self.configs)}, wallet={self.wallet})"

"""
fees.py - Streaming Fee Accrual Engine

A streaming fee dilutes holders continuously: each accrual mints new shares
to the fee recipient and scales every position down by the same factor, so
the index's aggregate holdings are unchanged while the recipient's share of
them grows by exactly the accrued fraction.

Key Formulas:
    f          = streaming_fee_percentage * elapsed_seconds / SECONDS_PER_YEAR
    mint       = total_supply * f / (1 - f)
    multiplier = multiplier * (1 - f)

After accrual the recipient owns mint / (supply + mint) == f of the index.

The maximum fee is checked only when the fee is configured; accrual trusts
the stored rate.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from .core import (
    LedgerView, Move, PendingTransaction, UnitStateChange,
    OriginType, TransactionOrigin, SYSTEM_WALLET, SECONDS_PER_YEAR,
    InvalidState, build_transaction,
)
from .fixed_point import ZERO, ONE, precise_mul, to_decimal, to_native
from .ledger import Ledger
from .atomic import TransactionManager
from .positions import get_total_supply, load_index, require_manager, compute_state_update


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass(frozen=True, slots=True)
class FeeConfig:
    """
    Streaming fee settings of one index.

    Rates are annual fractions (0.02 == 2% per year).
    """
    fee_recipient: str
    streaming_fee_percentage: Decimal
    max_streaming_fee_percentage: Decimal
    last_accrual_timestamp: Optional[datetime] = None

    def __post_init__(self):
        for name in ('streaming_fee_percentage', 'max_streaming_fee_percentage'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))
        if not self.fee_recipient:
            raise ValueError("fee_recipient cannot be empty")
        if not ZERO <= self.max_streaming_fee_percentage < ONE:
            raise ValueError(
                f"max_streaming_fee_percentage must be in [0, 1), got {self.max_streaming_fee_percentage}"
            )
        if self.streaming_fee_percentage < 0:
            raise ValueError(f"streaming_fee_percentage cannot be negative, got {self.streaming_fee_percentage}")
        if self.streaming_fee_percentage > self.max_streaming_fee_percentage:
            raise ValueError(
                f"streaming_fee_percentage {self.streaming_fee_percentage} exceeds "
                f"max {self.max_streaming_fee_percentage}"
            )

    def to_state(self) -> Dict[str, Any]:
        return {
            'fee_recipient': self.fee_recipient,
            'streaming_fee_percentage': self.streaming_fee_percentage,
            'max_streaming_fee_percentage': self.max_streaming_fee_percentage,
            'last_accrual_timestamp': self.last_accrual_timestamp,
        }

    @classmethod
    def from_state(cls, state: Dict[str, Any]) -> FeeConfig:
        return cls(
            fee_recipient=state['fee_recipient'],
            streaming_fee_percentage=state['streaming_fee_percentage'],
            max_streaming_fee_percentage=state['max_streaming_fee_percentage'],
            last_accrual_timestamp=state.get('last_accrual_timestamp'),
        )


@dataclass(frozen=True, slots=True)
class FeeAccrual:
    """Outcome of one accrual."""
    index: str
    fee_fraction: Decimal
    minted: Decimal
    position_multiplier: Decimal
    timestamp: datetime


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_fee_fraction(rate: Decimal, elapsed_seconds: Decimal) -> Decimal:
    """
    Fraction of the index owed for elapsed_seconds at an annual rate.

    Raises:
        InvalidState: If the fraction reaches 1 (the index would be consumed)
    """
    if elapsed_seconds <= 0 or rate <= 0:
        return ZERO
    fraction = rate * elapsed_seconds / SECONDS_PER_YEAR
    if fraction >= ONE:
        raise InvalidState(f"Fee fraction {fraction} >= 1")
    return fraction


def calculate_mint_quantity(total_supply: Decimal, fee_fraction: Decimal) -> Decimal:
    """Shares to mint so the recipient ends up with fee_fraction of the supply."""
    if fee_fraction <= 0 or total_supply <= 0:
        return ZERO
    return total_supply * fee_fraction / (ONE - fee_fraction)


def calculate_new_multiplier(multiplier: Decimal, fee_fraction: Decimal) -> Decimal:
    """Position multiplier after diluting by fee_fraction."""
    return precise_mul(multiplier, ONE - fee_fraction)


# ============================================================================
# TRANSACTION BUILDER
# ============================================================================

def _elapsed_seconds(since: Optional[datetime], now: datetime) -> Decimal:
    if since is None:
        return ZERO
    return Decimal(str((now - since).total_seconds()))


def compute_accrue_fee(view: LedgerView, index: str) -> PendingTransaction:
    """
    Build the mint and multiplier update for an accrual at view time.

    With zero supply the only change is the accrual timestamp.

    Raises:
        InvalidState: If the index has no fee configuration, or f >= 1
    """
    state = load_index(view, index)
    if not state.fee_config:
        raise InvalidState(f"{index} has no fee configuration")
    config = FeeConfig.from_state(state.fee_config)
    now = view.current_time

    fraction = calculate_fee_fraction(
        config.streaming_fee_percentage,
        _elapsed_seconds(config.last_accrual_timestamp, now),
    )
    supply = get_total_supply(view, index)
    mint = to_native(view, index, calculate_mint_quantity(supply, fraction))

    old_state = view.get_unit_state(index)
    new_state = dict(old_state)
    new_state['fee_config'] = {**config.to_state(), 'last_accrual_timestamp': now}
    moves = []
    if mint > 0:
        new_state['position_multiplier'] = calculate_new_multiplier(state.position_multiplier, fraction)
        moves.append(Move(mint, index, SYSTEM_WALLET, config.fee_recipient, f"{index}:streaming_fee"))

    origin = TransactionOrigin(OriginType.FEE, "fees", index, "ACCRUE_FEE")
    changes = [UnitStateChange(unit=index, old_state=old_state, new_state=new_state)]
    return build_transaction(view, moves, changes, origin=origin)


# ============================================================================
# ENGINE
# ============================================================================

class FeeAccrualEngine:
    """
    Streaming fee lifecycle of indices on one ledger.

    Example:
        fees = FeeAccrualEngine(ledger, tm)
        fees.initialize("LEV3X", "manager", FeeConfig("treasury", Decimal("0.02"), Decimal("0.05")))
        ledger.advance_time(one_year_later)
        fees.accrue_fee("LEV3X")   # treasury now owns 2% of LEV3X
    """

    def __init__(self, ledger: Ledger, tm: TransactionManager):
        self.ledger = ledger
        self.tm = tm
        self.verbose = ledger.verbose

    def initialize(self, index: str, caller: str, config: FeeConfig) -> FeeConfig:
        """
        Attach a fee configuration; accrual starts now.

        Raises:
            Unauthorized: If caller is not the manager
            InvalidState: If the index already has a fee configuration
        """
        with self.tm.transaction(index):
            state = load_index(self.ledger, index)
            require_manager(state, caller)
            if state.fee_config:
                raise InvalidState(f"{index} fee configuration already initialized")
            stored = FeeConfig(
                fee_recipient=config.fee_recipient,
                streaming_fee_percentage=config.streaming_fee_percentage,
                max_streaming_fee_percentage=config.max_streaming_fee_percentage,
                last_accrual_timestamp=self.ledger.current_time,
            )
            self.ledger.ensure_wallet(stored.fee_recipient)
            self.ledger.commit(compute_state_update(
                self.ledger, index, {'fee_config': stored.to_state()}, "INIT_FEE", OriginType.FEE
            ))
            return stored

    def accrue_fee(self, index: str) -> FeeAccrual:
        """
        Mint the fee accrued since the last accrual and dilute the multiplier.

        Anyone may call this.
        """
        with self.tm.transaction(index):
            config = self._config(index)
            self.ledger.ensure_wallet(config.fee_recipient)
            tx = compute_accrue_fee(self.ledger, index)
            minted = sum((m.quantity for m in tx.moves), ZERO)
            fraction = calculate_fee_fraction(
                config.streaming_fee_percentage,
                _elapsed_seconds(config.last_accrual_timestamp, self.ledger.current_time),
            )
            self.ledger.commit(tx)
            multiplier = load_index(self.ledger, index).position_multiplier
            if self.verbose and minted > 0:
                print(f"[FEE] {index}: f={fraction} minted {minted} to {config.fee_recipient}, "
                      f"multiplier={multiplier}")
            return FeeAccrual(
                index=index,
                fee_fraction=fraction if minted > 0 else ZERO,
                minted=minted,
                position_multiplier=multiplier,
                timestamp=self.ledger.current_time,
            )

    def update_streaming_fee(self, index: str, caller: str, new_fee: Decimal) -> FeeConfig:
        """
        Change the rate, accruing at the old rate first.

        Raises:
            Unauthorized: If caller is not the manager
            ValueError: If new_fee exceeds the configured maximum
        """
        with self.tm.transaction(index):
            require_manager(load_index(self.ledger, index), caller)
            self.accrue_fee(index)
            config = self._config(index)
            updated = FeeConfig(
                fee_recipient=config.fee_recipient,
                streaming_fee_percentage=to_decimal(new_fee),
                max_streaming_fee_percentage=config.max_streaming_fee_percentage,
                last_accrual_timestamp=config.last_accrual_timestamp,
            )
            self.ledger.commit(compute_state_update(
                self.ledger, index, {'fee_config': updated.to_state()}, "UPDATE_FEE", OriginType.FEE
            ))
            return updated

    def update_fee_recipient(self, index: str, caller: str, recipient: str) -> FeeConfig:
        with self.tm.transaction(index):
            require_manager(load_index(self.ledger, index), caller)
            config = self._config(index)
            updated = FeeConfig(
                fee_recipient=recipient,
                streaming_fee_percentage=config.streaming_fee_percentage,
                max_streaming_fee_percentage=config.max_streaming_fee_percentage,
                last_accrual_timestamp=config.last_accrual_timestamp,
            )
            self.ledger.ensure_wallet(recipient)
            self.ledger.commit(compute_state_update(
                self.ledger, index, {'fee_config': updated.to_state()}, "UPDATE_FEE_RECIPIENT", OriginType.FEE
            ))
            return updated

    def get_fee(self, index: str) -> Decimal:
        """Fee fraction accrued since the last accrual (not yet minted)."""
        config = self._config(index)
        return calculate_fee_fraction(
            config.streaming_fee_percentage,
            _elapsed_seconds(config.last_accrual_timestamp, self.ledger.current_time),
        )

    def get_config(self, index: str) -> FeeConfig:
        return self._config(index)

    def _config(self, index: str) -> FeeConfig:
        state = load_index(self.ledger, index)
        if not state.fee_config:
            raise InvalidState(f"{index} has no fee configuration")
        return FeeConfig.from_state(state.fee_config)

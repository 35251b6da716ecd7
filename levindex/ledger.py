"""
ledger.py - Stateful Double-Entry Token Ledger

The Ledger class holds every token balance in the system: collateral and debt
assets, index shares, lending pool reserves and swap pool reserves. It is the
only module that mutates balances, ensuring controlled and auditable changes.

Key responsibilities:
    - Implements LedgerView protocol for safe read-only access by pure functions
    - Executes transactions atomically (all moves succeed or all fail)
    - Maintains wallet balances and unit (asset) definitions
    - Tracks logical time (fee accrual and interest read it)
    - Snapshots and restores its full state for the atomic operation scope
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Set, Optional, Tuple, Any
import copy
from decimal import Decimal

from .core import (
    # Types
    Move, Transaction, Unit,
    PendingTransaction,
    ExecuteResult,
    Positions, UnitState,
    # Constants
    QUANTITY_EPSILON, SYSTEM_WALLET,
    # Exceptions
    LedgerError, InsufficientBalance, UnitNotRegistered, WalletNotRegistered,
    # Helper functions
    _freeze_state,
)


@dataclass(frozen=True, slots=True)
class LedgerSnapshot:
    """Opaque copy of a ledger's mutable state, produced by Ledger.snapshot()."""
    balances: Dict[str, Dict[str, Decimal]]
    units: Dict[str, Unit]
    registered_wallets: Set[str]
    seen_intent_ids: Set[str]
    log_length: int
    next_sequence: int
    current_time: datetime
    positions_by_unit: Dict[str, Dict[str, Decimal]]


class Ledger:
    """
    Double-entry token ledger with full validation and audit trail.

    Implements the LedgerView protocol, allowing the ledger to be passed to
    pure functions that access only read-only methods.

    Design Principles:
        - Always validates: every transaction is checked against balance floors,
          transfer rules, and timestamp requirements.
        - Always logs: every transaction is recorded in the audit trail.

    Thread Safety:
        Not thread-safe on its own. Index operations serialize access through
        TransactionManager, which holds a per-index lock around every call.

    Example:
        ledger = Ledger("main")
        ledger.register_unit(token("WETH", "Wrapped Ether"))
        ledger.register_wallet("alice")
        ledger.register_wallet("bob")

        tx = build_transaction(ledger, [
            Move(Decimal("1"), "WETH", "alice", "bob", "payment_001")
        ])
        result = ledger.execute(tx)
    """

    POSITION_EPSILON = QUANTITY_EPSILON

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            verbose: Enable debug output (default: True)
            test_mode: Enable test mode to allow set_balance() calls (default: False)
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.seen_intent_ids: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self.verbose = verbose
        self._test_mode = test_mode
        self._next_sequence: int = 0
        # Inverted index unit -> {wallet -> quantity} for O(1) position lookups
        self._positions_by_unit: Dict[str, Dict[str, Decimal]] = defaultdict(dict)

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Get the balance of a specific unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """
        Get a deep copy of a unit's internal state.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        unit_obj = self.units[unit_symbol]
        return copy.deepcopy(unit_obj.state) if unit_obj.state else {}

    def get_positions(self, unit_symbol: str) -> Positions:
        """Get all non-zero positions for a unit across all wallets."""
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def total_supply(self, unit_symbol: str) -> Decimal:
        """
        Sum of a unit's balances across all wallets, including the system wallet.

        Units that only enter through SYSTEM_WALLET moves always sum to zero;
        this is the double-entry conservation check. Use circulating_supply()
        for the amount held outside the system wallet.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            (self.balances[w].get(unit_symbol, Decimal("0")) for w in sorted(self.registered_wallets)),
            Decimal("0"),
        )

    def circulating_supply(self, unit_symbol: str) -> Decimal:
        """Sum of a unit's balances held outside the system wallet."""
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            (q for w, q in sorted(self._positions_by_unit.get(unit_symbol, {}).items())
             if w != SYSTEM_WALLET),
            Decimal("0"),
        )

    def verify_double_entry(
        self,
        expected_supplies: Dict[str, Decimal] = None,
        tolerance: Decimal = Decimal("1e-9")
    ) -> Dict[str, Any]:
        """
        Verify that conservation laws hold for all units.

        Args:
            expected_supplies: Optional dict mapping unit symbols to expected totals.
            tolerance: Maximum allowed difference for decimal comparisons.

        Returns:
            Dict with keys:
            - 'valid': bool - True if all conservation laws hold
            - 'supplies': Dict[str, Decimal] - Current total supply for each unit
            - 'discrepancies': List[Dict] - unit, expected, actual, difference
        """
        supplies = {}
        discrepancies = []

        for unit_symbol in self.units:
            current_supply = self.total_supply(unit_symbol)
            supplies[unit_symbol] = current_supply

            if expected_supplies and unit_symbol in expected_supplies:
                expected = expected_supplies[unit_symbol]
                difference = abs(current_supply - expected)
                if difference > tolerance:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': current_supply,
                        'difference': difference,
                    })

        if expected_supplies:
            for unit_symbol, expected in expected_supplies.items():
                if unit_symbol not in supplies:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': Decimal("0"),
                        'difference': abs(expected),
                        'error': 'unit not registered',
                    })

        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock to a new time.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet in the ledger.

        Raises:
            ValueError: If wallet is already registered
        """
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def ensure_wallet(self, wallet_id: str) -> str:
        """Register a wallet if it is not registered yet."""
        if wallet_id not in self.registered_wallets:
            self.register_wallet(wallet_id)
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit (asset type) in the ledger.

        Raises:
            ValueError: If unit symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        if self.verbose:
            print(f"Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Set a wallet's balance for a unit directly.

        WARNING: bypasses double-entry accounting and is only available in
        test mode. Use build_transaction() and commit() otherwise.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use build_transaction() and commit() to modify balances. "
                "Set test_mode=True when creating Ledger for testing."
            )
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if not isinstance(quantity, Decimal):
            quantity = Decimal(str(quantity))
        self.balances[wallet_id][unit_symbol] = quantity
        self._update_position_index(wallet_id, unit_symbol, quantity)

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}"""
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        All moves succeed together or all fail together. Execution is
        idempotent: a pending transaction with the same intent_id will not be
        applied twice.

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.ALREADY_APPLIED if transaction was already executed
            ExecuteResult.REJECTED if validation failed
        """
        result, _ = self._execute(pending)
        return result

    def commit(self, pending: PendingTransaction) -> Optional[Transaction]:
        """
        Execute a PendingTransaction as a fresh intent and raise on rejection.

        Index operations repeat identical moves legitimately (two equal swaps,
        two equal issues), so the intent is re-keyed with the ledger sequence
        before execution.

        Returns:
            The executed Transaction, or None for an empty pending transaction.

        Raises:
            InsufficientBalance: If a move would breach a wallet's balance floor
            LedgerError: If the transaction is rejected for any other reason
        """
        if pending.is_empty():
            return None
        keyed = replace(pending, nonce=self._next_sequence, intent_id="")
        result, reason = self._execute(keyed)
        if result == ExecuteResult.REJECTED:
            if reason.startswith("insufficient"):
                raise InsufficientBalance(reason)
            raise LedgerError(f"Transaction rejected: {reason}")
        return self.transaction_log[-1]

    def _execute(self, pending: PendingTransaction) -> Tuple[ExecuteResult, str]:
        if pending.is_empty():
            return ExecuteResult.APPLIED, ""

        if pending.intent_id in self.seen_intent_ids:
            if self.verbose:
                print(f"ALREADY_APPLIED: intent_id={pending.intent_id}")
            return ExecuteResult.ALREADY_APPLIED, ""

        # Units are registered for validation and unregistered again on rejection
        newly_registered_units: List[str] = []
        for unit in pending.units_to_create:
            if unit.symbol not in self.units:
                self.register_unit(unit)
                newly_registered_units.append(unit.symbol)

        valid, reason = self._validate_pending(pending)
        if not valid:
            for sym in newly_registered_units:
                del self.units[sym]
            if self.verbose:
                print(f"REJECTED: {reason}")
            return ExecuteResult.REJECTED, reason

        sequence = self._next_sequence
        self._next_sequence += 1

        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            intent_id=pending.intent_id,
            exec_id=self._generate_exec_id(sequence),
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
            units_to_create=pending.units_to_create,
        )

        self._execute_moves(tx.moves)

        # Unit is frozen, so each state change installs a new Unit instance
        for sc in tx.state_changes:
            if sc.unit in self.units:
                old_unit = self.units[sc.unit]
                new_state = copy.deepcopy(sc.new_state if isinstance(sc.new_state, dict) else {})
                self.units[sc.unit] = replace(old_unit, _frozen_state=_freeze_state(new_state))

        self.transaction_log.append(tx)
        self.seen_intent_ids.add(pending.intent_id)

        if self.verbose:
            print(repr(tx))
        return ExecuteResult.APPLIED, ""

    def _validate_pending(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Validate pending transaction against all constraints.

        Checks performed:
        1. Timestamp validation (transaction must not be from the future)
        2. Unit and wallet registration
        3. Balance floors (min_balance), except for SYSTEM_WALLET

        Returns:
            Tuple of (success, reason); reason is empty on success.
        """
        if pending.timestamp > self._current_time:
            return False, "future timestamp"

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return False, f"unit not registered: {move.unit_symbol}"
            if not self.is_registered(move.source):
                return False, f"wallet not registered: {move.source}"
            if not self.is_registered(move.dest):
                return False, f"wallet not registered: {move.dest}"

        net: Dict[Tuple[str, str], Decimal] = {}
        for move in pending.moves:
            unit = self.units[move.unit_symbol]
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = unit.round(net.get(key_src, Decimal("0")) - move.quantity)
            net[key_dst] = unit.round(net.get(key_dst, Decimal("0")) + move.quantity)

        # SYSTEM_WALLET is exempt: it is the mint/burn counterparty
        for (wallet, unit_sym), delta in sorted(net.items()):
            if wallet == SYSTEM_WALLET:
                continue

            current = self.balances[wallet][unit_sym]
            unit = self.units[unit_sym]
            proposed = unit.round(current + delta)

            if proposed < unit.min_balance:
                return False, f"insufficient {unit_sym} in {wallet}: has {current}, needs {-delta}"

        return True, ""

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """Keep the inverted position index in step with a balance change."""
        if abs(quantity) >= self.POSITION_EPSILON:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _execute_moves(self, moves) -> None:
        """Apply moves to balances with unit rounding and index maintenance."""
        for move in moves:
            unit = self.units[move.unit_symbol]
            new_src_balance = unit.round(
                self.balances[move.source][move.unit_symbol] - move.quantity
            )
            self.balances[move.source][move.unit_symbol] = new_src_balance
            self._update_position_index(move.source, move.unit_symbol, new_src_balance)
            new_dst_balance = unit.round(
                self.balances[move.dest][move.unit_symbol] + move.quantity
            )
            self.balances[move.dest][move.unit_symbol] = new_dst_balance
            self._update_position_index(move.dest, move.unit_symbol, new_dst_balance)

    # ========================================================================
    # SNAPSHOTS
    # ========================================================================

    def snapshot(self) -> LedgerSnapshot:
        """
        Capture the ledger's mutable state.

        Units are immutable and their state is frozen, so the unit dict only
        needs a shallow copy. The transaction log is append-only and is
        restored by truncation.
        """
        return LedgerSnapshot(
            balances={w: dict(bals) for w, bals in self.balances.items()},
            units=dict(self.units),
            registered_wallets=self.registered_wallets.copy(),
            seen_intent_ids=self.seen_intent_ids.copy(),
            log_length=len(self.transaction_log),
            next_sequence=self._next_sequence,
            current_time=self._current_time,
            positions_by_unit={u: dict(p) for u, p in self._positions_by_unit.items()},
        )

    def restore(self, snapshot: LedgerSnapshot) -> None:
        """Reset the ledger to a state captured by snapshot()."""
        self.balances = {
            w: defaultdict(lambda: Decimal("0"), bals) for w, bals in snapshot.balances.items()
        }
        self.units = dict(snapshot.units)
        self.registered_wallets = snapshot.registered_wallets.copy()
        self.seen_intent_ids = snapshot.seen_intent_ids.copy()
        del self.transaction_log[snapshot.log_length:]
        self._next_sequence = snapshot.next_sequence
        self._current_time = snapshot.current_time
        self._positions_by_unit = defaultdict(dict)
        for unit_symbol, positions in snapshot.positions_by_unit.items():
            self._positions_by_unit[unit_symbol] = dict(positions)

    def clone(self) -> Ledger:
        """
        Create a fully independent copy of this ledger.

        Useful for what-if runs: modifications to the clone never affect the
        original ledger, and vice versa.
        """
        cloned = Ledger.__new__(Ledger)
        cloned.name = self.name
        cloned.verbose = self.verbose
        cloned._test_mode = self._test_mode
        cloned.transaction_log = list(self.transaction_log)
        cloned.restore(self.snapshot())
        return cloned

"""
test_ledger.py - Unit tests for the token ledger

Tests:
- commit() re-keys intents so identical operations both apply
- execute() stays idempotent on the same intent
- Rejections raise typed errors and leave balances untouched
- Native-decimal rounding of token moves
- circulating_supply vs total_supply (SYSTEM_WALLET mint counterparty)
- snapshot/restore/clone and the logical clock
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from tests.market import T0, fund, new_ledger
from levindex import (
    Ledger, Move, ExecuteResult, build_transaction, token, SYSTEM_WALLET,
    InsufficientBalance, LedgerError, UnitNotRegistered, WalletNotRegistered,
)
from levindex.core import UnitStateChange


def transfer(ledger, quantity, unit="WETH", source="alice", dest="bob"):
    return build_transaction(ledger, [Move(Decimal(quantity), unit, source, dest, "transfer")])


@pytest.fixture
def funded(ledger):
    fund(ledger, "alice", "WETH", 10)
    fund(ledger, "alice", "USDC", 10)
    ledger.ensure_wallet("bob")
    return ledger


# ============================================================================
# COMMIT / EXECUTE
# ============================================================================

class TestCommit:

    def test_commit_moves_balances(self, funded):
        tx = funded.commit(transfer(funded, "3"))
        assert funded.get_balance("alice", "WETH") == Decimal("7")
        assert funded.get_balance("bob", "WETH") == Decimal("3")
        assert tx is funded.transaction_log[-1]

    def test_identical_commits_both_apply(self, funded):
        pending = transfer(funded, "1")
        funded.commit(pending)
        funded.commit(pending)
        assert funded.get_balance("bob", "WETH") == Decimal("2")

    def test_execute_is_idempotent(self, funded):
        pending = transfer(funded, "1")
        assert funded.execute(pending) == ExecuteResult.APPLIED
        assert funded.execute(pending) == ExecuteResult.ALREADY_APPLIED
        assert funded.get_balance("bob", "WETH") == Decimal("1")

    def test_sequence_numbers_increase(self, funded):
        first = funded.commit(transfer(funded, "1"))
        second = funded.commit(transfer(funded, "1"))
        assert second.sequence_number == first.sequence_number + 1

    def test_empty_commit(self, funded):
        assert funded.commit(build_transaction(funded, [])) is None

    def test_insufficient_balance(self, funded):
        with pytest.raises(InsufficientBalance, match="insufficient WETH in alice"):
            funded.commit(transfer(funded, "10.5"))
        assert funded.get_balance("alice", "WETH") == Decimal("10")
        assert funded.get_balance("bob", "WETH") == Decimal("0")

    def test_unregistered_wallet(self, funded):
        with pytest.raises(LedgerError, match="wallet not registered: nobody"):
            funded.commit(transfer(funded, "1", dest="nobody"))

    def test_future_timestamp(self, funded):
        later = funded.clone()
        later.advance_time(T0 + timedelta(days=1))
        with pytest.raises(LedgerError, match="future timestamp"):
            funded.commit(transfer(later, "1"))

    def test_multi_move_all_or_nothing(self, funded):
        pending = build_transaction(funded, [
            Move(Decimal("5"), "WETH", "alice", "bob", "leg_1"),
            Move(Decimal("5"), "USDC", "bob", "alice", "leg_2"),
        ])
        with pytest.raises(InsufficientBalance):
            funded.commit(pending)
        assert funded.get_balance("alice", "WETH") == Decimal("10")

    def test_state_change_applied(self, funded):
        old = funded.get_unit_state("WETH")
        pending = build_transaction(funded, [], state_changes=[
            UnitStateChange("WETH", old, {**old, "paused": True}),
        ])
        funded.commit(pending)
        assert funded.get_unit_state("WETH") == {"decimals": 18, "paused": True}


class TestRounding:

    def test_usdc_rounds_down_to_six_places(self, funded):
        funded.commit(transfer(funded, "1.2345678", unit="USDC"))
        assert funded.get_balance("bob", "USDC") == Decimal("1.234567")

    def test_token_decimals_bounds(self):
        with pytest.raises(ValueError):
            token("BAD", "Bad", 19)


# ============================================================================
# SUPPLY
# ============================================================================

class TestSupply:

    def test_system_wallet_is_counterparty(self, funded):
        assert funded.circulating_supply("WETH") == Decimal("10")
        assert funded.total_supply("WETH") == Decimal("0")
        assert funded.get_balance(SYSTEM_WALLET, "WETH") == Decimal("-10")

    def test_double_entry_holds(self, funded):
        funded.commit(transfer(funded, "4"))
        report = funded.verify_double_entry({"WETH": Decimal("0"), "USDC": Decimal("0")})
        assert report["valid"]

    def test_unknown_expected_unit(self, funded):
        report = funded.verify_double_entry({"XYZ": Decimal("1")})
        assert not report["valid"]
        assert report["discrepancies"][0]["error"] == "unit not registered"

    def test_positions_drop_zero_balances(self, funded):
        funded.commit(transfer(funded, "10"))
        positions = funded.get_positions("WETH")
        assert "alice" not in positions
        assert positions["bob"] == Decimal("10")

    def test_unknown_unit(self, funded):
        with pytest.raises(UnitNotRegistered):
            funded.circulating_supply("XYZ")
        with pytest.raises(UnitNotRegistered):
            funded.get_balance("alice", "XYZ")

    def test_unknown_wallet(self, funded):
        with pytest.raises(WalletNotRegistered):
            funded.get_balance("nobody", "WETH")


# ============================================================================
# REGISTRATION
# ============================================================================

class TestRegistration:

    def test_register_wallet_twice(self, ledger):
        ledger.register_wallet("alice")
        with pytest.raises(ValueError):
            ledger.register_wallet("alice")

    def test_ensure_wallet_idempotent(self, ledger):
        assert ledger.ensure_wallet("alice") == "alice"
        assert ledger.ensure_wallet("alice") == "alice"
        assert ledger.is_registered("alice")

    def test_register_unit_twice(self, ledger):
        with pytest.raises(ValueError):
            ledger.register_unit(token("WETH", "Wrapped Ether"))

    def test_set_balance_requires_test_mode(self):
        production = Ledger("prod", T0, verbose=False)
        production.register_unit(token("WETH", "Wrapped Ether"))
        production.register_wallet("alice")
        with pytest.raises(LedgerError, match="test_mode"):
            production.set_balance("alice", "WETH", Decimal("1"))


# ============================================================================
# SNAPSHOTS AND TIME
# ============================================================================

class TestSnapshots:

    def test_restore_undoes_commits(self, funded):
        state = funded.snapshot()
        log_length = len(funded.transaction_log)

        funded.commit(transfer(funded, "3"))
        funded.register_wallet("carol")
        funded.restore(state)

        assert funded.get_balance("alice", "WETH") == Decimal("10")
        assert funded.get_balance("bob", "WETH") == Decimal("0")
        assert len(funded.transaction_log) == log_length
        assert not funded.is_registered("carol")
        assert funded.get_positions("WETH") == {"alice": Decimal("10"), SYSTEM_WALLET: Decimal("-10")}

    def test_restore_resets_sequence(self, funded):
        state = funded.snapshot()
        first = funded.commit(transfer(funded, "1"))
        funded.restore(state)
        again = funded.commit(transfer(funded, "1"))
        assert again.sequence_number == first.sequence_number

    def test_clone_is_independent(self, funded):
        copy = funded.clone()
        copy.commit(transfer(copy, "5"))
        assert funded.get_balance("bob", "WETH") == Decimal("0")
        assert copy.get_balance("bob", "WETH") == Decimal("5")


class TestTime:

    def test_advance(self, ledger):
        ledger.advance_time(T0 + timedelta(hours=1))
        assert ledger.current_time == T0 + timedelta(hours=1)

    def test_backwards_rejected(self, ledger):
        with pytest.raises(ValueError, match="backwards"):
            ledger.advance_time(T0 - timedelta(seconds=1))

    def test_same_time_allowed(self):
        ledger = new_ledger()
        ledger.advance_time(T0)
        assert ledger.current_time == T0

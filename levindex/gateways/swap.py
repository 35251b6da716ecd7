"""
swap.py - Swap Gateway boundary and simulated venues

The index core quotes and executes swaps only through the SwapGateway
protocol. Two venues implement it on the token ledger:

- ConstantProductRouter: Uniswap-V2 style x*y=k pairs with a 0.3% fee,
  multi-hop paths, reserves held in one ledger wallet per pair
- FixedPriceRouter: trades at oracle prices out of a funded inventory
  wallet; tests move the market with oracle.set_price()

Key Formulas (per hop, constant product):
    amount_in_with_fee = amount_in * (1 - fee)
    amount_out = amount_in_with_fee * reserve_out / (reserve_in + amount_in_with_fee)
    amount_in  = reserve_in * amount_out / ((reserve_out - amount_out) * (1 - fee))
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from ..core import (
    Move, OriginType, SYSTEM_WALLET, TransactionOrigin,
    SwapError, build_transaction,
)
from ..fixed_point import ZERO, ONE, to_decimal, to_native
from ..ledger import Ledger
from ..oracle import PriceOracle, require_price


UNISWAP_V2_FEE = Decimal("0.003")

Path = Sequence[str]


@runtime_checkable
class SwapGateway(Protocol):
    """
    Uniform interface to quote and execute swaps along an asset path.

    sender pays the input, to receives the output. deadline is compared
    with ledger time; None disables the check.
    """

    def quote_out(self, path: Path, amount_in: Decimal) -> Decimal:
        ...

    def quote_in(self, path: Path, amount_out: Decimal) -> Decimal:
        ...

    def swap_exact_in(
        self, path: Path, amount_in: Decimal, min_out: Decimal,
        sender: str, to: str, deadline: Optional[datetime] = None,
    ) -> Decimal:
        ...

    def swap_for_exact_out(
        self, path: Path, amount_out: Decimal, max_in: Decimal,
        sender: str, to: str, deadline: Optional[datetime] = None,
    ) -> Decimal:
        ...


def _validate_path(path: Path) -> Tuple[str, ...]:
    path = tuple(path)
    if len(path) < 2:
        raise SwapError(f"Swap path needs at least two assets, got {list(path)}")
    for a, b in zip(path, path[1:]):
        if a == b:
            raise SwapError(f"Swap path repeats {a} in consecutive hops")
    return path


class _LedgerVenue:
    """Shared settlement plumbing for ledger-backed venues."""

    venue_name = "venue"

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    def _check_deadline(self, deadline: Optional[datetime]) -> None:
        if deadline is not None and self.ledger.current_time > deadline:
            raise SwapError(f"Swap expired: deadline {deadline} < {self.ledger.current_time}")

    def _settle(self, moves: List[Move], path: Tuple[str, ...]) -> None:
        origin = TransactionOrigin(OriginType.GATEWAY, self.venue_name, path[-1], "SWAP")
        self.ledger.commit(build_transaction(self.ledger, moves, origin=origin))

    def snapshot(self):
        """Venue state lives entirely in ledger balances."""
        return None

    def restore(self, state) -> None:
        pass


# ============================================================================
# CONSTANT PRODUCT ROUTER
# ============================================================================

def calculate_amount_out(amount_in: Decimal, reserve_in: Decimal, reserve_out: Decimal,
                         fee: Decimal = UNISWAP_V2_FEE) -> Decimal:
    """Output of one constant-product hop (before native rounding)."""
    if amount_in <= 0:
        raise SwapError("Insufficient input amount")
    if reserve_in <= 0 or reserve_out <= 0:
        raise SwapError("Insufficient liquidity")
    amount_in_with_fee = amount_in * (ONE - fee)
    return amount_in_with_fee * reserve_out / (reserve_in + amount_in_with_fee)


def calculate_amount_in(amount_out: Decimal, reserve_in: Decimal, reserve_out: Decimal,
                        fee: Decimal = UNISWAP_V2_FEE) -> Decimal:
    """Input required by one constant-product hop (before native rounding)."""
    if amount_out <= 0:
        raise SwapError("Insufficient output amount")
    if reserve_in <= 0 or reserve_out <= amount_out:
        raise SwapError("Insufficient liquidity")
    return reserve_in * amount_out / ((reserve_out - amount_out) * (ONE - fee))


class ConstantProductRouter(_LedgerVenue):
    """
    Uniswap-V2 style router over constant-product pairs.

    Each pair keeps its reserves in a ledger wallet named
    "{name}:{token0}-{token1}" with tokens in sorted order.

    Example:
        router = ConstantProductRouter(ledger)
        router.add_liquidity("lp", "WETH", "DAI", Decimal("1000"), Decimal("1000000"))
        out = router.swap_exact_in(["DAI", "WETH"], Decimal("800"), Decimal("0.79"), "alice", "alice")
    """

    venue_name = "uniswap"

    def __init__(self, ledger: Ledger, fee: Decimal = UNISWAP_V2_FEE, name: str = "uniswap"):
        super().__init__(ledger)
        if not ZERO <= to_decimal(fee) < ONE:
            raise ValueError(f"fee must be in [0, 1), got {fee}")
        self.fee = to_decimal(fee)
        self.venue_name = name
        self.pairs: set = set()

    def pair_wallet(self, token_a: str, token_b: str) -> str:
        token0, token1 = sorted((token_a, token_b))
        return f"{self.venue_name}:{token0}-{token1}"

    def create_pair(self, token_a: str, token_b: str) -> str:
        if token_a == token_b:
            raise ValueError("Pair needs two different tokens")
        self.ledger.get_unit(token_a)
        self.ledger.get_unit(token_b)
        wallet = self.ledger.ensure_wallet(self.pair_wallet(token_a, token_b))
        self.pairs.add(wallet)
        return wallet

    def add_liquidity(self, provider: str, token_a: str, token_b: str,
                      amount_a: Decimal, amount_b: Decimal) -> str:
        """Deposit both sides of a pair from provider; creates the pair on first use."""
        wallet = self.pair_wallet(token_a, token_b)
        if wallet not in self.pairs:
            self.create_pair(token_a, token_b)
        moves = [
            Move(to_native(self.ledger, token_a, amount_a), token_a, provider, wallet, "uniswap:add_liquidity"),
            Move(to_native(self.ledger, token_b, amount_b), token_b, provider, wallet, "uniswap:add_liquidity"),
        ]
        origin = TransactionOrigin(OriginType.GATEWAY, self.venue_name, None, "ADD_LIQUIDITY")
        self.ledger.commit(build_transaction(self.ledger, moves, origin=origin))
        return wallet

    def get_reserves(self, token_in: str, token_out: str) -> Tuple[Decimal, Decimal]:
        wallet = self.pair_wallet(token_in, token_out)
        if wallet not in self.pairs:
            raise SwapError(f"No pair for {token_in}/{token_out}")
        return (
            self.ledger.get_balance(wallet, token_in),
            self.ledger.get_balance(wallet, token_out),
        )

    def spot_price(self, base: str, quote: str) -> Decimal:
        """Marginal price of base in quote, ignoring the fee."""
        reserve_base, reserve_quote = self.get_reserves(base, quote)
        return reserve_quote / reserve_base

    def get_amounts_out(self, path: Path, amount_in: Decimal) -> List[Decimal]:
        path = _validate_path(path)
        amounts = [to_native(self.ledger, path[0], to_decimal(amount_in))]
        for token_in, token_out in zip(path, path[1:]):
            reserve_in, reserve_out = self.get_reserves(token_in, token_out)
            out = calculate_amount_out(amounts[-1], reserve_in, reserve_out, self.fee)
            amounts.append(to_native(self.ledger, token_out, out))
        return amounts

    def get_amounts_in(self, path: Path, amount_out: Decimal) -> List[Decimal]:
        path = _validate_path(path)
        amounts = [to_native(self.ledger, path[-1], to_decimal(amount_out), round_up=True)]
        for token_in, token_out in reversed(list(zip(path, path[1:]))):
            reserve_in, reserve_out = self.get_reserves(token_in, token_out)
            needed = calculate_amount_in(amounts[0], reserve_in, reserve_out, self.fee)
            amounts.insert(0, to_native(self.ledger, token_in, needed, round_up=True))
        return amounts

    def quote_out(self, path: Path, amount_in: Decimal) -> Decimal:
        return self.get_amounts_out(path, amount_in)[-1]

    def quote_in(self, path: Path, amount_out: Decimal) -> Decimal:
        return self.get_amounts_in(path, amount_out)[0]

    def swap_exact_in(
        self, path: Path, amount_in: Decimal, min_out: Decimal,
        sender: str, to: str, deadline: Optional[datetime] = None,
    ) -> Decimal:
        """
        Swap an exact input along path.

        Raises:
            SwapError: If the output is below min_out or the deadline passed
        """
        self._check_deadline(deadline)
        path = _validate_path(path)
        amounts = self.get_amounts_out(path, amount_in)
        if amounts[-1] <= 0 or amounts[-1] < to_decimal(min_out):
            raise SwapError(f"Insufficient output amount: {amounts[-1]} < {min_out}")
        self._execute(path, amounts, sender, to)
        return amounts[-1]

    def swap_for_exact_out(
        self, path: Path, amount_out: Decimal, max_in: Decimal,
        sender: str, to: str, deadline: Optional[datetime] = None,
    ) -> Decimal:
        """
        Swap for an exact output along path.

        Raises:
            SwapError: If the required input exceeds max_in or the deadline passed
        """
        self._check_deadline(deadline)
        path = _validate_path(path)
        amounts = self.get_amounts_in(path, amount_out)
        if amounts[0] > to_decimal(max_in):
            raise SwapError(f"Excessive input amount: {amounts[0]} > {max_in}")
        self._execute(path, amounts, sender, to)
        return amounts[0]

    def _execute(self, path: Tuple[str, ...], amounts: List[Decimal], sender: str, to: str) -> None:
        self.ledger.ensure_wallet(to)
        hops = list(zip(path, path[1:]))
        moves = [Move(amounts[0], path[0], sender, self.pair_wallet(*hops[0]), "uniswap:swap_in")]
        for i, (token_in, token_out) in enumerate(hops):
            source = self.pair_wallet(token_in, token_out)
            dest = self.pair_wallet(*hops[i + 1]) if i + 1 < len(hops) else to
            moves.append(Move(amounts[i + 1], token_out, source, dest, "uniswap:swap_out"))
        self._settle(moves, path)

    def __repr__(self):
        return f"ConstantProductRouter({len(self.pairs)} pairs, fee={self.fee})"


# ============================================================================
# FIXED PRICE ROUTER
# ============================================================================

class FixedPriceRouter(_LedgerVenue):
    """
    Mock router that trades at oracle prices from its own inventory.

    The inventory wallet must be funded (fund()) with every asset it pays
    out. An optional fee is taken on each hop.
    """

    venue_name = "mock_router"

    def __init__(self, ledger: Ledger, oracle: PriceOracle, fee: Decimal = ZERO, wallet: str = "mock_router"):
        super().__init__(ledger)
        if not ZERO <= to_decimal(fee) < ONE:
            raise ValueError(f"fee must be in [0, 1), got {fee}")
        self.oracle = oracle
        self.fee = to_decimal(fee)
        self.wallet = ledger.ensure_wallet(wallet)
        self.venue_name = wallet

    def fund(self, asset: str, amount: Decimal) -> None:
        """Mint inventory into the router wallet."""
        move = Move(to_native(self.ledger, asset, amount), asset, SYSTEM_WALLET, self.wallet, "mock_router:fund")
        origin = TransactionOrigin(OriginType.SYSTEM, self.venue_name, asset, "FUND")
        self.ledger.commit(build_transaction(self.ledger, [move], origin=origin))

    def _rate(self, token_in: str, token_out: str) -> Decimal:
        now = self.ledger.current_time
        return require_price(self.oracle, token_in, now) / require_price(self.oracle, token_out, now)

    def quote_out(self, path: Path, amount_in: Decimal) -> Decimal:
        path = _validate_path(path)
        amount = to_native(self.ledger, path[0], to_decimal(amount_in))
        for token_in, token_out in zip(path, path[1:]):
            amount = to_native(self.ledger, token_out, amount * self._rate(token_in, token_out) * (ONE - self.fee))
        return amount

    def quote_in(self, path: Path, amount_out: Decimal) -> Decimal:
        path = _validate_path(path)
        amount = to_native(self.ledger, path[-1], to_decimal(amount_out), round_up=True)
        for token_in, token_out in reversed(list(zip(path, path[1:]))):
            needed = amount / (self._rate(token_in, token_out) * (ONE - self.fee))
            amount = to_native(self.ledger, token_in, needed, round_up=True)
        return amount

    def swap_exact_in(
        self, path: Path, amount_in: Decimal, min_out: Decimal,
        sender: str, to: str, deadline: Optional[datetime] = None,
    ) -> Decimal:
        self._check_deadline(deadline)
        path = _validate_path(path)
        amount_in = to_native(self.ledger, path[0], to_decimal(amount_in))
        out = self.quote_out(path, amount_in)
        if out <= 0 or out < to_decimal(min_out):
            raise SwapError(f"Insufficient output amount: {out} < {min_out}")
        self._execute(path, amount_in, out, sender, to)
        return out

    def swap_for_exact_out(
        self, path: Path, amount_out: Decimal, max_in: Decimal,
        sender: str, to: str, deadline: Optional[datetime] = None,
    ) -> Decimal:
        self._check_deadline(deadline)
        path = _validate_path(path)
        amount_out = to_native(self.ledger, path[-1], to_decimal(amount_out), round_up=True)
        needed = self.quote_in(path, amount_out)
        if needed > to_decimal(max_in):
            raise SwapError(f"Excessive input amount: {needed} > {max_in}")
        self._execute(path, needed, amount_out, sender, to)
        return needed

    def _execute(self, path: Tuple[str, ...], amount_in: Decimal, amount_out: Decimal,
                 sender: str, to: str) -> None:
        self.ledger.ensure_wallet(to)
        available = self.ledger.get_balance(self.wallet, path[-1])
        if amount_out > available:
            raise SwapError(f"Router inventory short: {amount_out} {path[-1]} > {available}")
        moves = [
            Move(amount_in, path[0], sender, self.wallet, "mock_router:swap_in"),
            Move(amount_out, path[-1], self.wallet, to, "mock_router:swap_out"),
        ]
        self._settle(moves, path)

    def __repr__(self):
        return f"FixedPriceRouter(fee={self.fee}, wallet={self.wallet})"

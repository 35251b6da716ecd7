"""
oracle.py - Asset price feeds for the simulated lending market and mock venue

Classes:
- PriceOracle: Protocol defining the price interface
- StaticPriceOracle: Settable, time-independent prices
- TimeSeriesPriceOracle: Time-varying prices for scripted price paths

Prices are quoted in a base currency (ETH on Aave v2 style markets, USD
elsewhere). The base currency always prices at 1.
"""

from bisect import bisect_right
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Set, Tuple, runtime_checkable

from .core import InvalidState


@runtime_checkable
class PriceOracle(Protocol):
    """
    Protocol for price sources.

    Implementations must provide get_price() and get_prices().
    """
    base_currency: str

    def get_price(self, asset: str, timestamp: datetime) -> Optional[Decimal]:
        """Get the price of a single asset at a specific timestamp."""
        ...

    def get_prices(self, assets: Set[str], timestamp: datetime) -> Dict[str, Decimal]:
        """Get prices for multiple assets at a specific timestamp."""
        ...


def require_price(oracle: PriceOracle, asset: str, timestamp: datetime) -> Decimal:
    """
    Look up a price and fail loudly when the feed has none.

    Raises:
        InvalidState: If the oracle has no positive price for the asset
    """
    price = oracle.get_price(asset, timestamp)
    if price is None or price <= 0:
        raise InvalidState(f"No price for {asset} at {timestamp}")
    return price


class StaticPriceOracle:
    """
    Price feed with static prices.

    Tests move the market by calling set_price(); every reader sees the new
    price immediately, regardless of timestamp.
    """

    def __init__(self, prices: Dict[str, Decimal], base_currency: str = "USD"):
        """
        Args:
            prices: Mapping from asset symbol to price in base currency
            base_currency: The currency in which prices are quoted
        """
        self.base_currency = base_currency
        self.prices = {k: Decimal(str(v)) for k, v in prices.items()}
        self.prices[base_currency] = Decimal("1")

    def get_price(self, asset: str, timestamp: datetime) -> Optional[Decimal]:
        return self.prices.get(asset)

    def get_prices(self, assets: Set[str], timestamp: datetime) -> Dict[str, Decimal]:
        return {a: self.prices[a] for a in assets if a in self.prices}

    def set_price(self, asset: str, price: Decimal) -> None:
        """Update the price of an asset."""
        if asset == self.base_currency:
            raise ValueError(f"Cannot reprice base currency {asset}")
        self.prices[asset] = Decimal(str(price))

    def set_prices(self, prices: Dict[str, Decimal]) -> None:
        for asset, price in prices.items():
            self.set_price(asset, price)

    def __repr__(self):
        return f"StaticPriceOracle({len(self.prices)} prices, base={self.base_currency})"


class TimeSeriesPriceOracle:
    """
    Price feed with time-varying prices.

    Returns the most recent observation at or before the requested timestamp,
    so advancing the ledger clock walks the market along a scripted path.
    """

    def __init__(
        self,
        price_paths: Optional[Dict[str, List[Tuple[datetime, Decimal]]]] = None,
        base_currency: str = "USD"
    ):
        """
        Args:
            price_paths: Optional mapping asset -> list of (timestamp, price)
            base_currency: Base currency for prices

        Example:
            oracle = TimeSeriesPriceOracle({
                'WETH': [(t0, Decimal("1000")), (t1, Decimal("1250"))],
            }, base_currency="DAI")
        """
        self.base_currency = base_currency
        self.price_history: Dict[str, List[Tuple[datetime, Decimal]]] = {}
        if price_paths:
            for asset, path in price_paths.items():
                if path:
                    self.price_history[asset] = sorted(path, key=lambda x: x[0])

    def add_price(self, asset: str, timestamp: datetime, price: Decimal) -> None:
        """Add a price observation for an asset at a specific time."""
        history = self.price_history.setdefault(asset, [])
        history.append((timestamp, Decimal(str(price))))
        history.sort(key=lambda x: x[0])

    def get_price(self, asset: str, timestamp: datetime) -> Optional[Decimal]:
        if asset == self.base_currency:
            return Decimal("1")
        history = self.price_history.get(asset)
        if not history:
            return None
        idx = bisect_right([ts for ts, _ in history], timestamp)
        if idx == 0:
            return None
        return history[idx - 1][1]

    def get_prices(self, assets: Set[str], timestamp: datetime) -> Dict[str, Decimal]:
        prices = {}
        for asset in assets:
            price = self.get_price(asset, timestamp)
            if price is not None:
                prices[asset] = price
        return prices

    def __repr__(self):
        return f"TimeSeriesPriceOracle({len(self.price_history)} assets, base={self.base_currency})"

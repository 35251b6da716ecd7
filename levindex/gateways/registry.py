"""
registry.py - Typed integration registry for swap venues

Operations name a venue with SwapVenue instead of a free-form string. The
registry resolves (index, module, venue) to a concrete SwapGateway: an
index-specific binding wins over the module-wide default.
"""

from __future__ import annotations
from enum import Enum
from typing import Dict, Optional, Tuple, Union

from ..core import InvalidState
from .swap import SwapGateway


class SwapVenue(Enum):
    """Named swap adapters."""
    UNISWAP = "UNISWAP"
    MOCK = "MOCK"


class IntegrationModule(Enum):
    """Modules that consume swap venues."""
    LEVERAGE = "LEVERAGE"
    ISSUANCE = "ISSUANCE"
    COMPOSITE = "COMPOSITE"


VenueKey = Union[SwapVenue, str]


def as_venue(venue: VenueKey) -> SwapVenue:
    """
    Coerce a venue name ("UNISWAP") to SwapVenue.

    Raises:
        InvalidState: If the name is not a known venue
    """
    if isinstance(venue, SwapVenue):
        return venue
    try:
        return SwapVenue(str(venue).upper())
    except ValueError:
        raise InvalidState(f"Unknown swap venue {venue!r}") from None


class IntegrationRegistry:
    """
    Lookup table from (module, venue[, index]) to a SwapGateway.

    Example:
        registry = IntegrationRegistry()
        registry.register(IntegrationModule.LEVERAGE, SwapVenue.UNISWAP, router)
        gateway = registry.resolve("LEV3X", IntegrationModule.LEVERAGE, "UNISWAP")
    """

    def __init__(self):
        self._defaults: Dict[Tuple[IntegrationModule, SwapVenue], SwapGateway] = {}
        self._overrides: Dict[Tuple[str, IntegrationModule, SwapVenue], SwapGateway] = {}

    def register(
        self,
        module: IntegrationModule,
        venue: VenueKey,
        gateway: SwapGateway,
        index: Optional[str] = None,
    ) -> None:
        """Bind a gateway for a module, optionally only for one index."""
        if not isinstance(gateway, SwapGateway):
            raise TypeError(f"{gateway!r} does not implement SwapGateway")
        venue = as_venue(venue)
        if index is None:
            self._defaults[(module, venue)] = gateway
        else:
            self._overrides[(index, module, venue)] = gateway

    def unregister(self, module: IntegrationModule, venue: VenueKey, index: Optional[str] = None) -> None:
        venue = as_venue(venue)
        if index is None:
            self._defaults.pop((module, venue), None)
        else:
            self._overrides.pop((index, module, venue), None)

    def resolve(self, index: str, module: IntegrationModule, venue: VenueKey) -> SwapGateway:
        """
        Find the gateway an index should use for a module and venue.

        Raises:
            InvalidState: If nothing is bound
        """
        venue = as_venue(venue)
        gateway = self._overrides.get((index, module, venue)) or self._defaults.get((module, venue))
        if gateway is None:
            raise InvalidState(f"No {venue.value} integration for {module.value} on {index}")
        return gateway

    def gateways(self):
        """All distinct registered gateways."""
        seen = []
        for gateway in list(self._defaults.values()) + list(self._overrides.values()):
            if all(gateway is not g for g in seen):
                seen.append(gateway)
        return seen

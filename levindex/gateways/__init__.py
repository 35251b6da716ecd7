"""
Gateways to the external collaborators of the index core: the lending market
and swap venues, plus the registry that binds venue names to implementations.
"""

from .lending import (
    LendingGateway,
    SimulatedLendingPool,
    ReserveConfig,
    ReserveState,
    AccountData,
    RATE_MODE_STABLE,
    RATE_MODE_VARIABLE,
    calculate_utilization,
    calculate_borrow_rate,
    calculate_supply_rate,
    calculate_index_growth,
    calculate_health_factor,
)
from .swap import (
    SwapGateway,
    ConstantProductRouter,
    FixedPriceRouter,
    UNISWAP_V2_FEE,
    calculate_amount_out,
    calculate_amount_in,
)
from .registry import (
    SwapVenue,
    IntegrationModule,
    IntegrationRegistry,
    as_venue,
)

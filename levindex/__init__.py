"""
levindex - Leveraged index token accounting core

Per-share collateral and debt accounting for index tokens backed by a lending
market position, with lever/delever, issuance/redemption, and streaming fees.

Usage:
    from levindex import (
        Ledger, token, Move, build_transaction, SYSTEM_WALLET,
        StaticPriceOracle, ReserveConfig, FixedPriceRouter, SwapVenue,
        LeveragedIndexProtocol, LeverageConfig, FeeConfig,
    )

    ledger = Ledger("main", datetime(2025, 1, 1), verbose=False)
    for symbol in ("WETH", "DAI"):
        ledger.register_unit(token(symbol, symbol))
    ledger.register_wallet("alice")

    # Fund wallets via SYSTEM_WALLET (proper issuance)
    ledger.commit(build_transaction(ledger, [
        Move(Decimal("10"), "WETH", SYSTEM_WALLET, "alice", "initial_balance")
    ]))

    oracle = StaticPriceOracle({"WETH": Decimal("1000"), "DAI": Decimal("1")})
    protocol = LeveragedIndexProtocol(ledger, oracle)
    protocol.add_reserve(ReserveConfig("WETH", ltv=0.8, liquidation_threshold=0.825))
    protocol.add_reserve(ReserveConfig("DAI", ltv=0.75, liquidation_threshold=0.8))
    router = FixedPriceRouter(ledger, oracle)
    router.fund("WETH", Decimal("1000"))
    protocol.register_venue(SwapVenue.MOCK, router)

    protocol.create_leveraged_index(
        "ETH2X", "ETH 2x", "manager",
        LeverageConfig("WETH", "DAI", swap_venue=SwapVenue.MOCK),
        FeeConfig("treasury", Decimal("0.02"), Decimal("0.05")),
    )
    protocol.issue("ETH2X", "alice", Decimal("1"), max_cost=Decimal("1"))
    protocol.lever("ETH2X", "manager", "DAI", "WETH", Decimal("800"), Decimal("0.79"))
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    empty_pending_transaction,
    Unit,
    UnitStateChange,
    ExecuteResult,
    LedgerError,
    InsufficientBalance,
    UnitNotRegistered,
    WalletNotRegistered,
    Unauthorized,
    BorrowNotEnabled,
    SlippageExceeded,
    SlippageBelowMinimum,
    InvalidState,
    GatewayError,
    LendingError,
    SwapError,
    token,
    SYSTEM_WALLET,
    UNIT_TYPE_TOKEN,
    UNIT_TYPE_INDEX,
    SECONDS_PER_YEAR,
)

# Ledger
from .ledger import Ledger, LedgerSnapshot

# Fixed-point math
from .fixed_point import (
    WAD_PLACES,
    to_wad,
    to_wad_ceil,
    precise_mul,
    precise_div,
    to_native,
)

# Prices
from .oracle import (
    PriceOracle,
    StaticPriceOracle,
    TimeSeriesPriceOracle,
)

# Gateways
from .gateways import (
    LendingGateway,
    SimulatedLendingPool,
    ReserveConfig,
    AccountData,
    RATE_MODE_VARIABLE,
    SwapGateway,
    ConstantProductRouter,
    FixedPriceRouter,
    SwapVenue,
    IntegrationModule,
    IntegrationRegistry,
)

# Atomic scope
from .atomic import TransactionManager

# Position ledger
from .positions import (
    IndexState,
    MODULE_LEVERAGE,
    create_index,
    load_index,
    get_total_supply,
    get_default_unit,
    get_external_unit,
    compute_sync,
)

# Engines
from .fees import FeeConfig, FeeAccrual, FeeAccrualEngine
from .leverage import LeverageConfig, LeverResult, DeleverResult, LeverageController
from .issuance import (
    IssueResult,
    RedeemResult,
    IssuanceEngine,
    MAX_DELEVER_ITERATIONS,
    DEBT_EPSILON,
)
from .composite import (
    REDEEM_ALL,
    CompositeIssueResult,
    CompositeRedeemResult,
    CompositeIssuanceEngine,
    create_composite_index,
)

# Facade
from .protocol import LeveragedIndexProtocol

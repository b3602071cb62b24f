"""
Simulated crypto portfolio tracker.

This package values crypto holdings against CoinGecko prices and keeps a
simulated cash account with an append-only trade ledger.

Modules:
    valuation: Cost basis, position valuation and portfolio aggregation
    equity_series: Daily equity curve construction
    ledger: Trade record shapes
    coingecko_api: API client for CoinGecko endpoints
    portfolio_store: DuckDB persistence layer
    tracker: Orchestration of trading and reporting
"""

try:
    from .valuation import (
        Position, PriceQuote, PriceSnapshot, PositionValuation, PortfolioValuation,
        InvalidInputError, MissingPriceDataError,
        accumulate, reduce_position, realized_profit, valuate, valuate_positions, aggregate
    )
    from .equity_series import EquityPoint, build_series, build_snapshot_series
    from .ledger import TransactionRecord
    from .coingecko_api import CoinGeckoAPI
    from .portfolio_store import PortfolioStore
    from .tracker import PortfolioTracker, run_summary
except ImportError:
    # When running tests directly from source directory
    pass

__all__ = [
    "Position",
    "PriceQuote",
    "PriceSnapshot",
    "PositionValuation",
    "PortfolioValuation",
    "InvalidInputError",
    "MissingPriceDataError",
    "accumulate",
    "reduce_position",
    "realized_profit",
    "valuate",
    "valuate_positions",
    "aggregate",
    "EquityPoint",
    "build_series",
    "build_snapshot_series",
    "TransactionRecord",
    "CoinGeckoAPI",
    "PortfolioStore",
    "PortfolioTracker",
    "run_summary"
]

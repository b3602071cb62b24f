"""
Portfolio tracker orchestration.

This module wires the CoinGecko price client, the DuckDB portfolio store and
the valuation engine together:
- Asset search by name or symbol
- Buying and selling at the current market price
- Portfolio summaries (valuation, P&L, 24h change, cash balance)
- Equity curves over a window of days
"""

import os
import logging
from dataclasses import asdict
from typing import Optional, List, Dict, Any, Iterable

try:
    from .coingecko_api import CoinGeckoAPI
    from .portfolio_store import PortfolioStore, DEFAULT_STARTING_BALANCE
    from .valuation import (
        PriceSnapshot, MissingPriceDataError, InvalidInputError,
        aggregate, valuate_positions
    )
    from .equity_series import EquityPoint, build_series, build_snapshot_series
except ImportError:
    from coingecko_api import CoinGeckoAPI
    from portfolio_store import PortfolioStore, DEFAULT_STARTING_BALANCE
    from valuation import (
        PriceSnapshot, MissingPriceDataError, InvalidInputError,
        aggregate, valuate_positions
    )
    from equity_series import EquityPoint, build_series, build_snapshot_series

logger = logging.getLogger(__name__)


class PortfolioTracker:
    """
    Orchestrates trading and reporting for simulated crypto portfolios.

    Prices are fetched on demand; summaries and equity curves are recomputed
    from the stored positions on every call.
    """

    DEFAULT_CHART_DAYS = 7

    def __init__(
        self,
        db_path: str = "portfolio.duckdb",
        secrets: Optional[Dict] = None
    ):
        """
        Initialize the tracker.

        :param db_path: Path to DuckDB database file
        :param secrets: API configuration dict (base_url, api_key, parameters)
        """
        self.store = PortfolioStore(db_path)
        self.secrets = secrets or self._default_secrets()

    def _default_secrets(self) -> Dict:
        """Return default API configuration."""
        return {
            "base_url": "https://api.coingecko.com/api/v3/",
            "api_key": os.environ.get("COINGECKO_API_KEY"),
            "timeout_seconds": 10.0,
            "parameters": {
                "simpleprice": {
                    "vs_currency": "usd",
                    "include_24hr_change": "true"
                },
                "marketchart": {
                    "vs_currency": "usd",
                    "interval": "daily",
                    "default_days": self.DEFAULT_CHART_DAYS
                }
            }
        }

    # =========================================================================
    # Market data
    # =========================================================================

    def get_price_snapshot(self, asset_ids: Iterable[str]) -> PriceSnapshot:
        """
        Fetch current prices and 24h change for the given assets.

        Unknown assets are absent from the snapshot. A failed request
        (error status, bad JSON, connection error or timeout) is logged and
        yields an empty snapshot.

        :param asset_ids: CoinGecko asset identifiers
        :return: PriceSnapshot (possibly partial)
        """
        asset_ids = sorted(set(asset_ids))
        if not asset_ids:
            return PriceSnapshot()

        state = {
            "api": CoinGeckoAPI.API_KEY_SIMPLE_PRICE,
            "asset_ids": asset_ids
        }

        api = CoinGeckoAPI(state, self.secrets)
        endpoint = api.build_api()
        logger.info(f"Fetching prices for {len(asset_ids)} assets")

        response = api.make_request(endpoint)
        parsed = api.build_response(response)

        if not parsed or parsed.get("type") != CoinGeckoAPI.API_KEY_SIMPLE_PRICE:
            logger.error(f"No prices available for {asset_ids}")
            return PriceSnapshot()

        snapshot = PriceSnapshot.from_dict(parsed.get("quotes", {}))

        missing = set(asset_ids) - set(snapshot.asset_ids())
        if missing:
            logger.warning(f"Price provider returned no quote for {sorted(missing)}")

        return snapshot

    def get_price_history(self, asset_id: str, days: int) -> List[Dict[str, Any]]:
        """
        Fetch daily prices for one asset over the last `days` days.

        :return: [{"date": "YYYY-MM-DD", "price": float}, ...], or [] on failure
        """
        state = {
            "api": CoinGeckoAPI.API_KEY_MARKET_CHART,
            "asset_ids": [asset_id],
            "days": days
        }

        api = CoinGeckoAPI(state, self.secrets)
        endpoint = api.build_api()
        logger.info(f"Fetching {days}d market chart for {asset_id}")

        response = api.make_request(endpoint)
        parsed = api.build_response(response)

        if not parsed or parsed.get("type") != CoinGeckoAPI.API_KEY_MARKET_CHART:
            logger.error(f"Invalid market chart response for {asset_id}")
            return []

        history = parsed.get("history", [])
        if not history:
            logger.warning(f"No price history returned for {asset_id}")
        return history

    def search_assets(self, query: str) -> List[Dict[str, Any]]:
        """
        Look up CoinGecko asset ids by name or symbol.

        :param query: Free-text search, e.g. "bit" or "eth"
        :return: [{"id", "name", "symbol", "thumb", "market_cap_rank"}, ...],
                 or [] for a blank query or a failed request
        """
        query = (query or "").strip()
        if not query:
            return []

        state = {
            "api": CoinGeckoAPI.API_KEY_SEARCH,
            "query": query
        }

        api = CoinGeckoAPI(state, self.secrets)
        endpoint = api.build_api()
        logger.info(f"Searching assets for {query!r}")

        response = api.make_request(endpoint)
        parsed = api.build_response(response)

        if not parsed or parsed.get("type") != CoinGeckoAPI.API_KEY_SEARCH:
            logger.error(f"Asset search failed for {query!r}")
            return []

        return parsed.get("coins", [])

    def _require_quote(self, asset_id: str):
        quote = self.get_price_snapshot([asset_id]).get(asset_id)
        if quote is None:
            raise MissingPriceDataError([asset_id])
        return quote

    # =========================================================================
    # Trading
    # =========================================================================

    def open_account(self, owner_id: str, starting_balance: float = DEFAULT_STARTING_BALANCE) -> bool:
        return self.store.create_account(owner_id, starting_balance)

    def buy(self, owner_id: str, asset_id: str, usd_amount: float) -> str:
        """
        Spend usd_amount on asset_id at its current price.

        :return: trade_id

        :raises MissingPriceDataError: If the asset has no current price
        :raises InvalidInputError: If usd_amount <= 0 or the price is zero
        :raises InsufficientFundsError: If usd_amount exceeds the balance
        """
        if usd_amount <= 0:
            raise InvalidInputError(f"usd_amount must be positive, got {usd_amount}")

        quote = self._require_quote(asset_id)
        if quote.price == 0:
            raise InvalidInputError(f"Cannot buy {asset_id} at a price of zero")

        quantity = usd_amount / quote.price
        return self.store.record_buy(owner_id, asset_id, quantity, usd_amount)

    def sell(self, owner_id: str, asset_id: str, quantity: Optional[float] = None) -> str:
        """
        Sell quantity units (default: the whole position) at the current price.

        :return: trade_id

        :raises InvalidInputError: If there is no position or too little to sell
        :raises MissingPriceDataError: If the asset has no current price
        """
        position = self.store.get_position(owner_id, asset_id)
        if position is None:
            raise InvalidInputError(f"No position exists for asset_id '{asset_id}'")

        quote = self._require_quote(asset_id)
        sell_quantity = position.quantity if quantity is None else quantity
        return self.store.record_sell(owner_id, asset_id, sell_quantity, quote.price)

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_summary(self, owner_id: str) -> Dict[str, Any]:
        """
        Recompute an owner's portfolio summary from current prices.

        :return: Summary dictionary

        Return format:
            {
                "owner_id": "alice",
                "cash_balance_usd": 55000.0,
                "valuation": {...PortfolioValuation fields...},
                "positions": [
                    {"asset_id": "bitcoin", "quantity": 1.0, "average_cost_basis": 45000.0,
                     "current_price": 60000.0, "current_value": 60000.0,
                     "unrealized_profit": 15000.0, "unrealized_profit_percent": 33.3},
                    ...
                ],
                "realized_pnl_usd": 0.0,
                "total_equity_usd": 115000.0
            }
        """
        balance = self.store.get_balance(owner_id)
        positions = self.store.get_positions(owner_id)
        prices = self.get_price_snapshot(p.asset_id for p in positions)

        valuation = aggregate(positions, prices)
        per_position = valuate_positions(positions, prices)

        rows = []
        for position in positions:
            row = asdict(position)
            quote = prices.get(position.asset_id)
            row["current_price"] = quote.price if quote else None
            row["change_24h_percent"] = quote.change_24h_percent if quote else None
            position_valuation = per_position[position.asset_id]
            if position_valuation is None:
                row.update(current_value=None, unrealized_profit=None, unrealized_profit_percent=None)
            else:
                row.update(asdict(position_valuation))
            rows.append(row)

        return {
            "owner_id": owner_id,
            "cash_balance_usd": balance,
            "valuation": asdict(valuation),
            "positions": rows,
            "realized_pnl_usd": self.store.get_realized_pnl_summary(owner_id)["total_realized_pnl_usd"],
            "total_equity_usd": balance + valuation.total_current_value
        }

    def get_equity_curve(self, owner_id: str, days: int = DEFAULT_CHART_DAYS) -> List[EquityPoint]:
        """
        Daily value of the owner's current holdings over the last `days` days.

        Windows of one day or less have no daily history; they produce a
        single point valued at current prices.
        """
        if days < 1:
            raise InvalidInputError(f"days must be at least 1, got {days}")

        positions = self.store.get_positions(owner_id)
        if not positions:
            return []

        if days <= 1:
            prices = self.get_price_snapshot(p.asset_id for p in positions)
            return build_snapshot_series(positions, prices)

        histories = {
            position.asset_id: self.get_price_history(position.asset_id, days)
            for position in positions
        }
        return build_series(positions, histories)

    def get_transactions(self, owner_id: str, page: int = 1, page_size: int = 10) -> Dict[str, Any]:
        return {
            "total": self.store.get_trade_count(owner_id),
            "page": page,
            "page_size": page_size,
            "trades": self.store.get_trade_history(owner_id, page=page, page_size=page_size)
        }

    def close(self):
        """Close database connection."""
        self.store.close()


def run_summary(
    owner_id: str,
    db_path: str = "portfolio.duckdb",
    secrets: Optional[Dict] = None
) -> Dict[str, Any]:
    """
    Convenience function to compute one owner's summary.

    :param owner_id: Account owner
    :param db_path: Path to DuckDB database
    :param secrets: Optional API configuration
    :return: Portfolio summary
    """
    tracker = PortfolioTracker(db_path=db_path, secrets=secrets)
    try:
        return tracker.get_summary(owner_id)
    finally:
        tracker.close()


if __name__ == "__main__":
    import sys

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    owner = sys.argv[1] if len(sys.argv) > 1 else "demo"

    tracker = PortfolioTracker()
    try:
        tracker.open_account(owner)
        summary = tracker.get_summary(owner)
    finally:
        tracker.close()

    valuation = summary["valuation"]
    print(f"Portfolio summary for {owner}")
    print(f"  Cash balance: ${summary['cash_balance_usd']:.2f}")
    print(f"  Holdings value: ${valuation['total_current_value']:.2f}")
    print(f"  Unrealized P&L: ${valuation['total_unrealized_profit']:.2f}")
    print(f"  24h change: ${valuation['total_24h_change_usd']:.2f} "
          f"({valuation['total_24h_change_percent']:.2f}%)")
    if valuation["missing_price_asset_ids"]:
        print(f"  Unpriced: {', '.join(valuation['missing_price_asset_ids'])}")

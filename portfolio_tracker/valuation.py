"""
Portfolio valuation engine.

Pure, synchronous transforms that turn positions and a price snapshot into
the numbers shown to the user:

    - accumulate()        → weighted-average cost basis on each buy
    - reduce_position()   → quantity decrement on each sell
    - realized_profit()   → profit locked in by a sell
    - valuate()           → current value and unrealized P&L of one position
    - aggregate()         → portfolio totals, including 24h change

Percentages that would divide by zero are returned as None rather than
inf/NaN. Nothing in this module performs I/O or keeps state between calls.
"""

import logging
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Optional, List, Dict, Any, Mapping, Iterable, Tuple

from dacite import Config, DaciteError, from_dict

logger = logging.getLogger(__name__)


# Remaining quantity below this is treated as a fully closed position
DUST_QUANTITY = 1e-12

# JSON prices arrive as int or float
_QUOTE_CONFIG = Config(cast=[float])


# =============================================================================
# Errors
# =============================================================================

class InvalidInputError(ValueError):
    """Raised for non-positive quantities, negative prices or malformed records."""


class MissingPriceDataError(LookupError):
    """Raised when a caller requires prices for assets absent from a snapshot."""

    def __init__(self, asset_ids: Iterable[str]):
        self.asset_ids = tuple(sorted(asset_ids))
        super().__init__(f"No price data for: {', '.join(self.asset_ids)}")


def require_finite(name: str, value: float):
    if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
        raise InvalidInputError(f"{name} must be a finite number, got {value!r}")


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class Position:
    """
    One held asset.

    Attributes:
        asset_id: CoinGecko asset identifier (e.g., "bitcoin")
        quantity: Total units held
        average_cost_basis: Weighted average USD paid per unit
    """
    asset_id: str
    quantity: float
    average_cost_basis: float

    def __post_init__(self):
        if not isinstance(self.asset_id, str) or not self.asset_id:
            raise InvalidInputError(f"asset_id must be a non-empty string, got {self.asset_id!r}")
        require_finite("quantity", self.quantity)
        require_finite("average_cost_basis", self.average_cost_basis)
        if self.quantity < 0:
            raise InvalidInputError(f"quantity must be non-negative, got {self.quantity}")
        if self.average_cost_basis < 0:
            raise InvalidInputError(
                f"average_cost_basis must be non-negative, got {self.average_cost_basis}"
            )

    @property
    def is_closed(self) -> bool:
        return self.quantity == 0

    @property
    def invested_usd(self) -> float:
        return self.quantity * self.average_cost_basis


@dataclass(frozen=True)
class PriceQuote:
    """Current USD price and published 24h percent change for one asset."""
    price: float
    change_24h_percent: float = 0.0

    def __post_init__(self):
        require_finite("price", self.price)
        require_finite("change_24h_percent", self.change_24h_percent)
        if self.price < 0:
            raise InvalidInputError(f"price must be non-negative, got {self.price}")


@dataclass(frozen=True)
class PriceSnapshot:
    """
    Read-only mapping of asset_id → PriceQuote valid for one aggregation pass.

    A snapshot is never mutated; fetch a new one to refresh prices.
    """
    quotes: Mapping[str, PriceQuote] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "quotes", MappingProxyType(dict(self.quotes)))

    @classmethod
    def from_dict(cls, data: Dict[str, Dict[str, Any]]) -> "PriceSnapshot":
        """
        Build a snapshot from plain dicts, e.g.
        {"bitcoin": {"price": 60000.0, "change_24h_percent": 1.5}}.

        :raises InvalidInputError: If a quote is malformed
        """
        quotes = {}
        for asset_id, quote in data.items():
            try:
                quotes[asset_id] = from_dict(data_class=PriceQuote, data=quote, config=_QUOTE_CONFIG)
            except InvalidInputError:
                raise
            except (DaciteError, TypeError, ValueError) as e:
                raise InvalidInputError(f"Malformed quote for '{asset_id}': {e}") from e
        return cls(quotes)

    def get(self, asset_id: str) -> Optional[PriceQuote]:
        return self.quotes.get(asset_id)

    def __contains__(self, asset_id: str) -> bool:
        return asset_id in self.quotes

    def __len__(self) -> int:
        return len(self.quotes)

    def asset_ids(self) -> List[str]:
        return list(self.quotes.keys())


@dataclass(frozen=True)
class PositionValuation:
    current_value: float
    unrealized_profit: float
    # None when the cost basis is zero
    unrealized_profit_percent: Optional[float]


@dataclass(frozen=True)
class PortfolioValuation:
    """
    Portfolio totals for one price snapshot.

    Assets without a quote are valued at zero and listed in
    missing_price_asset_ids so callers can tell "unpriced" from "worth zero".
    """
    total_invested: float
    total_current_value: float
    total_unrealized_profit: float
    total_unrealized_profit_percent: Optional[float]
    total_24h_change_usd: float
    total_24h_change_percent: float
    missing_price_asset_ids: Tuple[str, ...] = ()

    @property
    def is_complete(self) -> bool:
        return not self.missing_price_asset_ids

    def require_complete_prices(self) -> "PortfolioValuation":
        """
        Return self if every asset was priced.

        :raises MissingPriceDataError: If any asset had no quote
        """
        if self.missing_price_asset_ids:
            raise MissingPriceDataError(self.missing_price_asset_ids)
        return self


# =============================================================================
# Cost basis
# =============================================================================

def accumulate(
    position: Optional[Position],
    added_quantity: float,
    added_usd_spent: float,
    asset_id: Optional[str] = None
) -> Position:
    """
    Apply a buy to a position and re-average its cost basis.

    Average Cost Basis Calculation:
        new_quantity = old_qty + added_qty
        new_avg_cost = (old_avg_cost * old_qty + added_usd) / new_quantity

    :param position: Latest known position, or None for a first buy
    :param added_quantity: Units bought (must be > 0)
    :param added_usd_spent: USD paid for those units (must be >= 0)
    :param asset_id: Required when position is None

    :return: A new Position; the input is not modified

    :raises InvalidInputError: If quantity <= 0, spend < 0, or asset_id is missing
    """
    require_finite("added_quantity", added_quantity)
    require_finite("added_usd_spent", added_usd_spent)
    if added_quantity <= 0:
        raise InvalidInputError(f"added_quantity must be positive, got {added_quantity}")
    if added_usd_spent < 0:
        raise InvalidInputError(f"added_usd_spent must be non-negative, got {added_usd_spent}")

    if position is None:
        if asset_id is None:
            raise InvalidInputError("asset_id is required when opening a new position")
        return Position(
            asset_id=asset_id,
            quantity=added_quantity,
            average_cost_basis=added_usd_spent / added_quantity
        )

    if asset_id is not None and asset_id != position.asset_id:
        raise InvalidInputError(
            f"Cannot add '{asset_id}' to a position in '{position.asset_id}'"
        )

    new_quantity = position.quantity + added_quantity
    new_average = (position.average_cost_basis * position.quantity + added_usd_spent) / new_quantity
    return Position(
        asset_id=position.asset_id,
        quantity=new_quantity,
        average_cost_basis=new_average
    )


def reduce_position(position: Position, sold_quantity: float) -> Position:
    """
    Apply a sell: decrement quantity, keep the cost basis.

    The returned position has quantity 0 (is_closed) when everything was sold.

    :raises InvalidInputError: If sold_quantity <= 0 or exceeds the held quantity
    """
    require_finite("sold_quantity", sold_quantity)
    if sold_quantity <= 0:
        raise InvalidInputError(f"sold_quantity must be positive, got {sold_quantity}")
    if sold_quantity > position.quantity + DUST_QUANTITY:
        raise InvalidInputError(
            f"Insufficient quantity: trying to sell {sold_quantity} but only "
            f"{position.quantity} available for '{position.asset_id}'"
        )

    remaining = position.quantity - sold_quantity
    if remaining < DUST_QUANTITY:
        remaining = 0.0

    return Position(
        asset_id=position.asset_id,
        quantity=remaining,
        average_cost_basis=position.average_cost_basis
    )


def realized_profit(position: Position, sale_price: float, sold_quantity: float) -> float:
    """Profit locked in by selling sold_quantity at sale_price (average cost method)."""
    require_finite("sale_price", sale_price)
    require_finite("sold_quantity", sold_quantity)
    if sale_price < 0:
        raise InvalidInputError(f"sale_price must be non-negative, got {sale_price}")
    return (sale_price - position.average_cost_basis) * sold_quantity


# =============================================================================
# Valuation
# =============================================================================

def valuate(position: Position, current_price: float) -> PositionValuation:
    """
    Current value and unrealized P&L of one position.

    :param position: Position to value
    :param current_price: Current USD price per unit (must be >= 0)

    :return: PositionValuation; unrealized_profit_percent is None when the
             position's cost basis is zero

    :raises InvalidInputError: If current_price is negative or not finite

    Example:
        valuate(Position("bitcoin", 2.0, 45000.0), 60000.0)
        # PositionValuation(current_value=120000.0, unrealized_profit=30000.0,
        #                   unrealized_profit_percent=33.33...)
    """
    require_finite("current_price", current_price)
    if current_price < 0:
        raise InvalidInputError(f"current_price must be non-negative, got {current_price}")

    current_value = position.quantity * current_price
    unrealized_profit = current_value - position.invested_usd

    if position.average_cost_basis == 0:
        profit_percent = None
    else:
        profit_percent = (
            (current_price - position.average_cost_basis) / position.average_cost_basis * 100
        )

    return PositionValuation(
        current_value=current_value,
        unrealized_profit=unrealized_profit,
        unrealized_profit_percent=profit_percent
    )


def valuate_positions(
    positions: Iterable[Position],
    prices: PriceSnapshot
) -> Dict[str, Optional[PositionValuation]]:
    """Per-position valuations keyed by asset_id; None for unpriced assets."""
    return {
        position.asset_id: (
            valuate(position, prices.get(position.asset_id).price)
            if position.asset_id in prices else None
        )
        for position in positions
    }


def aggregate(positions: Iterable[Position], prices: PriceSnapshot) -> PortfolioValuation:
    """
    Fold position valuations into portfolio totals.

    Each asset's 24h USD swing applies its published 24h percent change to
    its current value (not its cost basis). Assets missing from the snapshot
    count as price 0 and are reported in missing_price_asset_ids.

    :param positions: Positions of one portfolio (order irrelevant)
    :param prices: Snapshot for this pass

    :return: PortfolioValuation
    """
    total_invested = 0.0
    total_current_value = 0.0
    total_24h_change_usd = 0.0
    missing = set()

    for position in positions:
        total_invested += position.invested_usd

        quote = prices.get(position.asset_id)
        if quote is None:
            missing.add(position.asset_id)
            continue

        current_value = valuate(position, quote.price).current_value
        total_current_value += current_value
        total_24h_change_usd += current_value * (quote.change_24h_percent / 100)

    if missing:
        logger.warning(f"Valued {len(missing)} unpriced assets at zero: {sorted(missing)}")

    total_unrealized_profit = total_current_value - total_invested

    if total_invested == 0:
        profit_percent = None
    else:
        profit_percent = total_unrealized_profit / total_invested * 100

    if total_current_value == 0:
        change_percent = 0.0
    else:
        change_percent = total_24h_change_usd / total_current_value * 100

    return PortfolioValuation(
        total_invested=total_invested,
        total_current_value=total_current_value,
        total_unrealized_profit=total_unrealized_profit,
        total_unrealized_profit_percent=profit_percent,
        total_24h_change_usd=total_24h_change_usd,
        total_24h_change_percent=change_percent,
        missing_price_asset_ids=tuple(sorted(missing))
    )

"""
Equity curve construction.

Merges per-asset daily price histories into one chronological series of
total portfolio value, one point per calendar day.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, List, Dict, Any, Mapping, Sequence, Iterable

import pandas as pd

try:
    from .valuation import Position, PriceSnapshot, InvalidInputError, require_finite
except ImportError:
    from valuation import Position, PriceSnapshot, InvalidInputError, require_finite

logger = logging.getLogger(__name__)

DATE_FORMAT = "%Y-%m-%d"


@dataclass(frozen=True)
class EquityPoint:
    """Total portfolio value on one calendar day (date is "YYYY-MM-DD")."""
    date: str
    total_value: float


def normalize_date(value: Any) -> str:
    """
    Reduce a date-like value to its "YYYY-MM-DD" calendar-day key.

    Accepts ISO strings (with or without a time component), date, datetime
    and pandas Timestamp.

    :raises InvalidInputError: If the value cannot be read as a date
    """
    if isinstance(value, (datetime, pd.Timestamp)):
        # pd.NaT is a datetime too
        try:
            return value.strftime(DATE_FORMAT)
        except ValueError as e:
            raise InvalidInputError(f"Unreadable date {value!r}") from e
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        try:
            return pd.Timestamp(value).strftime(DATE_FORMAT)
        except ValueError as e:
            raise InvalidInputError(f"Unreadable date {value!r}") from e
    raise InvalidInputError(f"Unsupported date value {value!r}")


def _history_point(asset_id: str, point: Mapping[str, Any]) -> Dict[str, Any]:
    day = normalize_date(point["date"])
    price = point.get("price")
    require_finite(f"{asset_id} price on {day}", price)
    if price < 0:
        raise InvalidInputError(f"{asset_id} price on {day} must be >= 0, got {price}")
    return {"date": day, "price": price}


def _asset_frame(position: Position, history: Sequence[Mapping[str, Any]]) -> pd.DataFrame:
    frame = pd.DataFrame(
        [_history_point(position.asset_id, point) for point in history],
        columns=["date", "price"]
    )
    # Several points on one day (e.g. midnight plus "now"): keep the latest
    frame = frame.drop_duplicates(subset="date", keep="last")
    frame["value"] = frame["price"].astype(float) * position.quantity
    return frame[["date", "value"]]


def build_series(
    positions: Iterable[Position],
    histories: Mapping[str, Sequence[Mapping[str, Any]]]
) -> List[EquityPoint]:
    """
    Build the equity curve from per-asset price histories.

    Values of assets sharing a calendar day are summed. An asset with no
    entry for a day contributes nothing to that day.

    :param positions: Held positions; quantity is applied to every historical price
    :param histories: asset_id → sequence of {"date": ..., "price": ...}

    :return: EquityPoints sorted ascending by date
    :raises InvalidInputError: On an unreadable date or a missing, non-finite or negative price

    Example:
        build_series(
            [Position("bitcoin", 2.0, 40000.0)],
            {"bitcoin": [{"date": "2024-01-01", "price": 42000.0}]}
        )
        # [EquityPoint(date="2024-01-01", total_value=84000.0)]
    """
    frames = []
    for position in positions:
        history = histories.get(position.asset_id)
        if not history:
            logger.debug(f"No history for {position.asset_id}, omitted from series")
            continue
        frames.append(_asset_frame(position, history))

    if not frames:
        return []

    merged = pd.concat(frames, ignore_index=True).groupby("date", sort=True)["value"].sum()

    return [
        EquityPoint(date=day, total_value=float(value))
        for day, value in merged.items()
    ]


def build_snapshot_series(
    positions: Iterable[Position],
    prices: PriceSnapshot,
    today: Optional[date] = None
) -> List[EquityPoint]:
    """
    Single-point series for windows too short to have daily history.

    Values every priced position at its current price and dates the point today.
    Unpriced positions are left out of the sum and logged.
    """
    day = normalize_date(today or date.today())
    total = 0.0
    missing = []
    for position in positions:
        quote = prices.get(position.asset_id)
        if quote is None:
            missing.append(position.asset_id)
            continue
        total += position.quantity * quote.price

    if missing:
        logger.warning(f"Left {len(missing)} unpriced assets out of {day} value: {sorted(missing)}")

    return [EquityPoint(date=day, total_value=total)]


def series_to_dicts(series: Sequence[EquityPoint]) -> List[Dict[str, Any]]:
    """Chart-ready rows: [{"date": "2024-01-01", "value": 84000.0}, ...]"""
    return [{"date": point.date, "value": point.total_value} for point in series]

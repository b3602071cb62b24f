"""
Transaction records for the append-only trade ledger.

A buy or a sell is always a new TransactionRecord; records are never edited
after creation.
"""

import uuid
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, Dict, Any

try:
    from .valuation import Position, InvalidInputError, realized_profit, require_finite
except ImportError:
    from valuation import Position, InvalidInputError, realized_profit, require_finite


KIND_BUY = "buy"
KIND_SELL = "sell"
TRADE_KINDS = (KIND_BUY, KIND_SELL)


@dataclass(frozen=True)
class TransactionRecord:
    """
    Represents a single trade execution (buy or sell).

    Attributes:
        trade_id: Unique identifier (UUID)
        owner_id: Owner of the portfolio the trade belongs to
        asset_id: CoinGecko asset identifier
        kind: "buy" or "sell"
        quantity: Units traded
        unit_price: Execution price per unit in USD
        usd_amount: USD spent (buy) or received (sell)
        executed_at: When the trade was executed
        realized_pnl_usd: Realized P&L (only populated for sells)
    """
    trade_id: str
    owner_id: str
    asset_id: str
    kind: str
    quantity: float
    unit_price: float
    usd_amount: float
    executed_at: datetime
    realized_pnl_usd: Optional[float] = None

    def __post_init__(self):
        if self.kind not in TRADE_KINDS:
            raise InvalidInputError(f"kind must be one of {TRADE_KINDS}, got {self.kind!r}")
        if not self.owner_id or not self.asset_id:
            raise InvalidInputError("owner_id and asset_id are required")
        require_finite("quantity", self.quantity)
        require_finite("unit_price", self.unit_price)
        require_finite("usd_amount", self.usd_amount)
        if self.quantity <= 0:
            raise InvalidInputError(f"quantity must be positive, got {self.quantity}")
        if self.unit_price < 0:
            raise InvalidInputError(f"unit_price must be non-negative, got {self.unit_price}")
        if self.usd_amount < 0:
            raise InvalidInputError(f"usd_amount must be non-negative, got {self.usd_amount}")
        if self.kind == KIND_BUY and self.realized_pnl_usd is not None:
            raise InvalidInputError("buy records carry no realized P&L")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def buy_record(
    owner_id: str,
    asset_id: str,
    quantity: float,
    usd_amount: float,
    executed_at: Optional[datetime] = None
) -> TransactionRecord:
    """Record for buying quantity units for usd_amount; unit price is the effective average."""
    require_finite("quantity", quantity)
    if quantity <= 0:
        raise InvalidInputError(f"quantity must be positive, got {quantity}")
    return TransactionRecord(
        trade_id=str(uuid.uuid4()),
        owner_id=owner_id,
        asset_id=asset_id,
        kind=KIND_BUY,
        quantity=quantity,
        unit_price=usd_amount / quantity,
        usd_amount=usd_amount,
        executed_at=executed_at or datetime.now()
    )


def sell_record(
    owner_id: str,
    position: Position,
    quantity: float,
    unit_price: float,
    executed_at: Optional[datetime] = None
) -> TransactionRecord:
    """
    Record for selling quantity units of position at unit_price.

    Realized P&L uses the position's average cost basis at sell time.
    """
    return TransactionRecord(
        trade_id=str(uuid.uuid4()),
        owner_id=owner_id,
        asset_id=position.asset_id,
        kind=KIND_SELL,
        quantity=quantity,
        unit_price=unit_price,
        usd_amount=quantity * unit_price,
        executed_at=executed_at or datetime.now(),
        realized_pnl_usd=realized_profit(position, unit_price, quantity)
    )

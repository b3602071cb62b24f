"""
Portfolio persistence layer for simulated crypto trading accounts.

This module provides a PortfolioStore class that handles all database operations
for owner accounts (cash balance), positions and the append-only trade ledger.
Position arithmetic is delegated to the valuation engine; this module only
reads, validates and persists.

=============================================================================
USAGE GUIDE
=============================================================================

READ OPERATIONS (no side effects):
    - get_balance(owner_id)                 → Current cash balance
    - get_positions(owner_id)               → List of open Position records
    - get_position(owner_id, asset_id)      → Single Position or None
    - get_trade_history(owner_id, ...)      → Paginated trade ledger, newest first
    - get_trade_count(owner_id)             → Number of recorded trades
    - get_realized_pnl_summary(owner_id)    → Aggregated realized P&L

MUTATION OPERATIONS (transactional, validated):
    - create_account(owner_id, ...)         → Opens an account with a starting balance
    - record_buy(...)                       → Debits cash, re-averages the position
    - record_sell(...)                      → Credits proceeds, reduces the position

GUARANTEES:
    1. All writes are transactional (atomic commit or full rollback)
    2. Inputs are validated before any database changes
    3. Trades are append-only (immutable after creation)
    4. Each trade changes the cash balance exactly once
    5. Position writes are compare-and-swap on a version column

EXAMPLE USAGE:
    from portfolio_tracker.portfolio_store import PortfolioStore

    store = PortfolioStore("portfolio.duckdb")
    store.create_account("alice")

    store.record_buy("alice", "bitcoin", quantity=0.5, usd_amount=22500.0)
    positions = store.get_positions("alice")

    store.record_sell("alice", "bitcoin", quantity=0.25, unit_price=50000.0)
    pnl = store.get_realized_pnl_summary("alice")

    store.close()

=============================================================================
"""

import duckdb
import logging
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime
from contextlib import contextmanager

try:
    from .valuation import Position, InvalidInputError, accumulate, reduce_position, require_finite
    from .ledger import TransactionRecord, KIND_BUY, KIND_SELL, buy_record, sell_record
except ImportError:
    from valuation import Position, InvalidInputError, accumulate, reduce_position, require_finite
    from ledger import TransactionRecord, KIND_BUY, KIND_SELL, buy_record, sell_record

logger = logging.getLogger(__name__)


# =============================================================================
# Constants & errors
# =============================================================================

DEFAULT_STARTING_BALANCE = 100000.0


class AccountNotFoundError(LookupError):
    """Raised when an owner has no account."""


class InsufficientFundsError(ValueError):
    """Raised when a buy costs more than the available cash balance."""


class ConcurrentModificationError(RuntimeError):
    """Raised when a position changed between read and write."""


# =============================================================================
# PortfolioStore Class
# =============================================================================

class PortfolioStore:
    """
    DuckDB-backed storage for accounts, positions and trades.

    Every call takes an explicit owner_id; there is no "current user".

    Thread Safety:
        Not thread-safe. Each thread should use its own PortfolioStore instance.

    Usage:
        store = PortfolioStore("portfolio.duckdb")
        try:
            store.record_buy(...)
            positions = store.get_positions("alice")
        finally:
            store.close()
    """

    def __init__(self, db_path: str = "portfolio.duckdb"):
        """
        Initialize DuckDB connection and create schema.

        :param db_path: Path to DuckDB database file. Use ':memory:' for in-memory DB.
        """
        self.db_path = db_path
        self.conn = duckdb.connect(db_path)
        self._initialize_schema()

    def _initialize_schema(self):
        """
        Create all required tables and indexes if they don't exist.

        Tables created:
            - accounts: Cash balance per owner
            - positions: Current holdings (one row per owner and asset)
            - trades: Immutable trade ledger (append-only)
            - balance_changes: One row per trade whose cash effect was applied

        This method is idempotent and safe to call multiple times.
        """
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS accounts (
                owner_id VARCHAR PRIMARY KEY,
                balance_usd DOUBLE NOT NULL,
                created_at TIMESTAMP NOT NULL,
                last_updated_at TIMESTAMP NOT NULL
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS positions (
                owner_id VARCHAR NOT NULL,
                asset_id VARCHAR NOT NULL,
                quantity DOUBLE NOT NULL DEFAULT 0,
                avg_cost_basis_usd DOUBLE NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 1,
                opened_at TIMESTAMP NOT NULL,
                last_updated_at TIMESTAMP NOT NULL,
                PRIMARY KEY (owner_id, asset_id)
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                trade_id VARCHAR PRIMARY KEY,
                owner_id VARCHAR NOT NULL,
                asset_id VARCHAR NOT NULL,
                kind VARCHAR NOT NULL,
                quantity DOUBLE NOT NULL,
                unit_price_usd DOUBLE NOT NULL,
                usd_amount DOUBLE NOT NULL,
                realized_pnl_usd DOUBLE,
                executed_at TIMESTAMP NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS balance_changes (
                trade_id VARCHAR PRIMARY KEY,
                owner_id VARCHAR NOT NULL,
                delta_usd DOUBLE NOT NULL,
                applied_at TIMESTAMP NOT NULL
            )
        """)

        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_trades_owner
            ON trades(owner_id)
        """)
        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_trades_executed
            ON trades(executed_at)
        """)

        logger.info("Portfolio schema initialized successfully")

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    @contextmanager
    def transaction(self):
        """
        Context manager for transactional operations.

        Either all operations succeed and commit, or all are rolled back.

        Raises:
            Exception: Re-raises any exception after rollback
        """
        try:
            self.conn.execute("BEGIN TRANSACTION")
            yield
            self.conn.execute("COMMIT")
        except Exception as e:
            self.conn.execute("ROLLBACK")
            logger.error(f"Transaction rolled back due to error: {e}")
            raise

    # =========================================================================
    # Accounts
    # =========================================================================

    def create_account(
        self,
        owner_id: str,
        starting_balance: float = DEFAULT_STARTING_BALANCE
    ) -> bool:
        """
        Open an account with a starting cash balance.

        Idempotent: an existing account keeps its balance.

        :return: True if a new account was created
        """
        if not owner_id:
            raise InvalidInputError("owner_id is required")
        require_finite("starting_balance", starting_balance)
        if starting_balance < 0:
            raise InvalidInputError(f"starting_balance must be non-negative, got {starting_balance}")

        if self.account_exists(owner_id):
            return False

        now = datetime.now()
        self.conn.execute("""
            INSERT INTO accounts (owner_id, balance_usd, created_at, last_updated_at)
            VALUES (?, ?, ?, ?)
        """, [owner_id, starting_balance, now, now])

        logger.info(f"Created account {owner_id} with balance ${starting_balance:.2f}")
        return True

    def account_exists(self, owner_id: str) -> bool:
        result = self.conn.execute("""
            SELECT COUNT(*) FROM accounts WHERE owner_id = ?
        """, [owner_id]).fetchone()
        return result[0] > 0

    def get_balance(self, owner_id: str) -> float:
        """
        :raises AccountNotFoundError: If the owner has no account
        """
        result = self.conn.execute("""
            SELECT balance_usd FROM accounts WHERE owner_id = ?
        """, [owner_id]).fetchone()

        if result is None:
            raise AccountNotFoundError(f"No account exists for owner '{owner_id}'")
        return result[0]

    def _apply_balance_change(self, owner_id: str, trade_id: str, delta_usd: float) -> bool:
        """
        Apply a trade's cash effect once.

        The balance_changes row is the applied flag; the balance itself is
        updated with a single read-modify-write statement.

        :return: False if this trade was already applied
        """
        already_applied = self.conn.execute("""
            SELECT COUNT(*) FROM balance_changes WHERE trade_id = ?
        """, [trade_id]).fetchone()[0]

        if already_applied:
            logger.warning(f"Balance change for trade {trade_id} already applied, skipping")
            return False

        now = datetime.now()
        self.conn.execute("""
            INSERT INTO balance_changes (trade_id, owner_id, delta_usd, applied_at)
            VALUES (?, ?, ?, ?)
        """, [trade_id, owner_id, delta_usd, now])

        self.conn.execute("""
            UPDATE accounts
            SET balance_usd = balance_usd + ?,
                last_updated_at = ?
            WHERE owner_id = ?
        """, [delta_usd, now, owner_id])
        return True

    # =========================================================================
    # Write Operations
    # =========================================================================

    def record_buy(
        self,
        owner_id: str,
        asset_id: str,
        quantity: float,
        usd_amount: float,
        executed_at: Optional[datetime] = None
    ) -> str:
        """
        Record a buy, debit the cash balance and re-average the position.

        :param owner_id: Account owner
        :param asset_id: CoinGecko asset identifier (e.g., "bitcoin")
        :param quantity: Units bought (must be > 0)
        :param usd_amount: USD spent (must be >= 0)
        :param executed_at: When the trade was executed (default now)

        :return: The generated trade_id (UUID string)

        :raises InvalidInputError: If quantity <= 0 or usd_amount < 0
        :raises AccountNotFoundError: If the owner has no account
        :raises InsufficientFundsError: If usd_amount exceeds the balance
        """
        require_finite("usd_amount", usd_amount)
        if usd_amount < 0:
            raise InvalidInputError(f"usd_amount must be non-negative, got {usd_amount}")
        record = buy_record(owner_id, asset_id, quantity, usd_amount, executed_at)

        with self.transaction():
            balance = self.get_balance(owner_id)
            if usd_amount > balance:
                raise InsufficientFundsError(
                    f"Insufficient balance: buying ${usd_amount:.2f} with ${balance:.2f} available"
                )

            existing, version = self._get_position_row(owner_id, asset_id)
            updated = accumulate(existing, quantity, usd_amount, asset_id=asset_id)
            self._write_position(owner_id, updated, version)

            self._insert_trade(record)
            self._apply_balance_change(owner_id, record.trade_id, -usd_amount)

        logger.info(
            f"Recorded BUY trade {record.trade_id}: {quantity} {asset_id} "
            f"for ${usd_amount:.2f} (owner {owner_id})"
        )
        return record.trade_id

    def record_sell(
        self,
        owner_id: str,
        asset_id: str,
        quantity: float,
        unit_price: float,
        executed_at: Optional[datetime] = None
    ) -> str:
        """
        Record a sell, credit proceeds once and reduce the position.

        P&L Calculation (Average Cost Method):
            realized_pnl = (unit_price - avg_cost_basis) * quantity

        The position row is deleted when its quantity reaches 0.

        :return: The generated trade_id (UUID string)

        :raises InvalidInputError: If quantity <= 0, unit_price < 0, no position
                                   exists or the quantity exceeds the holding
        :raises AccountNotFoundError: If the owner has no account
        """
        require_finite("unit_price", unit_price)
        if unit_price < 0:
            raise InvalidInputError(f"unit_price must be non-negative, got {unit_price}")

        with self.transaction():
            if not self.account_exists(owner_id):
                raise AccountNotFoundError(f"No account exists for owner '{owner_id}'")

            existing, version = self._get_position_row(owner_id, asset_id)
            if existing is None:
                raise InvalidInputError(f"No position exists for asset_id '{asset_id}'")

            updated = reduce_position(existing, quantity)
            record = sell_record(owner_id, existing, quantity, unit_price, executed_at)

            self._write_position(owner_id, updated, version)
            self._insert_trade(record)
            self._apply_balance_change(owner_id, record.trade_id, record.usd_amount)

        logger.info(
            f"Recorded SELL trade {record.trade_id}: {quantity} {asset_id} @ ${unit_price}, "
            f"realized P&L: ${record.realized_pnl_usd:.2f}"
        )
        return record.trade_id

    # =========================================================================
    # Internal Position / Trade Methods
    # =========================================================================

    def _insert_trade(self, record: TransactionRecord):
        self.conn.execute("""
            INSERT INTO trades (
                trade_id, owner_id, asset_id, kind, quantity,
                unit_price_usd, usd_amount, realized_pnl_usd,
                executed_at, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            record.trade_id, record.owner_id, record.asset_id, record.kind,
            record.quantity, record.unit_price, record.usd_amount,
            record.realized_pnl_usd, record.executed_at, datetime.now()
        ])

    def _get_position_row(self, owner_id: str, asset_id: str) -> Tuple[Optional[Position], Optional[int]]:
        """
        :return: (Position, version) or (None, None) if the owner holds no such asset
        """
        result = self.conn.execute("""
            SELECT asset_id, quantity, avg_cost_basis_usd, version
            FROM positions
            WHERE owner_id = ? AND asset_id = ?
        """, [owner_id, asset_id]).fetchone()

        if result:
            return Position(
                asset_id=result[0],
                quantity=result[1],
                average_cost_basis=result[2]
            ), result[3]
        return None, None

    def _write_position(self, owner_id: str, position: Position, expected_version: Optional[int]):
        """
        Persist a position computed from the row read at expected_version.

        Creates the row when expected_version is None, deletes it when the
        position is closed, otherwise updates it only if the version still matches.

        :raises ConcurrentModificationError: If the row changed since it was read
        """
        now = datetime.now()

        if expected_version is None:
            self.conn.execute("""
                INSERT INTO positions (
                    owner_id, asset_id, quantity, avg_cost_basis_usd,
                    version, opened_at, last_updated_at
                )
                VALUES (?, ?, ?, ?, 1, ?, ?)
            """, [owner_id, position.asset_id, position.quantity,
                  position.average_cost_basis, now, now])
            return

        if position.is_closed:
            result = self.conn.execute("""
                DELETE FROM positions
                WHERE owner_id = ? AND asset_id = ? AND version = ?
                RETURNING asset_id
            """, [owner_id, position.asset_id, expected_version]).fetchone()
        else:
            result = self.conn.execute("""
                UPDATE positions
                SET quantity = ?,
                    avg_cost_basis_usd = ?,
                    version = version + 1,
                    last_updated_at = ?
                WHERE owner_id = ? AND asset_id = ? AND version = ?
                RETURNING version
            """, [position.quantity, position.average_cost_basis, now,
                  owner_id, position.asset_id, expected_version]).fetchone()

        if result is None:
            raise ConcurrentModificationError(
                f"Position {position.asset_id} for owner '{owner_id}' changed "
                f"since version {expected_version}"
            )

        if position.is_closed:
            logger.info(f"Closed position for {position.asset_id} (owner {owner_id})")

    # =========================================================================
    # Read Operations
    # =========================================================================

    def get_position(self, owner_id: str, asset_id: str) -> Optional[Position]:
        position, _ = self._get_position_row(owner_id, asset_id)
        return position

    def get_positions(self, owner_id: str) -> List[Position]:
        """
        Get all open positions of an owner, in the order they were opened.

        :return: List of Position records with quantity > 0
        """
        result = self.conn.execute("""
            SELECT asset_id, quantity, avg_cost_basis_usd
            FROM positions
            WHERE owner_id = ? AND quantity > 0
            ORDER BY opened_at ASC, asset_id ASC
        """, [owner_id]).fetchall()

        return [
            Position(asset_id=row[0], quantity=row[1], average_cost_basis=row[2])
            for row in result
        ]

    def get_trade_history(
        self,
        owner_id: str,
        page: int = 1,
        page_size: int = 10,
        asset_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Get one page of an owner's trades, newest first.

        :param owner_id: Account owner
        :param page: 1-based page number
        :param page_size: Trades per page
        :param asset_id: Optional asset filter

        :return: List of trade dictionaries ordered by executed_at descending

        Return format:
            [
                {
                    "trade_id": "uuid-string",
                    "owner_id": "alice",
                    "asset_id": "bitcoin",
                    "kind": "buy",
                    "quantity": 0.5,
                    "unit_price": 45000.0,
                    "usd_amount": 22500.0,
                    "executed_at": datetime(...),
                    "realized_pnl_usd": None
                },
                ...
            ]
        """
        if page < 1 or page_size < 1:
            raise InvalidInputError(f"page and page_size must be positive, got {page}, {page_size}")

        query = """
            SELECT trade_id, owner_id, asset_id, kind, quantity,
                   unit_price_usd, usd_amount, executed_at, realized_pnl_usd
            FROM trades
            WHERE owner_id = ?
        """
        params: List[Any] = [owner_id]

        if asset_id:
            query += " AND asset_id = ?"
            params.append(asset_id)

        query += " ORDER BY executed_at DESC, created_at DESC LIMIT ? OFFSET ?"
        params.extend([page_size, (page - 1) * page_size])

        result = self.conn.execute(query, params).fetchall()

        return [
            TransactionRecord(
                trade_id=row[0],
                owner_id=row[1],
                asset_id=row[2],
                kind=row[3],
                quantity=row[4],
                unit_price=row[5],
                usd_amount=row[6],
                executed_at=row[7],
                realized_pnl_usd=row[8]
            ).to_dict()
            for row in result
        ]

    def get_trade_count(self, owner_id: str) -> int:
        result = self.conn.execute("""
            SELECT COUNT(*) FROM trades WHERE owner_id = ?
        """, [owner_id]).fetchone()
        return result[0] if result else 0

    def get_realized_pnl_summary(self, owner_id: str) -> Dict[str, Any]:
        """
        Get aggregated realized P&L statistics for one owner.

        Return format:
            {
                "total_realized_pnl_usd": 1234.56,
                "total_trades": 50,
                "total_buys": 30,
                "total_sells": 20,
                "by_asset": {
                    "bitcoin": {
                        "realized_pnl_usd": 1000.0,
                        "trade_count": 10,
                        "total_bought_usd": 50000.0,
                        "total_sold_usd": 55000.0
                    },
                    ...
                }
            }
        """
        totals = self.conn.execute("""
            SELECT
                COALESCE(SUM(realized_pnl_usd), 0) as total_pnl,
                COUNT(*) as total_trades,
                COALESCE(SUM(CASE WHEN kind = ? THEN 1 ELSE 0 END), 0) as total_buys,
                COALESCE(SUM(CASE WHEN kind = ? THEN 1 ELSE 0 END), 0) as total_sells
            FROM trades
            WHERE owner_id = ?
        """, [KIND_BUY, KIND_SELL, owner_id]).fetchone()

        by_asset_result = self.conn.execute("""
            SELECT
                asset_id,
                COALESCE(SUM(realized_pnl_usd), 0) as realized_pnl,
                COUNT(*) as trade_count,
                COALESCE(SUM(CASE WHEN kind = ? THEN usd_amount ELSE 0 END), 0) as total_bought,
                COALESCE(SUM(CASE WHEN kind = ? THEN usd_amount ELSE 0 END), 0) as total_sold
            FROM trades
            WHERE owner_id = ?
            GROUP BY asset_id
            ORDER BY realized_pnl DESC
        """, [KIND_BUY, KIND_SELL, owner_id]).fetchall()

        by_asset = {}
        for row in by_asset_result:
            by_asset[row[0]] = {
                "realized_pnl_usd": row[1],
                "trade_count": row[2],
                "total_bought_usd": row[3],
                "total_sold_usd": row[4]
            }

        return {
            "total_realized_pnl_usd": totals[0],
            "total_trades": totals[1],
            "total_buys": totals[2],
            "total_sells": totals[3],
            "by_asset": by_asset
        }

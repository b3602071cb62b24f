"""
Tests for the portfolio persistence layer.

Tests cover:
- Schema initialization
- Accounts and single-application balance changes
- Buy/sell position transitions and compare-and-swap writes
- Paginated trade history and realized P&L
"""

import pytest
import sys
import os
from datetime import datetime, timedelta

# Add source directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from portfolio_store import (
    PortfolioStore, AccountNotFoundError, InsufficientFundsError,
    ConcurrentModificationError, DEFAULT_STARTING_BALANCE
)
from valuation import Position, InvalidInputError


@pytest.fixture
def store():
    """Create an in-memory DuckDB store with one funded account."""
    store = PortfolioStore(db_path=":memory:")
    store.create_account("alice")
    yield store
    store.close()


class TestSchemaInitialization:

    def test_initialize_schema_creates_tables(self, store):
        result = store.conn.execute("""
            SELECT table_name FROM information_schema.tables
            WHERE table_schema = 'main'
        """).fetchall()

        table_names = [row[0] for row in result]

        assert "accounts" in table_names
        assert "positions" in table_names
        assert "trades" in table_names
        assert "balance_changes" in table_names

    def test_schema_initialization_is_idempotent(self, store):
        store._initialize_schema()

        assert store.get_balance("alice") == DEFAULT_STARTING_BALANCE


class TestAccounts:

    def test_create_account_default_balance(self, store):
        assert store.get_balance("alice") == 100000.0

    def test_create_account_is_idempotent(self, store):
        store.record_buy("alice", "bitcoin", 1.0, 40000.0)

        created = store.create_account("alice", starting_balance=5.0)

        assert created is False
        assert store.get_balance("alice") == 60000.0

    def test_unknown_owner(self, store):
        with pytest.raises(AccountNotFoundError):
            store.get_balance("bob")

    def test_negative_starting_balance_rejected(self, store):
        with pytest.raises(InvalidInputError):
            store.create_account("bob", starting_balance=-1.0)

    def test_balance_change_applied_once(self, store):
        assert store._apply_balance_change("alice", "trade-1", 250.0) is True
        assert store._apply_balance_change("alice", "trade-1", 250.0) is False

        assert store.get_balance("alice") == 100250.0


class TestBuy:

    def test_first_buy_opens_position(self, store):
        trade_id = store.record_buy("alice", "bitcoin", 1.0, 40000.0)

        assert trade_id
        assert store.get_position("alice", "bitcoin") == Position("bitcoin", 1.0, 40000.0)
        assert store.get_balance("alice") == 60000.0

    def test_repeated_buy_reaverages(self, store):
        store.record_buy("alice", "bitcoin", 1.0, 40000.0)
        store.record_buy("alice", "bitcoin", 1.0, 50000.0)

        position = store.get_position("alice", "bitcoin")

        assert position.quantity == 2.0
        assert position.average_cost_basis == 45000.0
        assert store.get_balance("alice") == 10000.0

    def test_insufficient_funds_rolls_back(self, store):
        with pytest.raises(InsufficientFundsError):
            store.record_buy("alice", "bitcoin", 3.0, 150000.0)

        assert store.get_position("alice", "bitcoin") is None
        assert store.get_trade_count("alice") == 0
        assert store.get_balance("alice") == 100000.0

    @pytest.mark.parametrize("quantity, usd_amount", [(0.0, 10.0), (-1.0, 10.0), (1.0, -10.0)])
    def test_invalid_buy_rejected(self, store, quantity, usd_amount):
        with pytest.raises(InvalidInputError):
            store.record_buy("alice", "bitcoin", quantity, usd_amount)

        assert store.get_trade_count("alice") == 0

    def test_buy_without_account(self, store):
        with pytest.raises(AccountNotFoundError):
            store.record_buy("bob", "bitcoin", 1.0, 10.0)

    def test_owners_are_isolated(self, store):
        store.create_account("bob")
        store.record_buy("alice", "bitcoin", 1.0, 40000.0)

        assert store.get_positions("bob") == []
        assert store.get_balance("bob") == 100000.0


class TestSell:

    def test_partial_sell_keeps_cost_basis(self, store):
        store.record_buy("alice", "bitcoin", 2.0, 90000.0)

        store.record_sell("alice", "bitcoin", 0.5, 60000.0)

        position = store.get_position("alice", "bitcoin")
        assert position.quantity == 1.5
        assert position.average_cost_basis == 45000.0
        assert store.get_balance("alice") == 10000.0 + 30000.0

    def test_full_sell_closes_position(self, store):
        store.record_buy("alice", "bitcoin", 1.0, 40000.0)

        store.record_sell("alice", "bitcoin", 1.0, 50000.0)

        assert store.get_position("alice", "bitcoin") is None
        assert store.get_positions("alice") == []
        # Proceeds credited exactly once
        assert store.get_balance("alice") == 110000.0

    def test_sell_records_realized_pnl(self, store):
        store.record_buy("alice", "bitcoin", 2.0, 90000.0)
        store.record_sell("alice", "bitcoin", 1.0, 50000.0)

        trades = store.get_trade_history("alice")

        assert trades[0]["kind"] == "sell"
        assert trades[0]["realized_pnl_usd"] == 5000.0
        assert trades[0]["usd_amount"] == 50000.0

    def test_oversell_rejected(self, store):
        store.record_buy("alice", "bitcoin", 1.0, 40000.0)

        with pytest.raises(InvalidInputError):
            store.record_sell("alice", "bitcoin", 2.0, 50000.0)

        assert store.get_position("alice", "bitcoin").quantity == 1.0
        assert store.get_balance("alice") == 60000.0

    def test_sell_without_position(self, store):
        with pytest.raises(InvalidInputError):
            store.record_sell("alice", "bitcoin", 1.0, 50000.0)


class TestConcurrentModification:

    def test_stale_version_rejected(self, store):
        store.record_buy("alice", "bitcoin", 1.0, 40000.0)
        stale, version = store._get_position_row("alice", "bitcoin")

        store.record_buy("alice", "bitcoin", 1.0, 50000.0)

        with pytest.raises(ConcurrentModificationError):
            store._write_position("alice", Position("bitcoin", 5.0, 1.0), version)

        assert store.get_position("alice", "bitcoin").quantity == 2.0

    def test_version_increments_on_update(self, store):
        store.record_buy("alice", "bitcoin", 1.0, 40000.0)
        _, first_version = store._get_position_row("alice", "bitcoin")

        store.record_buy("alice", "bitcoin", 1.0, 40000.0)
        _, second_version = store._get_position_row("alice", "bitcoin")

        assert second_version == first_version + 1


class TestTradeHistory:

    def test_pagination_newest_first(self, store):
        base = datetime(2024, 1, 1, 12, 0)
        for i in range(5):
            store.record_buy("alice", "bitcoin", 0.1, 100.0, executed_at=base + timedelta(days=i))

        first_page = store.get_trade_history("alice", page=1, page_size=2)
        third_page = store.get_trade_history("alice", page=3, page_size=2)

        assert [t["executed_at"] for t in first_page] == [base + timedelta(days=4), base + timedelta(days=3)]
        assert [t["executed_at"] for t in third_page] == [base]
        assert store.get_trade_count("alice") == 5

    def test_filter_by_asset(self, store):
        store.record_buy("alice", "bitcoin", 0.1, 100.0)
        store.record_buy("alice", "ethereum", 1.0, 100.0)

        trades = store.get_trade_history("alice", asset_id="ethereum")

        assert len(trades) == 1
        assert trades[0]["asset_id"] == "ethereum"
        assert trades[0]["unit_price"] == 100.0

    def test_invalid_page_rejected(self, store):
        with pytest.raises(InvalidInputError):
            store.get_trade_history("alice", page=0)


class TestRealizedPnlSummary:

    def test_summary(self, store):
        store.record_buy("alice", "bitcoin", 2.0, 80000.0)
        store.record_sell("alice", "bitcoin", 1.0, 50000.0)
        store.record_buy("alice", "ethereum", 5.0, 10000.0)
        store.record_sell("alice", "ethereum", 5.0, 1500.0)

        summary = store.get_realized_pnl_summary("alice")

        assert summary["total_realized_pnl_usd"] == 10000.0 - 2500.0
        assert summary["total_trades"] == 4
        assert summary["total_buys"] == 2
        assert summary["total_sells"] == 2
        assert summary["by_asset"]["bitcoin"]["total_bought_usd"] == 80000.0
        assert summary["by_asset"]["ethereum"]["total_sold_usd"] == 7500.0

    def test_empty_summary(self, store):
        summary = store.get_realized_pnl_summary("alice")

        assert summary["total_realized_pnl_usd"] == 0
        assert summary["total_trades"] == 0
        assert summary["by_asset"] == {}

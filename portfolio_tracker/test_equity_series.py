"""
Tests for equity curve construction.
"""

import pytest
import sys
import os
import logging
from datetime import date, datetime

import pandas as pd

# Add source directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from equity_series import (
    EquityPoint, normalize_date, build_series, build_snapshot_series, series_to_dicts
)
from valuation import Position, PriceSnapshot, InvalidInputError


@pytest.fixture
def positions():
    return [Position("bitcoin", 2.0, 40000.0), Position("ethereum", 10.0, 2000.0)]


@pytest.fixture
def histories():
    return {
        "bitcoin": [
            {"date": "2024-01-01", "price": 42000.0},
            {"date": "2024-01-02", "price": 43000.0},
            {"date": "2024-01-03", "price": 41000.0},
        ],
        "ethereum": [
            {"date": "2024-01-01", "price": 2200.0},
            {"date": "2024-01-02", "price": 2300.0},
            {"date": "2024-01-03", "price": 2250.0},
        ],
    }


@pytest.mark.parametrize("value, expected", [
    ("2024-01-05", "2024-01-05"),
    ("2024-01-05T23:59:59Z", "2024-01-05"),
    (date(2024, 1, 5), "2024-01-05"),
    (datetime(2024, 1, 5, 13, 30), "2024-01-05"),
    (pd.Timestamp("2024-01-05 08:00"), "2024-01-05"),
])
def test_normalize_date(value, expected):
    assert normalize_date(value) == expected


@pytest.mark.parametrize("value", ["yesterday-ish", 1704412800, None, pd.NaT])
def test_normalize_date_rejects_unreadable(value):
    with pytest.raises(InvalidInputError):
        normalize_date(value)


def test_merges_two_assets_per_day(positions, histories):
    series = build_series(positions, histories)

    assert series == [
        EquityPoint("2024-01-01", 2.0 * 42000.0 + 10.0 * 2200.0),
        EquityPoint("2024-01-02", 2.0 * 43000.0 + 10.0 * 2300.0),
        EquityPoint("2024-01-03", 2.0 * 41000.0 + 10.0 * 2250.0),
    ]


def test_sorted_ascending_regardless_of_input_order(positions, histories):
    shuffled = {asset: list(reversed(points)) for asset, points in histories.items()}

    series = build_series(positions, shuffled)

    assert [point.date for point in series] == ["2024-01-01", "2024-01-02", "2024-01-03"]


def test_missing_day_omits_asset_contribution(positions, histories):
    histories["ethereum"] = histories["ethereum"][1:]

    series = build_series(positions, histories)

    assert series[0] == EquityPoint("2024-01-01", 84000.0)
    assert series[1].total_value == 86000.0 + 23000.0


def test_same_day_entries_keep_last(positions):
    histories = {
        "bitcoin": [
            {"date": "2024-01-03T00:00:00Z", "price": 41000.0},
            {"date": "2024-01-03T15:42:10Z", "price": 41500.0},
        ]
    }

    series = build_series(positions, histories)

    assert series == [EquityPoint("2024-01-03", 83000.0)]


def test_assets_without_history_are_skipped(positions):
    series = build_series(positions, {"bitcoin": [], "dogecoin": [{"date": "2024-01-01", "price": 1.0}]})

    assert series == []


def test_deterministic(positions, histories):
    assert build_series(positions, histories) == build_series(positions, histories)


@pytest.mark.parametrize("price", [None, float("nan"), float("inf"), -1.0, "42000"])
def test_rejects_unusable_history_price(price):
    with pytest.raises(InvalidInputError):
        build_series(
            [Position("bitcoin", 2.0, 1.0)],
            {"bitcoin": [{"date": "2024-01-01", "price": price}]}
        )


def test_rejects_history_point_without_price():
    with pytest.raises(InvalidInputError):
        build_series([Position("bitcoin", 2.0, 1.0)], {"bitcoin": [{"date": "2024-01-01"}]})


def test_snapshot_series_single_point(positions):
    prices = PriceSnapshot.from_dict({"bitcoin": {"price": 60000.0}})

    series = build_snapshot_series(positions, prices, today=date(2024, 2, 1))

    assert series == [EquityPoint("2024-02-01", 120000.0)]


def test_snapshot_series_defaults_to_today(positions):
    series = build_snapshot_series(positions, PriceSnapshot())

    assert len(series) == 1
    assert series[0].date == date.today().isoformat()
    assert series[0].total_value == 0.0


def test_series_to_dicts(positions, histories):
    rows = series_to_dicts(build_series(positions, histories))

    assert rows[0] == {"date": "2024-01-01", "value": 106000.0}


def test_snapshot_series_logs_unpriced_assets(positions, caplog):
    prices = PriceSnapshot.from_dict({"bitcoin": {"price": 60000.0}})

    with caplog.at_level(logging.WARNING):
        series = build_snapshot_series(positions, prices, today=date(2024, 2, 1))

    assert series == [EquityPoint("2024-02-01", 120000.0)]
    assert "ethereum" in caplog.text

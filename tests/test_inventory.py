from __future__ import annotations

import math

import pytest

from inventory import (
    Consumable,
    MeasurementUnit,
    StockLevel,
    classify_stock_level,
    consumable_from_row,
    consumables_by_stock_level,
    consumables_to_frame,
    default_unit_for_category,
    format_quantity,
    search_consumables,
    stock_level_counts,
    stock_summary,
    unit_from_string,
    units_for_category,
)


def make(uid, current, lo=10.0, hi=100.0, **kwargs) -> Consumable:
    kwargs.setdefault("name", uid)
    return Consumable(
        id=uid,
        unique_id=uid,
        current_quantity=current,
        min_quantity=lo,
        max_quantity=hi,
        **kwargs,
    )


@pytest.mark.parametrize(
    "current, expected",
    [
        (0, StockLevel.OUT_OF_STOCK),
        (-1, StockLevel.OUT_OF_STOCK),
        (5, StockLevel.LOW),
        (10, StockLevel.LOW),
        (50, StockLevel.NORMAL),
        (100, StockLevel.OVERSTOCKED),
        (150, StockLevel.OVERSTOCKED),
    ],
)
def test_classify_stock_level(current, expected):
    assert classify_stock_level(current, 10, 100) == expected


def test_out_of_stock_wins_over_low_when_min_is_zero():
    c = make("x", 0, lo=0, hi=10)
    assert c.is_out_of_stock
    assert c.is_low_stock
    assert c.stock_level == StockLevel.OUT_OF_STOCK


def test_percentage_value_and_payload():
    c = make("CN1", 25, hi=50, unit_price=2.0)
    assert c.stock_percentage == 50.0
    assert make("CN2", 80, hi=50).stock_percentage == 100.0
    assert make("CN3", 5, hi=0).stock_percentage == 0.0
    assert c.total_value == 50.0
    assert c.qr_payload == "CONSUMABLE#CN1"
    assert c.with_quantity(3).current_quantity == 3.0
    assert c.current_quantity == 25


def test_units():
    assert MeasurementUnit.LITERS.abbreviation == "L"
    assert MeasurementUnit.SQUARE_METERS.display_name == "Square Meters"
    assert not MeasurementUnit.SHEETS.allows_decimals
    assert MeasurementUnit.GRAMS.allows_decimals
    assert unit_from_string("squareMeters") == MeasurementUnit.SQUARE_METERS
    assert unit_from_string("furlongs") == MeasurementUnit.PIECES
    assert unit_from_string(None) == MeasurementUnit.PIECES
    assert units_for_category("Weight") == [MeasurementUnit.KILOGRAMS, MeasurementUnit.GRAMS]


@pytest.mark.parametrize(
    "category, unit",
    [
        ("Wood Glue", MeasurementUnit.LITERS),
        ("Finish Oil", MeasurementUnit.LITERS),
        ("Masking Tape", MeasurementUnit.METERS),
        ("Sandpaper Sheets", MeasurementUnit.SHEETS),
        ("Paper Towel Roll", MeasurementUnit.SHEETS),
        ("Cling Roll", MeasurementUnit.ROLLS),
        ("Fasteners", MeasurementUnit.PIECES),
        ("", MeasurementUnit.PIECES),
    ],
)
def test_default_unit_for_category(category, unit):
    assert default_unit_for_category(category) == unit


def test_format_quantity():
    assert format_quantity(4.5, MeasurementUnit.LITERS) == "4.5 L"
    assert format_quantity(10, MeasurementUnit.LITERS) == "10 L"
    assert format_quantity(0, MeasurementUnit.GRAMS) == "0 g"
    assert format_quantity(2.25, MeasurementUnit.METERS) == "2.25 m"
    assert format_quantity(12.9, MeasurementUnit.PIECES) == "12 pcs"


def test_consumable_from_row_accepts_frame_rows():
    row = {
        "id": None,
        "unique_id": "CN9",
        "name": "Glue",
        "category": float("nan"),
        "unit": "liters",
        "current_quantity": "3.5",
        "min_quantity": float("nan"),
        "maxQuantity": 12,
        "unit_price": None,
        "sku": float("nan"),
        "is_active": 0,
        "created_at": "2025-10-14 09:00:00",
    }
    c = consumable_from_row(row)
    assert c.id == ""
    assert c.category == "Uncategorized"
    assert c.unit == MeasurementUnit.LITERS
    assert c.current_quantity == 3.5
    assert c.min_quantity == 0.0
    assert c.max_quantity == 12.0
    assert c.unit_price == 0.0
    assert c.sku is None
    assert c.is_active is False
    assert c.created_at is not None and c.created_at.hour == 9
    assert c.updated_at is None


def test_summary_ignores_inactive_items():
    items = [
        make("a", 0, unit_price=1.0),
        make("b", 5, unit_price=2.0),
        make("c", 50, unit_price=1.0),
        make("d", 500, unit_price=0.5),
        make("gone", 0, is_active=False),
    ]
    summary = stock_summary(items)
    assert summary.total_items == 4
    assert summary.out_of_stock_count == 1
    # out of stock items are also at or below minimum
    assert summary.low_stock_count == 2
    assert math.isclose(summary.total_value, 0 + 10 + 50 + 250)
    assert summary.level_counts == {
        StockLevel.OUT_OF_STOCK: 1,
        StockLevel.LOW: 1,
        StockLevel.NORMAL: 1,
        StockLevel.OVERSTOCKED: 1,
    }
    assert stock_level_counts(items) == summary.level_counts
    assert [c.unique_id for c in consumables_by_stock_level(items, StockLevel.OUT_OF_STOCK)] == ["a"]


def test_search_consumables():
    items = [
        make("CN1", 5, name="Wood Glue", category="Adhesive"),
        make("CN2", 5, name="Masking Tape", category="Tape"),
        make("CN3", 5, name="Old Glue", is_active=False),
    ]
    assert [c.unique_id for c in search_consumables(items, "glue")] == ["CN1"]
    assert [c.unique_id for c in search_consumables(items, "TAPE")] == ["CN2"]
    assert [c.unique_id for c in search_consumables(items, "cn2")] == ["CN2"]
    assert len(search_consumables(items, "  ")) == 2


def test_consumables_to_frame():
    df = consumables_to_frame([make("CN1", 4.5, lo=2, hi=20, unit=MeasurementUnit.LITERS, unit_price=2.0)])
    row = df.iloc[0]
    assert row["Quantity"] == "4.5 L"
    assert row["Min"] == "2 L"
    assert row["Stock %"] == 22.5
    assert row["Stock Level"] == "Normal"
    assert row["Value"] == 9.0
    assert consumables_to_frame([]).empty

import re
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping, Optional

import pandas as pd


# ======================================
# MEASUREMENT UNITS
# ======================================
class MeasurementUnit(str, Enum):
    LITERS = "liters"
    MILLILITERS = "milliliters"
    METERS = "meters"
    CENTIMETERS = "centimeters"
    PIECES = "pieces"
    SHEETS = "sheets"
    ROLLS = "rolls"
    KILOGRAMS = "kilograms"
    GRAMS = "grams"
    SQUARE_METERS = "squareMeters"

    @property
    def display_name(self) -> str:
        return _UNIT_INFO[self][0]

    @property
    def abbreviation(self) -> str:
        return _UNIT_INFO[self][1]

    @property
    def category(self) -> str:
        return _UNIT_INFO[self][2]

    @property
    def allows_decimals(self) -> bool:
        return self.category != "Count"


# unit -> (display name, abbreviation, category)
_UNIT_INFO = {
    MeasurementUnit.LITERS: ("Liters", "L", "Volume"),
    MeasurementUnit.MILLILITERS: ("Milliliters", "ml", "Volume"),
    MeasurementUnit.METERS: ("Meters", "m", "Length"),
    MeasurementUnit.CENTIMETERS: ("Centimeters", "cm", "Length"),
    MeasurementUnit.PIECES: ("Pieces", "pcs", "Count"),
    MeasurementUnit.SHEETS: ("Sheets", "sheets", "Count"),
    MeasurementUnit.ROLLS: ("Rolls", "rolls", "Count"),
    MeasurementUnit.KILOGRAMS: ("Kilograms", "kg", "Weight"),
    MeasurementUnit.GRAMS: ("Grams", "g", "Weight"),
    MeasurementUnit.SQUARE_METERS: ("Square Meters", "m²", "Area"),
}


def unit_from_string(value) -> MeasurementUnit:
    v = str(value or "").strip()
    for unit in MeasurementUnit:
        if unit.value == v:
            return unit
    return MeasurementUnit.PIECES


def units_for_category(category: str) -> list[MeasurementUnit]:
    return [u for u in MeasurementUnit if u.category == category]


def default_unit_for_category(consumable_category: str) -> MeasurementUnit:
    """Best-guess unit for a new consumable based on its category name."""
    c = str(consumable_category or "").lower()
    if any(k in c for k in ("glue", "adhesive", "stain", "finish", "oil", "spirit")):
        return MeasurementUnit.LITERS
    if "tape" in c or "string" in c:
        return MeasurementUnit.METERS
    if "paper" in c or "sheet" in c:
        return MeasurementUnit.SHEETS
    if "roll" in c:
        return MeasurementUnit.ROLLS
    return MeasurementUnit.PIECES


def format_quantity(quantity: float, unit: MeasurementUnit) -> str:
    if unit.allows_decimals:
        trimmed = re.sub(r"\.?0+$", "", f"{float(quantity):.2f}")
        return f"{trimmed} {unit.abbreviation}"
    return f"{int(quantity)} {unit.abbreviation}"


# ======================================
# STOCK LEVEL
# ======================================
class StockLevel(str, Enum):
    OUT_OF_STOCK = "outOfStock"
    LOW = "low"
    NORMAL = "normal"
    OVERSTOCKED = "overstocked"

    @property
    def display_name(self) -> str:
        return {
            StockLevel.OUT_OF_STOCK: "Out of Stock",
            StockLevel.LOW: "Low Stock",
            StockLevel.NORMAL: "Normal",
            StockLevel.OVERSTOCKED: "Overstocked",
        }[self]

    @property
    def color(self) -> str:
        return {
            StockLevel.OUT_OF_STOCK: "#D32F2F",
            StockLevel.LOW: "#F57C00",
            StockLevel.NORMAL: "#388E3C",
            StockLevel.OVERSTOCKED: "#1976D2",
        }[self]


def classify_stock_level(current: float, minimum: float, maximum: float) -> StockLevel:
    if current <= 0:
        return StockLevel.OUT_OF_STOCK
    if current <= minimum:
        return StockLevel.LOW
    if current >= maximum:
        return StockLevel.OVERSTOCKED
    return StockLevel.NORMAL


# ======================================
# CONSUMABLE
# ======================================
@dataclass(frozen=True)
class Consumable:
    id: str
    unique_id: str
    name: str
    category: str = "Uncategorized"
    brand: str = ""
    unit: MeasurementUnit = MeasurementUnit.PIECES
    current_quantity: float = 0.0
    min_quantity: float = 0.0
    max_quantity: float = 100.0
    unit_price: float = 0.0
    sku: Optional[str] = None
    notes: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_low_stock(self) -> bool:
        return self.current_quantity <= self.min_quantity

    @property
    def is_out_of_stock(self) -> bool:
        return self.current_quantity <= 0

    @property
    def is_overstocked(self) -> bool:
        return self.current_quantity >= self.max_quantity

    @property
    def stock_level(self) -> StockLevel:
        return classify_stock_level(self.current_quantity, self.min_quantity, self.max_quantity)

    @property
    def stock_percentage(self) -> float:
        if self.max_quantity <= 0:
            return 0.0
        return max(0.0, min(100.0, self.current_quantity / self.max_quantity * 100))

    @property
    def total_value(self) -> float:
        return self.current_quantity * self.unit_price

    @property
    def formatted_current_quantity(self) -> str:
        return format_quantity(self.current_quantity, self.unit)

    @property
    def qr_payload(self) -> str:
        return f"CONSUMABLE#{self.unique_id}"

    def with_quantity(self, quantity: float) -> "Consumable":
        return replace(self, current_quantity=float(quantity))


def _to_float(value, default: float) -> float:
    try:
        if value is None or (isinstance(value, float) and pd.isna(value)):
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_bool(value, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "t"}


def consumable_from_row(row: Mapping[str, Any]) -> Consumable:
    """Build a `Consumable` from a store row (snake_case or camelCase keys)."""

    def pick(*keys, default=None):
        for k in keys:
            v = row.get(k)
            if v is None or (isinstance(v, float) and pd.isna(v)):
                continue
            return v
        return default

    def pick_dt(*keys):
        v = pick(*keys)
        if v is None:
            return None
        ts = pd.to_datetime(v, errors="coerce")
        return None if pd.isna(ts) else ts.to_pydatetime()

    sku = pick("sku")
    notes = pick("notes")
    return Consumable(
        id=str(pick("id", default="")),
        unique_id=str(pick("unique_id", "uniqueId", default="")),
        name=str(pick("name", default="Unknown Consumable")),
        category=str(pick("category", default="Uncategorized")),
        brand=str(pick("brand", default="")),
        unit=unit_from_string(pick("unit", default="pieces")),
        current_quantity=_to_float(pick("current_quantity", "currentQuantity"), 0.0),
        min_quantity=_to_float(pick("min_quantity", "minQuantity"), 0.0),
        max_quantity=_to_float(pick("max_quantity", "maxQuantity"), 100.0),
        unit_price=_to_float(pick("unit_price", "unitPrice"), 0.0),
        sku=str(sku) if sku else None,
        notes=str(notes) if notes else None,
        is_active=_to_bool(pick("is_active", "isActive"), True),
        created_at=pick_dt("created_at", "createdAt"),
        updated_at=pick_dt("updated_at", "updatedAt"),
    )


# ======================================
# AGGREGATION
# ======================================
def stock_level_counts(consumables: Iterable[Consumable]) -> dict:
    counts = {level: 0 for level in StockLevel}
    for c in consumables:
        if c.is_active:
            counts[c.stock_level] += 1
    return counts


@dataclass(frozen=True)
class StockSummary:
    total_items: int
    level_counts: dict
    low_stock_count: int
    out_of_stock_count: int
    total_value: float


def stock_summary(consumables: Iterable[Consumable]) -> StockSummary:
    active = [c for c in consumables if c.is_active]
    return StockSummary(
        total_items=len(active),
        level_counts=stock_level_counts(active),
        low_stock_count=sum(1 for c in active if c.is_low_stock),
        out_of_stock_count=sum(1 for c in active if c.is_out_of_stock),
        total_value=float(sum(c.total_value for c in active)),
    )


def consumables_by_stock_level(consumables: Iterable[Consumable], level: StockLevel) -> list:
    return [c for c in consumables if c.is_active and c.stock_level == level]


def search_consumables(consumables: Iterable[Consumable], query: str) -> list:
    active = [c for c in consumables if c.is_active]
    q = str(query or "").strip().lower()
    if not q:
        return active
    return [
        c
        for c in active
        if q in c.name.lower() or q in c.category.lower() or q in c.unique_id.lower()
    ]


CONSUMABLE_FRAME_COLUMNS = [
    "Unique ID",
    "Name",
    "Category",
    "Brand",
    "Quantity",
    "Min",
    "Max",
    "Stock %",
    "Stock Level",
    "Value",
]


def consumables_to_frame(consumables: Iterable[Consumable]) -> pd.DataFrame:
    rows = [
        {
            "Unique ID": c.unique_id,
            "Name": c.name,
            "Category": c.category,
            "Brand": c.brand,
            "Quantity": c.formatted_current_quantity,
            "Min": format_quantity(c.min_quantity, c.unit),
            "Max": format_quantity(c.max_quantity, c.unit),
            "Stock %": round(c.stock_percentage, 1),
            "Stock Level": c.stock_level.display_name,
            "Value": round(c.total_value, 2),
        }
        for c in consumables
    ]
    return pd.DataFrame(rows, columns=CONSUMABLE_FRAME_COLUMNS)

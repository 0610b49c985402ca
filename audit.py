import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

import pandas as pd

# ======================================
# CONSTANTS
# ======================================
BATCH_OPERATION_MARKER = "Batch operation:"
BATCH_ID_MARKER = "Batch ID:"
BATCH_MARKERS = (BATCH_OPERATION_MARKER, BATCH_ID_MARKER)

BATCH_OPERATION_RE = re.compile(r"Batch operation: (BATCH_\d+)")
BATCH_ID_RE = re.compile(r"Batch ID:\s*(BATCH_\d+)")

ACTION_FILTER_ALL = "all"
ACTION_FILTER_BATCH = "batch"

UNKNOWN_NAME = "Unknown"


class TransactionAction(str, Enum):
    CHECKOUT = "checkout"
    CHECKIN = "checkin"
    USAGE = "usage"
    RESTOCK = "restock"
    ADJUSTMENT = "adjustment"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value) -> "TransactionAction":
        v = str(value or "").strip().lower()
        for member in cls:
            if member.value == v:
                return member
        return cls.UNKNOWN

    @property
    def display_name(self) -> str:
        return {
            TransactionAction.CHECKOUT: "Check Out",
            TransactionAction.CHECKIN: "Check In",
        }.get(self, self.value.capitalize())


class TransactionType(str, Enum):
    TOOL = "tool"
    CONSUMABLE = "consumable"


class BatchSource(str, Enum):
    EXPLICIT = "explicit"
    OPERATION = "operation"
    ID = "id"


ALL_BATCH_SOURCES = (BatchSource.EXPLICIT, BatchSource.OPERATION, BatchSource.ID)


# ======================================
# RECORDS
# ======================================
@dataclass(frozen=True)
class TransactionRecord:
    id: str
    action: TransactionAction
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None
    batch_id: Optional[str] = None
    # compared, but left out of hash()
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False)
    type: TransactionType = TransactionType.TOOL

    def _meta_text(self, key: str) -> str:
        value = self.metadata.get(key) if self.metadata else None
        return str(value) if value is not None else ""

    @property
    def tool_name(self) -> str:
        return self._meta_text("toolName")

    @property
    def staff_name(self) -> str:
        return self._meta_text("staffName")

    @property
    def processed_by(self) -> str:
        return self._meta_text("adminName")

    @property
    def item_name(self) -> str:
        """Tool name for tool rows, consumable name for consumable rows."""
        if self.type == TransactionType.CONSUMABLE:
            return self._meta_text("consumableName") or self.tool_name
        return self.tool_name


def _parse_timestamp(value) -> Optional[datetime]:
    """Parse DB / dataframe timestamp representations into a naive `datetime`.

    Returns None for blank or unparseable values (the unknown-timestamp variant).
    """
    if value is None or value is pd.NaT:
        return None
    if isinstance(value, pd.Timestamp):
        ts = value.to_pydatetime()
    elif isinstance(value, datetime):
        ts = value
    elif isinstance(value, date):
        return datetime.combine(value, time.min)
    else:
        s = str(value).strip()
        if not s:
            return None
        try:
            parsed = pd.to_datetime(s, errors="coerce")
        except (ValueError, TypeError):
            return None
        if parsed is None or pd.isna(parsed):
            return None
        ts = parsed.to_pydatetime()
    if ts.tzinfo is not None:
        ts = ts.astimezone().replace(tzinfo=None)
    return ts


def _clean_text(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    s = str(value)
    return s if s.strip() else None


def parse_transaction(raw: Mapping[str, Any]) -> TransactionRecord:
    """Validate one raw store row into a `TransactionRecord`.

    Accepts camelCase keys as well as the snake_case column names used by the
    SQLite store (`batch_id`).
    """
    metadata = raw.get("metadata")
    if not isinstance(metadata, Mapping):
        metadata = {}

    tx_type = str(raw.get("type") or "").strip().lower()
    if tx_type == TransactionType.CONSUMABLE.value:
        record_type = TransactionType.CONSUMABLE
    else:
        record_type = TransactionType.TOOL

    batch_raw = raw.get("batchId", raw.get("batch_id"))
    batch_id = _clean_text(batch_raw)

    return TransactionRecord(
        id=str(raw.get("id") or ""),
        action=TransactionAction.parse(raw.get("action")),
        timestamp=_parse_timestamp(raw.get("timestamp")),
        notes=_clean_text(raw.get("notes")),
        batch_id=batch_id.strip() if batch_id else None,
        metadata=dict(metadata),
        type=record_type,
    )


# ======================================
# BATCH ID EXTRACTION
# ======================================
@dataclass(frozen=True)
class BatchMatch:
    matched: bool
    source: Optional[BatchSource] = None
    batch_id: Optional[str] = None


NO_BATCH_MATCH = BatchMatch(matched=False)


def extract_batch_id(
    record: TransactionRecord,
    sources: Sequence[BatchSource] = ALL_BATCH_SOURCES,
) -> BatchMatch:
    """Return the first batch id found through `sources`, tried in priority order.

    Priority is always explicit field, then `Batch operation:` notes, then
    `Batch ID:` notes; `sources` only restricts which of them are honoured.
    """
    notes = record.notes or ""
    for source in ALL_BATCH_SOURCES:
        if source not in sources:
            continue
        if source == BatchSource.EXPLICIT:
            if record.batch_id:
                return BatchMatch(True, source, record.batch_id)
            continue
        pattern = BATCH_OPERATION_RE if source == BatchSource.OPERATION else BATCH_ID_RE
        m = pattern.search(notes)
        if m:
            return BatchMatch(True, source, m.group(1))
    return NO_BATCH_MATCH


def has_batch_marker(record: TransactionRecord) -> bool:
    notes = record.notes or ""
    return any(marker in notes for marker in BATCH_MARKERS)


# ======================================
# GROUPING
# ======================================
@dataclass(frozen=True)
class BatchGroup:
    batch_id: str
    members: tuple
    action: TransactionAction
    staff_name: str
    processed_by: str
    timestamp: Optional[datetime]

    @property
    def tool_members(self) -> list:
        return [t for t in self.members if t.type == TransactionType.TOOL]

    @property
    def consumable_members(self) -> list:
        return [t for t in self.members if t.type == TransactionType.CONSUMABLE]


@dataclass(frozen=True)
class IndividualItem:
    transaction: TransactionRecord

    @property
    def timestamp(self) -> Optional[datetime]:
        return self.transaction.timestamp


GroupedItem = Union[BatchGroup, IndividualItem]


def _earliest(records: list) -> Optional[TransactionRecord]:
    # min() keeps the first of equal keys, so ties fall back to encounter order.
    if not records:
        return None
    return min(
        records,
        key=lambda t: (t.timestamp is None, t.timestamp or datetime.min),
    )


def _build_batch_group(batch_id: str, members: list) -> BatchGroup:
    tools = [t for t in members if t.type == TransactionType.TOOL]
    consumables = [t for t in members if t.type == TransactionType.CONSUMABLE]
    rep = _earliest(tools) or _earliest(consumables)

    known = [t.timestamp for t in members if t.timestamp is not None]
    return BatchGroup(
        batch_id=batch_id,
        members=tuple(members),
        action=rep.action if rep else TransactionAction.UNKNOWN,
        staff_name=(rep.staff_name if rep else "") or UNKNOWN_NAME,
        processed_by=(rep.processed_by if rep else "") or UNKNOWN_NAME,
        timestamp=min(known) if known else None,
    )


def _newest_first(items: list) -> list:
    dated = [i for i in items if i.timestamp is not None]
    undated = [i for i in items if i.timestamp is None]
    dated.sort(key=lambda i: i.timestamp, reverse=True)
    return dated + undated


def group_transactions(transactions: Iterable[TransactionRecord]) -> list:
    """Cluster transactions sharing a batch id; everything else stays individual.

    Output is sorted newest first (stable); unknown timestamps go last.
    """
    batches: dict[str, list] = {}
    individuals: list = []

    for tx in transactions:
        match = extract_batch_id(tx)
        if match.matched:
            batches.setdefault(match.batch_id, []).append(tx)
        else:
            individuals.append(IndividualItem(tx))

    items: list = [_build_batch_group(bid, members) for bid, members in batches.items()]
    items.extend(individuals)
    return _newest_first(items)


def flatten_groups(items: Iterable[GroupedItem]) -> list:
    out: list = []
    for item in items:
        if isinstance(item, BatchGroup):
            out.extend(item.members)
        else:
            out.append(item.transaction)
    return out


# ======================================
# FILTERING
# ======================================
@dataclass(frozen=True)
class AuditFilter:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    action_filter: str = ACTION_FILTER_ALL
    search_text: str = ""

    @classmethod
    def for_dates(
        cls,
        start: Optional[date] = None,
        end: Optional[date] = None,
        action_filter: str = ACTION_FILTER_ALL,
        search_text: str = "",
    ) -> "AuditFilter":
        """Build a filter from date-only picker values (whole days, inclusive)."""
        start_dt = datetime.combine(start, time(0, 0, 0)) if start else None
        end_dt = datetime.combine(end, time(23, 59, 59)) if end else None
        return cls(start_dt, end_dt, action_filter, search_text)

    @property
    def has_date_range(self) -> bool:
        return self.start_date is not None or self.end_date is not None


def matches_date_range(
    record: TransactionRecord,
    start: Optional[datetime],
    end: Optional[datetime],
) -> bool:
    if start is None and end is None:
        return True
    ts = record.timestamp
    if ts is None:
        return False
    if start is not None and ts < start:
        return False
    if end is not None and ts > end:
        return False
    return True


def matches_action(record: TransactionRecord, action_filter) -> bool:
    value = str(getattr(action_filter, "value", action_filter) or ACTION_FILTER_ALL)
    if value == ACTION_FILTER_ALL:
        return True
    if value == ACTION_FILTER_BATCH:
        return has_batch_marker(record)
    return record.action.value == value


def matches_search(record: TransactionRecord, search_text: str) -> bool:
    query = str(search_text or "").lower()
    if not query:
        return True
    return (
        query in record.tool_name.lower()
        or query in record.staff_name.lower()
        or query in (record.notes or "").lower()
    )


def filter_transactions(
    transactions: Iterable[TransactionRecord],
    audit_filter: AuditFilter,
) -> list:
    f = audit_filter
    return [
        t
        for t in transactions
        if matches_date_range(t, f.start_date, f.end_date)
        and matches_action(t, f.action_filter)
        and matches_search(t, f.search_text)
    ]


# ======================================
# STATS
# ======================================
@dataclass(frozen=True)
class AuditStats:
    total: int = 0
    checkout_count: int = 0
    checkin_count: int = 0
    unique_batch_count: int = 0


def compute_stats(
    transactions: Iterable[TransactionRecord],
    batch_sources: Sequence[BatchSource] = (BatchSource.OPERATION,),
) -> AuditStats:
    """Summary counts for the audit header.

    By default batches are counted from `Batch operation:` notes only; explicit
    batch ids and `Batch ID:` notes (consumable batches) are not part of this
    count. Pass `batch_sources` to widen it.
    """
    total = checkouts = checkins = 0
    batch_ids: set[str] = set()
    for t in transactions:
        total += 1
        if t.action == TransactionAction.CHECKOUT:
            checkouts += 1
        elif t.action == TransactionAction.CHECKIN:
            checkins += 1
        match = extract_batch_id(t, sources=batch_sources)
        if match.matched:
            batch_ids.add(match.batch_id)
    return AuditStats(total, checkouts, checkins, len(batch_ids))


# ======================================
# DISPLAY HELPERS
# ======================================
def format_relative_time(timestamp: Optional[datetime], now: datetime) -> str:
    if timestamp is None:
        return "Unknown time"
    diff = now - timestamp
    seconds = diff.total_seconds()
    if seconds < 60:
        return "Just now"
    if seconds < 3600:
        return f"{int(seconds // 60)}m ago"
    if seconds < 86400:
        return f"{int(seconds // 3600)}h ago"
    return f"{timestamp.day}/{timestamp.month}/{timestamp.year} {timestamp.hour}:{timestamp.minute:02d}"


TRANSACTION_FRAME_COLUMNS = [
    "Time",
    "Action",
    "Type",
    "Item",
    "Staff",
    "Processed By",
    "Batch ID",
    "Notes",
]


def transactions_to_frame(transactions: Iterable[TransactionRecord]) -> pd.DataFrame:
    rows = []
    for t in transactions:
        match = extract_batch_id(t)
        rows.append(
            {
                "Time": t.timestamp,
                "Action": t.action.display_name,
                "Type": t.type.value.capitalize(),
                "Item": t.item_name or "Unknown Tool",
                "Staff": t.staff_name or "Unknown Staff",
                "Processed By": t.processed_by,
                "Batch ID": match.batch_id or "",
                "Notes": t.notes or "",
            }
        )
    return pd.DataFrame(rows, columns=TRANSACTION_FRAME_COLUMNS)


def grouped_items_to_frame(items: Iterable[GroupedItem]) -> pd.DataFrame:
    """One row per grouped item, used for the compact audit table."""
    rows = []
    for item in items:
        if isinstance(item, BatchGroup):
            rows.append(
                {
                    "Time": item.timestamp,
                    "Action": item.action.display_name,
                    "Kind": "Batch",
                    "Batch ID": item.batch_id,
                    "Items": len(item.members),
                    "Staff": item.staff_name,
                    "Processed By": item.processed_by,
                }
            )
        else:
            t = item.transaction
            rows.append(
                {
                    "Time": t.timestamp,
                    "Action": t.action.display_name,
                    "Kind": "Single",
                    "Batch ID": t.batch_id or "",
                    "Items": 1,
                    "Staff": t.staff_name or "Unknown Staff",
                    "Processed By": t.processed_by,
                }
            )
    return pd.DataFrame(
        rows,
        columns=["Time", "Action", "Kind", "Batch ID", "Items", "Staff", "Processed By"],
    )

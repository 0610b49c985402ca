import streamlit as st
import pandas as pd
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from datetime import datetime, date, time as dtime, timedelta
from typing import Optional
from logging.handlers import RotatingFileHandler
import hashlib
import io
import json
import logging
import os
import re

from audit import TransactionRecord, parse_transaction
from inventory import Consumable, consumable_from_row, unit_from_string

logger = logging.getLogger(__name__)

# ======================================
# CONSTANTS
# ======================================
APP_ROOT = Path(__file__).resolve().parent
DATA_DIR = Path(os.environ.get("WORKSHOP_DATA_DIR", "") or (APP_ROOT / "data"))
MAIN_DB_FILE = DATA_DIR / "main_data.db"
LOG_FILE_NAME = "workshop.log"

STAFF_TABLE = "staff"
TOOLS_TABLE = "tools"
CONSUMABLES_TABLE = "consumables"
TOOL_HISTORY_TABLE = "tool_history"
CONSUMABLE_TX_TABLE = "consumable_transactions"

TS_FORMAT = "%Y-%m-%d %H:%M:%S"
DB_BUSY_TIMEOUT_S = 30

TOOL_STATUS_AVAILABLE = "available"
TOOL_STATUS_CHECKED_OUT = "checked_out"

STAFF_COLUMNS = ["job_code", "full_name", "email", "role", "is_active", "created_at"]
TOOL_COLUMNS = [
    "unique_id",
    "name",
    "brand",
    "model",
    "num",
    "status",
    "current_holder",
    "last_assigned_to_name",
    "last_assigned_by_name",
    "last_assigned_at",
    "last_checkin_at",
    "last_checkin_by_name",
    "created_at",
    "updated_at",
]

ROLE_RANK = {
    "worker": 1,
    "supervisor": 2,
    "admin": 3,
}

QR_PREFIXES = {
    "TOOL": "tool",
    "CONSUMABLE": "consumable",
    "STAFF": "staff",
}


# ======================================
# ERRORS
# ======================================
class StoreError(Exception):
    """Base error for store write operations."""


class NotFoundError(StoreError):
    pass


class InvalidOperationError(StoreError):
    pass


class InsufficientStockError(InvalidOperationError):
    pass


# ======================================
# CONFIG / LOGGING
# ======================================
def _get_secret_or_env(key: str, default: str = "") -> str:
    """Read a value from Streamlit secrets first, then environment variables."""
    try:
        v = st.secrets.get(key)  # type: ignore[attr-defined]
        if v is not None:
            return str(v)
    except Exception:
        # No secrets.toml configured.
        pass
    return str(os.environ.get(key, default) or default)


def ensure_data_directory() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)


_logging_configured = False


def configure_logging() -> None:
    """Attach a rotating file handler and a console handler to the root logger (once)."""
    global _logging_configured
    if _logging_configured:
        return

    ensure_data_directory()
    level_name = _get_secret_or_env("WORKSHOP_LOG_LEVEL", "INFO").strip().upper() or "INFO"
    level = getattr(logging, level_name, logging.INFO)

    fmt = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    file_handler = RotatingFileHandler(
        DATA_DIR / LOG_FILE_NAME, maxBytes=10 * 1024 * 1024, backupCount=5
    )
    file_handler.setFormatter(fmt)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(fmt)

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    _logging_configured = True


def _now_str(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime(TS_FORMAT)


def new_batch_id(now: Optional[datetime] = None) -> str:
    ts = now or datetime.now()
    return f"BATCH_{int(ts.timestamp() * 1000)}"


# ======================================
# QR HELPERS
# ======================================
def decode_qr_payload_from_image(uploaded_file) -> Optional[str]:
    """Decode a QR code payload from a Streamlit uploaded image.

    Designed for use with `st.camera_input()` or `st.file_uploader()`.
    Returns the decoded string, or None if no QR is detected.
    """
    if uploaded_file is None:
        return None

    try:
        image_bytes = uploaded_file.getvalue()
    except AttributeError:
        image_bytes = uploaded_file.read()
    if not image_bytes:
        return None

    import cv2
    import numpy as np

    data = np.frombuffer(image_bytes, dtype=np.uint8)
    img = cv2.imdecode(data, cv2.IMREAD_COLOR)
    if img is None:
        logger.warning("QR decode: uploaded image could not be read")
        return None

    detector = cv2.QRCodeDetector()
    ok, decoded_info, _, _ = detector.detectAndDecodeMulti(img)
    if ok and decoded_info:
        for val in decoded_info:
            val = str(val or "").strip()
            if val:
                return val

    val, _, _ = detector.detectAndDecode(img)
    val = str(val or "").strip()
    return val or None


def uploaded_file_sha256(uploaded_file) -> Optional[str]:
    """Stable digest for Streamlit UploadedFile objects to avoid re-processing the same image."""
    if uploaded_file is None:
        return None
    try:
        b = uploaded_file.getvalue()
    except AttributeError:
        b = uploaded_file.read()
    if not b:
        return None
    return hashlib.sha256(b).hexdigest()


def parse_qr_payload(payload: str) -> tuple[str, str]:
    """Split a scanned payload like `TOOL#SM12345` into (kind, id).

    Bare ids come back with an empty kind so callers can try every lookup.
    """
    s = str(payload or "").strip()
    if not s:
        return "", ""
    m = re.match(r"^([A-Za-z]+)#(.+)$", s)
    if m and m.group(1).upper() in QR_PREFIXES:
        return QR_PREFIXES[m.group(1).upper()], m.group(2).strip()
    return "", s


@st.cache_data(show_spinner=False)
def make_qr_png(payload: str) -> bytes:
    """Render a QR label for a tool/consumable payload as PNG bytes."""
    import qrcode

    img = qrcode.make(str(payload or ""))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


# ======================================
# DATABASE
# ======================================
def _connect_main_db() -> sqlite3.Connection:
    ensure_data_directory()
    conn = sqlite3.connect(MAIN_DB_FILE, timeout=DB_BUSY_TIMEOUT_S)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
    except sqlite3.Error:
        logger.debug("WAL mode not available for %s", MAIN_DB_FILE)
    return conn


def _ensure_tables_in_main_db(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(f"""
        CREATE TABLE IF NOT EXISTS {STAFF_TABLE} (
            job_code TEXT PRIMARY KEY,
            full_name TEXT NOT NULL,
            email TEXT,
            role TEXT NOT NULL DEFAULT 'worker',
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        )
    """)
    cur.execute(f"""
        CREATE TABLE IF NOT EXISTS {TOOLS_TABLE} (
            unique_id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            brand TEXT,
            model TEXT,
            num TEXT,
            status TEXT NOT NULL DEFAULT 'available',   -- available / checked_out
            current_holder TEXT,                       -- staff job_code
            last_assigned_to_name TEXT,
            last_assigned_by_name TEXT,
            last_assigned_at TEXT,
            last_checkin_at TEXT,
            last_checkin_by_name TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    cur.execute(f"""
        CREATE TABLE IF NOT EXISTS {CONSUMABLES_TABLE} (
            unique_id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            category TEXT,
            brand TEXT,
            unit TEXT NOT NULL DEFAULT 'pieces',
            current_quantity REAL NOT NULL DEFAULT 0,
            min_quantity REAL NOT NULL DEFAULT 0,
            max_quantity REAL NOT NULL DEFAULT 100,
            unit_price REAL NOT NULL DEFAULT 0,
            sku TEXT,
            notes TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)
    cur.execute(f"""
        CREATE TABLE IF NOT EXISTS {TOOL_HISTORY_TABLE} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            action TEXT NOT NULL,              -- checkout / checkin
            tool_unique_id TEXT NOT NULL,
            staff_job_code TEXT,
            batch_id TEXT,
            notes TEXT,
            metadata TEXT                      -- JSON: toolName, staffName, adminName, ...
        )
    """)
    cur.execute(f"""
        CREATE TABLE IF NOT EXISTS {CONSUMABLE_TX_TABLE} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            action TEXT NOT NULL,              -- usage / restock / adjustment
            consumable_unique_id TEXT NOT NULL,
            quantity_before REAL,
            quantity_change REAL,
            quantity_after REAL,
            used_by TEXT,                      -- job_code of admin who processed
            assigned_to TEXT,                  -- job_code of worker
            project_name TEXT,
            notes TEXT
        )
    """)
    cur.execute(
        f"CREATE INDEX IF NOT EXISTS idx_tool_history_ts ON {TOOL_HISTORY_TABLE}(timestamp)"
    )
    cur.execute(
        f"CREATE INDEX IF NOT EXISTS idx_consumable_tx_ts ON {CONSUMABLE_TX_TABLE}(timestamp)"
    )


def _ensure_bootstrap_admin(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(f"SELECT COUNT(*) FROM {STAFF_TABLE} WHERE role = 'admin'")
    if int(cur.fetchone()[0] or 0) > 0:
        return
    job_code = _get_secret_or_env("WORKSHOP_ADMIN_JOB_CODE", "ADMIN001").strip() or "ADMIN001"
    name = _get_secret_or_env("WORKSHOP_ADMIN_NAME", "Workshop Admin").strip() or "Workshop Admin"
    cur.execute(
        f"INSERT OR IGNORE INTO {STAFF_TABLE} (job_code, full_name, role, is_active, created_at) "
        "VALUES (?, ?, 'admin', 1, ?)",
        (job_code, name, _now_str()),
    )
    logger.info("Created bootstrap admin %s", job_code)


def ensure_main_database() -> bool:
    try:
        conn = _connect_main_db()
        try:
            _ensure_tables_in_main_db(conn)
            _ensure_bootstrap_admin(conn)
            conn.commit()
        finally:
            conn.close()
        return True
    except sqlite3.Error:
        logger.exception("Could not initialise %s", MAIN_DB_FILE)
        return False


@contextmanager
def _write_transaction():
    """Yield a connection that holds the database write lock until commit.

    Reads done on this connection see the state the writes will apply to.
    """
    ensure_main_database()
    conn = _connect_main_db()
    try:
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            raise StoreError(f"Database busy, try again: {e}") from e
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
    finally:
        conn.close()


def _select_one(conn: sqlite3.Connection, table: str, key_column: str, value: str) -> Optional[dict]:
    row = conn.execute(
        f"SELECT * FROM {table} WHERE {key_column} = ? COLLATE NOCASE LIMIT 1",
        (str(value or "").strip(),),
    ).fetchone()
    return dict(row) if row else None


def _read_frame(query: str, params: tuple = (), columns: Optional[list] = None) -> pd.DataFrame:
    if not ensure_main_database():
        return pd.DataFrame(columns=columns)
    conn = _connect_main_db()
    conn.row_factory = None
    try:
        return pd.read_sql_query(query, conn, params=params)
    except Exception as e:
        logger.exception("Query failed: %s", query)
        st.error(f"❌ Error reading data: {str(e)}")
        return pd.DataFrame(columns=columns)
    finally:
        conn.close()


# ======================================
# STAFF
# ======================================
def role_rank(role) -> int:
    v = str(role or "").strip().lower()
    if "admin" in v:
        return ROLE_RANK["admin"]
    if "super" in v:
        return ROLE_RANK["supervisor"]
    return ROLE_RANK.get(v, ROLE_RANK["worker"] if v else 0)


def load_staff(include_inactive: bool = True) -> pd.DataFrame:
    query = f"SELECT {', '.join(STAFF_COLUMNS)} FROM {STAFF_TABLE}"
    if not include_inactive:
        query += " WHERE is_active = 1"
    return _read_frame(query + " ORDER BY full_name", columns=STAFF_COLUMNS)


def get_staff_by_job_code(job_code: str) -> Optional[dict]:
    code = str(job_code or "").strip()
    if not code or not ensure_main_database():
        return None
    conn = _connect_main_db()
    try:
        return _select_one(conn, STAFF_TABLE, "job_code", code)
    finally:
        conn.close()


def save_staff(job_code: str, full_name: str, role: str = "worker", email: str = "", is_active: bool = True) -> None:
    """Insert or update a staff member."""
    code = str(job_code or "").strip().upper()
    name = str(full_name or "").strip()
    role = str(role or "worker").strip().lower()
    if not code or not name:
        raise InvalidOperationError("Job code and full name are required.")
    if role not in ROLE_RANK:
        raise InvalidOperationError(f"Unknown role: {role}")

    ensure_main_database()
    conn = _connect_main_db()
    try:
        conn.execute(
            f"""
            INSERT INTO {STAFF_TABLE} (job_code, full_name, email, role, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(job_code) DO UPDATE SET
                full_name = excluded.full_name,
                email = excluded.email,
                role = excluded.role,
                is_active = excluded.is_active
            """,
            (code, name, str(email or "").strip(), role, 1 if is_active else 0, _now_str()),
        )
        conn.commit()
    finally:
        conn.close()
    logger.info("Saved staff %s (%s)", code, role)


def set_staff_active(job_code: str, active: bool) -> bool:
    ensure_main_database()
    conn = _connect_main_db()
    try:
        cur = conn.execute(
            f"UPDATE {STAFF_TABLE} SET is_active = ? WHERE job_code = ?",
            (1 if active else 0, str(job_code or "").strip()),
        )
        conn.commit()
        changed = int(cur.rowcount or 0) > 0
    finally:
        conn.close()
    if changed:
        logger.info("Staff %s set active=%s", job_code, active)
    return changed


# ======================================
# TOOLS
# ======================================
def load_tools() -> pd.DataFrame:
    return _read_frame(
        f"SELECT {', '.join(TOOL_COLUMNS)} FROM {TOOLS_TABLE} ORDER BY name",
        columns=TOOL_COLUMNS,
    )


def get_tool_by_unique_id(unique_id: str) -> Optional[dict]:
    uid = str(unique_id or "").strip()
    if not uid or not ensure_main_database():
        return None
    conn = _connect_main_db()
    try:
        return _select_one(conn, TOOLS_TABLE, "unique_id", uid)
    finally:
        conn.close()


def load_checked_out_tools(holder_job_code: Optional[str] = None) -> pd.DataFrame:
    """Tools currently out, with the holder's name; optionally for one holder only."""
    query = (
        f"SELECT t.{', t.'.join(TOOL_COLUMNS)}, s.full_name AS holder_name "
        f"FROM {TOOLS_TABLE} t LEFT JOIN {STAFF_TABLE} s ON s.job_code = t.current_holder "
        "WHERE t.status = ?"
    )
    params: list = [TOOL_STATUS_CHECKED_OUT]
    if holder_job_code is not None:
        query += " AND t.current_holder = ? COLLATE NOCASE"
        params.append(str(holder_job_code).strip())
    query += " ORDER BY t.current_holder, t.last_assigned_at DESC"
    return _read_frame(query, tuple(params), columns=TOOL_COLUMNS + ["holder_name"])


def tool_display_name(tool: dict) -> str:
    return " ".join(
        str(tool.get(k) or "").strip() for k in ("brand", "model", "name") if str(tool.get(k) or "").strip()
    )


def save_tool(unique_id: str, name: str, brand: str = "", model: str = "", num: str = "") -> None:
    uid = str(unique_id or "").strip().upper()
    if not uid or not str(name or "").strip():
        raise InvalidOperationError("Tool ID and name are required.")
    ensure_main_database()
    now = _now_str()
    conn = _connect_main_db()
    try:
        conn.execute(
            f"""
            INSERT INTO {TOOLS_TABLE} (unique_id, name, brand, model, num, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(unique_id) DO UPDATE SET
                name = excluded.name,
                brand = excluded.brand,
                model = excluded.model,
                num = excluded.num,
                updated_at = excluded.updated_at
            """,
            (uid, str(name).strip(), str(brand or "").strip(), str(model or "").strip(),
             str(num or "").strip(), TOOL_STATUS_AVAILABLE, now, now),
        )
        conn.commit()
    finally:
        conn.close()
    logger.info("Saved tool %s", uid)


def _insert_tool_history(
    conn: sqlite3.Connection,
    *,
    action: str,
    tool: dict,
    staff_job_code: str,
    staff_name: str,
    admin_name: str,
    notes: str,
    batch_id: Optional[str],
    now: datetime,
) -> None:
    metadata = {
        "toolName": tool_display_name(tool),
        "toolUniqueId": tool.get("unique_id"),
        "toolBrand": tool.get("brand") or "",
        "toolModel": tool.get("model") or "",
        "staffName": staff_name or "Unknown",
        "staffJobCode": staff_job_code or "",
        "adminName": admin_name or "Unknown",
    }
    conn.execute(
        f"""
        INSERT INTO {TOOL_HISTORY_TABLE}
            (timestamp, action, tool_unique_id, staff_job_code, batch_id, notes, metadata)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            _now_str(now),
            action,
            tool.get("unique_id"),
            staff_job_code or "",
            batch_id,
            notes or None,
            json.dumps(metadata, ensure_ascii=False, sort_keys=True),
        ),
    )


def _batch_notes(marker: str, batch_id: Optional[str], notes: str) -> str:
    notes = str(notes or "").strip()
    if not batch_id:
        return notes
    tag = f"{marker} {batch_id}"
    return f"{tag} - {notes}" if notes else tag


def checkout_tool(
    tool_uid: str,
    staff_job_code: str,
    *,
    admin_name: str = "",
    notes: str = "",
    batch_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Assign an available tool to a staff member and record the checkout.

    The status check, the tool update and the history row share one write
    transaction, so concurrent sessions cannot check out the same tool twice.
    """
    now = now or datetime.now()
    with _write_transaction() as conn:
        tool = _select_one(conn, TOOLS_TABLE, "unique_id", tool_uid)
        if tool is None:
            raise NotFoundError(f"Tool not found: {tool_uid}")
        if tool.get("status") != TOOL_STATUS_AVAILABLE:
            raise InvalidOperationError(f"Tool {tool['unique_id']} is already checked out.")
        staff = _select_one(conn, STAFF_TABLE, "job_code", staff_job_code)
        if staff is None:
            raise NotFoundError(f"Staff not found: {staff_job_code}")
        if not int(staff.get("is_active") or 0):
            raise InvalidOperationError(f"Staff {staff['job_code']} is inactive.")

        cur = conn.execute(
            f"""
            UPDATE {TOOLS_TABLE} SET
                status = ?, current_holder = ?, last_assigned_to_name = ?,
                last_assigned_by_name = ?, last_assigned_at = ?, updated_at = ?
            WHERE unique_id = ? AND status = ?
            """,
            (TOOL_STATUS_CHECKED_OUT, staff["job_code"], staff["full_name"],
             admin_name or "Unknown", _now_str(now), _now_str(now), tool["unique_id"],
             TOOL_STATUS_AVAILABLE),
        )
        if cur.rowcount != 1:
            raise InvalidOperationError(f"Tool {tool['unique_id']} is already checked out.")
        _insert_tool_history(
            conn,
            action="checkout",
            tool=tool,
            staff_job_code=staff["job_code"],
            staff_name=staff["full_name"],
            admin_name=admin_name,
            notes=_batch_notes("Batch operation:", batch_id, notes),
            batch_id=batch_id,
            now=now,
        )
    logger.info(
        "Checked out %s to %s%s", tool["unique_id"], staff["job_code"], f" (batch {batch_id})" if batch_id else ""
    )


def checkin_tool(
    tool_uid: str,
    *,
    admin_name: str = "",
    notes: str = "",
    batch_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Return a checked-out tool and record the check-in against its last holder."""
    now = now or datetime.now()
    with _write_transaction() as conn:
        tool = _select_one(conn, TOOLS_TABLE, "unique_id", tool_uid)
        if tool is None:
            raise NotFoundError(f"Tool not found: {tool_uid}")
        if tool.get("status") != TOOL_STATUS_CHECKED_OUT:
            raise InvalidOperationError(f"Tool {tool['unique_id']} is not checked out.")

        holder_code = str(tool.get("current_holder") or "")
        holder = _select_one(conn, STAFF_TABLE, "job_code", holder_code) if holder_code else None
        holder_name = (holder or {}).get("full_name") or tool.get("last_assigned_to_name") or "Unknown"

        cur = conn.execute(
            f"""
            UPDATE {TOOLS_TABLE} SET
                status = ?, current_holder = NULL, last_checkin_at = ?,
                last_checkin_by_name = ?, updated_at = ?
            WHERE unique_id = ? AND status = ?
            """,
            (TOOL_STATUS_AVAILABLE, _now_str(now), holder_name, _now_str(now), tool["unique_id"],
             TOOL_STATUS_CHECKED_OUT),
        )
        if cur.rowcount != 1:
            raise InvalidOperationError(f"Tool {tool['unique_id']} is not checked out.")
        _insert_tool_history(
            conn,
            action="checkin",
            tool=tool,
            staff_job_code=holder_code,
            staff_name=holder_name,
            admin_name=admin_name,
            notes=_batch_notes("Batch operation:", batch_id, notes),
            batch_id=batch_id,
            now=now,
        )
    logger.info("Checked in %s from %s", tool["unique_id"], holder_code or "unknown holder")


def batch_checkout_tools(
    tool_uids: list[str],
    staff_job_code: str,
    *,
    admin_name: str = "",
    notes: str = "",
    now: Optional[datetime] = None,
) -> tuple[str, dict]:
    """Check out several tools under one batch id. Returns (batch_id, {uid: ok})."""
    now = now or datetime.now()
    batch_id = new_batch_id(now)
    results: dict[str, bool] = {}
    logger.info("Starting batch checkout %s (%d tools)", batch_id, len(tool_uids))
    for uid in tool_uids:
        try:
            checkout_tool(uid, staff_job_code, admin_name=admin_name, notes=notes, batch_id=batch_id, now=now)
            results[uid] = True
        except StoreError as e:
            logger.warning("Batch %s: checkout of %s failed: %s", batch_id, uid, e)
            results[uid] = False
    logger.info("Batch checkout %s complete: %d/%d", batch_id, sum(results.values()), len(tool_uids))
    return batch_id, results


def batch_checkin_tools(
    tool_uids: list[str],
    *,
    admin_name: str = "",
    notes: str = "",
    now: Optional[datetime] = None,
) -> tuple[str, dict]:
    now = now or datetime.now()
    batch_id = new_batch_id(now)
    results: dict[str, bool] = {}
    logger.info("Starting batch checkin %s (%d tools)", batch_id, len(tool_uids))
    for uid in tool_uids:
        try:
            checkin_tool(uid, admin_name=admin_name, notes=notes, batch_id=batch_id, now=now)
            results[uid] = True
        except StoreError as e:
            logger.warning("Batch %s: checkin of %s failed: %s", batch_id, uid, e)
            results[uid] = False
    logger.info("Batch checkin %s complete: %d/%d", batch_id, sum(results.values()), len(tool_uids))
    return batch_id, results


# ======================================
# CONSUMABLES
# ======================================
def load_consumables(include_inactive: bool = False) -> list[Consumable]:
    query = f"SELECT * FROM {CONSUMABLES_TABLE}"
    if not include_inactive:
        query += " WHERE is_active = 1"
    df = _read_frame(query + " ORDER BY name")
    return [consumable_from_row(r) for r in df.to_dict(orient="records")]


def get_consumable_by_unique_id(unique_id: str) -> Optional[Consumable]:
    uid = str(unique_id or "").strip()
    if not uid or not ensure_main_database():
        return None
    conn = _connect_main_db()
    try:
        row = _select_one(conn, CONSUMABLES_TABLE, "unique_id", uid)
    finally:
        conn.close()
    return consumable_from_row(row) if row else None


def save_consumable(
    unique_id: str,
    name: str,
    *,
    category: str = "Uncategorized",
    brand: str = "",
    unit: str = "pieces",
    current_quantity: float = 0.0,
    min_quantity: float = 0.0,
    max_quantity: float = 100.0,
    unit_price: float = 0.0,
    sku: str = "",
    notes: str = "",
) -> None:
    uid = str(unique_id or "").strip().upper()
    if not uid or not str(name or "").strip():
        raise InvalidOperationError("Consumable ID and name are required.")
    if float(min_quantity) < 0 or float(max_quantity) < float(min_quantity):
        raise InvalidOperationError("Quantities must satisfy 0 <= min <= max.")

    ensure_main_database()
    now = _now_str()
    conn = _connect_main_db()
    try:
        conn.execute(
            f"""
            INSERT INTO {CONSUMABLES_TABLE} (
                unique_id, name, category, brand, unit,
                current_quantity, min_quantity, max_quantity, unit_price,
                sku, notes, is_active, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
            ON CONFLICT(unique_id) DO UPDATE SET
                name = excluded.name,
                category = excluded.category,
                brand = excluded.brand,
                unit = excluded.unit,
                min_quantity = excluded.min_quantity,
                max_quantity = excluded.max_quantity,
                unit_price = excluded.unit_price,
                sku = excluded.sku,
                notes = excluded.notes,
                updated_at = excluded.updated_at
            """,
            (
                uid,
                str(name).strip(),
                str(category or "Uncategorized").strip(),
                str(brand or "").strip(),
                unit_from_string(unit).value,
                float(current_quantity),
                float(min_quantity),
                float(max_quantity),
                float(unit_price),
                str(sku or "").strip() or None,
                str(notes or "").strip() or None,
                now,
                now,
            ),
        )
        conn.commit()
    finally:
        conn.close()
    logger.info("Saved consumable %s", uid)


def _record_consumable_change(
    *,
    action: str,
    unique_id: str,
    change: float,
    processed_by: str,
    assigned_to: str = "",
    project_name: str = "",
    notes: str = "",
    batch_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> float:
    # before/after come from the row as read under the write lock
    now_s = _now_str(now)
    with _write_transaction() as conn:
        row = _select_one(conn, CONSUMABLES_TABLE, "unique_id", unique_id)
        if row is None:
            raise NotFoundError(f"Consumable not found: {unique_id}")
        consumable = consumable_from_row(row)

        before = consumable.current_quantity
        after = before + change
        if after < 0:
            raise InsufficientStockError(
                f"Only {consumable.formatted_current_quantity} of {consumable.name} in stock."
            )

        conn.execute(
            f"UPDATE {CONSUMABLES_TABLE} SET current_quantity = ?, updated_at = ? WHERE unique_id = ?",
            (after, now_s, consumable.unique_id),
        )
        conn.execute(
            f"""
            INSERT INTO {CONSUMABLE_TX_TABLE} (
                timestamp, action, consumable_unique_id,
                quantity_before, quantity_change, quantity_after,
                used_by, assigned_to, project_name, notes
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                now_s,
                action,
                consumable.unique_id,
                before,
                change,
                after,
                str(processed_by or ""),
                str(assigned_to or "") or None,
                str(project_name or "") or None,
                _batch_notes("Batch ID:", batch_id, notes) or None,
            ),
        )
    logger.info("Consumable %s %s: %s -> %s", consumable.unique_id, action, before, after)
    return after


def record_consumable_usage(
    unique_id: str,
    quantity: float,
    *,
    processed_by: str,
    assigned_to: str = "",
    project_name: str = "",
    notes: str = "",
    batch_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> float:
    """Deduct `quantity` from stock. Returns the new current quantity."""
    if float(quantity) <= 0:
        raise InvalidOperationError("Usage quantity must be greater than zero.")
    return _record_consumable_change(
        action="usage",
        unique_id=unique_id,
        change=-float(quantity),
        processed_by=processed_by,
        assigned_to=assigned_to,
        project_name=project_name,
        notes=notes,
        batch_id=batch_id,
        now=now,
    )


def record_consumable_restock(
    unique_id: str,
    quantity: float,
    *,
    processed_by: str,
    notes: str = "",
    now: Optional[datetime] = None,
) -> float:
    if float(quantity) <= 0:
        raise InvalidOperationError("Restock quantity must be greater than zero.")
    return _record_consumable_change(
        action="restock",
        unique_id=unique_id,
        change=float(quantity),
        processed_by=processed_by,
        notes=notes,
        now=now,
    )


def record_batch_consumable_usage(
    items: list[tuple[str, float]],
    *,
    processed_by: str,
    assigned_to: str = "",
    project_name: str = "",
    notes: str = "",
    now: Optional[datetime] = None,
) -> tuple[str, dict]:
    """Record usage of several consumables under one batch id."""
    now = now or datetime.now()
    batch_id = new_batch_id(now)
    results: dict[str, bool] = {}
    for uid, qty in items:
        try:
            record_consumable_usage(
                uid,
                qty,
                processed_by=processed_by,
                assigned_to=assigned_to,
                project_name=project_name,
                notes=notes,
                batch_id=batch_id,
                now=now,
            )
            results[uid] = True
        except StoreError as e:
            logger.warning("Batch %s: usage of %s failed: %s", batch_id, uid, e)
            results[uid] = False
    return batch_id, results


# ======================================
# TRANSACTIONS (AUDIT FEED)
# ======================================
def _range_clause(
    start: Optional[datetime],
    end: Optional[datetime],
    action: Optional[str],
    item_column: Optional[str] = None,
    item_id: Optional[str] = None,
) -> tuple[str, list]:
    where: list[str] = []
    params: list = []
    if start is not None:
        where.append("h.timestamp >= ?")
        params.append(_now_str(start))
    if end is not None:
        where.append("h.timestamp <= ?")
        params.append(_now_str(end))
    if action:
        where.append("h.action = ?")
        params.append(str(action))
    if item_column and item_id is not None:
        where.append(f"h.{item_column} = ? COLLATE NOCASE")
        params.append(str(item_id).strip())
    return (" WHERE " + " AND ".join(where)) if where else "", params


def _tool_history_rows(conn, start, end, action, tool_uid=None) -> list[dict]:
    clause, params = _range_clause(start, end, action, "tool_unique_id", tool_uid)
    rows = conn.execute(
        f"SELECT h.* FROM {TOOL_HISTORY_TABLE} h{clause} ORDER BY h.timestamp DESC, h.id DESC",
        tuple(params),
    ).fetchall()
    out = []
    for r in rows:
        try:
            metadata = json.loads(r["metadata"] or "{}")
        except json.JSONDecodeError:
            logger.warning("tool_history %s has invalid metadata JSON", r["id"])
            metadata = {}
        out.append(
            {
                "id": f"tool-{r['id']}",
                "type": "tool",
                "action": r["action"],
                "timestamp": r["timestamp"],
                "notes": r["notes"],
                "batchId": r["batch_id"],
                "metadata": metadata,
            }
        )
    return out


def _consumable_tx_rows(conn, start, end, action, consumable_uid=None) -> list[dict]:
    clause, params = _range_clause(start, end, action, "consumable_unique_id", consumable_uid)
    rows = conn.execute(
        f"""
        SELECT h.*, c.name AS consumable_name,
               u.full_name AS used_by_name, a.full_name AS assigned_to_name
        FROM {CONSUMABLE_TX_TABLE} h
        LEFT JOIN {CONSUMABLES_TABLE} c ON c.unique_id = h.consumable_unique_id
        LEFT JOIN {STAFF_TABLE} u ON u.job_code = h.used_by
        LEFT JOIN {STAFF_TABLE} a ON a.job_code = h.assigned_to
        {clause}
        ORDER BY h.timestamp DESC, h.id DESC
        """,
        tuple(params),
    ).fetchall()
    out = []
    for r in rows:
        out.append(
            {
                "id": f"consumable-{r['id']}",
                "type": "consumable",
                "action": r["action"] or "usage",
                "timestamp": r["timestamp"],
                "notes": r["notes"],
                "metadata": {
                    "consumableName": r["consumable_name"] or "Unknown Consumable",
                    "staffName": r["assigned_to_name"] or r["used_by_name"] or "Unknown",
                    "adminName": r["used_by_name"] or "Unknown",
                    "quantity": abs(float(r["quantity_change"] or 0.0)),
                    "quantityBefore": r["quantity_before"],
                    "quantityAfter": r["quantity_after"],
                    "projectName": r["project_name"] or "",
                },
            }
        )
    return out


def fetch_transactions(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    action: Optional[str] = None,
    limit: Optional[int] = None,
    *,
    tool_uid: Optional[str] = None,
    consumable_uid: Optional[str] = None,
) -> list[TransactionRecord]:
    """Tool and consumable history merged newest first, parsed at the boundary.

    `tool_uid` / `consumable_uid` narrow the feed to one item's history. Passing
    only one of them leaves out the other kind of history entirely.
    """
    if not ensure_main_database():
        raise StoreError(f"Database unavailable: {MAIN_DB_FILE}")
    want_tools = tool_uid is not None or consumable_uid is None
    want_consumables = consumable_uid is not None or tool_uid is None

    raw: list[dict] = []
    conn = _connect_main_db()
    try:
        if want_tools:
            raw += _tool_history_rows(conn, start, end, action, tool_uid)
        if want_consumables:
            raw += _consumable_tx_rows(conn, start, end, action, consumable_uid)
    finally:
        conn.close()

    records = [parse_transaction(r) for r in raw]
    records.sort(key=lambda t: t.timestamp or datetime.min, reverse=True)
    if limit is not None:
        records = records[: int(limit)]
    logger.debug(
        "Fetched %d transactions (start=%s end=%s action=%s tool=%s consumable=%s)",
        len(records), start, end, action, tool_uid, consumable_uid,
    )
    return records


def fetch_today_transactions(limit: int = 1000, today: Optional[date] = None) -> list[TransactionRecord]:
    day = today or date.today()
    return fetch_transactions(
        start=datetime.combine(day, dtime(0, 0, 0)),
        end=datetime.combine(day, dtime(23, 59, 59)),
        limit=limit,
    )


def fetch_recent_transactions(days_back: int = 30, limit: Optional[int] = None) -> list[TransactionRecord]:
    end = datetime.now()
    return fetch_transactions(start=end - timedelta(days=int(days_back)), end=end, limit=limit)


# ======================================
# LOGIN
# ======================================
def resolve_login_identifier(identifier: str) -> Optional[dict]:
    """Find an active staff member by job code or `STAFF#<code>` QR payload."""
    kind, value = parse_qr_payload(identifier)
    if kind not in ("", "staff"):
        return None
    staff = get_staff_by_job_code(value)
    if staff is None or not int(staff.get("is_active") or 0):
        return None
    return staff


def require_login(*, min_role: str = "worker") -> dict:
    """Require a staff member to be signed in before continuing.

    Renders a sidebar login form and stops the app if not authenticated.
    On success, stores identity in st.session_state:
      auth_ok, auth_job_code, auth_name, auth_role
    """
    defaults = {
        "auth_ok": False,
        "auth_job_code": "",
        "auth_name": "",
        "auth_role": "",
    }
    for k, v in defaults.items():
        if k not in st.session_state:
            st.session_state[k] = v

    with st.sidebar:
        st.markdown("### 🔐 Login")

        if st.session_state.get("auth_ok"):
            st.success(f"Signed in: {st.session_state.auth_name} ({st.session_state.auth_role})")
            if st.button("Logout", use_container_width=True):
                logger.info("Logout %s", st.session_state.auth_job_code)
                for k in list(defaults.keys()):
                    st.session_state[k] = defaults[k]
                st.rerun()
        else:
            identifier = st.text_input(
                "Job code / Staff QR",
                key="login_identifier",
                placeholder="Scan staff QR or type job code...",
            )
            if st.button("Login", type="primary", use_container_width=True):
                staff = resolve_login_identifier(identifier)
                if staff is None:
                    st.error("Staff member not found or inactive.")
                else:
                    st.session_state.auth_ok = True
                    st.session_state.auth_job_code = staff["job_code"]
                    st.session_state.auth_name = staff["full_name"]
                    st.session_state.auth_role = staff["role"]
                    logger.info("Login %s (%s)", staff["job_code"], staff["role"])
                    st.rerun()

    if not st.session_state.get("auth_ok"):
        st.info("Please login from the sidebar to use the workshop tracker.")
        st.stop()

    if role_rank(st.session_state.auth_role) < role_rank(min_role):
        st.error("Access denied for this page.")
        st.stop()

    return {
        "ok": True,
        "job_code": st.session_state.auth_job_code,
        "name": st.session_state.auth_name,
        "role": st.session_state.auth_role,
    }


# ======================================
# TABLE SEARCH
# ======================================
def filter_dataframe(df: pd.DataFrame, search_term: str, columns: Optional[list] = None) -> pd.DataFrame:
    """Filter dataframe rows where any of `columns` (default: all) contains the search term."""
    if not search_term or df is None or df.empty:
        return df

    df = df.reset_index(drop=True)
    term = str(search_term).lower()
    mask = pd.Series([False] * len(df), index=df.index)
    for col in columns or list(df.columns):
        if col in df.columns:
            mask |= df[col].astype(str).str.lower().str.contains(term, na=False, regex=False)
    return df[mask]

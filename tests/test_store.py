from __future__ import annotations

import sqlite3
import threading
from datetime import date, datetime, timedelta

import pandas as pd
import pytest

from audit import (
    BatchGroup,
    BatchSource,
    TransactionAction,
    TransactionType,
    compute_stats,
    extract_batch_id,
    group_transactions,
)

T0 = datetime(2025, 10, 14, 9, 0, 0)


def test_bootstrap_admin_created_once(store):
    staff = store.load_staff()
    assert list(staff["job_code"]) == ["ADMIN001"]
    assert staff.iloc[0]["role"] == "admin"
    assert store.ensure_main_database()
    assert len(store.load_staff()) == 1


def test_save_staff_validates_and_upserts(store):
    with pytest.raises(store.InvalidOperationError):
        store.save_staff("", "Nobody")
    with pytest.raises(store.InvalidOperationError):
        store.save_staff("X1", "Someone", role="owner")

    store.save_staff("x1", "First Name")
    store.save_staff("X1", "Second Name", role="supervisor")
    row = store.get_staff_by_job_code("x1")
    assert row["job_code"] == "X1"
    assert row["full_name"] == "Second Name"
    assert row["role"] == "supervisor"


def test_resolve_login_identifier(seeded):
    assert seeded.resolve_login_identifier("WRK001")["full_name"] == "Tom Baker"
    assert seeded.resolve_login_identifier("STAFF#wrk001")["job_code"] == "WRK001"
    assert seeded.resolve_login_identifier("TOOL#WRK001") is None
    assert seeded.resolve_login_identifier("nobody") is None

    assert seeded.set_staff_active("WRK001", False)
    assert seeded.resolve_login_identifier("WRK001") is None
    assert not seeded.set_staff_active("MISSING", False)


def test_checkout_and_checkin_update_tool_and_history(seeded):
    seeded.checkout_tool("sm1001", "WRK001", admin_name="Grace", notes="Site A", now=T0)
    tool = seeded.get_tool_by_unique_id("SM1001")
    assert tool["status"] == seeded.TOOL_STATUS_CHECKED_OUT
    assert tool["current_holder"] == "WRK001"
    assert tool["last_assigned_to_name"] == "Tom Baker"

    with pytest.raises(seeded.InvalidOperationError):
        seeded.checkout_tool("SM1001", "SUP001", now=T0)

    seeded.checkin_tool("SM1001", admin_name="Grace", now=T0 + timedelta(hours=2))
    tool = seeded.get_tool_by_unique_id("SM1001")
    assert tool["status"] == seeded.TOOL_STATUS_AVAILABLE
    assert tool["current_holder"] is None
    assert tool["last_checkin_by_name"] == "Tom Baker"

    with pytest.raises(seeded.InvalidOperationError):
        seeded.checkin_tool("SM1001")

    records = seeded.fetch_transactions()
    assert [r.action for r in records] == [TransactionAction.CHECKIN, TransactionAction.CHECKOUT]
    checkout = records[1]
    assert checkout.type == TransactionType.TOOL
    assert checkout.timestamp == T0
    assert checkout.tool_name == "Makita DHP482 Cordless Drill"
    assert checkout.staff_name == "Tom Baker"
    assert checkout.processed_by == "Grace"
    assert checkout.notes == "Site A"
    assert checkout.batch_id is None


def test_checkout_errors(seeded):
    with pytest.raises(seeded.NotFoundError):
        seeded.checkout_tool("NOPE", "WRK001")
    with pytest.raises(seeded.NotFoundError):
        seeded.checkout_tool("SM1001", "NOPE")
    seeded.set_staff_active("WRK001", False)
    with pytest.raises(seeded.InvalidOperationError):
        seeded.checkout_tool("SM1001", "WRK001")


def test_batch_checkout_groups_in_audit_feed(seeded):
    batch_id, results = seeded.batch_checkout_tools(
        ["SM1001", "SM1002", "MISSING"], "WRK001", admin_name="Grace", now=T0
    )
    assert batch_id == seeded.new_batch_id(T0)
    assert results == {"SM1001": True, "SM1002": True, "MISSING": False}

    records = seeded.fetch_transactions()
    assert len(records) == 2
    for r in records:
        assert r.batch_id == batch_id
        assert r.notes == f"Batch operation: {batch_id}"
        assert extract_batch_id(r, sources=(BatchSource.OPERATION,)).batch_id == batch_id

    items = group_transactions(records)
    assert len(items) == 1
    group = items[0]
    assert isinstance(group, BatchGroup)
    assert group.action == TransactionAction.CHECKOUT
    assert group.staff_name == "Tom Baker"
    assert group.processed_by == "Grace"
    assert compute_stats(records).unique_batch_count == 1

    _, back = seeded.batch_checkin_tools(["SM1001", "SM1002"], now=T0 + timedelta(hours=1))
    assert all(back.values())
    assert compute_stats(seeded.fetch_transactions()).unique_batch_count == 2


def test_consumable_usage_and_restock(seeded):
    after = seeded.record_consumable_usage(
        "CN2001", 1.5, processed_by="SUP001", assigned_to="WRK001", project_name="Cabinet", now=T0
    )
    assert after == 3.0
    assert seeded.get_consumable_by_unique_id("cn2001").current_quantity == 3.0

    with pytest.raises(seeded.InsufficientStockError):
        seeded.record_consumable_usage("CN2001", 10, processed_by="SUP001")
    with pytest.raises(seeded.InvalidOperationError):
        seeded.record_consumable_usage("CN2001", 0, processed_by="SUP001")
    with pytest.raises(seeded.NotFoundError):
        seeded.record_consumable_usage("NOPE", 1, processed_by="SUP001")

    assert seeded.record_consumable_restock("CN2001", 7, processed_by="SUP001", now=T0 + timedelta(minutes=5)) == 10.0

    usage, restock = sorted(seeded.fetch_transactions(), key=lambda r: r.timestamp)
    assert usage.type == TransactionType.CONSUMABLE
    assert usage.action == TransactionAction.USAGE
    assert usage.item_name == "Wood Glue"
    assert usage.staff_name == "Tom Baker"
    assert usage.processed_by == "Grace Mwangi"
    assert usage.metadata["quantity"] == 1.5
    assert usage.metadata["projectName"] == "Cabinet"
    assert restock.action == TransactionAction.RESTOCK


def test_batch_consumable_usage_uses_batch_id_notes(seeded):
    batch_id, results = seeded.record_batch_consumable_usage(
        [("CN2001", 1), ("CN2002", 500), ("CN2002", 5)],
        processed_by="SUP001",
        notes="Cabinet job",
        now=T0,
    )
    assert results == {"CN2001": True, "CN2002": True}

    records = seeded.fetch_transactions()
    assert len(records) == 2
    assert all(r.notes == f"Batch ID: {batch_id} - Cabinet job" for r in records)

    items = group_transactions(records)
    assert len(items) == 1
    assert items[0].batch_id == batch_id
    assert items[0].action == TransactionAction.USAGE
    # consumable batches are grouped but not counted
    assert compute_stats(records).unique_batch_count == 0


def test_fetch_transactions_date_range_and_limit(seeded):
    seeded.checkout_tool("SM1001", "WRK001", now=T0 - timedelta(days=1))
    seeded.checkin_tool("SM1001", now=T0)
    seeded.record_consumable_usage("CN2002", 1, processed_by="SUP001", now=T0 + timedelta(minutes=1))

    today = seeded.fetch_today_transactions(today=T0.date())
    assert [r.id.split("-")[0] for r in today] == ["consumable", "tool"]
    assert all(r.timestamp.date() == T0.date() for r in today)

    assert len(seeded.fetch_transactions(action="checkout")) == 1
    assert len(seeded.fetch_transactions(limit=2)) == 2
    assert seeded.fetch_today_transactions(today=date(2000, 1, 1)) == []


def test_load_consumables_and_save_validation(seeded):
    items = seeded.load_consumables()
    assert [c.unique_id for c in items] == ["CN2002", "CN2001"]
    assert items[1].formatted_current_quantity == "4.5 L"

    with pytest.raises(seeded.InvalidOperationError):
        seeded.save_consumable("CN9", "Bad", min_quantity=5, max_quantity=1)


@pytest.mark.parametrize(
    "payload, expected",
    [
        ("TOOL#SM1001", ("tool", "SM1001")),
        ("consumable#CN2", ("consumable", "CN2")),
        ("STAFF# WRK001 ", ("staff", "WRK001")),
        ("SM1001", ("", "SM1001")),
        ("OTHER#X", ("", "OTHER#X")),
        ("", ("", "")),
    ],
)
def test_parse_qr_payload(store, payload, expected):
    assert store.parse_qr_payload(payload) == expected


def test_role_rank(store):
    assert store.role_rank("Admin") == 3
    assert store.role_rank("Supervisor") == 2
    assert store.role_rank("worker") == 1
    assert store.role_rank("") == 0


def test_filter_dataframe_is_literal_and_case_insensitive(store):
    df = pd.DataFrame({"name": ["Drill (18V)", "Saw", "drill bits"], "code": ["A", "B", "C"]})
    assert list(store.filter_dataframe(df, "DRILL")["code"]) == ["A", "C"]
    assert list(store.filter_dataframe(df, "(18V")["code"]) == ["A"]
    assert list(store.filter_dataframe(df, "b", columns=["code"])["code"]) == ["B"]
    assert store.filter_dataframe(df, "") is df


def _run_concurrently(fn, n=8):
    """Call fn() from n threads released together; return results or exceptions."""
    barrier = threading.Barrier(n)
    outcomes = []

    def worker():
        barrier.wait()
        try:
            outcomes.append(fn())
        except Exception as e:
            outcomes.append(e)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


def test_concurrent_checkouts_of_one_tool_only_one_wins(seeded):
    outcomes = _run_concurrently(lambda: seeded.checkout_tool("SM1001", "WRK001", admin_name="Grace"))

    errors = [o for o in outcomes if isinstance(o, Exception)]
    assert len(outcomes) - len(errors) == 1
    assert all(isinstance(e, seeded.InvalidOperationError) for e in errors)
    assert len(seeded.fetch_transactions(tool_uid="SM1001")) == 1
    assert seeded.get_tool_by_unique_id("SM1001")["current_holder"] == "WRK001"


def test_concurrent_checkins_of_one_tool_only_one_wins(seeded):
    seeded.checkout_tool("SM1001", "WRK001", now=T0)
    outcomes = _run_concurrently(lambda: seeded.checkin_tool("SM1001"))

    errors = [o for o in outcomes if isinstance(o, Exception)]
    assert len(outcomes) - len(errors) == 1
    assert all(isinstance(e, seeded.InvalidOperationError) for e in errors)
    actions = [r.action for r in seeded.fetch_transactions(tool_uid="SM1001")]
    assert sorted(actions) == [TransactionAction.CHECKIN, TransactionAction.CHECKOUT]


def _ledger(store, uid):
    conn = sqlite3.connect(store.MAIN_DB_FILE)
    try:
        return conn.execute(
            "SELECT quantity_before, quantity_change, quantity_after FROM consumable_transactions "
            "WHERE consumable_unique_id = ? ORDER BY id",
            (uid,),
        ).fetchall()
    finally:
        conn.close()


def test_concurrent_usage_does_not_lose_updates(seeded):
    outcomes = _run_concurrently(lambda: seeded.record_consumable_usage("CN2001", 0.5, processed_by="SUP001"))

    assert not [o for o in outcomes if isinstance(o, Exception)]
    assert seeded.get_consumable_by_unique_id("CN2001").current_quantity == pytest.approx(0.5)

    ledger = _ledger(seeded, "CN2001")
    assert len(ledger) == 8
    assert ledger[0][0] == pytest.approx(4.5)
    for (_, change, after), (next_before, _, _) in zip(ledger, ledger[1:]):
        assert after == pytest.approx(next_before)
    for before, change, after in ledger:
        assert before + change == pytest.approx(after)


def test_concurrent_usage_never_overdraws(seeded):
    outcomes = _run_concurrently(lambda: seeded.record_consumable_usage("CN2001", 1, processed_by="SUP001"), n=6)

    errors = [o for o in outcomes if isinstance(o, Exception)]
    assert len(outcomes) - len(errors) == 4
    assert len(errors) == 2
    assert all(isinstance(e, seeded.InsufficientStockError) for e in errors)
    assert seeded.get_consumable_by_unique_id("CN2001").current_quantity == pytest.approx(0.5)
    assert len(_ledger(seeded, "CN2001")) == 4


def test_fetch_transactions_for_one_item(seeded):
    seeded.checkout_tool("SM1001", "WRK001", now=T0)
    seeded.checkout_tool("SM1002", "WRK001", now=T0 + timedelta(minutes=1))
    seeded.checkin_tool("SM1001", now=T0 + timedelta(minutes=2))
    seeded.record_consumable_usage("CN2001", 1, processed_by="SUP001", now=T0 + timedelta(minutes=3))
    seeded.record_consumable_restock("CN2002", 10, processed_by="SUP001", now=T0 + timedelta(minutes=4))

    drill = seeded.fetch_transactions(tool_uid="sm1001")
    assert [r.action for r in drill] == [TransactionAction.CHECKIN, TransactionAction.CHECKOUT]
    assert all(r.type == TransactionType.TOOL for r in drill)

    glue = seeded.fetch_transactions(consumable_uid="CN2001")
    assert len(glue) == 1
    assert glue[0].item_name == "Wood Glue"
    assert glue[0].metadata["quantityBefore"] == 4.5
    assert glue[0].metadata["quantityAfter"] == 3.5

    both = seeded.fetch_transactions(tool_uid="SM1002", consumable_uid="CN2002")
    assert sorted(r.id.split("-")[0] for r in both) == ["consumable", "tool"]
    assert seeded.fetch_transactions(tool_uid="NOPE") == []
    assert len(seeded.fetch_transactions()) == 5


def test_load_checked_out_tools_by_holder(seeded):
    seeded.checkout_tool("SM1001", "WRK001", now=T0)
    seeded.checkout_tool("SM1002", "SUP001", now=T0)

    mine = seeded.load_checked_out_tools("wrk001")
    assert list(mine["unique_id"]) == ["SM1001"]
    assert list(mine["holder_name"]) == ["Tom Baker"]

    everyone = seeded.load_checked_out_tools()
    assert sorted(everyone["unique_id"]) == ["SM1001", "SM1002"]

    seeded.checkin_tool("SM1001")
    assert seeded.load_checked_out_tools("WRK001").empty

import streamlit as st
import logging
from datetime import date, datetime, timedelta

from audit import (
    ACTION_FILTER_ALL,
    ACTION_FILTER_BATCH,
    AuditFilter,
    BatchGroup,
    compute_stats,
    extract_batch_id,
    filter_transactions,
    format_relative_time,
    group_transactions,
    has_batch_marker,
    transactions_to_frame,
)
from utils import (
    StoreError,
    configure_logging,
    fetch_today_transactions,
    fetch_transactions,
    require_login,
)

configure_logging()
logger = logging.getLogger(__name__)

# --------------------------------------------------
# PAGE CONFIG
# --------------------------------------------------
st.set_page_config(page_title="Audit Log", page_icon="🧾", layout="wide")
require_login(min_role="supervisor")
st.title("🧾 Audit Log")

ACTION_OPTIONS = {
    "All": ACTION_FILTER_ALL,
    "Check Out": "checkout",
    "Check In": "checkin",
    "Usage": "usage",
    "Restock": "restock",
    "Batch": ACTION_FILTER_BATCH,
}

# --------------------------------------------------
# FILTERS
# --------------------------------------------------
col_search, col_dates = st.columns([3, 2])
with col_search:
    search_text = st.text_input(
        "Search",
        placeholder="Search by tool name, staff or notes (consumable names are not searched)...",
        label_visibility="collapsed",
        key="audit_search",
    )
with col_dates:
    use_range = st.toggle("Date range", key="audit_use_range")
    picked = None
    if use_range:
        today = date.today()
        picked = st.date_input(
            "Date range",
            value=(today - timedelta(days=7), today),
            min_value=today - timedelta(days=365),
            max_value=today,
            key="audit_range",
            label_visibility="collapsed",
        )

action_label = st.radio(
    "Action",
    options=list(ACTION_OPTIONS.keys()),
    horizontal=True,
    key="audit_action",
    label_visibility="collapsed",
)

start_day = end_day = None
if picked:
    if isinstance(picked, (tuple, list)):
        start_day = picked[0] if len(picked) > 0 else None
        end_day = picked[1] if len(picked) > 1 else start_day
    else:
        start_day = end_day = picked

view = AuditFilter.for_dates(
    start_day,
    end_day,
    action_filter=ACTION_OPTIONS[action_label],
    search_text=search_text,
)

# --------------------------------------------------
# LOAD
# --------------------------------------------------
try:
    if view.has_date_range:
        source = fetch_transactions(start=view.start_date, end=view.end_date)
    else:
        source = fetch_today_transactions()
except StoreError as e:
    logger.error("Audit feed failed: %s", e)
    st.error(f"Error loading transactions: {e}")
    st.stop()

# The header counts ignore the action/search selection, like the summary card.
stats = compute_stats(source)
m1, m2, m3, m4 = st.columns(4)
m1.metric("Total", stats.total)
m2.metric("Check Outs", stats.checkout_count)
m3.metric("Check Ins", stats.checkin_count)
m4.metric("Batch", stats.unique_batch_count)

transactions = filter_transactions(source, view)

st.markdown("---")

if not transactions:
    st.info("No transactions in selected date range" if view.has_date_range else "No transactions today")
    if view.search_text:
        st.caption("Try adjusting your search or filters")
    st.stop()

# --------------------------------------------------
# GROUPED ACTIVITY
# --------------------------------------------------
now = datetime.now()
items = group_transactions(transactions)
st.caption(f"{len(transactions)} transactions in {len(items)} entries")

for item in items:
    if isinstance(item, BatchGroup):
        icon = "📤" if item.action.value == "checkout" else "📥"
        title = (
            f"{icon} Batch {item.action.display_name} · {len(item.members)} items · "
            f"{item.staff_name} · {format_relative_time(item.timestamp, now)}"
        )
        with st.expander(title):
            d1, d2, d3 = st.columns(3)
            d1.markdown(f"**Batch ID**  \n{item.batch_id}")
            d2.markdown(f"**Staff**  \n{item.staff_name}")
            d3.markdown(f"**Processed By**  \n{item.processed_by}")
            if item.tool_members:
                st.markdown(f"**Tools in This Batch ({len(item.tool_members)})**")
                st.dataframe(transactions_to_frame(item.tool_members), use_container_width=True, hide_index=True)
            if item.consumable_members:
                st.markdown(f"**Consumables in This Batch ({len(item.consumable_members)})**")
                st.dataframe(transactions_to_frame(item.consumable_members), use_container_width=True, hide_index=True)
    else:
        t = item.transaction
        icon = "📤" if t.action.value == "checkout" else ("📥" if t.action.value == "checkin" else "🧴")
        title = (
            f"{icon} {t.action.display_name} · {t.item_name or 'Unknown Tool'} · "
            f"{t.staff_name or 'Unknown Staff'} · {format_relative_time(t.timestamp, now)}"
        )
        with st.expander(title):
            meta = t.metadata
            if meta.get("toolBrand") or meta.get("toolModel"):
                st.markdown(f"**Brand / Model:** {meta.get('toolBrand', '')} {meta.get('toolModel', '')}")
            if t.processed_by:
                st.markdown(f"**Processed By:** {t.processed_by}")
            if meta.get("quantity"):
                st.markdown(f"**Quantity:** {meta.get('quantity')}")
            if has_batch_marker(t) or t.batch_id:
                match = extract_batch_id(t)
                st.markdown(f"**Batch ID:** {match.batch_id or 'unreadable'}")
            if t.notes:
                st.markdown(f"**Notes:** {t.notes}")
            st.caption(t.timestamp.strftime("%d/%m/%Y %H:%M:%S") if t.timestamp else "Unknown time")

with st.expander("📊 View as table"):
    st.dataframe(transactions_to_frame(transactions), use_container_width=True, hide_index=True)

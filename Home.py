# Home.py

import streamlit as st
import pandas as pd
import plotly.express as px
import logging

from audit import compute_stats, group_transactions, grouped_items_to_frame
from inventory import StockLevel, stock_summary
from utils import (
    StoreError,
    TOOL_STATUS_CHECKED_OUT,
    configure_logging,
    fetch_today_transactions,
    load_consumables,
    load_tools,
    require_login,
)

configure_logging()
logger = logging.getLogger(__name__)

st.set_page_config(page_title="Workshop Tracker", page_icon="🧰", layout="wide")
user = require_login()
st.title("🧰 Workshop Dashboard")
st.caption(f"Welcome, {user['name']}")

# ======================================
#   TOOLS
# ======================================
tools_df = load_tools()
consumables = load_consumables()

total_tools = len(tools_df)
checked_out = int((tools_df["status"] == TOOL_STATUS_CHECKED_OUT).sum()) if total_tools else 0

summary = stock_summary(consumables)

c1, c2, c3, c4 = st.columns(4)
c1.metric("Tools", total_tools)
c2.metric("Checked Out", checked_out)
c3.metric("Consumables", summary.total_items)
c4.metric("Low Stock", summary.low_stock_count, f"{summary.out_of_stock_count} out of stock", delta_color="inverse")

col_left, col_right = st.columns(2)

with col_left:
    if total_tools:
        status_count = (
            tools_df["status"]
            .fillna("available")
            .replace({"available": "Available", "checked_out": "Checked Out"})
            .value_counts()
            .reset_index()
        )
        status_count.columns = ["Status", "Count"]
        fig_tools = px.pie(status_count, names="Status", values="Count", title="Tool Availability")
        st.plotly_chart(fig_tools, use_container_width=True)
    else:
        st.info("No tools registered yet.")

with col_right:
    if summary.total_items:
        levels = pd.DataFrame(
            [
                {"Stock Level": level.display_name, "Count": summary.level_counts[level]}
                for level in StockLevel
            ]
        )
        fig_stock = px.bar(
            levels,
            x="Stock Level",
            y="Count",
            text="Count",
            color="Stock Level",
            color_discrete_map={level.display_name: level.color for level in StockLevel},
            title="Consumable Stock Levels",
        )
        st.plotly_chart(fig_stock, use_container_width=True)
    else:
        st.info("No consumables registered yet.")

# ======================================
#   TODAY'S ACTIVITY
# ======================================
st.markdown("---")
st.markdown("## 📋 Today's Activity")

try:
    today_tx = fetch_today_transactions()
except StoreError as e:
    logger.error("Dashboard could not load today's transactions: %s", e)
    st.error(f"Error loading transactions: {e}")
    st.stop()

stats = compute_stats(today_tx)
s1, s2, s3, s4 = st.columns(4)
s1.metric("Total", stats.total)
s2.metric("Check Outs", stats.checkout_count)
s3.metric("Check Ins", stats.checkin_count)
s4.metric("Batch", stats.unique_batch_count)

if not today_tx:
    st.info("No transactions today.")
else:
    st.dataframe(
        grouped_items_to_frame(group_transactions(today_tx)).head(20),
        use_container_width=True,
        hide_index=True,
    )

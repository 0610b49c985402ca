import streamlit as st
import plotly.express as px
import pandas as pd
import logging

from audit import transactions_to_frame
from inventory import (
    MeasurementUnit,
    StockLevel,
    consumables_by_stock_level,
    consumables_to_frame,
    default_unit_for_category,
    search_consumables,
    stock_summary,
)
from utils import (
    StoreError,
    configure_logging,
    decode_qr_payload_from_image,
    fetch_transactions,
    get_consumable_by_unique_id,
    load_consumables,
    load_staff,
    make_qr_png,
    parse_qr_payload,
    record_batch_consumable_usage,
    record_consumable_restock,
    record_consumable_usage,
    require_login,
    role_rank,
    save_consumable,
    uploaded_file_sha256,
)

configure_logging()
logger = logging.getLogger(__name__)

st.set_page_config(page_title="Consumables", page_icon="🧴", layout="wide")
user = require_login()
is_admin = role_rank(user["role"]) >= role_rank("admin")

st.title("🧴 Consumables")

consumables = load_consumables()
summary = stock_summary(consumables)

# ======================================
#   STOCK OVERVIEW
# ======================================
c1, c2, c3, c4 = st.columns(4)
c1.metric("Items", summary.total_items)
c2.metric("Low Stock", summary.low_stock_count)
c3.metric("Out of Stock", summary.out_of_stock_count)
c4.metric("Inventory Value", f"{summary.total_value:,.2f}")

if summary.total_items:
    levels = pd.DataFrame(
        [{"Stock Level": lvl.display_name, "Count": summary.level_counts[lvl]} for lvl in StockLevel]
    )
    fig = px.bar(
        levels,
        x="Stock Level",
        y="Count",
        text="Count",
        color="Stock Level",
        color_discrete_map={lvl.display_name: lvl.color for lvl in StockLevel},
    )
    st.plotly_chart(fig, use_container_width=True)

    attention = consumables_by_stock_level(consumables, StockLevel.OUT_OF_STOCK) + consumables_by_stock_level(
        consumables, StockLevel.LOW
    )
    if attention:
        st.warning(f"⚠️ {len(attention)} item(s) need restocking.")
        st.dataframe(consumables_to_frame(attention), use_container_width=True, hide_index=True)

# ======================================
#   LIST
# ======================================
st.markdown("### 📋 Consumable List")
query = st.text_input("Search", placeholder="Search by name, category or ID...", key="cons_search")
level_filter = st.selectbox(
    "Stock level",
    options=["All"] + [lvl.display_name for lvl in StockLevel],
    key="cons_level",
)
shown = search_consumables(consumables, query)
if level_filter != "All":
    shown = [c for c in shown if c.stock_level.display_name == level_filter]

if shown:
    st.dataframe(consumables_to_frame(shown), use_container_width=True, hide_index=True)
else:
    st.info("🔍 No consumables found." if query else "📝 No consumables registered yet.")

if consumables:
    with st.expander("🕘 Transaction History"):
        by_id = {c.unique_id: c for c in consumables}
        history_id = st.selectbox(
            "Consumable",
            options=list(by_id),
            format_func=lambda i: f"{i} · {by_id[i].name}",
            key="cons_history_id",
        )
        try:
            history = fetch_transactions(consumable_uid=history_id)
        except StoreError as e:
            logger.error("Consumable history failed for %s: %s", history_id, e)
            st.error(f"Error loading history: {e}")
            history = []
        if history:
            hist_df = transactions_to_frame(history)
            hist_df.insert(3, "Quantity", [r.metadata.get("quantity") for r in history])
            hist_df.insert(4, "After", [r.metadata.get("quantityAfter") for r in history])
            st.dataframe(hist_df.drop(columns=["Type", "Item"]), use_container_width=True, hide_index=True)
        else:
            st.info("No transactions for this consumable yet.")

# ======================================
#   RECORD USAGE / RESTOCK
# ======================================
st.markdown("---")
st.markdown("### ✏️ Record Usage / Restock")

if "cons_scanned_id" not in st.session_state:
    st.session_state.cons_scanned_id = ""

cam = st.camera_input("Scan consumable QR", key="cons_qr_cam")
digest = uploaded_file_sha256(cam)
if cam is not None and digest and st.session_state.get("cons_qr_cam_digest") != digest:
    st.session_state["cons_qr_cam_digest"] = digest
    payload = decode_qr_payload_from_image(cam)
    kind, uid = parse_qr_payload(payload or "")
    if not payload:
        st.warning("No QR detected. Try again with a clearer shot.")
    elif kind not in ("", "consumable") or get_consumable_by_unique_id(uid) is None:
        st.warning(f"Not a known consumable: {payload}")
    else:
        st.session_state.cons_scanned_id = uid.upper()

ids = [c.unique_id for c in consumables]
names = {c.unique_id: c for c in consumables}
staff_df = load_staff(include_inactive=False)
staff_codes = [""] + (staff_df["job_code"].tolist() if not staff_df.empty else [])

tab_usage, tab_batch, tab_restock = st.tabs(["Usage", "Batch Usage", "Restock"])

with tab_usage:
    if ids:
        default_idx = ids.index(st.session_state.cons_scanned_id) if st.session_state.cons_scanned_id in ids else 0
        uid = st.selectbox(
            "Consumable",
            options=ids,
            index=default_idx,
            format_func=lambda i: f"{i} · {names[i].name} ({names[i].formatted_current_quantity})",
            key="cons_usage_id",
        )
        unit = names[uid].unit
        qty = st.number_input(
            f"Quantity ({unit.abbreviation})",
            min_value=0.0,
            step=0.1 if unit.allows_decimals else 1.0,
            key="cons_usage_qty",
        )
        assigned = st.selectbox("Assigned to", options=staff_codes, key="cons_usage_assigned")
        project = st.text_input("Project", key="cons_usage_project")
        notes = st.text_input("Notes", key="cons_usage_notes")
        if st.button("Record Usage", type="primary"):
            try:
                after = record_consumable_usage(
                    uid,
                    qty,
                    processed_by=user["job_code"],
                    assigned_to=assigned,
                    project_name=project,
                    notes=notes,
                )
                st.success(f"Recorded. {names[uid].name} now at {after:g} {unit.abbreviation}.")
            except StoreError as e:
                st.error(str(e))
    else:
        st.info("No consumables available.")

with tab_batch:
    if ids:
        picked = st.multiselect(
            "Consumables",
            options=ids,
            format_func=lambda i: f"{i} · {names[i].name}",
            key="cons_batch_ids",
        )
        quantities = {}
        for i in picked:
            quantities[i] = st.number_input(
                f"{names[i].name} ({names[i].unit.abbreviation})",
                min_value=0.0,
                step=0.1 if names[i].unit.allows_decimals else 1.0,
                key=f"cons_batch_qty_{i}",
            )
        b_assigned = st.selectbox("Assigned to", options=staff_codes, key="cons_batch_assigned")
        b_notes = st.text_input("Notes", key="cons_batch_notes")
        if st.button("Record Batch Usage", disabled=not picked):
            batch_id, results = record_batch_consumable_usage(
                list(quantities.items()),
                processed_by=user["job_code"],
                assigned_to=b_assigned,
                notes=b_notes,
            )
            failed = [k for k, v in results.items() if not v]
            st.success(f"Batch {batch_id}: {len(results) - len(failed)}/{len(results)} recorded.")
            if failed:
                st.warning(f"Not recorded: {', '.join(failed)}")

with tab_restock:
    if not is_admin:
        st.info("Only admins can restock.")
    elif ids:
        r_uid = st.selectbox(
            "Consumable",
            options=ids,
            format_func=lambda i: f"{i} · {names[i].name} ({names[i].formatted_current_quantity})",
            key="cons_restock_id",
        )
        r_qty = st.number_input("Quantity", min_value=0.0, step=1.0, key="cons_restock_qty")
        r_notes = st.text_input("Notes", key="cons_restock_notes")
        if st.button("Record Restock", type="primary"):
            try:
                after = record_consumable_restock(r_uid, r_qty, processed_by=user["job_code"], notes=r_notes)
                st.success(f"Restocked. {names[r_uid].name} now at {after:g}.")
            except StoreError as e:
                st.error(str(e))

# ======================================
#   ADMIN: ADD CONSUMABLE
# ======================================
if is_admin:
    st.markdown("---")
    with st.expander("➕ Add / Edit Consumable"):
        with st.form("consumable_form", clear_on_submit=True):
            f1, f2 = st.columns(2)
            new_uid = f1.text_input("Consumable ID *")
            new_name = f2.text_input("Name *")
            category = f1.text_input("Category", value="Uncategorized")
            brand = f2.text_input("Brand")
            unit_choice = f1.selectbox(
                "Unit",
                options=["(from category)"] + [u.value for u in MeasurementUnit],
                format_func=lambda v: v if v.startswith("(") else MeasurementUnit(v).display_name,
            )
            current = f2.number_input("Current quantity", min_value=0.0, step=1.0)
            min_q = f1.number_input("Min quantity", min_value=0.0, step=1.0)
            max_q = f2.number_input("Max quantity", min_value=0.0, value=100.0, step=1.0)
            price = f1.number_input("Unit price", min_value=0.0, step=0.01)
            sku = f2.text_input("SKU")
            if st.form_submit_button("💾 Save Consumable"):
                unit_value = (
                    default_unit_for_category(category).value if unit_choice.startswith("(") else unit_choice
                )
                try:
                    save_consumable(
                        new_uid,
                        new_name,
                        category=category,
                        brand=brand,
                        unit=unit_value,
                        current_quantity=current,
                        min_quantity=min_q,
                        max_quantity=max_q,
                        unit_price=price,
                        sku=sku,
                    )
                    st.success(f"Saved {new_uid.strip().upper()}.")
                except StoreError as e:
                    st.error(str(e))

    if ids:
        with st.expander("🏷️ QR Label"):
            label_id = st.selectbox("Consumable", options=ids, key="cons_label_id")
            png = make_qr_png(names[label_id].qr_payload)
            st.image(png, width=200)
            st.download_button("Download PNG", data=png, file_name=f"CONSUMABLE_{label_id}.png", mime="image/png")

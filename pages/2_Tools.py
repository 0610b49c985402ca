import streamlit as st
import logging

from audit import transactions_to_frame
from utils import (
    StoreError,
    TOOL_STATUS_AVAILABLE,
    TOOL_STATUS_CHECKED_OUT,
    batch_checkin_tools,
    batch_checkout_tools,
    checkin_tool,
    checkout_tool,
    configure_logging,
    decode_qr_payload_from_image,
    fetch_transactions,
    filter_dataframe,
    get_tool_by_unique_id,
    load_checked_out_tools,
    load_staff,
    load_tools,
    make_qr_png,
    parse_qr_payload,
    require_login,
    role_rank,
    save_tool,
    uploaded_file_sha256,
)

configure_logging()
logger = logging.getLogger(__name__)

# --------------------------------------------------
# PAGE CONFIG
# --------------------------------------------------
st.set_page_config(page_title="Tools", page_icon="🔧", layout="wide")
user = require_login()
is_admin = role_rank(user["role"]) >= role_rank("admin")

st.title("🔧 Tools")

# --------------------------------------------------
# MY TOOLS
# --------------------------------------------------
my_tools = load_checked_out_tools(user["job_code"])
with st.expander(f"🧰 My Tools ({len(my_tools)})", expanded=not my_tools.empty):
    if my_tools.empty:
        st.info("You have no tools checked out.")
    else:
        st.dataframe(
            my_tools[["unique_id", "name", "brand", "model", "last_assigned_by_name", "last_assigned_at"]],
            use_container_width=True,
            hide_index=True,
        )

if "tool_selection" not in st.session_state:
    st.session_state.tool_selection = []


def _add_to_selection(payload: str) -> None:
    kind, uid = parse_qr_payload(payload)
    if kind not in ("", "tool"):
        st.warning(f"Scanned code is a {kind} QR, not a tool.")
        return
    tool = get_tool_by_unique_id(uid)
    if tool is None:
        st.warning(f"Tool not found: {uid}")
        return
    if tool["unique_id"] not in st.session_state.tool_selection:
        st.session_state.tool_selection.append(tool["unique_id"])


# --------------------------------------------------
# SCAN
# --------------------------------------------------
st.markdown("### 📷 Scan Tools")
scan_mode = st.radio(
    "Scan method",
    options=["QR scanner", "Camera"],
    horizontal=True,
    key="tools_qr_mode",
    label_visibility="collapsed",
)

if scan_mode == "QR scanner":
    scanned = st.text_input(
        "QR scanner input",
        placeholder="Click here then scan (scanner types + Enter)",
        key="tools_qr_scanner",
        label_visibility="collapsed",
    )
    scanned = str(scanned or "").strip()
    if scanned and st.session_state.get("tools_qr_scanner_last") != scanned:
        st.session_state["tools_qr_scanner_last"] = scanned
        _add_to_selection(scanned)
else:
    cam = st.camera_input("Scan tool QR", key="tools_qr_cam")
    digest = uploaded_file_sha256(cam)
    if cam is not None and digest and st.session_state.get("tools_qr_cam_digest") != digest:
        st.session_state["tools_qr_cam_digest"] = digest
        payload = decode_qr_payload_from_image(cam)
        if payload:
            _add_to_selection(payload)
        else:
            st.warning("No QR detected. Try again with a clearer shot.")

# --------------------------------------------------
# SELECTION + ACTIONS
# --------------------------------------------------
tools_df = load_tools()
all_ids = tools_df["unique_id"].tolist() if not tools_df.empty else []

selection = st.multiselect(
    "Selected tools",
    options=all_ids,
    default=[t for t in st.session_state.tool_selection if t in all_ids],
    format_func=lambda uid: f"{uid} · {tools_df.loc[tools_df['unique_id'] == uid, 'name'].iloc[0]}",
)
st.session_state.tool_selection = list(selection)

notes = st.text_input("Notes (optional)", key="tools_notes")
staff_df = load_staff(include_inactive=False)
staff_codes = staff_df["job_code"].tolist() if not staff_df.empty else []

col_out, col_in = st.columns(2)
with col_out:
    staff_code = st.selectbox(
        "Assign to",
        options=staff_codes,
        format_func=lambda code: f"{code} · {staff_df.loc[staff_df['job_code'] == code, 'full_name'].iloc[0]}",
        key="tools_assign_to",
    )
    if st.button("📤 Check Out", type="primary", use_container_width=True, disabled=not selection or not staff_code):
        if len(selection) == 1:
            try:
                checkout_tool(selection[0], staff_code, admin_name=user["name"], notes=notes)
                st.success(f"Checked out {selection[0]}.")
                st.session_state.tool_selection = []
            except StoreError as e:
                st.error(str(e))
        else:
            batch_id, results = batch_checkout_tools(selection, staff_code, admin_name=user["name"], notes=notes)
            ok = [k for k, v in results.items() if v]
            failed = [k for k, v in results.items() if not v]
            st.success(f"Batch {batch_id}: {len(ok)}/{len(results)} tools checked out.")
            if failed:
                st.warning(f"Not checked out: {', '.join(failed)}")
            st.session_state.tool_selection = failed

with col_in:
    st.write("")
    st.write("")
    if st.button("📥 Check In", use_container_width=True, disabled=not selection):
        if len(selection) == 1:
            try:
                checkin_tool(selection[0], admin_name=user["name"], notes=notes)
                st.success(f"Checked in {selection[0]}.")
                st.session_state.tool_selection = []
            except StoreError as e:
                st.error(str(e))
        else:
            batch_id, results = batch_checkin_tools(selection, admin_name=user["name"], notes=notes)
            failed = [k for k, v in results.items() if not v]
            st.success(f"Batch {batch_id}: {len(results) - len(failed)}/{len(results)} tools checked in.")
            if failed:
                st.warning(f"Not checked in: {', '.join(failed)}")
            st.session_state.tool_selection = failed

# --------------------------------------------------
# TOOL LIST
# --------------------------------------------------
st.markdown("---")
st.markdown("### 📋 Tool List")

tools_df = load_tools()
search_term = st.text_input("Search tools", placeholder="Search by ID, name, brand, model or holder...", key="tools_search")
shown = filter_dataframe(
    tools_df,
    search_term,
    columns=["unique_id", "name", "brand", "model", "num", "last_assigned_to_name"],
)

m1, m2, m3 = st.columns(3)
m1.metric("Total", len(tools_df))
m2.metric("Available", int((tools_df["status"] == TOOL_STATUS_AVAILABLE).sum()) if not tools_df.empty else 0)
m3.metric("Checked Out", int((tools_df["status"] == TOOL_STATUS_CHECKED_OUT).sum()) if not tools_df.empty else 0)

if shown is None or shown.empty:
    st.info("🔍 No tools found." if search_term else "📝 No tools registered yet.")
else:
    st.dataframe(
        shown[["unique_id", "name", "brand", "model", "status", "last_assigned_to_name", "last_assigned_at"]],
        use_container_width=True,
        hide_index=True,
    )

if all_ids:
    with st.expander("🕘 Tool History"):
        history_id = st.selectbox(
            "Tool",
            options=all_ids,
            format_func=lambda uid: f"{uid} · {tools_df.loc[tools_df['unique_id'] == uid, 'name'].iloc[0]}",
            key="tools_history_id",
        )
        try:
            history = fetch_transactions(tool_uid=history_id)
        except StoreError as e:
            logger.error("Tool history failed for %s: %s", history_id, e)
            st.error(f"Error loading history: {e}")
            history = []
        if history:
            st.dataframe(transactions_to_frame(history), use_container_width=True, hide_index=True)
        else:
            st.info("No history for this tool yet.")

# --------------------------------------------------
# TOOLS HELD BY STAFF
# --------------------------------------------------
if role_rank(user["role"]) >= role_rank("supervisor"):
    st.markdown("---")
    st.markdown("### 👥 Tools Held by Staff")
    held = load_checked_out_tools()
    if held.empty:
        st.info("No tools are checked out.")
    else:
        held = held.assign(holder_name=held["holder_name"].fillna(held["last_assigned_to_name"]).fillna("Unknown"))
        for (holder_code, holder_name), group in held.groupby(["current_holder", "holder_name"], dropna=False, sort=True):
            with st.expander(f"{holder_name} ({holder_code}) · {len(group)} tool(s)"):
                st.dataframe(
                    group[["unique_id", "name", "brand", "model", "last_assigned_at"]],
                    use_container_width=True,
                    hide_index=True,
                )


# --------------------------------------------------
# ADMIN: ADD TOOL / QR LABEL
# --------------------------------------------------
if is_admin:
    st.markdown("---")
    with st.expander("➕ Add / Edit Tool"):
        with st.form("tool_form", clear_on_submit=True):
            f1, f2 = st.columns(2)
            uid = f1.text_input("Tool ID *", placeholder="e.g. SM12345")
            name = f2.text_input("Name *")
            brand = f1.text_input("Brand")
            model = f2.text_input("Model")
            num = f1.text_input("Tool number")
            if st.form_submit_button("💾 Save Tool"):
                try:
                    save_tool(uid, name, brand=brand, model=model, num=num)
                    st.success(f"Saved {uid.strip().upper()}.")
                except StoreError as e:
                    st.error(str(e))

    if all_ids:
        with st.expander("🏷️ QR Label"):
            label_id = st.selectbox("Tool", options=all_ids, key="tools_label_id")
            png = make_qr_png(f"TOOL#{label_id}")
            st.image(png, width=200)
            st.download_button("Download PNG", data=png, file_name=f"TOOL_{label_id}.png", mime="image/png")

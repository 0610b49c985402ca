import streamlit as st
import logging

from utils import (
    ROLE_RANK,
    StoreError,
    configure_logging,
    filter_dataframe,
    load_staff,
    make_qr_png,
    require_login,
    save_staff,
    set_staff_active,
)

configure_logging()
logger = logging.getLogger(__name__)

st.set_page_config(page_title="Staff", page_icon="👷", layout="wide")
user = require_login(min_role="admin")
st.title("👷 Staff Management")

staff_df = load_staff()

search_term = st.text_input("Search staff", placeholder="Search by job code, name, email or role...", key="staff_search")
shown = filter_dataframe(staff_df, search_term, columns=["job_code", "full_name", "email", "role"])

m1, m2, m3 = st.columns(3)
m1.metric("Total", len(staff_df))
m2.metric("Active", int(staff_df["is_active"].astype(int).sum()) if not staff_df.empty else 0)
m3.metric("Admins", int((staff_df["role"] == "admin").sum()) if not staff_df.empty else 0)

if shown is None or shown.empty:
    st.info("🔍 No staff found." if search_term else "📝 No staff registered yet.")
else:
    view = shown.copy()
    view["is_active"] = view["is_active"].astype(int).map({1: "Active", 0: "Inactive"})
    st.dataframe(view, use_container_width=True, hide_index=True)

st.markdown("---")
left, right = st.columns(2)

with left:
    st.markdown("### ➕ Add / Edit Staff")
    with st.form("staff_form", clear_on_submit=True):
        job_code = st.text_input("Job code *")
        full_name = st.text_input("Full name *")
        email = st.text_input("Email")
        role = st.selectbox("Role", options=list(ROLE_RANK.keys()))
        if st.form_submit_button("💾 Save"):
            try:
                save_staff(job_code, full_name, role=role, email=email)
                st.success(f"Saved {job_code.strip().upper()}.")
                st.rerun()
            except StoreError as e:
                st.error(str(e))

with right:
    st.markdown("### 🔁 Activate / Deactivate")
    codes = staff_df["job_code"].tolist() if not staff_df.empty else []
    if codes:
        code = st.selectbox("Staff", options=codes, key="staff_toggle_code")
        row = staff_df[staff_df["job_code"] == code].iloc[0]
        active = bool(int(row["is_active"]))
        label = "Deactivate" if active else "Activate"
        if code == user["job_code"] and active:
            st.caption("You cannot deactivate yourself.")
        elif st.button(label, use_container_width=True):
            set_staff_active(code, not active)
            st.rerun()

        png = make_qr_png(f"STAFF#{code}")
        st.image(png, width=160, caption=f"Login QR for {row['full_name']}")

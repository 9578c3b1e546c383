import streamlit as st

from app_shared import (
    apply_global_styles,
    build_condition_summary,
    build_flag_summary,
    excluded_records,
)


st.set_page_config(page_title="Exclusions", layout="wide")
apply_global_styles()

st.header("Exclusions")
st.caption("Why responses were excluded, and which checks fired.")

result = st.session_state.get("run_result")
if not result:
    st.info("Run the checks from the main page to see exclusion reasons.")
    st.stop()

run_settings = st.session_state.get("run_settings") or {}
id_col = (run_settings.get("columns") or {}).get("id", "response_id")

st.subheader("Exclusion reasons")
counts = result.reason_counts
st.dataframe(counts, use_container_width=True)
st.bar_chart(counts.set_index("exclusion_reason"))

st.divider()

flag_cols = st.columns(2)
with flag_cols[0]:
    st.subheader("Quality flags")
    st.dataframe(build_flag_summary(result.data), use_container_width=True)
with flag_cols[1]:
    st.subheader("Structural conditions")
    st.dataframe(build_condition_summary(result.summary), use_container_width=True)

st.divider()

st.subheader("Excluded records")
records = excluded_records(result.data, result.reasons, id_col)
reasons = sorted(records["exclusion_reason"].dropna().unique())
reason_filter = st.multiselect("Reason", options=reasons)
if reason_filter:
    records = records[records["exclusion_reason"].isin(reason_filter)]
st.dataframe(records, use_container_width=True)
st.download_button(
    "Download excluded records",
    data=records.to_csv(index=False).encode("utf-8"),
    file_name="excluded_records.csv",
    mime="text/csv",
)

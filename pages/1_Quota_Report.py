import streamlit as st

from app_shared import apply_global_styles, quota_without_totals


st.set_page_config(page_title="Quota Report", layout="wide")
apply_global_styles()

st.header("Quota Report")
st.caption("Validated responses by province and gender. Cells with no responses show 0.")

result = st.session_state.get("run_result")
if not result:
    st.info("Run the checks from the main page to see the quota table.")
    st.stop()

quota = result.quota
data_df = result.data

metric_cols = st.columns(3)
metric_cols[0].metric("Counted toward quota", int((~data_df["quota_excluded"]).sum()))
metric_cols[1].metric("Excluded (quality)", int(data_df["excluded"].sum()))
metric_cols[2].metric(
    "Quota-only exclusions",
    int((data_df["quota_excluded"] & ~data_df["excluded"]).sum()),
)

st.subheader("Province x gender")
st.dataframe(quota, use_container_width=True)

cells = quota_without_totals(quota)
if not cells.empty and int(cells.values.sum()) > 0:
    st.bar_chart(cells[cells.sum(axis=1) > 0])
else:
    st.info("No validated responses yet.")

if result.published:
    st.success("Quota table published to the shared spreadsheet.")

st.download_button(
    "Download quota table",
    data=quota.to_csv().encode("utf-8"),
    file_name="quota.csv",
    mime="text/csv",
)

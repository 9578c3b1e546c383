import contextlib
import io
import logging
from pathlib import Path

import pandas as pd
import streamlit as st

from app_shared import (
    apply_global_styles,
    build_run_key,
    dump_settings,
    ensure_run_dirs,
    load_app_settings,
    render_hero,
    sample_records,
)
from survey_qc.config_runtime import ConfigurationError
from survey_qc.pipeline import run_pipeline


st.set_page_config(page_title="Survey Quality & Quota", layout="wide")
apply_global_styles()
render_hero()


df_raw = None

with st.sidebar:
    st.header("Data")
    uploaded_file = st.file_uploader("Upload response export (CSV)", type=["csv"])
    if uploaded_file is not None:
        file_changed = (
            st.session_state.get("uploaded_name") != uploaded_file.name
            or st.session_state.get("uploaded_size") != uploaded_file.size
        )
        if file_changed:
            try:
                data_bytes = uploaded_file.getvalue()
                st.session_state["uploaded_df"] = pd.read_csv(io.BytesIO(data_bytes), dtype=str)
                st.session_state["uploaded_name"] = uploaded_file.name
                st.session_state["uploaded_size"] = uploaded_file.size
                st.session_state["uploaded_bytes"] = data_bytes
            except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as exc:
                st.session_state["uploaded_df"] = None
                st.error(f"Failed to read CSV: {exc}")
        df_raw = st.session_state.get("uploaded_df")
    else:
        sample_df = sample_records()
        sample_bytes = sample_df.to_csv(index=False).encode("utf-8")
        st.download_button(
            "Download sample CSV",
            data=sample_bytes,
            file_name="sample_responses.csv",
            mime="text/csv",
        )
        if st.button("Use sample data"):
            st.session_state["uploaded_df"] = sample_df
            st.session_state["uploaded_name"] = "sample_responses.csv"
            st.session_state["uploaded_size"] = len(sample_bytes)
            st.session_state["uploaded_bytes"] = sample_bytes
            st.rerun()
        df_raw = st.session_state.get("uploaded_df")

    settings = load_app_settings()

    st.header("Checks")
    median_fraction = st.slider(
        "Speeding cutoff (fraction of median time)",
        min_value=0.1,
        max_value=0.9,
        value=float(settings["speeding"]["median_fraction"]),
        step=0.05,
    )
    threshold = st.number_input(
        "Straight-lining: flag when more than N instruments are flat",
        min_value=0,
        max_value=10,
        value=int(settings["straightlining"]["threshold"]),
    )
    include_totals = st.checkbox("Quota totals", value=bool(settings["quota"].get("include_totals", True)))

    st.header("Integrations")
    offline = st.checkbox("Offline (cached regions and metrics only)", value=True)
    publish = st.checkbox("Publish quota table", value=False, disabled=offline)
    update_workbook = st.checkbox("Write back to decision workbook", value=False)

    st.header("Performance")
    use_cache = st.checkbox("Use cached results", value=True)
    if st.button("Clear cached results"):
        st.session_state["run_cache"] = {}
        st.info("Cache cleared.")

    run_btn = st.button("Run checks", type="primary", use_container_width=True)


if df_raw is not None:
    st.subheader("Preview")
    st.dataframe(df_raw.head(50), use_container_width=True)

if run_btn:
    if df_raw is None:
        st.error("Upload a CSV or use the sample data first.")
    else:
        run_root, upload_dir, runs_dir = ensure_run_dirs()
        input_path = upload_dir / "input.csv"
        df_raw.to_csv(input_path, index=False)

        settings["speeding"]["median_fraction"] = float(median_fraction)
        settings["straightlining"]["threshold"] = int(threshold)
        settings["quota"]["include_totals"] = bool(include_totals)
        settings["output"]["update_workbook"] = bool(update_workbook)
        settings["output"]["update_metrics_cache"] = not offline

        run_cache = st.session_state.setdefault("run_cache", {})
        data_bytes = st.session_state.get("uploaded_bytes") or b""
        run_key = build_run_key(settings, data_bytes) + f":{offline}:{publish}"

        if use_cache and run_key in run_cache:
            cached = run_cache[run_key]
            st.session_state["run_result"] = cached["result"]
            st.session_state["run_logs"] = cached["logs"]
            st.session_state["run_settings"] = cached["settings"]
            st.info("Loaded cached results for this configuration.")
        else:
            log_buffer = io.StringIO()
            handler = logging.StreamHandler(log_buffer)
            handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
            pkg_logger = logging.getLogger("survey_qc")
            pkg_logger.addHandler(handler)
            pkg_logger.setLevel(logging.INFO)
            try:
                with st.spinner("Running checks..."):
                    with contextlib.redirect_stdout(log_buffer):
                        result = run_pipeline(
                            settings=settings,
                            input_csv=str(input_path),
                            output_dir=str(runs_dir),
                            publish=publish,
                            offline=offline,
                        )
            except (ConfigurationError, FileNotFoundError) as exc:
                result = None
                st.error(f"Run failed: {exc}")
            finally:
                pkg_logger.removeHandler(handler)

            if result is not None:
                st.session_state["run_result"] = result
                st.session_state["run_logs"] = log_buffer.getvalue()
                st.session_state["run_settings"] = settings
                run_cache[run_key] = {"result": result, "logs": log_buffer.getvalue(), "settings": settings}


result = st.session_state.get("run_result")
if result:
    run_settings = st.session_state.get("run_settings") or {}
    summary = result.summary

    st.header("Results")
    metric_cols = st.columns(4)
    metric_cols[0].metric("Records", summary.total)
    metric_cols[1].metric("Excluded", summary.excluded)
    metric_cols[2].metric("Counted toward quota", int((~result.data["quota_excluded"]).sum()))
    cutoff = summary.cutoff_minutes
    metric_cols[3].metric("Speeding cutoff (min)", "n/a" if pd.isna(cutoff) else f"{cutoff:.1f}")
    st.caption("See the Quota Report and Exclusions pages for detail.")

    st.subheader("Downloads")
    if run_settings:
        st.download_button(
            "Download run config (YAML)",
            data=dump_settings(run_settings),
            file_name="run_config.yaml",
            mime="text/yaml",
        )
    if result.run_dir:
        for csv_file in sorted(Path(result.run_dir).glob("*.csv")):
            st.download_button(
                label=f"Download {csv_file.name}",
                data=csv_file.read_bytes(),
                file_name=csv_file.name,
                mime="text/csv",
            )

    with st.expander("Pipeline Logs"):
        st.text(st.session_state.get("run_logs", ""))

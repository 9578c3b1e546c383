import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

import pandas as pd

from .config_runtime import (
    _get_project_root,
    load_env_file,
    load_settings,
    resolve_base_dir,
    resolve_credentials,
    resolve_instrument_columns,
    resolve_path,
    resolve_scale_items,
)
from .ingest.survey_source import REMOTE_SOURCE, SurveyExportClient, load_records
from .ingest.decision_store import DecisionStore, load_decision_store
from .geo.ip_region import IPInfoClient, attach_regions, collect_addresses, update_region_cache
from .quality.flags import QualitySummary, add_quality_flags
from .scoring.scales import add_scale_scores
from .analytics.engagement import GA4Client, empty_metrics_cache, merge_metrics, update_metrics_cache
from .quota.accounting import add_quota_exclusion, exclusion_reasons, quota_crosstab, reason_counts
from .reporting.export import (
    final_view,
    read_metrics_cache,
    write_csv_atomic,
    write_decision_workbook,
    write_metrics_cache,
    write_snapshot,
)
from .reporting.sheets import SheetsPublisher

logger = logging.getLogger(__name__)

CLIENT_KEYS = ("ip", "analytics", "survey", "sheets")

# ---------------------------------------------------
# Pipeline runner (pandas-first)
# ---------------------------------------------------

@dataclass
class PipelineResult:
    data: pd.DataFrame
    final: pd.DataFrame
    quota: pd.DataFrame
    reasons: pd.DataFrame
    reason_counts: pd.DataFrame
    store: DecisionStore
    metrics: Optional[pd.DataFrame]
    summary: QualitySummary
    run_dir: Optional[Path] = None
    source: str = ""
    published: bool = False


def build_clients(settings: dict, credentials: dict) -> dict:
    """
    One adapter per integration whose credentials are set; None otherwise.
    """
    clients = {key: None for key in CLIENT_KEYS}

    geo_cfg = settings.get("geo", {}) or {}
    if geo_cfg.get("enabled", True) and credentials.get("ipinfo_token"):
        clients["ip"] = IPInfoClient(
            credentials["ipinfo_token"],
            base_url=geo_cfg.get("base_url", "https://ipinfo.io"),
            timeout_seconds=int(geo_cfg.get("timeout_seconds", 30)),
            batch_size=int(geo_cfg.get("batch_size", 100)),
        )
    else:
        logger.info("IP lookup token not set or geo disabled; using cached regions only.")

    ga_cfg = settings.get("analytics", {}) or {}
    if ga_cfg.get("enabled", True) and credentials.get("ga_property_id") and credentials.get("ga_access_token"):
        clients["analytics"] = GA4Client(
            credentials["ga_property_id"],
            credentials["ga_access_token"],
            tracking_dimension=ga_cfg.get("tracking_dimension", "customUser:tracking_code"),
            start_date=str(ga_cfg.get("start_date", "2024-01-01")),
            end_date=str(ga_cfg.get("end_date", "today")),
            base_url=ga_cfg.get("base_url", "https://analyticsdata.googleapis.com/v1beta"),
            timeout_seconds=int(ga_cfg.get("timeout_seconds", 30)),
        )
    else:
        logger.info("Analytics credentials not set or analytics disabled; skipping engagement lookups.")

    if credentials.get("survey_export_url"):
        clients["survey"] = SurveyExportClient(
            credentials["survey_export_url"],
            token=credentials.get("survey_api_token"),
            timeout_seconds=int((settings.get("survey_source", {}) or {}).get("timeout_seconds", 60)),
        )

    pub_cfg = settings.get("publish", {}) or {}
    if pub_cfg.get("enabled", True) and credentials.get("sheets_document_id") and credentials.get("sheets_access_token"):
        clients["sheets"] = SheetsPublisher(
            credentials["sheets_document_id"],
            credentials["sheets_access_token"],
            sheet_name=pub_cfg.get("sheet_name", "Quota"),
            base_url=pub_cfg.get("base_url", "https://sheets.googleapis.com/v4"),
            timeout_seconds=int(pub_cfg.get("timeout_seconds", 30)),
        )
    return clients


def run_pipeline(
    settings_path: str = "config/pipeline_settings.yaml",
    settings: dict = None,
    input_csv: str = None,
    output_dir: str = None,
    publish: bool = None,
    offline: bool = False,
    clients: dict = None,
) -> PipelineResult:
    """
    End-to-end quality-control run over one batch of survey records.

    Every computation finishes before anything is written; a fatal error
    leaves the snapshot directory, workbook and analytics cache untouched.
    `clients` overrides the adapters built from credentials (keys: ip,
    analytics, survey, sheets). With `offline`, no adapter is used.
    """
    pipeline_dir = Path(__file__).resolve().parent
    project_root = _get_project_root(start=pipeline_dir)
    if settings is None:
        settings = load_settings(settings_path)

    paths_cfg = settings.get("paths", {})
    output_cfg = settings.get("output", {}) or {}
    cols = settings["columns"]
    base_dir = resolve_base_dir(settings, settings_path=settings_path, project_root=project_root, pipeline_dir=pipeline_dir)

    load_env_file(settings, base_dir=base_dir)
    credentials = resolve_credentials(settings)

    if offline:
        active = {key: None for key in CLIENT_KEYS}
    else:
        active = build_clients(settings, credentials)
        active.update({k: v for k, v in (clients or {}).items() if k in CLIENT_KEYS})

    # Rejected credentials stop the run before any record is read.
    for key in ("ip", "analytics"):
        client = active.get(key)
        if client is not None and hasattr(client, "validate"):
            print(f"Validating {key} credentials...")
            client.validate()

    print("Loading input...")
    cache_path = resolve_path(base_dir, paths_cfg.get("raw_cache_csv")) if paths_cfg.get("raw_cache_csv") else None
    input_path = resolve_path(base_dir, input_csv) if input_csv else None
    raw, source = load_records(settings, cache_path, input_csv=input_path, client=active["survey"], offline=offline)
    logger.info("Loaded %d records from %s", len(raw), source)

    workbook_path = resolve_path(base_dir, paths_cfg.get("workbook")) if paths_cfg.get("workbook") else None
    store = load_decision_store(workbook_path, cols["id"], cols["ip_address"])

    print("Enriching IP regions...")
    addresses = collect_addresses(raw, store.addresses, cols["id"], cols["ip_address"])
    regions = store.regions
    if active["ip"] is not None:
        regions = update_region_cache(regions, addresses, active["ip"].lookup)
    store = replace(
        store.with_regions(regions),
        addresses=pd.DataFrame(
            {cols["id"]: list(addresses.keys()), cols["ip_address"]: list(addresses.values())},
            columns=[cols["id"], cols["ip_address"]],
        ),
    )
    df = attach_regions(raw, store.regions, cols["id"], region_col=cols.get("ip_region", "ip_region"))

    print("Running quality checks...")
    sl_cfg = settings.get("straightlining", {}) or {}
    instruments = resolve_instrument_columns(df.columns, sl_cfg.get("instruments") or {})
    df, summary = add_quality_flags(df, settings, manual_ids=store.manual_ids(), instruments=instruments)

    print("Scoring scales...")
    scales_cfg = settings.get("scales", {}) or {}
    if scales_cfg:
        df = add_scale_scores(df, scales_cfg, resolved=resolve_scale_items(df.columns, scales_cfg))

    print("Merging engagement metrics...")
    metrics_path = resolve_path(base_dir, paths_cfg.get("analytics_cache_csv")) if paths_cfg.get("analytics_cache_csv") else None
    metrics = read_metrics_cache(metrics_path)
    if active["analytics"] is not None:
        tracking = df[cols["tracking_code"]] if cols.get("tracking_code") in df.columns else []
        metrics = update_metrics_cache(metrics if metrics is not None else empty_metrics_cache(), tracking, active["analytics"].event_counts)
    if metrics is not None:
        df = merge_metrics(df, metrics, cols.get("tracking_code"))

    print("Computing quota...")
    df = add_quota_exclusion(df, settings)
    quota = quota_crosstab(df, settings)
    reasons = exclusion_reasons(df, settings)
    counts = reason_counts(reasons)

    # ---------------------------------------------------
    # Outputs (only after every stage succeeded)
    # ---------------------------------------------------
    run_dir = None
    if output_cfg.get("write_snapshot", True):
        runs_root = resolve_path(base_dir, output_dir or paths_cfg.get("output_runs") or "outputs/runs")
        run_dir = write_snapshot(raw, df, runs_root, output_cfg, quota=quota, reason_counts=counts)

    if output_cfg.get("update_workbook", True) and workbook_path is not None:
        write_decision_workbook(workbook_path, store, reasons=reasons, counts=counts)

    if output_cfg.get("update_metrics_cache", True) and active["analytics"] is not None and metrics_path is not None:
        write_metrics_cache(metrics_path, metrics)

    if output_cfg.get("update_raw_cache", True) and source == REMOTE_SOURCE and cache_path is not None:
        write_csv_atomic(raw, cache_path)
        logger.info("Refreshed local record cache %s", cache_path)

    published = False
    if publish is None:
        publish = bool((settings.get("publish", {}) or {}).get("enabled", True))
    if publish:
        if active["sheets"] is None:
            logger.info("Spreadsheet credentials not set; skipping publish.")
        else:
            print("Publishing quota table...")
            published = bool(active["sheets"].publish(quota))

    print(f"Pipeline complete. {summary.excluded} of {summary.total} records excluded.")
    return PipelineResult(
        data=df,
        final=final_view(df),
        quota=quota,
        reasons=reasons,
        reason_counts=counts,
        store=store,
        metrics=metrics,
        summary=summary,
        run_dir=run_dir,
        source=source,
        published=published,
    )


def _main(argv=None):
    import argparse

    parser = argparse.ArgumentParser(description="Run the survey quality-control and quota pipeline.")
    parser.add_argument("--settings", default="config/pipeline_settings.yaml", help="Path to pipeline_settings.yaml")
    parser.add_argument("--input", dest="input_csv", default=None, help="Input CSV path (skips the remote export)")
    parser.add_argument("--output-dir", dest="output_dir", default=None, help="Directory for run snapshots")
    parser.add_argument("--offline", dest="offline", action="store_true", help="Use local files only; no network calls")
    parser.add_argument("--publish", dest="publish", action="store_true", help="Publish the quota table")
    parser.add_argument("--no-publish", dest="publish", action="store_false", help="Do not publish the quota table")
    parser.set_defaults(publish=None)
    args = parser.parse_args(argv)

    return run_pipeline(
        settings_path=args.settings,
        input_csv=args.input_csv,
        output_dir=args.output_dir,
        publish=args.publish,
        offline=args.offline,
    )


if __name__ == "__main__":
    _main()

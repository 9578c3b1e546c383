import hashlib
import json
import sys
from datetime import datetime
from pathlib import Path

import pandas as pd
import streamlit as st

ROOT = Path(__file__).resolve().parent
SRC_DIR = ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from survey_qc import config_runtime as cfg
from survey_qc.quality.flags import QUALITY_FLAGS, STRUCTURAL_CONDITIONS
from survey_qc.sample_data import build_sample_df


def apply_global_styles():
    st.markdown(
        """
<style>
@import url('https://fonts.googleapis.com/css2?family=IBM+Plex+Sans:wght@400;500;600&family=IBM+Plex+Serif:wght@600&display=swap');

:root {
  --bg: #F6F7F4;
  --panel: #FFFFFF;
  --ink: #1F2A24;
  --muted: #5B6B61;
  --accent: #2F7D5B;
  --stroke: #D9E0DA;
  --warn: #B5522B;
}

html, body, [class*="css"] {
  font-family: 'IBM Plex Sans', sans-serif;
  color: var(--ink);
}

.stApp {
  background: var(--bg);
}

h1, h2, h3, .hero-title {
  font-family: 'IBM Plex Serif', serif;
  letter-spacing: -0.3px;
}

.hero {
  background: var(--panel);
  border: 1px solid var(--stroke);
  border-left: 6px solid var(--accent);
  border-radius: 14px;
  padding: 22px 28px;
}

.hero-subtitle {
  color: var(--muted);
  margin-top: 0.3rem;
}

.step-grid {
  display: grid;
  grid-template-columns: repeat(auto-fit, minmax(170px, 1fr));
  gap: 10px;
  margin-top: 14px;
}

.step-card {
  border: 1px solid var(--stroke);
  border-radius: 10px;
  padding: 10px 12px;
  font-size: 0.9rem;
}

div[data-testid="stMetric"] {
  background: var(--panel);
  border: 1px solid var(--stroke);
  padding: 10px;
  border-radius: 10px;
}

.excluded-note {
  color: var(--warn);
  font-weight: 600;
}
</style>
""",
        unsafe_allow_html=True,
    )


def render_hero():
    st.markdown(
        """
<div class="hero">
  <h1 class="hero-title">Survey Quality &amp; Quota</h1>
  <div class="hero-subtitle">
    Flag speeders, straight-liners and contradictory answers, then see which responses count toward quota.
  </div>
  <div class="step-grid">
    <div class="step-card"><strong>1. Load</strong><br/>Upload a response export or use the sample batch.</div>
    <div class="step-card"><strong>2. Check</strong><br/>Run quality flags and exclusion rules.</div>
    <div class="step-card"><strong>3. Count</strong><br/>Province x gender quota table.</div>
    <div class="step-card"><strong>4. Export</strong><br/>Download the run snapshot.</div>
  </div>
</div>
""",
        unsafe_allow_html=True,
    )


def sample_records() -> pd.DataFrame:
    return build_sample_df()


def ensure_run_dirs():
    run_id = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    run_root = ROOT / "outputs" / "app_runs" / run_id
    upload_dir = run_root / "uploads"
    runs_dir = run_root / "runs"
    upload_dir.mkdir(parents=True, exist_ok=True)
    runs_dir.mkdir(parents=True, exist_ok=True)
    return run_root, upload_dir, runs_dir


def load_app_settings() -> dict:
    """
    Project settings for an app run. The workbook and analytics cache are
    read from their configured paths; the snapshot goes to the app run dir.
    """
    settings = cfg.load_settings(str(ROOT / "config" / "pipeline_settings.yaml"))
    settings["paths"]["base_dir"] = str(ROOT)
    return settings


def settings_fingerprint(settings: dict) -> str:
    payload = json.dumps(settings, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def build_run_key(settings: dict, data_bytes: bytes) -> str:
    data_hash = hashlib.sha256(data_bytes or b"").hexdigest()
    return f"{data_hash}:{settings_fingerprint(settings)}"


def dump_settings(settings: dict) -> bytes:
    import yaml
    return yaml.safe_dump(settings, sort_keys=False).encode("utf-8")


def build_flag_summary(data: pd.DataFrame) -> pd.DataFrame:
    """Records hit by each quality flag and structural condition."""
    rows = []
    total = len(data)
    for name in QUALITY_FLAGS:
        if name not in data.columns:
            continue
        count = int(data[name].fillna(0).astype(int).sum())
        rows.append({"check": name, "kind": "quality flag", "records": count})
    for name in [c for c in data.columns if c.startswith("longstring_") and c != "longstring_total"]:
        rows.append({"check": name, "kind": "instrument", "records": int(data[name].sum())})
    out = pd.DataFrame(rows, columns=["check", "kind", "records"])
    out["share_pct"] = (out["records"] / max(total, 1) * 100).round(1)
    return out


def build_condition_summary(summary) -> pd.DataFrame:
    counts = summary.flag_counts or {}
    rows = [{"condition": name, "records": int(counts.get(name, 0))} for name in STRUCTURAL_CONDITIONS]
    return pd.DataFrame(rows, columns=["condition", "records"])


def quota_without_totals(quota: pd.DataFrame) -> pd.DataFrame:
    out = quota.drop(index="Total", errors="ignore")
    return out.drop(columns="Total", errors="ignore")


def excluded_records(data: pd.DataFrame, reasons: pd.DataFrame, id_col: str) -> pd.DataFrame:
    """Excluded or quota-excluded records with their reason and the flags that fired."""
    flagged = data[data["quota_excluded"].astype(bool)]
    keep = [id_col] + [c for c in QUALITY_FLAGS + ["excluded", "quota_excluded"] if c in flagged.columns]
    out = flagged[keep].merge(reasons, on=id_col, how="left")
    return out.sort_values("exclusion_reason", kind="stable").reset_index(drop=True)

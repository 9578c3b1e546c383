"""
Synthetic record batch for the report app's "Use sample data" button and the
smoke script. Uses the default column names and codes.
"""

from datetime import datetime, timedelta

import numpy as np
import pandas as pd


def build_sample_df(rows: int = 24, seed: int = 7) -> pd.DataFrame:
    """
    A batch with a handful of planted problems:
    row 2 speeds, row 3 straight-lines the wellbeing items, row 4 fails the
    repeated item, row 5 has no tracking code, row 6 is screened out, row 7
    withdrew, row 8 never finished, row 9 is outside the target region.
    """
    rng = np.random.default_rng(seed)
    start = datetime(2024, 3, 1, 9, 0, 0)
    records = []
    for i in range(rows):
        started = start + timedelta(hours=i)
        minutes = float(rng.integers(15, 30))
        age = int(rng.integers(16, 25))
        row = {
            "response_id": f"R{i + 1:04d}",
            "tracking_code": f"TC{i + 1:04d}",
            "started_at": started.isoformat(),
            "exited_at": (started + timedelta(minutes=minutes)).isoformat(),
            "disqualified_at": None,
            "age": str(age),
            "screener_age": str(age),
            "gender": str(rng.choice(["1", "2"])),
            "province": "1",
            "strata_region": "1",
            "include": "1",
            "withdrawn": "0",
            "ip_address": f"203.0.113.{i + 10}",
        }
        for n in range(1, 11):
            row[f"distress_{n}"] = str(rng.integers(1, 6))
        row["distress_attn"] = row["distress_5"]
        for n in range(1, 16):
            row[f"wellbeing_{n}"] = str(rng.integers(0, 6))
        row["wellbeing_attn"] = "3"
        for n in range(1, 13):
            row[f"support_{n}"] = str(rng.integers(1, 8))
        records.append(row)

    df = pd.DataFrame(records)
    if rows < 10:
        return df

    df.loc[1, "exited_at"] = (datetime.fromisoformat(df.loc[1, "started_at"]) + timedelta(minutes=2)).isoformat()
    for n in range(1, 16):
        df.loc[2, f"wellbeing_{n}"] = "2"
    df.loc[3, "distress_attn"] = str((int(df.loc[3, "distress_5"]) % 5) + 1)
    df.loc[4, "tracking_code"] = None
    df.loc[5, "disqualified_at"] = df.loc[5, "started_at"]
    df.loc[6, "withdrawn"] = "1"
    df.loc[7, "exited_at"] = None
    df.loc[8, "strata_region"] = "2"
    return df

"""Time-of-day, weekday, category and sequence statistics over episode history."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

EPISODE_COLUMNS = [
    "episode_id",
    "episode_type",
    "episode_date",
    "severity_score",
    "trigger_category",
    "location",
]


def episodes_frame(episodes: Sequence[Any]) -> pd.DataFrame:
    """Episodes -> DataFrame sorted by date, with hour and weekday (0=Sunday)."""
    df = pd.DataFrame(
        [{c: getattr(e, c) for c in EPISODE_COLUMNS} for e in episodes],
        columns=EPISODE_COLUMNS,
    )
    if df.empty:
        df["hour"] = pd.Series(dtype="int64")
        df["dow"] = pd.Series(dtype="int64")
        return df
    df["episode_date"] = pd.to_datetime(df["episode_date"])
    df["severity_score"] = df["severity_score"].astype(float)
    df = df.sort_values(["episode_date", "episode_id"]).reset_index(drop=True)
    df["hour"] = df["episode_date"].dt.hour
    # pandas counts Monday=0; shift so Sunday=0
    df["dow"] = (df["episode_date"].dt.dayofweek + 1) % 7
    return df


def hour_distribution(df: pd.DataFrame, min_share: float = 0.2,
                      top: Optional[int] = 3) -> List[Dict[str, Any]]:
    """Hours holding more than *min_share* of episodes, busiest first."""
    if df.empty:
        return []
    total = len(df)
    grouped = df.groupby("hour")["severity_score"].agg(["count", "mean"])
    peaks = []
    for hour, row in grouped.iterrows():
        share = row["count"] / total
        if share > min_share:
            peaks.append({
                "hour": int(hour),
                "count": int(row["count"]),
                "percentage": round(share * 100, 2),
                "average_severity": round(float(row["mean"]), 2),
            })
    peaks.sort(key=lambda p: (-p["percentage"], p["hour"]))
    return peaks[:top] if top else peaks


def weekday_distribution(df: pd.DataFrame, min_share: float = 0.2) -> Dict[str, Any]:
    """Significant weekdays plus the weekday/weekend split."""
    if df.empty:
        return {"significant_days": [], "weekday_percentage": 0.0, "weekend_percentage": 0.0}
    total = len(df)
    counts = df["dow"].value_counts()
    days = []
    for dow, count in counts.items():
        share = count / total
        if share > min_share:
            days.append({
                "day": int(dow),
                "name": DAY_NAMES[int(dow)],
                "count": int(count),
                "percentage": round(share * 100, 2),
            })
    days.sort(key=lambda d: (-d["percentage"], d["day"]))
    weekend = int(df["dow"].isin([0, 6]).sum())
    return {
        "significant_days": days,
        "weekday_percentage": round((total - weekend) / total * 100, 2),
        "weekend_percentage": round(weekend / total * 100, 2),
    }


def category_shares(df: pd.DataFrame, column: str) -> List[Dict[str, Any]]:
    """Share of each non-empty value of *column*, among rows that have one."""
    if df.empty or column not in df.columns:
        return []
    values = df[column].dropna()
    values = values[values.astype(str).str.len() > 0]
    if values.empty:
        return []
    counts = values.value_counts()
    total = int(counts.sum())
    out = []
    for value, count in counts.items():
        subset = df[df[column] == value]
        out.append({
            "value": value,
            "count": int(count),
            "share": count / total,
            "average_severity": float(subset["severity_score"].mean()),
        })
    out.sort(key=lambda r: (-r["count"], str(r["value"])))
    return out


def severity_slope(df: pd.DataFrame) -> Optional[float]:
    """Least-squares severity change per day, None with fewer than two points."""
    if len(df) < 2:
        return None
    start = df["episode_date"].iloc[0]
    x = ((df["episode_date"] - start).dt.total_seconds() / 86400.0).to_numpy()
    y = df["severity_score"].to_numpy(dtype=np.float64)
    if np.ptp(x) < 1e-9:
        return 0.0
    slope, _intercept = np.polyfit(x, y, 1)
    return float(slope)


def episode_sequences(df: pd.DataFrame, max_gap_hours: float = 24.0,
                      min_occurrences: int = 2) -> List[Dict[str, Any]]:
    """Type A immediately followed by a different type B within *max_gap_hours*."""
    if len(df) < 2:
        return []
    ordered = df.sort_values(["episode_date", "episode_id"])
    nxt = ordered.shift(-1)
    gaps = (nxt["episode_date"] - ordered["episode_date"]).dt.total_seconds() / 3600.0
    pairs = pd.DataFrame({
        "from_type": ordered["episode_type"],
        "to_type": nxt["episode_type"],
        "gap": gaps,
    }).dropna()
    pairs = pairs[(pairs["from_type"] != pairs["to_type"]) & (pairs["gap"] <= max_gap_hours)]
    if pairs.empty:
        return []

    heads = ordered["episode_type"].value_counts()
    out = []
    for (a, b), grp in pairs.groupby(["from_type", "to_type"]):
        n = len(grp)
        if n < min_occurrences:
            continue
        out.append({
            "from_type": a,
            "expected_next": b,
            "occurrences": int(n),
            "average_gap_hours": round(float(grp["gap"].mean()), 2),
            "follow_rate": round(n / int(heads.get(a, n)), 3),
        })
    out.sort(key=lambda s: (-s["occurrences"], s["from_type"], s["expected_next"]))
    return out


def format_hour_range(hour: int) -> str:
    """Two-hour clock range starting at *hour*, e.g. 21 -> '9PM-11PM'."""
    start = int(hour) % 24
    end = (start + 2) % 24
    start_12 = start % 12 or 12
    end_12 = end % 12 or 12
    return (
        f"{start_12}{'PM' if start >= 12 else 'AM'}-"
        f"{end_12}{'PM' if end >= 12 else 'AM'}"
    )

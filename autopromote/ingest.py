from typing import Iterator, Optional, Tuple

import pandas as pd

from .aggregator import Outcome
from .experiment import Variant

OutcomeRow = Tuple[Variant, float, Outcome, Optional[str]]


def load_outcomes_csv(file_obj) -> pd.DataFrame:
    """
    Read a CSV file object of outcome events into a pandas DataFrame.

    Expected columns:
    - variant ("A" or "B")
    - timestamp (epoch seconds)
    - success (bool / 0 / 1)
    - latency_ms (float)

    Optional columns: cost_usd, quality_score, event_id.
    """
    df = pd.read_csv(file_obj)
    # Basic sanity check
    required_cols = {"variant", "timestamp", "success", "latency_ms"}
    if not required_cols.issubset(df.columns):
        missing = required_cols - set(df.columns)
        raise ValueError(f"CSV is missing required columns: {', '.join(sorted(missing))}")

    df["variant"] = df["variant"].astype(str).str.strip().str.upper()
    unknown = set(df["variant"]) - {v.value for v in Variant}
    if unknown:
        raise ValueError(f"CSV has unknown variants: {', '.join(sorted(unknown))}")

    success = df["success"]
    if not (pd.api.types.is_bool_dtype(success) or pd.api.types.is_numeric_dtype(success)):
        df["success"] = df["success"].astype(str).str.strip().str.lower().isin(["1", "true", "yes"])
    df["success"] = df["success"].astype(bool)
    if "cost_usd" not in df.columns:
        df["cost_usd"] = 0.0
    df["cost_usd"] = df["cost_usd"].fillna(0.0)
    return df.sort_values("timestamp", kind="stable")


def iter_outcomes(df: pd.DataFrame) -> Iterator[OutcomeRow]:
    """Yield (variant, timestamp, outcome, event_id) for each row."""
    has_quality = "quality_score" in df.columns
    has_event_id = "event_id" in df.columns
    for _, row in df.iterrows():
        quality = row["quality_score"] if has_quality and pd.notna(row["quality_score"]) else None
        event_id = str(row["event_id"]) if has_event_id and pd.notna(row["event_id"]) else None
        outcome = Outcome(
            success=bool(row["success"]),
            latency_ms=float(row["latency_ms"]),
            cost_usd=float(row["cost_usd"]),
            quality_score=float(quality) if quality is not None else None,
        )
        yield Variant(row["variant"]), float(row["timestamp"]), outcome, event_id

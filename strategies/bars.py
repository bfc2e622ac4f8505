from __future__ import annotations

from pathlib import Path
from typing import Sequence

import pandas as pd
import pyarrow.dataset as ds

TIME_COLUMNS = ("bar_time_ms", "open_time", "timestamp", "time")


def load_price_bars(path: Path, required_columns: Sequence[str] = ("close",)) -> pd.DataFrame:
    """Load historical bars from parquet or CSV, oldest first."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Historical data file not found: {path}")

    suffix = path.suffix.lower()
    if suffix == ".parquet":
        bars_ds = ds.dataset(path, format="parquet")
        missing = [c for c in required_columns if c not in bars_ds.schema.names]
        if missing:
            raise ValueError(f"Bars parquet missing required columns: {missing}")
        df = bars_ds.to_table().to_pandas()
    elif suffix == ".csv":
        df = pd.read_csv(path)
        missing = [c for c in required_columns if c not in df.columns]
        if missing:
            raise ValueError(f"Bars CSV missing required columns: {missing}")
    else:
        raise ValueError(f"Unsupported historical data format {suffix!r}; expected .parquet or .csv.")

    for column in TIME_COLUMNS:
        if column in df.columns:
            df = df.sort_values(column, kind="mergesort")
            break
    return df.reset_index(drop=True)

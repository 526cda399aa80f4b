import math
from typing import Any, Dict, List, Optional

import pandas as pd


def build_chart_frame(valuation: Optional[Dict[str, Any]]) -> pd.DataFrame:
    """Projection as a frame indexed by year, with running present value."""
    if not valuation or not valuation.get("projection"):
        return pd.DataFrame(columns=["fcf", "pvFcf", "cumulativePv"])
    df = pd.DataFrame(valuation["projection"]).set_index("year")
    df = df[["fcf", "pvFcf"]].copy()
    df["cumulativePv"] = df["pvFcf"].cumsum()
    return df


def chart_rows(valuation: Optional[Dict[str, Any]], label: str = "Year {year}") -> List[Dict[str, Any]]:
    """
    Rows for the cash-flow area chart. Cash flows are rounded to two
    decimals here and nowhere earlier.
    """
    df = build_chart_frame(valuation)
    rows: List[Dict[str, Any]] = []
    for year, row in df.iterrows():
        entry: Dict[str, Any] = {"year": label.format(year=year)}
        for column in ("fcf", "pvFcf", "cumulativePv"):
            value = row[column]
            if pd.isna(value) or not math.isfinite(float(value)):
                entry[column] = None
            else:
                entry[column] = round(float(value), 2)
        rows.append(entry)
    return rows

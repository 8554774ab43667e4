from __future__ import annotations

from typing import Optional
import math

import pandas as pd


def _normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    out = df.copy()
    out.columns = [str(col).strip().lower() for col in out.columns]
    return out


def _is_nan(x) -> bool:
    if x is None:
        return True
    if isinstance(x, float):
        return math.isnan(x)
    try:
        return bool(pd.isna(x))
    except (TypeError, ValueError):
        return False


def _clean_str(x) -> Optional[str]:
    if _is_nan(x):
        return None
    s = str(x).strip()
    if s.lower() in ("nan", "none", "null"):
        return None
    return s if s else None


def _to_int(x, default: Optional[int] = 0) -> Optional[int]:
    if _is_nan(x):
        return default
    try:
        return int(float(x))
    except (TypeError, ValueError):
        return default


def _to_float(x, default: Optional[float] = 0.0) -> Optional[float]:
    if _is_nan(x):
        return default
    try:
        return float(x)
    except (TypeError, ValueError):
        return default

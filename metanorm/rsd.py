"""
Robust relative standard deviation (RSD) per metabolite.

The RSD of a metabolite is computed on its sorted, non-missing values after
trimming both tails:

    kept = sorted(values)[floor(lower * n) : floor(upper * n)]
    RSD  = std(kept, ddof=1) / mean(kept) * 100

With the default 5% / 95% fractions a single extreme value in a short row
(3 <= n < 20) is always cut from the top. When trimming would leave fewer
than two values (n <= 2) the untrimmed values are used. A single nonzero
value has an RSD of 0; a trimmed mean of exactly zero gives a missing RSD.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Iterator, Sequence

import numpy as np
import pandas as pd

from .matrix import IntensityMatrix
from .normalization import METHOD_ORDER, ConfigurationError, method_sort_key

logger = logging.getLogger(__name__)

DEFAULT_TRIM_LOWER = 0.05
DEFAULT_TRIM_UPPER = 0.95

RSD_COLUMNS = ['Metabolite', 'RSD', 'Method']

# Common acceptance thresholds for QC feature RSD (percent)
RSD_THRESHOLDS = (20.0, 30.0)


@dataclass(frozen=True)
class RSDRecord:
    """RSD of one metabolite under one method."""
    metabolite: str
    rsd: float
    method: str


def validate_trim_fractions(lower: float, upper: float) -> None:
    if not (0.0 <= lower < upper <= 1.0):
        raise ConfigurationError(
            f"Invalid trim fractions lower={lower}, upper={upper}: "
            f"require 0 <= lower < upper <= 1"
        )


def trim_bounds(n: int, lower: float = DEFAULT_TRIM_LOWER, upper: float = DEFAULT_TRIM_UPPER) -> tuple[int, int]:
    """Half-open [start, stop) slice of a sorted row of length n that survives trimming."""
    start = int(math.floor(lower * n))
    stop = int(math.floor(upper * n))
    # keep at least two values so a spread can be measured
    if stop - start < 2:
        return 0, n
    return start, stop


def trimmed_values(
    values: Sequence[float] | np.ndarray,
    lower: float = DEFAULT_TRIM_LOWER,
    upper: float = DEFAULT_TRIM_UPPER,
) -> np.ndarray:
    """Sorted non-missing values with both tails trimmed."""
    arr = np.asarray(values, dtype=np.float64)
    arr = np.sort(arr[~np.isnan(arr)])
    start, stop = trim_bounds(len(arr), lower, upper)
    return arr[start:stop]


def robust_rsd(
    values: Sequence[float] | np.ndarray,
    lower: float = DEFAULT_TRIM_LOWER,
    upper: float = DEFAULT_TRIM_UPPER,
) -> float:
    """Trimmed RSD (%) of one row of intensities; NaN when undefined."""
    kept = trimmed_values(values, lower, upper)
    if len(kept) == 0:
        return np.nan
    mean = kept.mean()
    if mean == 0:
        return np.nan
    if len(kept) == 1 or np.all(kept == kept[0]):
        return 0.0
    return float(kept.std(ddof=1) / mean * 100.0)


def compute_rsd(
    matrix: IntensityMatrix,
    method: str | None = None,
    samples: Iterable[str] | None = None,
    lower: float = DEFAULT_TRIM_LOWER,
    upper: float = DEFAULT_TRIM_UPPER,
) -> pd.DataFrame:
    """
    Robust RSD for every metabolite row of ``matrix``.

    Args:
        matrix: Any raw, normalized or transformed matrix
        method: Method label for the output (defaults to ``matrix.method``)
        samples: Optional subset of sample columns (e.g. QC samples only)
        lower: Lower trim fraction
        upper: Upper trim fraction

    Returns:
        DataFrame with columns Metabolite, RSD, Method (one row per metabolite)
    """
    validate_trim_fractions(lower, upper)
    if samples is not None:
        matrix = matrix.select_samples(samples)
    label = method if method is not None else matrix.method

    rsd = [robust_rsd(row, lower, upper) for row in matrix.values]
    n_missing = int(np.isnan(rsd).sum())
    if n_missing:
        logger.debug(f"{label}: RSD undefined for {n_missing}/{matrix.n_metabolites} metabolites")

    return pd.DataFrame({
        'Metabolite': list(matrix.metabolites),
        'RSD': np.asarray(rsd, dtype=np.float64),
        'Method': label,
    }, columns=RSD_COLUMNS)


def combine_rsd_tables(tables: Iterable[pd.DataFrame]) -> pd.DataFrame:
    """Concatenate per-method RSD tables in the fixed method order.

    Methods outside METHOD_ORDER are kept after the known ones, in the
    order they were given.
    """
    tables = list(tables)
    if not tables:
        return pd.DataFrame(columns=RSD_COLUMNS)

    indexed = sorted(
        enumerate(tables),
        key=lambda item: (method_sort_key(_table_method(item[1])), item[0]),
    )
    combined = pd.concat([t for _, t in indexed], ignore_index=True)

    present = list(dict.fromkeys(combined['Method']))
    categories = [m for m in METHOD_ORDER if m in present] + [m for m in present if m not in METHOD_ORDER]
    combined['Method'] = pd.Categorical(combined['Method'], categories=categories, ordered=True)
    return combined[RSD_COLUMNS]


def _table_method(table: pd.DataFrame) -> str:
    methods = table['Method'].unique()
    return str(methods[0]) if len(methods) else ''


def iter_rsd_records(table: pd.DataFrame) -> Iterator[RSDRecord]:
    for metabolite, rsd, method in table[RSD_COLUMNS].itertuples(index=False, name=None):
        yield RSDRecord(metabolite=str(metabolite), rsd=float(rsd), method=str(method))


def summarize_rsd(table: pd.DataFrame, thresholds: Sequence[float] = RSD_THRESHOLDS) -> pd.DataFrame:
    """
    Per-method RSD summary.

    Fractions below each threshold and median_abs_rsd are computed over
    metabolites with a defined RSD, using |RSD| (negative means are possible
    after glog).
    """
    rows = []
    for method, group in table.groupby('Method', sort=False, observed=True):
        rsd = group['RSD']
        defined = rsd.dropna()
        row = {
            'Method': str(method),
            'n_metabolites': len(rsd),
            'n_missing': int(rsd.isna().sum()),
            'median_rsd': defined.median() if len(defined) else np.nan,
            'mean_rsd': defined.mean() if len(defined) else np.nan,
            'median_abs_rsd': defined.abs().median() if len(defined) else np.nan,
        }
        for threshold in thresholds:
            key = f"frac_below_{threshold:g}"
            row[key] = float((defined.abs() < threshold).mean()) if len(defined) else np.nan
        rows.append(row)

    summary = pd.DataFrame(rows)
    if not summary.empty:
        summary = summary.sort_values(
            'Method', key=lambda s: s.map(method_sort_key), kind='stable'
        ).reset_index(drop=True)
    return summary


def best_method(summary: pd.DataFrame, methods: Iterable[str] | None = None) -> str | None:
    """Method with the lowest median |RSD|; ties go to the earlier method in report order.

    ``methods`` limits the comparison, e.g. to methods on the same scale
    (glog-transformed RSDs are not comparable with linear ones).
    """
    candidates = summary.dropna(subset=['median_abs_rsd'])
    if methods is not None:
        candidates = candidates[candidates['Method'].isin(list(methods))]
    if candidates.empty:
        return None
    # summary rows are already in report order and idxmin keeps the first minimum
    return str(candidates.loc[candidates['median_abs_rsd'].idxmin(), 'Method'])

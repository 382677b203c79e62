"""
Normalization module: per-sample scaling methods, PQN and the glog transform.

Methods:
- Raw: identity baseline
- Median: divide each sample by its median intensity
- TAN / Sum: divide each sample by its summed intensity (same numbers,
  reported as two methods)
- PQN: probabilistic quotient normalization against a QC reference profile

Any of the scaled matrices can then be passed through glog_transform.

Divisors that are zero or undefined never raise: the affected sample column
becomes NaN and a warning is logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .data_io import SampleMetadata
from .matrix import RAW, IntensityMatrix

logger = logging.getLogger(__name__)

MEDIAN = 'Median'
TAN = 'TAN'
SUM = 'Sum'
PQN = 'PQN'
GLOG_SUFFIX = '_GLOG'

SCALING_METHODS = (MEDIAN, TAN, SUM, PQN)

# Fixed reporting order for matrices, RSD tables and plots
METHOD_ORDER = (
    RAW, MEDIAN, TAN, SUM, PQN,
    MEDIAN + GLOG_SUFFIX, TAN + GLOG_SUFFIX, SUM + GLOG_SUFFIX, PQN + GLOG_SUFFIX,
)

# Below this many usable ratios a PQN factor is considered unreliable
PQN_MIN_RATIOS_WARNING = 20


class ConfigurationError(ValueError):
    """Raised when a method cannot run with the given configuration."""


@dataclass
class PQNResult:
    """Result of probabilistic quotient normalization.

    reference: per-metabolite median over the reference samples
    factors: per-sample scaling factor (NaN where undefined)
    n_ratios: number of valid sample/reference quotients per sample
    """
    matrix: IntensityMatrix
    reference: pd.Series
    factors: pd.Series
    n_ratios: pd.Series
    reference_samples: list[str]

    @property
    def failed_samples(self) -> list[str]:
        return self.factors.index[self.factors.isna()].tolist()


def _scale_columns(matrix: IntensityMatrix, divisors: np.ndarray, method: str, label: str) -> IntensityMatrix:
    """Divide every column by its divisor; zero or undefined divisors give NaN columns."""
    divisors = np.asarray(divisors, dtype=np.float64).copy()
    degenerate = ~np.isfinite(divisors) | (divisors == 0)
    for sample in np.asarray(matrix.samples)[degenerate]:
        logger.warning(f"{method}: {label} of sample '{sample}' is zero or undefined; column set to missing")
    divisors[degenerate] = np.nan

    with np.errstate(divide='ignore', invalid='ignore'):
        values = matrix.values / divisors[np.newaxis, :]
    return matrix.with_values(values, method)


def _column_medians(values: np.ndarray) -> np.ndarray:
    # pandas skips NaN and returns NaN for all-missing columns without warnings
    return pd.DataFrame(values).median(axis=0, skipna=True).to_numpy()


def _column_sums(values: np.ndarray) -> np.ndarray:
    # min_count=1 keeps all-missing columns undefined rather than 0
    return pd.DataFrame(values).sum(axis=0, skipna=True, min_count=1).to_numpy()


def raw(matrix: IntensityMatrix) -> IntensityMatrix:
    """Identity baseline."""
    if matrix.method == RAW:
        return matrix
    return matrix.with_values(matrix.values, RAW)


def median_normalize(matrix: IntensityMatrix) -> IntensityMatrix:
    """Divide each sample column by the median of its non-missing values."""
    return _scale_columns(matrix, _column_medians(matrix.values), MEDIAN, 'median')


def _sum_scale(matrix: IntensityMatrix, method: str) -> IntensityMatrix:
    return _scale_columns(matrix, _column_sums(matrix.values), method, 'sum')


def total_area_normalize(matrix: IntensityMatrix) -> IntensityMatrix:
    """Total area normalization: divide each sample column by its summed intensity."""
    return _sum_scale(matrix, TAN)


def sum_normalize(matrix: IntensityMatrix) -> IntensityMatrix:
    """Sum normalization. Numerically identical to TAN, reported separately."""
    return _sum_scale(matrix, SUM)


def compute_pqn_reference(
    matrix: IntensityMatrix,
    metadata: SampleMetadata,
    reference: str = 'qc',
) -> tuple[pd.Series, list[str]]:
    """
    Compute the PQN reference profile.

    Args:
        matrix: Raw intensity matrix
        metadata: Sample groups; ``metadata.qc_label`` selects the QC subset
        reference: 'qc' to use the QC samples, 'all' to use every sample

    Returns:
        (reference profile indexed by metabolite, samples it was computed from)

    Raises:
        ConfigurationError: If reference='qc' and no sample carries the QC label
    """
    if reference == 'qc':
        ref_samples = [s for s in matrix.samples if s in metadata.groups and metadata.is_qc(s)]
        if not ref_samples:
            raise ConfigurationError(
                f"No samples found in QC group '{metadata.qc_label}'; "
                f"available groups: {sorted(metadata.group_counts())}"
            )
    elif reference == 'all':
        ref_samples = list(matrix.samples)
    else:
        raise ConfigurationError(f"Unknown PQN reference '{reference}' (expected 'qc' or 'all')")

    subset = matrix.select_samples(ref_samples).to_frame()
    profile = subset.median(axis=1, skipna=True)
    profile.name = 'reference'
    return profile, ref_samples


def compute_pqn_factors(matrix: IntensityMatrix, profile: pd.Series) -> tuple[pd.Series, pd.Series]:
    """
    Median quotient of every sample against a fixed reference profile.

    Quotients are only formed where the sample value and the reference are
    both present and the reference is nonzero. Samples without any such
    metabolite get a NaN factor.

    Returns:
        (factors, n_ratios), both indexed by sample
    """
    ref = profile.reindex(list(matrix.metabolites)).to_numpy(dtype=np.float64)
    usable_ref = np.isfinite(ref) & (ref != 0)

    values = matrix.values
    valid = np.isfinite(values) & usable_ref[:, np.newaxis]
    with np.errstate(divide='ignore', invalid='ignore'):
        quotients = np.where(valid, values / ref[:, np.newaxis], np.nan)

    n_ratios = valid.sum(axis=0)
    factors = pd.DataFrame(quotients, columns=list(matrix.samples)).median(axis=0, skipna=True)
    factors.name = 'scaling_factor'

    return factors, pd.Series(n_ratios, index=list(matrix.samples), name='n_ratios')


def pqn_normalize(
    matrix: IntensityMatrix,
    metadata: SampleMetadata,
    reference: str = 'qc',
) -> PQNResult:
    """
    Probabilistic quotient normalization.

    The reference profile is computed once (median over the QC samples by
    default) and every sample, QC or not, is divided by the median of its
    quotients against that profile.
    """
    profile, ref_samples = compute_pqn_reference(matrix, metadata, reference=reference)
    logger.info(f"PQN reference profile from {len(ref_samples)} samples")

    factors, n_ratios = compute_pqn_factors(matrix, profile)

    for sample in matrix.samples:
        if n_ratios[sample] == 0:
            logger.warning(f"PQN: sample '{sample}' shares no valid metabolites with the reference")
        elif n_ratios[sample] < PQN_MIN_RATIOS_WARNING:
            logger.warning(
                f"PQN: factor for sample '{sample}' based on only {n_ratios[sample]} metabolites "
                f"(recommend >= {PQN_MIN_RATIOS_WARNING})"
            )

    normalized = _scale_columns(matrix, factors.to_numpy(), PQN, 'quotient factor')
    factors = factors.where(np.isfinite(factors) & (factors != 0))

    return PQNResult(
        matrix=normalized,
        reference=profile,
        factors=factors,
        n_ratios=n_ratios,
        reference_samples=ref_samples,
    )


def glog_transform(matrix: IntensityMatrix) -> IntensityMatrix:
    """Generalized log: y = ln((x + sqrt(x^2 + 1)) / 2), NaN-preserving.

    Evaluated as arcsinh(x) - ln(2), which is the same function without the
    cancellation in x + sqrt(x^2 + 1) for large negative x.
    """
    values = np.arcsinh(matrix.values) - np.log(2.0)
    return matrix.with_values(values, matrix.method + GLOG_SUFFIX)


def normalize(
    matrix: IntensityMatrix,
    method: str,
    metadata: SampleMetadata | None = None,
    pqn_reference: str = 'qc',
) -> IntensityMatrix:
    """Apply one named normalization method to ``matrix``."""
    if method == RAW:
        return raw(matrix)
    if method == MEDIAN:
        return median_normalize(matrix)
    if method == TAN:
        return total_area_normalize(matrix)
    if method == SUM:
        return sum_normalize(matrix)
    if method == PQN:
        if metadata is None:
            raise ConfigurationError("PQN requires sample metadata")
        return pqn_normalize(matrix, metadata, reference=pqn_reference).matrix
    raise ValueError(f"Unknown normalization method: {method}. Expected one of {list(SCALING_METHODS)}")


def method_sort_key(method: str) -> int:
    """Position of a method in the reporting order (unknown methods last)."""
    try:
        return METHOD_ORDER.index(method)
    except ValueError:
        return len(METHOD_ORDER)

"""Normalization comparison pipeline.

Stages:
1. Raw baseline
2. Per-sample scaling (Median, TAN, Sum, PQN)
3. glog variance stabilization of every scaled matrix
4. Robust RSD of every matrix, combined in report order

Each stage reads the immutable raw matrix (or a matrix derived from it) and
returns new matrices, so methods are independent. A method that cannot run
(PQN without QC samples) is recorded in ``failures`` and skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

import pandas as pd

from .data_io import SampleMetadata
from .matrix import RAW, IntensityMatrix
from .normalization import (
    GLOG_SUFFIX,
    PQN,
    SCALING_METHODS,
    ConfigurationError,
    PQNResult,
    glog_transform,
    method_sort_key,
    normalize,
    pqn_normalize,
)
from .rsd import (
    DEFAULT_TRIM_LOWER,
    DEFAULT_TRIM_UPPER,
    best_method,
    combine_rsd_tables,
    compute_rsd,
    summarize_rsd,
    validate_trim_fractions,
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Results of one normalization comparison run."""

    matrices: dict[str, IntensityMatrix]
    rsd_table: pd.DataFrame
    summary: pd.DataFrame
    pqn: PQNResult | None = None
    failures: dict[str, str] = field(default_factory=dict)
    method_log: list[str] = field(default_factory=list)

    @property
    def methods(self) -> list[str]:
        return list(self.matrices)

    @property
    def best_scaling_method(self) -> str | None:
        """Lowest median |RSD| among Raw and the untransformed scaling methods."""
        return best_method(self.summary, methods=[m for m in self.matrices if not m.endswith(GLOG_SUFFIX)])

    @property
    def best_glog_method(self) -> str | None:
        return best_method(self.summary, methods=[m for m in self.matrices if m.endswith(GLOG_SUFFIX)])


def run_pipeline(
    matrix: IntensityMatrix,
    metadata: SampleMetadata,
    methods: Sequence[str] = SCALING_METHODS,
    glog: bool = True,
    pqn_reference: str = 'qc',
    trim_lower: float = DEFAULT_TRIM_LOWER,
    trim_upper: float = DEFAULT_TRIM_UPPER,
    rsd_samples: str = 'all',
) -> PipelineResult:
    """Run every normalization method on ``matrix`` and compare robust RSDs.

    Args:
        matrix: Raw intensity matrix
        metadata: Sample groups and QC label
        methods: Scaling methods to run (subset of Median, TAN, Sum, PQN)
        glog: Also produce glog-transformed variants of each scaled matrix
        pqn_reference: 'qc' or 'all' samples for the PQN reference profile
        trim_lower: Lower trim fraction for the RSD
        trim_upper: Upper trim fraction for the RSD
        rsd_samples: 'all' to compute RSD over every sample, 'qc' over QC samples only

    Returns:
        PipelineResult

    Raises:
        ConfigurationError: For invalid trim fractions, unknown methods, or
            rsd_samples='qc' without QC samples

    """
    validate_trim_fractions(trim_lower, trim_upper)
    unknown = [m for m in methods if m not in SCALING_METHODS]
    if unknown:
        raise ConfigurationError(f"Unknown normalization methods: {unknown}")

    rsd_subset = _resolve_rsd_samples(matrix, metadata, rsd_samples)

    method_log: list[str] = []
    failures: dict[str, str] = {}
    matrices: dict[str, IntensityMatrix] = {RAW: normalize(matrix, RAW)}
    pqn_result = None

    logger.info(f"Normalizing {matrix.n_metabolites} metabolites x {matrix.n_samples} samples")

    for method in sorted(dict.fromkeys(methods), key=method_sort_key):
        if method == PQN:
            try:
                pqn_result = pqn_normalize(matrix, metadata, reference=pqn_reference)
            except ConfigurationError as e:
                logger.error(f"PQN skipped: {e}")
                failures[PQN] = str(e)
                method_log.append(f"PQN: failed ({e})")
                continue
            matrices[PQN] = pqn_result.matrix
            method_log.append(
                f"PQN: reference from {len(pqn_result.reference_samples)} samples "
                f"({pqn_reference}), {len(pqn_result.failed_samples)} samples without factor"
            )
        else:
            matrices[method] = normalize(matrix, method)
            method_log.append(f"{method} normalization")

    if glog:
        for method in [m for m in matrices if m != RAW]:
            transformed = glog_transform(matrices[method])
            matrices[transformed.method] = transformed
        method_log.append("glog transform of scaled matrices")

    tables = [
        compute_rsd(m, samples=rsd_subset, lower=trim_lower, upper=trim_upper)
        for m in matrices.values()
    ]
    rsd_table = combine_rsd_tables(tables)
    summary = summarize_rsd(rsd_table)
    method_log.append(
        f"Robust RSD ({trim_lower:g}-{trim_upper:g} trim) over "
        f"{'QC samples' if rsd_subset is not None else 'all samples'}"
    )

    result = PipelineResult(
        matrices=matrices,
        rsd_table=rsd_table,
        summary=summary,
        pqn=pqn_result,
        failures=failures,
        method_log=method_log,
    )

    for _, row in summary.iterrows():
        logger.info(f"  {row['Method']:<12} median RSD {row['median_rsd']:.2f}%, median |RSD| {row['median_abs_rsd']:.2f}%")
    if result.best_scaling_method:
        logger.info(f"Lowest median |RSD|: {result.best_scaling_method}")

    return result


def _resolve_rsd_samples(
    matrix: IntensityMatrix,
    metadata: SampleMetadata,
    rsd_samples: str,
) -> list[str] | None:
    if rsd_samples == 'all':
        return None
    if rsd_samples == 'qc':
        qc = [s for s in matrix.samples if s in metadata.groups and metadata.is_qc(s)]
        if not qc:
            raise ConfigurationError(
                f"RSD over QC samples requested but no samples are labelled '{metadata.qc_label}'"
            )
        return qc
    raise ConfigurationError(f"Unknown rsd samples option '{rsd_samples}' (expected 'all' or 'qc')")

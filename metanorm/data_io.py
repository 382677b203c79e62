"""Data I/O module for loading intensity matrices and writing pipeline outputs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
import pandas as pd

from .matrix import IntensityMatrix

logger = logging.getLogger(__name__)

DEFAULT_QC_LABEL = 'QC'

# Supported output formats
OUTPUT_FORMATS = ('csv', 'tsv', 'parquet')


@dataclass
class SampleMetadata:
    """Group label for every sample, plus the label that marks QC samples."""

    groups: dict[str, str]
    qc_label: str = DEFAULT_QC_LABEL

    @property
    def samples(self) -> list[str]:
        return list(self.groups)

    @property
    def qc_samples(self) -> list[str]:
        return [s for s in self.groups if self.is_qc(s)]

    def is_qc(self, sample: str) -> bool:
        return self.groups[sample].strip() == self.qc_label.strip()

    def group_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for group in self.groups.values():
            counts[group] = counts.get(group, 0) + 1
        return counts

    def with_qc_label(self, qc_label: str) -> SampleMetadata:
        return SampleMetadata(groups=dict(self.groups), qc_label=qc_label)


@dataclass
class LoadResult:
    """Result of loading a two-header intensity file."""

    matrix: IntensityMatrix
    metadata: SampleMetadata
    filepath: Path
    n_non_numeric: int = 0
    warnings: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"{self.filepath.name}: {self.matrix.n_metabolites} metabolites x "
            f"{self.matrix.n_samples} samples, "
            f"{len(self.metadata.group_counts())} groups"
        )


def _detect_separator(filepath: Path) -> str:
    suffix = filepath.suffix.lower()
    return '\t' if suffix in ['.tsv', '.txt'] else ','


def load_intensity_matrix(filepath: Path, qc_label: str = DEFAULT_QC_LABEL) -> LoadResult:
    """Load a metabolite intensity table with sample and group header rows.

    Expected layout (first column is the metabolite identifier; its header
    cells are placeholders):

        ,S1,S2,S3,S4
        ,QC,QC,A,A
        Alanine,1.0,2.0,1.0,10.0
        ...

    Args:
        filepath: Path to the CSV/TSV file
        qc_label: Group label identifying quality-control samples

    Returns:
        LoadResult with the raw matrix and sample metadata

    Raises:
        ValueError: If the file is structurally invalid

    """
    filepath = Path(filepath)
    sep = _detect_separator(filepath)

    raw = pd.read_csv(filepath, sep=sep, header=None, dtype=str, skip_blank_lines=False)

    # Drop fully empty columns and metabolite rows (spreadsheet exports)
    raw = raw.dropna(axis=1, how='all')
    raw = pd.concat([raw.iloc[:2], raw.iloc[2:].dropna(axis=0, how='all')], ignore_index=True)
    raw.columns = range(raw.shape[1])

    if raw.shape[0] < 3:
        raise ValueError(
            f"Invalid intensity file {filepath.name}: expected a sample row, "
            f"a group row and at least one metabolite row"
        )
    if raw.shape[1] < 2:
        raise ValueError(f"Invalid intensity file {filepath.name}: no sample columns found")

    sample_ids = raw.iloc[0, 1:]
    if sample_ids.isna().any():
        raise ValueError(f"Invalid intensity file {filepath.name}: blank sample identifier")
    sample_ids = [s.strip() for s in sample_ids]
    group_labels = ['' if pd.isna(g) else g.strip() for g in raw.iloc[1, 1:]]

    body = raw.iloc[2:]
    metabolite_ids = body.iloc[:, 0]
    if metabolite_ids.isna().any():
        raise ValueError(f"Invalid intensity file {filepath.name}: blank metabolite identifier")
    metabolite_ids = [m.strip() for m in metabolite_ids]

    cells = body.iloc[:, 1:]
    numeric = cells.apply(pd.to_numeric, errors='coerce')
    n_non_numeric = int((numeric.isna() & cells.notna()).to_numpy().sum())

    values = numeric.to_numpy(dtype=np.float64)
    matrix = IntensityMatrix(values=values, metabolites=metabolite_ids, samples=sample_ids)
    metadata = SampleMetadata(groups=dict(zip(sample_ids, group_labels)), qc_label=qc_label)

    result = LoadResult(matrix=matrix, metadata=metadata, filepath=filepath,
                        n_non_numeric=n_non_numeric)

    if n_non_numeric:
        result.warnings.append(f"{n_non_numeric} non-numeric cells treated as missing")
    n_negative = int(np.sum(values < 0))
    if n_negative:
        result.warnings.append(f"{n_negative} negative intensities found")
    if not metadata.qc_samples:
        result.warnings.append(f"No samples labelled '{qc_label}' - PQN will not be available")

    logger.info(f"Loaded {result}")
    for w in result.warnings:
        logger.warning(w)

    return result


def matrix_to_two_header_frame(matrix: IntensityMatrix, metadata: SampleMetadata | None = None) -> pd.DataFrame:
    """Lay a matrix out in the loader's two-header format (sample row, group row, data)."""
    groups = [metadata.groups.get(s, '') if metadata else '' for s in matrix.samples]
    header = pd.DataFrame([[''] + list(matrix.samples), [''] + groups])
    body = pd.DataFrame(matrix.values, columns=range(1, matrix.n_samples + 1))
    body.insert(0, 0, list(matrix.metabolites))
    return pd.concat([header, body.astype(object)], ignore_index=True)


def write_matrix(
    matrix: IntensityMatrix,
    output_path: Path,
    metadata: SampleMetadata | None = None,
    output_format: str = 'csv',
) -> Path:
    """Write a matrix to disk.

    csv/tsv files use the same two-header layout as the input so they can be
    loaded again; parquet files hold a Metabolite column and one column per
    sample.
    """
    output_path = Path(output_path)
    if output_format == 'parquet':
        df = matrix.to_frame().reset_index()
        df.columns = [str(c) for c in df.columns]
        df.to_parquet(output_path, index=False)
    elif output_format in ('csv', 'tsv'):
        sep = '\t' if output_format == 'tsv' else ','
        matrix_to_two_header_frame(matrix, metadata).to_csv(
            output_path, sep=sep, index=False, header=False
        )
    else:
        raise ValueError(f"Unknown output format: {output_format}")
    logger.debug(f"Wrote {matrix.method} matrix to {output_path}")
    return output_path


def write_table(df: pd.DataFrame, output_path: Path, output_format: str = 'csv') -> Path:
    """Write a flat table in the requested format."""
    output_path = Path(output_path)
    if output_format == 'parquet':
        out = df.copy()
        # Categorical method columns round-trip as plain strings
        for col in out.columns:
            if isinstance(out[col].dtype, pd.CategoricalDtype):
                out[col] = out[col].astype(str)
        out.to_parquet(output_path, index=False)
    elif output_format == 'csv':
        df.to_csv(output_path, index=False)
    elif output_format == 'tsv':
        df.to_csv(output_path, sep='\t', index=False)
    else:
        raise ValueError(f"Unknown output format: {output_format}")
    return output_path

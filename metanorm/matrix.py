"""Labelled intensity matrix used throughout the pipeline.

An IntensityMatrix holds one row per metabolite and one column per sample,
with the row and column labels stored explicitly next to a dense float array.
Every transform in metanorm takes a matrix and returns a new one with the
same labels; the backing array is read-only so a derived matrix can never
write through to the raw data it came from.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np
import pandas as pd

RAW = 'Raw'


@dataclass(frozen=True, eq=False)
class IntensityMatrix:
    """Metabolite x sample intensity matrix tagged with the method that produced it."""

    values: np.ndarray
    metabolites: tuple[str, ...]
    samples: tuple[str, ...]
    method: str = RAW
    _row_index: dict[str, int] = field(init=False, repr=False, compare=False)
    _col_index: dict[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        metabolites = tuple(str(m) for m in self.metabolites)
        samples = tuple(str(s) for s in self.samples)

        values = np.array(self.values, dtype=np.float64, copy=True)
        if values.ndim != 2:
            raise ValueError(f"Intensity values must be 2-dimensional, got {values.ndim} dimensions")
        if values.shape != (len(metabolites), len(samples)):
            raise ValueError(
                f"Values shape {values.shape} does not match "
                f"{len(metabolites)} metabolites x {len(samples)} samples"
            )
        _check_unique(metabolites, 'metabolite')
        _check_unique(samples, 'sample')
        values.setflags(write=False)

        object.__setattr__(self, 'values', values)
        object.__setattr__(self, 'metabolites', metabolites)
        object.__setattr__(self, 'samples', samples)
        object.__setattr__(self, '_row_index', {m: i for i, m in enumerate(metabolites)})
        object.__setattr__(self, '_col_index', {s: i for i, s in enumerate(samples)})

    @classmethod
    def from_frame(cls, df: pd.DataFrame, method: str = RAW) -> IntensityMatrix:
        """Build a matrix from a DataFrame indexed by metabolite with sample columns."""
        numeric = df.apply(pd.to_numeric, errors='coerce')
        return cls(
            values=numeric.to_numpy(dtype=np.float64),
            metabolites=tuple(df.index),
            samples=tuple(df.columns),
            method=method,
        )

    @property
    def shape(self) -> tuple[int, int]:
        return self.values.shape

    @property
    def n_metabolites(self) -> int:
        return len(self.metabolites)

    @property
    def n_samples(self) -> int:
        return len(self.samples)

    def to_frame(self) -> pd.DataFrame:
        """Return a writable DataFrame copy (metabolites as index, samples as columns)."""
        df = pd.DataFrame(
            self.values.copy(),
            index=pd.Index(self.metabolites, name='Metabolite'),
            columns=pd.Index(self.samples, name='Sample'),
        )
        return df

    def with_values(self, values: np.ndarray, method: str) -> IntensityMatrix:
        """Return a new matrix with the same labels, new values and a new method tag."""
        return IntensityMatrix(
            values=values,
            metabolites=self.metabolites,
            samples=self.samples,
            method=method,
        )

    def column(self, sample: str) -> np.ndarray:
        return self.values[:, self._col_index[sample]]

    def row(self, metabolite: str) -> np.ndarray:
        return self.values[self._row_index[metabolite], :]

    def select_samples(self, samples: Iterable[str]) -> IntensityMatrix:
        """Return a matrix restricted to ``samples`` (in the order given)."""
        samples = tuple(samples)
        missing = [s for s in samples if s not in self._col_index]
        if missing:
            raise KeyError(f"Samples not in matrix: {missing}")
        idx = [self._col_index[s] for s in samples]
        return IntensityMatrix(
            values=self.values[:, idx],
            metabolites=self.metabolites,
            samples=samples,
            method=self.method,
        )

    def same_labels(self, other: IntensityMatrix) -> bool:
        return self.metabolites == other.metabolites and self.samples == other.samples


def _check_unique(labels: Sequence[str], kind: str) -> None:
    seen = set()
    duplicates = []
    for label in labels:
        if label in seen:
            duplicates.append(label)
        seen.add(label)
    if duplicates:
        raise ValueError(f"Duplicate {kind} identifiers: {sorted(set(duplicates))}")

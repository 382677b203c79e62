"""Tests for the normalization comparison pipeline."""

import numpy as np
import pytest

from metanorm.data_io import SampleMetadata
from metanorm.matrix import IntensityMatrix
from metanorm.normalization import METHOD_ORDER, ConfigurationError
from metanorm.pipeline import PipelineResult, run_pipeline


def make_dataset(n_metabolites=30, seed=42):
    """Log-normal intensities with a per-sample dilution effect."""
    rng = np.random.default_rng(seed)
    samples = ['QC1', 'QC2', 'QC3', 'A1', 'A2', 'B1', 'B2', 'B3']
    groups = ['QC', 'QC', 'QC', 'A', 'A', 'B', 'B', 'B']

    base = rng.lognormal(mean=8, sigma=1.5, size=(n_metabolites, 1))
    dilution = rng.uniform(0.3, 3.0, size=(1, len(samples)))
    noise = rng.lognormal(mean=0, sigma=0.05, size=(n_metabolites, len(samples)))
    values = base * dilution * noise
    values[3, 4] = np.nan

    matrix = IntensityMatrix(
        values=values,
        metabolites=[f'M{i}' for i in range(n_metabolites)],
        samples=samples,
    )
    metadata = SampleMetadata(groups=dict(zip(samples, groups)))
    return matrix, metadata


class TestRunPipeline:
    """End-to-end pipeline tests."""

    def test_all_methods_in_order(self):
        matrix, metadata = make_dataset()

        result = run_pipeline(matrix, metadata)

        assert isinstance(result, PipelineResult)
        assert result.methods == list(METHOD_ORDER)
        assert result.failures == {}
        assert result.rsd_table['Method'].astype(str).unique().tolist() == list(METHOD_ORDER)
        assert len(result.rsd_table) == matrix.n_metabolites * len(METHOD_ORDER)

    def test_shapes_and_labels_preserved(self):
        matrix, metadata = make_dataset()

        result = run_pipeline(matrix, metadata)

        for method, normalized in result.matrices.items():
            assert normalized.method == method
            assert normalized.same_labels(matrix)

    def test_raw_matrix_unchanged(self):
        matrix, metadata = make_dataset()
        before = matrix.values.copy()

        result = run_pipeline(matrix, metadata)

        np.testing.assert_array_equal(matrix.values, before)
        np.testing.assert_array_equal(result.matrices['Raw'].values, before)

    def test_tan_and_sum_identical(self):
        matrix, metadata = make_dataset()

        result = run_pipeline(matrix, metadata)

        np.testing.assert_array_equal(result.matrices['TAN'].values, result.matrices['Sum'].values)
        tan = result.rsd_table[result.rsd_table['Method'] == 'TAN']['RSD'].to_numpy()
        total = result.rsd_table[result.rsd_table['Method'] == 'Sum']['RSD'].to_numpy()
        np.testing.assert_array_equal(tan, total)

    def test_normalization_reduces_dilution_variance(self):
        """Per-sample dilution dominates raw RSD; scaling methods remove it."""
        matrix, metadata = make_dataset()

        result = run_pipeline(matrix, metadata)
        summary = result.summary.set_index('Method')

        for method in ('Median', 'TAN', 'Sum', 'PQN'):
            assert summary.loc[method, 'median_rsd'] < summary.loc['Raw', 'median_rsd']
        assert result.best_scaling_method in ('Median', 'TAN', 'Sum', 'PQN')
        assert result.best_glog_method.endswith('_GLOG')

    def test_missing_qc_group_skips_pqn_only(self):
        matrix, metadata = make_dataset()

        result = run_pipeline(matrix, metadata.with_qc_label('Pool'))

        assert 'PQN' in result.failures
        assert 'PQN' not in result.matrices
        assert 'PQN_GLOG' not in result.matrices
        assert result.pqn is None
        assert result.methods == [
            'Raw', 'Median', 'TAN', 'Sum', 'Median_GLOG', 'TAN_GLOG', 'Sum_GLOG',
        ]
        assert any('PQN: failed' in step for step in result.method_log)

    def test_without_glog(self):
        matrix, metadata = make_dataset()

        result = run_pipeline(matrix, metadata, glog=False)

        assert result.methods == ['Raw', 'Median', 'TAN', 'Sum', 'PQN']
        assert result.best_glog_method is None

    def test_method_subset_keeps_order(self):
        matrix, metadata = make_dataset()

        result = run_pipeline(matrix, metadata, methods=['PQN', 'Median'], glog=False)

        assert result.methods == ['Raw', 'Median', 'PQN']

    def test_unknown_method(self):
        matrix, metadata = make_dataset()
        with pytest.raises(ConfigurationError, match='Unknown normalization methods'):
            run_pipeline(matrix, metadata, methods=['Quantile'])

    def test_invalid_trim(self):
        matrix, metadata = make_dataset()
        with pytest.raises(ConfigurationError):
            run_pipeline(matrix, metadata, trim_lower=0.9, trim_upper=0.1)

    def test_qc_only_rsd(self):
        matrix, metadata = make_dataset()

        all_samples = run_pipeline(matrix, metadata, glog=False)
        qc_only = run_pipeline(matrix, metadata, glog=False, rsd_samples='qc')

        assert len(qc_only.rsd_table) == len(all_samples.rsd_table)
        raw_all = all_samples.rsd_table[all_samples.rsd_table['Method'] == 'Raw']['RSD']
        raw_qc = qc_only.rsd_table[qc_only.rsd_table['Method'] == 'Raw']['RSD']
        assert not np.allclose(raw_all.to_numpy(), raw_qc.to_numpy(), equal_nan=True)

    def test_qc_only_rsd_with_two_qc_samples(self):
        """Two QC injections are enough for a defined RSD under every method."""
        matrix, metadata = make_dataset()
        matrix = matrix.select_samples(['QC1', 'QC2', 'A1', 'A2', 'B1', 'B2', 'B3'])

        result = run_pipeline(matrix, metadata, rsd_samples='qc')

        assert not result.rsd_table['RSD'].isna().any()
        assert (result.summary['n_missing'] == 0).all()
        assert result.best_scaling_method is not None
        assert result.best_glog_method is not None

    def test_qc_only_rsd_two_identical_qc_samples(self):
        matrix = IntensityMatrix(
            values=np.array([[5.0, 5.0, 9.0], [2.0, 4.0, 3.0]]),
            metabolites=('Flat', 'Spread'),
            samples=('QC1', 'QC2', 'A1'),
        )
        metadata = SampleMetadata(groups={'QC1': 'QC', 'QC2': 'QC', 'A1': 'A'})

        result = run_pipeline(matrix, metadata, methods=[], glog=False, rsd_samples='qc')

        raw = result.rsd_table.set_index('Metabolite')['RSD']
        assert raw['Flat'] == 0.0
        assert raw['Spread'] == pytest.approx(47.1405, rel=1e-4)

    def test_qc_only_rsd_without_qc(self):
        matrix, metadata = make_dataset()
        with pytest.raises(ConfigurationError, match='no samples are labelled'):
            run_pipeline(matrix, metadata.with_qc_label('Pool'), rsd_samples='qc')

    def test_pqn_reference_all(self):
        matrix, metadata = make_dataset()

        result = run_pipeline(matrix, metadata.with_qc_label('Pool'), pqn_reference='all', glog=False)

        assert 'PQN' in result.matrices
        assert result.pqn.reference_samples == list(matrix.samples)


class TestHandComputedScenario:
    """3 metabolites x 4 samples with known medians and sums."""

    def test_median_and_sum(self):
        matrix = IntensityMatrix(
            values=np.array([
                [1.0, 2.0, 1.0, 10.0],
                [2.0, 4.0, 1.0, 20.0],
                [3.0, 6.0, 4.0, 30.0],
            ]),
            metabolites=('M1', 'M2', 'M3'),
            samples=('S1', 'S2', 'S3', 'S4'),
        )
        metadata = SampleMetadata(groups={'S1': 'QC', 'S2': 'QC', 'S3': 'A', 'S4': 'A'})

        result = run_pipeline(matrix, metadata)

        np.testing.assert_allclose(
            result.matrices['Median'].values,
            [[0.5, 0.5, 1.0, 0.5], [1.0, 1.0, 1.0, 1.0], [1.5, 1.5, 4.0, 1.5]],
            rtol=0, atol=1e-9,
        )
        np.testing.assert_allclose(
            result.matrices['Sum'].values,
            [[1 / 6, 1 / 6, 1 / 6, 1 / 6], [2 / 6, 2 / 6, 1 / 6, 2 / 6], [3 / 6, 3 / 6, 4 / 6, 3 / 6]],
            rtol=0, atol=1e-9,
        )

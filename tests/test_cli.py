"""Tests for CLI module."""

import argparse
import sys

import pandas as pd
import pytest

from metanorm.cli import (
    _deep_merge,
    apply_overrides,
    load_config,
    main,
    validate_config,
)
from metanorm.normalization import ConfigurationError

MATRIX_CSV = """\
,QC1,QC2,QC3,A1,A2,B1
,QC,QC,QC,A,A,B
Alanine,100,210,95,400,55,130
Glycine,200,400,205,820,101,250
Serine,50,98,51,190,26,66
Valine,10,22,9,41,5,12
"""


class TestDeepMerge:
    """Tests for deep merge utility."""

    def test_simple_merge(self):
        base = {"a": 1, "b": 2}
        override = {"b": 3, "c": 4}
        assert _deep_merge(base, override) == {"a": 1, "b": 3, "c": 4}

    def test_nested_merge(self):
        base = {
            "section1": {"a": 1, "b": 2},
            "section2": {"c": 3},
        }
        override = {
            "section1": {"b": 20, "d": 4},
            "section3": {"e": 5},
        }
        result = _deep_merge(base, override)
        assert result["section1"] == {"a": 1, "b": 20, "d": 4}
        assert result["section2"] == {"c": 3}
        assert result["section3"] == {"e": 5}

    def test_base_not_modified(self):
        base = {"a": {"b": 1}}
        _deep_merge(base, {"a": {"b": 2}})
        assert base == {"a": {"b": 1}}


class TestLoadConfig:
    """Tests for configuration loading."""

    def test_default_config(self):
        config = load_config(None)

        assert config["data"]["qc_group_label"] == "QC"
        assert config["normalization"]["methods"] == ["Median", "TAN", "Sum", "PQN"]
        assert config["normalization"]["glog"] is True
        assert config["rsd"]["trim_lower_fraction"] == 0.05
        assert config["rsd"]["trim_upper_fraction"] == 0.95
        assert config["output"]["plot_window"] == [-500, 500]

    def test_yaml_override(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("""
data:
  qc_group_label: Pool
rsd:
  trim_upper_fraction: 0.9
output:
  format: tsv
""")

        config = load_config(config_path)

        assert config["data"]["qc_group_label"] == "Pool"
        assert config["rsd"]["trim_upper_fraction"] == 0.9
        assert config["rsd"]["trim_lower_fraction"] == 0.05
        assert config["output"]["format"] == "tsv"
        assert config["output"]["plots"] is True

    def test_empty_yaml(self, tmp_path):
        config_path = tmp_path / "empty.yaml"
        config_path.write_text("")
        assert load_config(config_path) == load_config(None)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")


class TestOverridesAndValidation:
    """Tests for command-line overrides and config validation."""

    def test_apply_overrides(self):
        args = argparse.Namespace(
            qc_label="Pool", trim_lower=0.1, trim_upper=None,
            format="parquet", no_glog=True, no_plots=False,
        )

        config = apply_overrides(load_config(None), args)

        assert config["data"]["qc_group_label"] == "Pool"
        assert config["rsd"]["trim_lower_fraction"] == 0.1
        assert config["rsd"]["trim_upper_fraction"] == 0.95
        assert config["output"]["format"] == "parquet"
        assert config["normalization"]["glog"] is False
        assert config["output"]["plots"] is True

    def test_invalid_format(self):
        config = _deep_merge(load_config(None), {"output": {"format": "xlsx"}})
        with pytest.raises(ConfigurationError):
            validate_config(config)

    def test_invalid_plot_window(self):
        config = _deep_merge(load_config(None), {"output": {"plot_window": [100, -100]}})
        with pytest.raises(ConfigurationError):
            validate_config(config)

    @pytest.mark.parametrize("reference", ["QC", "pool", ""])
    def test_invalid_pqn_reference(self, reference):
        config = _deep_merge(load_config(None), {"normalization": {"pqn_reference": reference}})
        with pytest.raises(ConfigurationError, match="pqn_reference"):
            validate_config(config)

    def test_invalid_rsd_samples(self):
        config = _deep_merge(load_config(None), {"rsd": {"samples": "QC"}})
        with pytest.raises(ConfigurationError, match="rsd.samples"):
            validate_config(config)

    def test_valid_choices(self):
        config = _deep_merge(load_config(None), {
            "normalization": {"pqn_reference": "all"},
            "rsd": {"samples": "qc"},
        })
        validate_config(config)


class TestMain:
    """End-to-end CLI runs."""

    def test_run(self, tmp_path, monkeypatch):
        input_path = tmp_path / "matrix.csv"
        input_path.write_text(MATRIX_CSV)
        out = tmp_path / "out"
        monkeypatch.setattr(sys, "argv", ["metanorm", "run", "-i", str(input_path), "-o", str(out),
                                          "--no-plots"])

        assert main() == 0

        rsd = pd.read_csv(out / "all_rsd.csv")
        assert rsd["Method"].unique().tolist() == [
            "Raw", "Median", "TAN", "Sum", "PQN",
            "Median_GLOG", "TAN_GLOG", "Sum_GLOG", "PQN_GLOG",
        ]
        assert len(rsd) == 4 * 9
        assert (out / "normalised_PQN.csv").exists()
        assert not (out / "rsd_boxplot.png").exists()

    def test_run_without_qc_group(self, tmp_path, monkeypatch):
        input_path = tmp_path / "matrix.csv"
        input_path.write_text(MATRIX_CSV)
        out = tmp_path / "out"
        monkeypatch.setattr(sys, "argv", ["metanorm", "run", "-i", str(input_path), "-o", str(out),
                                          "--qc-label", "Pool", "--no-glog", "--no-plots"])

        assert main() == 0

        rsd = pd.read_csv(out / "all_rsd.csv")
        assert rsd["Method"].unique().tolist() == ["Raw", "Median", "TAN", "Sum"]

    def test_invalid_trim_returns_error(self, tmp_path, monkeypatch):
        input_path = tmp_path / "matrix.csv"
        input_path.write_text(MATRIX_CSV)
        monkeypatch.setattr(sys, "argv", ["metanorm", "run", "-i", str(input_path),
                                          "-o", str(tmp_path / "out"), "--trim-lower", "0.99"])

        assert main() == 1

    def test_misspelled_pqn_reference_returns_error(self, tmp_path, monkeypatch):
        input_path = tmp_path / "matrix.csv"
        input_path.write_text(MATRIX_CSV)
        config_path = tmp_path / "config.yaml"
        config_path.write_text("normalization:\n  pqn_reference: QC\n")
        out = tmp_path / "out"
        monkeypatch.setattr(sys, "argv", ["metanorm", "run", "-i", str(input_path), "-o", str(out),
                                          "-c", str(config_path), "--no-plots"])

        assert main() == 1
        assert not (out / "all_rsd.csv").exists()

    def test_rsd_command(self, tmp_path, monkeypatch):
        input_path = tmp_path / "matrix.csv"
        input_path.write_text(MATRIX_CSV)
        output_path = tmp_path / "rsd.tsv"
        monkeypatch.setattr(sys, "argv", ["metanorm", "rsd", "-i", str(input_path),
                                          "-o", str(output_path), "--method", "Raw"])

        assert main() == 0

        table = pd.read_csv(output_path, sep="\t")
        assert table["Metabolite"].tolist() == ["Alanine", "Glycine", "Serine", "Valine"]
        assert (table["Method"] == "Raw").all()

    def test_no_command(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["metanorm"])
        assert main() == 1

"""Command-line interface for MetaNorm.

Compares normalization methods for metabolomics intensity matrices using a
robust (trimmed) RSD per metabolite.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import yaml

from . import __version__
from .data_io import OUTPUT_FORMATS, load_intensity_matrix, write_table
from .normalization import ConfigurationError
from .pipeline import run_pipeline
from .report import write_report
from .rsd import compute_rsd

logger = logging.getLogger(__name__)

PQN_REFERENCES = ('qc', 'all')
RSD_SAMPLE_SETS = ('all', 'qc')


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    defaults = {
        'data': {
            'qc_group_label': 'QC',
        },
        'normalization': {
            'methods': ['Median', 'TAN', 'Sum', 'PQN'],
            'pqn_reference': 'qc',
            'glog': True,
        },
        'rsd': {
            'trim_lower_fraction': 0.05,
            'trim_upper_fraction': 0.95,
            'samples': 'all',
        },
        'output': {
            'format': 'csv',
            'write_matrices': True,
            'plots': True,
            'plot_window': [-500, 500],
            'report': True,
        },
    }

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        # Deep merge user config over defaults
        defaults = _deep_merge(defaults, user_config)
    elif config_path:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    return defaults


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def apply_overrides(config: dict, args: argparse.Namespace) -> dict:
    """Apply command-line flags on top of the loaded config."""
    overrides: dict = {}
    if getattr(args, 'qc_label', None) is not None:
        overrides.setdefault('data', {})['qc_group_label'] = args.qc_label
    if getattr(args, 'trim_lower', None) is not None:
        overrides.setdefault('rsd', {})['trim_lower_fraction'] = args.trim_lower
    if getattr(args, 'trim_upper', None) is not None:
        overrides.setdefault('rsd', {})['trim_upper_fraction'] = args.trim_upper
    if getattr(args, 'format', None) is not None:
        overrides.setdefault('output', {})['format'] = args.format
    if getattr(args, 'no_glog', False):
        overrides.setdefault('normalization', {})['glog'] = False
    if getattr(args, 'no_plots', False):
        overrides.setdefault('output', {})['plots'] = False
    return _deep_merge(config, overrides)


def validate_config(config: dict) -> None:
    """Reject config values the pipeline cannot act on."""
    output_format = config['output'].get('format', 'csv')
    if output_format not in OUTPUT_FORMATS:
        raise ConfigurationError(f"Unknown output format '{output_format}', expected one of {list(OUTPUT_FORMATS)}")
    window = config['output'].get('plot_window', [-500, 500])
    if len(window) != 2 or float(window[0]) >= float(window[1]):
        raise ConfigurationError(f"plot_window must be [low, high] with low < high, got {window}")
    pqn_reference = config['normalization'].get('pqn_reference', 'qc')
    if pqn_reference not in PQN_REFERENCES:
        raise ConfigurationError(
            f"Unknown normalization.pqn_reference '{pqn_reference}', expected one of {list(PQN_REFERENCES)}"
        )
    rsd_samples = config['rsd'].get('samples', 'all')
    if rsd_samples not in RSD_SAMPLE_SETS:
        raise ConfigurationError(
            f"Unknown rsd.samples '{rsd_samples}', expected one of {list(RSD_SAMPLE_SETS)}"
        )


def cmd_run(args: argparse.Namespace) -> int:
    """Run the full normalization comparison."""
    config = apply_overrides(load_config(Path(args.config) if args.config else None), args)
    validate_config(config)

    qc_label = config['data'].get('qc_group_label', 'QC')
    loaded = load_intensity_matrix(Path(args.input), qc_label=qc_label)

    result = run_pipeline(
        loaded.matrix,
        loaded.metadata,
        methods=config['normalization'].get('methods', ['Median', 'TAN', 'Sum', 'PQN']),
        glog=config['normalization'].get('glog', True),
        pqn_reference=config['normalization'].get('pqn_reference', 'qc'),
        trim_lower=float(config['rsd'].get('trim_lower_fraction', 0.05)),
        trim_upper=float(config['rsd'].get('trim_upper_fraction', 0.95)),
        rsd_samples=config['rsd'].get('samples', 'all'),
    )

    write_report(
        result,
        loaded.metadata,
        Path(args.output_dir),
        output_format=config['output'].get('format', 'csv'),
        write_matrices=config['output'].get('write_matrices', True),
        plots=config['output'].get('plots', True),
        plot_window=config['output'].get('plot_window', [-500, 500]),
        html_report=config['output'].get('report', True),
        parameters=config,
        input_files=[str(args.input)],
    )

    # Log summary
    logger.info("=" * 60)
    logger.info("MetaNorm Run Complete")
    logger.info("=" * 60)
    for step in result.method_log:
        logger.info(f"  {step}")
    for method, message in result.failures.items():
        logger.warning(f"  {method} failed: {message}")
    logger.info(f"Output directory: {args.output_dir}")

    return 0


def cmd_rsd(args: argparse.Namespace) -> int:
    """Compute the robust RSD table of a single matrix file."""
    loaded = load_intensity_matrix(Path(args.input))
    method = args.method or Path(args.input).stem

    table = compute_rsd(
        loaded.matrix,
        method=method,
        lower=args.trim_lower if args.trim_lower is not None else 0.05,
        upper=args.trim_upper if args.trim_upper is not None else 0.95,
    )

    output_path = Path(args.output)
    suffix = output_path.suffix.lower().lstrip('.')
    write_table(table, output_path, suffix if suffix in OUTPUT_FORMATS else 'csv')
    logger.info(f"Saved RSD for {len(table)} metabolites to {output_path}")

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='metanorm',
        description='MetaNorm: normalization comparison for metabolomics intensity matrices\n\n'
                    'Applies Median, TAN, Sum and PQN normalization (plus glog variants)\n'
                    'and compares them by robust per-metabolite RSD.\n\n'
                    'Primary usage:\n'
                    '  metanorm run -i matrix.csv -o output_dir/ -c config.yaml',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    run_parser = subparsers.add_parser(
        'run',
        help='Run every normalization method and compare RSDs',
        description='Normalize the matrix with every configured method, compute robust RSDs '
                    'and write matrices, RSD tables, plots and a report.'
    )
    run_parser.add_argument('-i', '--input', required=True,
                           help='Intensity matrix (CSV/TSV with sample and group header rows)')
    run_parser.add_argument('-o', '--output-dir', required=True, help='Output directory for results')
    run_parser.add_argument('-c', '--config', help='Configuration YAML file')
    run_parser.add_argument('--qc-label', help='Group label of QC samples (default: QC)')
    run_parser.add_argument('--trim-lower', type=float, help='Lower RSD trim fraction (default: 0.05)')
    run_parser.add_argument('--trim-upper', type=float, help='Upper RSD trim fraction (default: 0.95)')
    run_parser.add_argument('--format', choices=OUTPUT_FORMATS, help='Output table format')
    run_parser.add_argument('--no-glog', action='store_true', help='Skip glog-transformed variants')
    run_parser.add_argument('--no-plots', action='store_true', help='Do not render box plots')

    rsd_parser = subparsers.add_parser('rsd', help='Compute robust RSD for one matrix file')
    rsd_parser.add_argument('-i', '--input', required=True, help='Intensity matrix file')
    rsd_parser.add_argument('-o', '--output', required=True, help='Output table (.csv, .tsv or .parquet)')
    rsd_parser.add_argument('--method', help='Method label (default: input file name)')
    rsd_parser.add_argument('--trim-lower', type=float, help='Lower trim fraction (default: 0.05)')
    rsd_parser.add_argument('--trim-upper', type=float, help='Upper trim fraction (default: 0.95)')

    args = parser.parse_args()

    setup_logging(args.verbose)

    try:
        if args.command == 'run':
            return cmd_run(args)
        elif args.command == 'rsd':
            return cmd_rsd(args)
        else:
            parser.print_help()
            return 1
    except (ValueError, FileNotFoundError) as e:
        logger.error(str(e))
        return 1


if __name__ == '__main__':
    sys.exit(main())

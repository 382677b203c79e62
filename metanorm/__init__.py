"""
MetaNorm: normalization comparison for metabolomics intensity matrices

Applies Median, total area (TAN), Sum and probabilistic quotient (PQN)
normalization, optional glog variance stabilization, and ranks the methods by
a robust trimmed RSD per metabolite.
"""

__version__ = "0.1.0"

from .matrix import (
    RAW,
    IntensityMatrix,
)
from .data_io import (
    LoadResult,
    SampleMetadata,
    load_intensity_matrix,
    write_matrix,
)
from .normalization import (
    METHOD_ORDER,
    ConfigurationError,
    PQNResult,
    glog_transform,
    median_normalize,
    normalize,
    pqn_normalize,
    sum_normalize,
    total_area_normalize,
)
from .rsd import (
    RSDRecord,
    best_method,
    combine_rsd_tables,
    compute_rsd,
    robust_rsd,
    summarize_rsd,
)
from .pipeline import (
    PipelineResult,
    run_pipeline,
)
from .report import (
    plot_rsd_boxplot,
    write_report,
)

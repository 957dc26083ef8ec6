"""
Confounder Removal Use Case
===========================

This module provides a complete workflow for removing batch effects and other
confounders from single-cell RNA-seq counts and comparing the methods.

It includes:
- Correction methods: RUVg, RUVs, ComBat, MNN, GLM and Harmony, registered by kind.
- An evaluation suite: PCA separation, RLE, variance explained and kBET.
- Visualization tools for comparing the corrected layers.

Main functions:
- `run_corrections`: Applies a list of configured methods to one normalized dataset.
- `evaluate_collection`: Computes every metric over the results collection.
- `generate_metrics_report`: Writes the JSON metrics report.
- `plot_layer_overview`: Renders all comparison plots to a directory.

Additional function:
- `run_correction`: Runs the full config-driven pipeline.
"""

from .methods import (
    ruvg,
    ruvs,
    combat,
    glm_correct,
    glm_correct_per_individual,
    MethodSpec,
    METHOD_REGISTRY,
    DEFAULT_METHODS,
    get_method,
)
from .mnn import mnn_correct, mnn_by_design
from .harmony import run_harmony
from .evaluation import (
    pca_separation,
    rle,
    variance_explained,
    kbet,
    kbet_by_individual,
    evaluate_collection,
    generate_metrics_report,
)
from .visualization import (
    plot_rle,
    plot_variance_explained,
    plot_kbet_heatmap,
    plot_layer_overview,
)
from .correction import run_corrections, run_correction

__all__ = [
    # from methods.py
    'ruvg',
    'ruvs',
    'combat',
    'glm_correct',
    'glm_correct_per_individual',
    'MethodSpec',
    'METHOD_REGISTRY',
    'DEFAULT_METHODS',
    'get_method',

    # from mnn.py and harmony.py
    'mnn_correct',
    'mnn_by_design',
    'run_harmony',

    # from evaluation.py
    'pca_separation',
    'rle',
    'variance_explained',
    'kbet',
    'kbet_by_individual',
    'evaluate_collection',
    'generate_metrics_report',

    # from visualization.py
    'plot_rle',
    'plot_variance_explained',
    'plot_kbet_heatmap',
    'plot_layer_overview',

    # from correction.py
    'run_corrections',
    'run_correction'
]

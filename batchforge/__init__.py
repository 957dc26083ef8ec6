"""BatchForge - Normalization, confounder removal and evaluation for scRNA-seq counts"""

__version__ = "0.1.0"

# Data loading and the core data model
from .io import Dataset, load_dataset, save_dataset
from .layers import Layer, Embedding, ResultsCollection
from .design import plan_design, build_replicate_index

# Normalization
from .normalization import normalize, compute_size_factors, quick_cluster, log_normalize

# Synthetic data
from .simulation import simulate_dataset

# Plotting
from .plot import plot_pca

# Expose core API
__all__ = [
    'Dataset',
    'load_dataset',
    'save_dataset',
    'Layer',
    'Embedding',
    'ResultsCollection',
    'plan_design',
    'build_replicate_index',
    'normalize',
    'compute_size_factors',
    'quick_cluster',
    'log_normalize',
    'simulate_dataset',
    'plot_pca',
]

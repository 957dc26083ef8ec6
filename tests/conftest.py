import matplotlib
matplotlib.use("Agg")

import pytest

from batchforge import normalize, simulate_dataset


@pytest.fixture
def dataset():
    # 100 genes x 30 cells: 3 individuals x 2 batches x 5 cells
    return simulate_dataset(n_genes=100, n_individuals=3, n_replicates=2, cells_per_replicate=5,
                            n_controls=10, seed=42)


@pytest.fixture
def normalization(dataset):
    return normalize(dataset, min_size=100, seed=0)

"""Reading and writing the annotated count matrix (.h5ad)."""

import os

import anndata as ad
import numpy as np
import pandas as pd
from scipy import sparse

from batchforge.errors import LoadError

CELL_FIELDS = [
    'individual',
    'batch',
    'replicate',
    'total_features',
    'total_counts',
    'pct_counts_control',
    'pct_counts_mito',
    'qc_pass',
]
GENE_FIELDS = ['qc_pass', 'is_control']


class Dataset:
    """
    Raw counts (genes x cells) with per-cell and per-gene annotations.

    The count matrix is read-only and metadata frames are copies, so stages
    that receive a Dataset cannot modify the loaded object.
    """

    def __init__(self, counts, cell_metadata, gene_metadata):
        if not counts.columns.equals(cell_metadata.index):
            raise ValueError("cell_metadata index must match the count matrix columns")
        if not counts.index.equals(gene_metadata.index):
            raise ValueError("gene_metadata index must match the count matrix rows")
        values = np.array(counts.values, copy=True)
        values.setflags(write=False)
        self.counts = pd.DataFrame(values, index=counts.index.copy(), columns=counts.columns.copy())
        self._cell_metadata = cell_metadata.copy()
        self._gene_metadata = gene_metadata.copy()

    @property
    def cell_metadata(self):
        return self._cell_metadata.copy()

    @property
    def gene_metadata(self):
        return self._gene_metadata.copy()

    @property
    def cells(self):
        return self.counts.columns

    @property
    def genes(self):
        return self.counts.index

    @property
    def shape(self):
        return self.counts.shape

    @property
    def control_genes(self):
        return self.genes[self._gene_metadata['is_control'].astype(bool).values]

    @property
    def endogenous_genes(self):
        return self.genes[~self._gene_metadata['is_control'].astype(bool).values]

    def filter_qc(self):
        """Keep only cells and genes flagged with qc_pass."""
        cell_mask = self._cell_metadata['qc_pass'].astype(bool).values
        gene_mask = self._gene_metadata['qc_pass'].astype(bool).values
        return Dataset(
            self.counts.loc[gene_mask, cell_mask],
            self._cell_metadata.loc[cell_mask],
            self._gene_metadata.loc[gene_mask],
        )

    def __repr__(self):
        return f"Dataset(n_genes={self.shape[0]}, n_cells={self.shape[1]})"


def _check_fields(frame, required, where, path):
    missing = [c for c in required if c not in frame.columns]
    if missing:
        raise LoadError(f"{path}: {where} is missing required fields {missing}")


def load_dataset(path, verbose=False):
    """Load a Dataset from an .h5ad file (cells x genes on disk)."""
    if not os.path.exists(path):
        raise LoadError(f"Dataset file not found: {path}")
    try:
        adata = ad.read_h5ad(path)
    except (OSError, KeyError, ValueError) as e:
        raise LoadError(f"Could not read {path}: {e}") from e

    _check_fields(adata.obs, CELL_FIELDS, "cell metadata (obs)", path)
    _check_fields(adata.var, GENE_FIELDS, "gene metadata (var)", path)

    X = adata.X.toarray() if sparse.issparse(adata.X) else np.asarray(adata.X)
    if X.size and np.nanmin(X) < 0:
        raise LoadError(f"{path}: count matrix contains negative values")
    if np.isnan(X).any():
        raise LoadError(f"{path}: count matrix contains missing values")

    counts = pd.DataFrame(X.T, index=adata.var_names.copy(), columns=adata.obs_names.copy())
    cell_metadata = pd.DataFrame(adata.obs[CELL_FIELDS + [c for c in adata.obs.columns if c not in CELL_FIELDS]])
    gene_metadata = pd.DataFrame(adata.var[GENE_FIELDS + [c for c in adata.var.columns if c not in GENE_FIELDS]])
    for col in ('individual', 'batch', 'replicate'):
        cell_metadata[col] = cell_metadata[col].astype(str)
    cell_metadata['qc_pass'] = cell_metadata['qc_pass'].astype(bool)
    gene_metadata['qc_pass'] = gene_metadata['qc_pass'].astype(bool)
    gene_metadata['is_control'] = gene_metadata['is_control'].astype(bool)

    dataset = Dataset(counts, cell_metadata, gene_metadata)
    if verbose:
        print(f"Loaded {path}: {dataset.shape[0]} genes x {dataset.shape[1]} cells "
              f"({len(dataset.control_genes)} control genes)")
    return dataset


def save_dataset(dataset, path):
    """Write a Dataset to .h5ad in the layout `load_dataset` expects."""
    adata = ad.AnnData(
        X=np.asarray(dataset.counts.values, dtype=np.float32).T,
        obs=dataset.cell_metadata,
        var=dataset.gene_metadata,
    )
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    adata.write_h5ad(path)
    return path

"""
Library-size normalization by pooling and deconvolution.

Cells are first grouped into roughly homogeneous clusters. Inside each
cluster, cells are summed into overlapping pools arranged on a ring ordered by
library size; each pool's size factor is robustly estimated against the
cluster's average profile, and the per-cell factors are recovered by solving
the resulting linear system. Clusters are then put on a common scale.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.sparse.linalg import lsqr
from sklearn.cluster import KMeans

from batchforge.errors import DegenerateInputError
from batchforge.layers import Layer
from batchforge.utils import log_cpm, run_pca, top_variable_genes

DEFAULT_POOL_SIZES = tuple(range(21, 102, 5))
LOW_WEIGHT = np.sqrt(1e-6)


@dataclass(frozen=True)
class Normalization:
    layer: Layer
    size_factors: pd.Series
    clusters: pd.Series


def _check_library_sizes(X, cells):
    lib = X.sum(axis=0)
    empty = np.flatnonzero(lib <= 0)
    if len(empty) > 0:
        raise DegenerateInputError(
            f"{len(empty)} cells have zero library size, e.g. {list(cells[empty[:5]])}"
        )
    return lib


def quick_cluster(counts, min_size=100, n_pcs=10, seed=0):
    """
    Group cells into clusters of at least `min_size` cells.

    counts: DataFrame or array (genes x cells). Returns integer labels.
    """
    X = np.asarray(counts, dtype=float)
    n_cells = X.shape[1]
    n_clusters = max(1, n_cells // max(1, min_size))
    if n_clusters == 1:
        return np.zeros(n_cells, dtype=int)

    logX = log_cpm(X)
    logX = logX[top_variable_genes(logX, n_top=500)]
    pc, _ = run_pca(logX, n_components=n_pcs, seed=seed)
    labels = KMeans(n_clusters=n_clusters, random_state=seed, n_init=10).fit_predict(pc)

    # Merge undersized clusters into the nearest remaining centroid
    while True:
        ids, sizes = np.unique(labels, return_counts=True)
        if len(ids) == 1 or sizes.min() >= min_size:
            break
        smallest = ids[np.argmin(sizes)]
        centroids = {c: pc[labels == c].mean(axis=0) for c in ids}
        others = [c for c in ids if c != smallest]
        dists = [np.linalg.norm(centroids[c] - centroids[smallest]) for c in others]
        labels[labels == smallest] = others[int(np.argmin(dists))]

    _, labels = np.unique(labels, return_inverse=True)
    return labels


def _ring_order(lib):
    order = np.argsort(lib, kind="stable")
    # odd ranks ascending then even ranks descending, so neighbours on the ring have similar depth
    return np.concatenate([order[0::2], order[1::2][::-1]])


def _cluster_size_factors(C, sizes):
    """Deconvolved size factors for one cluster (C: genes x cells)."""
    n_cells = C.shape[1]
    lib = C.sum(axis=0)
    sizes = sorted(s for s in set(sizes) if s <= n_cells)
    if not sizes:
        return lib / lib.mean()

    profiles = C / lib * lib.mean()
    ave = profiles.mean(axis=1)
    keep = ave > 0
    C, ave = C[keep], ave[keep]

    ring = _ring_order(lib)
    rows, cols, rhs = [], [], []
    row = 0
    for s in sizes:
        for start in range(n_cells):
            pool = ring[(start + np.arange(s)) % n_cells]
            ratio = np.median(C[:, pool].sum(axis=1) / ave)
            rows.extend([row] * s)
            cols.extend(pool)
            rhs.append(ratio)
            row += 1

    # weak prior towards library-size factors keeps the system solvable
    for j in range(n_cells):
        rows.append(row)
        cols.append(j)
        rhs.append(LOW_WEIGHT * lib[j] / lib.mean())
        row += 1
    values = np.ones(len(rows))
    values[-n_cells:] = LOW_WEIGHT

    A = sparse.csr_matrix((values, (rows, cols)), shape=(row, n_cells))
    return lsqr(A, np.asarray(rhs), atol=1e-10, btol=1e-10)[0]


def compute_size_factors(counts, clusters=None, sizes=DEFAULT_POOL_SIZES, verbose=False):
    """
    Per-cell size factors by pooling and deconvolution, centred to unit mean.

    counts: DataFrame (genes x cells)
    clusters: optional cluster label per cell; all cells form one cluster if None
    """
    X = np.asarray(counts, dtype=float)
    cells = counts.columns if isinstance(counts, pd.DataFrame) else pd.RangeIndex(X.shape[1])
    lib = _check_library_sizes(X, cells)
    if clusters is None:
        clusters = np.zeros(X.shape[1], dtype=int)
    clusters = np.asarray(clusters)
    if len(clusters) != X.shape[1]:
        raise ValueError(f"clusters has {len(clusters)} labels for {X.shape[1]} cells")

    sf = np.zeros(X.shape[1])
    cluster_ids = np.unique(clusters)
    pseudo = {}
    for c in cluster_ids:
        idx = np.flatnonzero(clusters == c)
        sf[idx] = _cluster_size_factors(X[:, idx], sizes)
        if np.any(sf[idx] <= 0):
            break
        pseudo[c] = (X[:, idx] / sf[idx]).mean(axis=1)

    # rescale clusters against the one with the median library size
    if len(pseudo) == len(cluster_ids) and len(cluster_ids) > 1:
        median_libs = np.array([np.median(lib[clusters == c]) for c in cluster_ids])
        ref = cluster_ids[np.argsort(median_libs)[len(median_libs) // 2]]
        for c in cluster_ids:
            shared = (pseudo[c] > 0) & (pseudo[ref] > 0)
            scale = np.median(pseudo[c][shared] / pseudo[ref][shared]) if shared.any() else np.nan
            sf[clusters == c] *= scale

    bad = np.flatnonzero(~np.isfinite(sf) | (sf <= 0))
    if len(bad) > 0:
        raise DegenerateInputError(
            f"{len(bad)} cells have non-positive size factors, e.g. {list(cells[bad[:5]])}"
        )
    sf = sf / sf.mean()
    if verbose:
        print(f"Size factors: {len(cluster_ids)} clusters, range [{sf.min():.3f}, {sf.max():.3f}]")
    return pd.Series(sf, index=cells, name="size_factor")


def log_normalize(counts, size_factors):
    """log2(counts / size_factor + 1), genes x cells."""
    sf = np.asarray(size_factors, dtype=float)
    return np.log2(np.asarray(counts, dtype=float) / sf + 1)


def normalize(dataset, min_size=100, sizes=DEFAULT_POOL_SIZES, seed=0, verbose=False):
    """Cluster, deconvolve and log-transform a Dataset into the 'normalized' Layer."""
    counts = dataset.counts
    _check_library_sizes(np.asarray(counts, dtype=float), counts.columns)
    clusters = quick_cluster(counts, min_size=min_size, seed=seed)
    if verbose:
        print("=" * 60)
        print("NORMALIZATION")
        print(f"Quick clustering: {len(np.unique(clusters))} clusters (min_size={min_size})")
    size_factors = compute_size_factors(counts, clusters, sizes=sizes, verbose=verbose)
    values = pd.DataFrame(log_normalize(counts, size_factors), index=counts.index, columns=counts.columns)
    if verbose:
        print("=" * 60)
    return Normalization(
        layer=Layer("normalized", values),
        size_factors=size_factors,
        clusters=pd.Series(clusters, index=counts.columns, name="cluster"),
    )

"""
Harmony integration of a low-dimensional embedding.

Cells are softly assigned to clusters with a penalty favouring clusters that
mix all batches (strength `theta`); per-cluster ridge regressions on batch
indicators remove the batch terms. The fitting is done by harmonypy; this
module validates inputs and shapes the result as cells x components.
"""

import harmonypy as hm
import numpy as np
import pandas as pd


def run_harmony(embedding,          # cells x components (e.g. top PCs)
                batch,              # batch label per cell
                theta=2.0,          # diversity penalty, higher = stronger integration
                sigma=0.1,          # soft clustering bandwidth
                lamb=1.0,           # ridge penalty on batch terms
                n_clusters=None,    # harmonypy default min(round(n_cells / 30), 100)
                max_iter=10,
                seed=0,
                verbose=False):
    """Return the Harmony-corrected embedding (cells x components)."""
    Z = np.asarray(embedding, dtype=float)
    n_cells = Z.shape[0]
    batch = np.asarray(batch).astype(str)
    if len(batch) != n_cells:
        raise ValueError(f"batch has {len(batch)} labels for {n_cells} cells")
    if theta < 0:
        raise ValueError(f"theta must be non-negative, got {theta}")
    if max_iter < 1:
        raise ValueError(f"max_iter must be at least 1, got {max_iter}")
    levels = np.unique(batch)
    if len(levels) < 2:
        return Z.copy()

    harmony_kwargs = {}
    if n_clusters is not None:
        harmony_kwargs["nclust"] = int(max(1, min(n_clusters, n_cells - 1)))

    if verbose:
        print(f"  Harmony: {n_cells} cells, {Z.shape[1]} components, {len(levels)} batches, theta={theta}")
    meta_data = pd.DataFrame({'batch': batch})
    ho = hm.run_harmony(
        Z, meta_data, 'batch',
        theta=theta, sigma=sigma, lamb=lamb,
        max_iter_harmony=max_iter, random_state=seed, verbose=verbose,
        **harmony_kwargs,
    )
    return np.asarray(ho.Z_corr, dtype=float).T

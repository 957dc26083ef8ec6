"""
Mutual nearest neighbour (MNN) batch correction.

Matching and correction are done by scanorama: cells are cosine-normalized,
projected onto the top `dimred` singular vectors, batches are aligned through
mutual nearest neighbours (`k` per side) and the matched differences are
smoothed onto every cell with a Gaussian kernel (`sigma`) in expression
space. This module splits the matrix according to the experimental design
and puts the corrected columns back in their original order.
"""

import numpy as np
import pandas as pd
import scanorama

from batchforge.design import BalancedDesign, plan_design
from batchforge.errors import ImbalancedBatchError


def mnn_correct(batches,            # list of cells x genes arrays, same gene order
                k=20,               # mutual neighbours searched per side
                sigma=15.0,         # Gaussian kernel width for smoothing the correction
                dimred=100,         # rank of the SVD projection used for matching
                alpha=0.10,         # minimum alignment score between two batches
                cos_norm_out=True,  # return cosine-normalized values
                approx=False,       # approximate neighbour search (annoy)
                seed=0,
                verbose=False):
    """Correct the batches jointly; returns one cells x genes array per input batch."""
    if len(batches) < 2:
        raise ImbalancedBatchError(f"MNN correction needs at least two batches, got {len(batches)}")
    if sigma <= 0:
        raise ValueError(f"sigma must be positive, got {sigma}")
    if k < 1:
        raise ValueError(f"k must be at least 1, got {k}")
    raw = [np.asarray(b, dtype=float) for b in batches]
    if any(b.shape[0] == 0 for b in raw):
        raise ImbalancedBatchError("MNN correction received an empty batch")

    n_genes = raw[0].shape[1]
    genes = [f"g{j}" for j in range(n_genes)]
    knn = int(min(k, min(b.shape[0] for b in raw)))
    dimred = int(max(1, min(dimred, sum(b.shape[0] for b in raw) - 1, n_genes - 1)))
    if verbose:
        print(f"  MNN: {len(raw)} batches of sizes {[b.shape[0] for b in raw]}, k={knn}, dimred={dimred}")

    # scanorama draws from the global numpy generator (randomized SVD)
    np.random.seed(seed)
    corrected, kept_genes = scanorama.correct(
        [b.copy() for b in raw], [genes] * len(raw),
        knn=knn, sigma=sigma, dimred=dimred, alpha=alpha, approx=approx,
        return_dense=True, verbose=verbose,
    )
    # scanorama returns genes in sorted order
    order = pd.Index(list(kept_genes)).get_indexer(genes)
    out = [np.asarray(c, dtype=float)[:, order] for c in corrected]
    if not cos_norm_out:
        out = [o * np.linalg.norm(b, axis=1, keepdims=True) for o, b in zip(out, raw)]
    return out


def mnn_by_design(matrix,           # DataFrame genes x cells (log-expression)
                  cell_metadata,
                  k=20,
                  sigma=15.0,
                  dimred=100,
                  alpha=0.10,
                  cos_norm_out=True,
                  approx=False,
                  seed=0,
                  batch_key='batch',
                  replicate_key='replicate',
                  verbose=False):
    """
    Run MNN according to the experimental design.

    Balanced design: one correction across all batches. Confounded design:
    one correction per individual with replicates as batches; an individual
    missing a replicate is corrected using only the replicates it has.
    Output keeps the original column order.
    """
    X = np.asarray(matrix.values, dtype=float)
    design = plan_design(cell_metadata, batch_key=batch_key, replicate_key=replicate_key)
    corrected = np.full_like(X, np.nan)

    def run(groups):
        result = mnn_correct([X[:, g].T for g in groups], k=k, sigma=sigma, dimred=dimred, alpha=alpha,
                             cos_norm_out=cos_norm_out, approx=approx, seed=seed, verbose=verbose)
        for g, r in zip(groups, result):
            corrected[:, g] = r.T

    if isinstance(design, BalancedDesign):
        batch = cell_metadata[batch_key].astype(str).values
        if verbose:
            print(f"  MNN: balanced design, correcting {len(design.batches)} batches together")
        run([np.flatnonzero(batch == b) for b in design.batches])
    else:
        individual = cell_metadata['individual'].astype(str).values
        replicate = cell_metadata[replicate_key].astype(str).values
        for plan in design.plans:
            if len(plan.replicates) < 2:
                raise ImbalancedBatchError(
                    f"Individual {plan.individual} has only replicate(s) {list(plan.replicates)}; "
                    f"no second batch to correct against"
                )
            if verbose and plan.is_fallback:
                print(f"  MNN: {plan.individual} lacks {list(plan.missing)}, using {list(plan.replicates)} only")
            mask = individual == plan.individual
            run([np.flatnonzero(mask & (replicate == r)) for r in plan.replicates])

    return pd.DataFrame(corrected, index=matrix.index, columns=matrix.columns)

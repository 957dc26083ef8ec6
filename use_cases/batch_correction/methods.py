from dataclasses import dataclass, field

import numpy as np
import pandas as pd

from batchforge.design import SENTINEL, build_replicate_index
from batchforge.errors import InsufficientControlsError, UnidentifiableDesignError
from batchforge.layers import CorrectionResult, Embedding, Layer, check_cell_coverage
from batchforge.utils import log_cpm, one_hot, run_pca

from .harmony import run_harmony
from .mnn import mnn_by_design


def _check_k(k):
    if isinstance(k, bool) or not isinstance(k, (int, np.integer)) or k < 0:
        raise ValueError(f"k must be a non-negative integer, got {k!r}")
    return int(k)


def _check_labels(labels, n_cells, name):
    labels = np.asarray(labels)
    if len(labels) != n_cells:
        raise ValueError(f"{name} has {len(labels)} labels for {n_cells} cells")
    return labels.astype(str)


def _back_transform(Y, epsilon=1.0):
    # log space -> counts, rounded and floored at zero
    return np.clip(np.round(np.exp(Y) - epsilon), 0, None)


def ruvg(counts,          # genes x cells raw counts
         control_idx,     # row indices of control genes
         k=1,             # number of unwanted factors
         center=True,
         epsilon=1.0):
    """
    Remove unwanted variation using control genes (RUVg).

    Factors are the first k left singular vectors (over cells) of the centred
    log counts of the control genes; they are regressed out of every gene.
    Returns (normalized counts genes x cells, W cells x k).
    """
    k = _check_k(k)
    X = np.asarray(counts, dtype=float)
    control_idx = np.asarray(control_idx, dtype=int)
    if len(control_idx) == 0:
        raise InsufficientControlsError("RUVg needs at least one control gene")
    if len(control_idx) < k:
        raise InsufficientControlsError(
            f"RUVg with k={k} needs at least {k} control genes, got {len(control_idx)}"
        )
    if k == 0:
        return X.copy(), np.zeros((X.shape[1], 0))
    if k > X.shape[1]:
        raise ValueError(f"k={k} exceeds the number of cells ({X.shape[1]})")

    Y = np.log(X + epsilon).T  # cells x genes
    Yc = Y - Y.mean(axis=0) if center else Y
    U, _, _ = np.linalg.svd(Yc[:, control_idx], full_matrices=False)
    W = U[:, :k]
    alpha = np.linalg.lstsq(W, Y, rcond=None)[0]
    corrected = Y - W @ alpha
    return _back_transform(corrected, epsilon).T, W


def ruvs(counts,          # genes x cells raw counts
         control_idx,     # row indices of genes used to estimate factors
         sc_idx,          # replicate index matrix, rows padded with SENTINEL
         k=1,
         epsilon=1.0,
         tolerance=1e-8):
    """
    Remove unwanted variation using replicate samples (RUVs).

    Factors are estimated from the deviations of each replicate cell from its
    replicate-group mean, then regressed out through the control genes.
    Returns (normalized counts genes x cells, W cells x k).
    """
    k = _check_k(k)
    X = np.asarray(counts, dtype=float)
    control_idx = np.asarray(control_idx, dtype=int)
    if len(control_idx) == 0:
        raise InsufficientControlsError("RUVs needs at least one control gene")
    if len(control_idx) < k:
        raise InsufficientControlsError(
            f"RUVs with k={k} needs at least {k} control genes, got {len(control_idx)}"
        )
    sc_idx = np.asarray(sc_idx, dtype=int)
    if sc_idx.ndim != 2:
        raise ValueError(f"sc_idx must be a 2D index matrix, got shape {sc_idx.shape}")
    if np.any((sc_idx != SENTINEL) & ((sc_idx < 0) | (sc_idx >= X.shape[1]))):
        raise ValueError("sc_idx contains positions outside the count matrix")
    if k == 0:
        return X.copy(), np.zeros((X.shape[1], 0))

    Y = np.log(X + epsilon).T  # cells x genes
    deviations = []
    for row in sc_idx:
        members = row[row != SENTINEL]
        if len(members) < 2:
            continue
        group = Y[members]
        deviations.append(group - group.mean(axis=0))
    if not deviations:
        raise ValueError("RUVs needs at least one replicate group with two or more cells")
    Yctls = np.vstack(deviations)
    Yctls = Yctls[np.any(Yctls != 0, axis=1)]

    _, d, Vt = np.linalg.svd(Yctls, full_matrices=False)
    k = min(k, int(np.sum(d > tolerance)))
    if k == 0:
        return X.copy(), np.zeros((X.shape[1], 0))
    a = np.diag(d[:k]) @ Vt[:k]
    ac = a[:, control_idx]
    W = Y[:, control_idx] @ np.linalg.solve(ac @ ac.T, ac).T
    corrected = Y - W @ a
    return _back_transform(corrected, epsilon).T, W


def _drop_aliased_columns(design, tol=1e-10):
    # keep columns in order while they add rank, like R's lm() marking aliased terms NA
    kept = []
    for j in range(design.shape[1]):
        candidate = kept + [j]
        if np.linalg.matrix_rank(design[:, candidate], tol=tol) == len(candidate):
            kept.append(j)
    return kept


def build_covariate_design(cell_metadata, design="basic"):
    """
    Covariate matrix (cells x m) to preserve during ComBat, without intercept.

    design: "basic" (None, intercept only), "individual" (one-hot individual),
    or the name of a metadata column (numeric used as-is, otherwise one-hot).
    """
    if design is None or design == "basic":
        return None
    column = "individual" if design == "individual" else design
    if column not in cell_metadata.columns:
        raise ValueError(f"Unknown covariate '{design}'; available: {list(cell_metadata.columns)}")
    values = cell_metadata[column]
    if pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(values):
        return np.asarray(values, dtype=float)[:, None]
    D, _ = one_hot(values, drop_first=True)
    return D


def _aprior(delta):
    m, s2 = delta.mean(), delta.var(ddof=1)
    return (2 * s2 + m ** 2) / s2


def _bprior(delta):
    m, s2 = delta.mean(), delta.var(ddof=1)
    return (m * s2 + m ** 3) / s2


def _relative_change(new, old):
    # zero previous estimates fall back to the absolute change
    scale = np.where(old != 0, np.abs(old), 1.0)
    return np.max(np.abs(new - old) / scale)


def _it_sol(s_data, g_hat, d_hat, g_bar, t2, a, b, conv=1e-4, max_iter=1000):
    """
    Iterative posterior estimates of the batch location (gamma) and scale (delta).
    Returns (gamma, delta, number of iterations run).
    """
    n = s_data.shape[1]
    g_old, d_old = g_hat.copy(), d_hat.copy()
    n_iter = 0
    for n_iter in range(1, max_iter + 1):
        g_new = (t2 * n * g_hat + d_old * g_bar) / (t2 * n + d_old)
        sum2 = ((s_data - g_new[:, None]) ** 2).sum(axis=1)
        d_new = (0.5 * sum2 + b) / (n / 2.0 + a - 1.0)
        change = max(_relative_change(g_new, g_old), _relative_change(d_new, d_old))
        g_old, d_old = g_new, d_new
        if change < conv:
            break
    return g_old, d_old, n_iter


def combat(data, batch, mod=None, parametric=True, mean_only=False, verbose=False):
    """
    ComBat for log-expression data.
    data: genes x cells
    batch: batch labels for each cell, array-like of shape (n_cells,)
    mod: optional covariate matrix (cells x m, no intercept) of biology to preserve
    parametric: empirical Bayes shrinkage of batch parameters (default True);
        if False the per-batch estimates are used without shrinkage
    mean_only: adjust location only, leaving per-batch scale untouched
    """
    X = np.asarray(data, dtype=float)
    p, n = X.shape
    batch = pd.Categorical(_check_labels(batch, n, "batch"))
    n_batch = len(batch.categories)
    if n_batch < 2:
        return X.copy()

    B = np.asarray(pd.get_dummies(batch), dtype=float)
    M = np.zeros((n, 0)) if mod is None else np.asarray(mod, dtype=float).reshape(n, -1)
    design = np.hstack([B, M])
    if np.linalg.matrix_rank(design) < design.shape[1]:
        raise UnidentifiableDesignError(
            f"Covariate design ({M.shape[1]} columns) is confounded with batch "
            f"({n_batch} levels); the batch effect cannot be separated from the covariates"
        )

    n_per_batch = np.asarray(B.sum(axis=0))
    if not mean_only and np.any(n_per_batch < 2):
        if verbose:
            print("Found batches with a single cell, using mean-only adjustment")
        mean_only = True

    # ----- Standardize -----
    B_hat = np.linalg.lstsq(design, X.T, rcond=None)[0]
    grand_mean = (n_per_batch / n) @ B_hat[:n_batch]
    var_pooled = ((X - (design @ B_hat).T) ** 2).mean(axis=1)
    stand_mean = grand_mean[:, None] + (M @ B_hat[n_batch:]).T

    # Genes without residual variance are passed through
    ok = var_pooled > 0
    for i in range(n_batch):
        if not mean_only:
            ok &= X[:, batch == batch.categories[i]].var(axis=1) > 0
    s_data = (X[ok] - stand_mean[ok]) / np.sqrt(var_pooled[ok])[:, None]

    # ----- Estimate batch effects -----
    gamma_hat = np.zeros((n_batch, ok.sum()))
    delta_hat = np.ones((n_batch, ok.sum()))
    for i, b in enumerate(batch.categories):
        s = s_data[:, batch == b]
        gamma_hat[i] = s.mean(axis=1)
        if not mean_only:
            delta_hat[i] = s.var(axis=1, ddof=1)

    gamma_star, delta_star = gamma_hat.copy(), delta_hat.copy()
    if parametric:
        gamma_bar = gamma_hat.mean(axis=1)
        t2 = gamma_hat.var(axis=1, ddof=1)
        for i, b in enumerate(batch.categories):
            if mean_only:
                gamma_star[i] = (t2[i] * gamma_hat[i] + gamma_bar[i]) / (t2[i] + 1)
                continue
            gamma_star[i], delta_star[i], _ = _it_sol(
                s_data[:, batch == b], gamma_hat[i], delta_hat[i], gamma_bar[i], t2[i],
                _aprior(delta_hat[i]), _bprior(delta_hat[i]),
            )

    # ----- Adjust -----
    adjusted = X.copy()
    s_adj = s_data.copy()
    for i, b in enumerate(batch.categories):
        mask = np.asarray(batch == b)
        s_adj[:, mask] = (s_data[:, mask] - gamma_star[i][:, None]) / np.sqrt(delta_star[i])[:, None]
    adjusted[ok] = s_adj * np.sqrt(var_pooled[ok])[:, None] + stand_mean[ok]

    if verbose:
        print(f"ComBat: {n_batch} batches, {ok.sum()}/{p} genes adjusted "
              f"({'parametric' if parametric else 'non-shrunk'}{', mean-only' if mean_only else ''})")
    return adjusted


def glm_correct(data, batch, individual=None):
    """
    Per-gene linear model of expression on batch (+ individual).

    The intercept (reference batch) is anchored at zero and each cell's
    fitted batch coefficient is subtracted. Terms aliased with batch are
    dropped, batch first.
    data: genes x cells
    """
    X = np.asarray(data, dtype=float)
    n = X.shape[1]
    B, levels = one_hot(_check_labels(batch, n, "batch"), drop_first=True)
    if len(levels) < 2:
        return X.copy()
    blocks = [np.ones((n, 1)), B]
    if individual is not None:
        I, _ = one_hot(_check_labels(individual, n, "individual"), drop_first=True)
        blocks.append(I)
    design = np.hstack(blocks)
    kept = _drop_aliased_columns(design)
    coef = np.zeros((design.shape[1], X.shape[0]))
    coef[kept] = np.linalg.lstsq(design[:, kept], X.T, rcond=None)[0]

    batch_effect = B @ coef[1:1 + B.shape[1]]  # cells x genes, reference batch = 0
    return X - batch_effect.T


def glm_correct_per_individual(data, batch, individual):
    """Fit and subtract the batch effect separately within each individual."""
    X = np.asarray(data, dtype=float)
    n = X.shape[1]
    batch = _check_labels(batch, n, "batch")
    individual = _check_labels(individual, n, "individual")
    corrected = np.empty_like(X)
    for ind in pd.unique(individual):
        idx = np.flatnonzero(individual == ind)
        corrected[:, idx] = glm_correct(X[:, idx], batch[idx])
    return corrected


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MethodSpec:
    """A configured correction run: result name, method kind and parameters."""

    name: str
    kind: str
    params: dict = field(default_factory=dict)

    @classmethod
    def from_config(cls, entry):
        if isinstance(entry, MethodSpec):
            return entry
        if 'kind' not in entry or 'name' not in entry:
            raise ValueError(f"Method config needs 'name' and 'kind', got {entry}")
        if entry['kind'] not in METHOD_REGISTRY:
            raise ValueError(f"Unknown method kind '{entry['kind']}'; available: {sorted(METHOD_REGISTRY)}")
        return cls(name=entry['name'], kind=entry['kind'], params=dict(entry.get('params', {})))


class CorrectionMethod:
    """
    Common contract for correction methods.

    `correct(matrix, cell_metadata, gene_metadata, params)` returns a
    CorrectionResult covering every column of `matrix`. Methods with
    `uses_raw_counts` receive raw counts, the others the normalized layer.
    """

    kind = None
    uses_raw_counts = False
    defaults = {}

    def resolve_params(self, params):
        unknown = set(params) - set(self.defaults)
        if unknown:
            raise ValueError(f"{self.kind}: unknown parameters {sorted(unknown)}")
        resolved = dict(self.defaults)
        resolved.update(params)
        return resolved

    def correct(self, matrix, cell_metadata, gene_metadata, params=None, name=None, verbose=False):
        params = self.resolve_params(params or {})
        if not matrix.columns.equals(cell_metadata.index):
            raise ValueError(f"{self.kind}: matrix columns do not match cell_metadata index")
        if not matrix.index.equals(gene_metadata.index):
            raise ValueError(f"{self.kind}: matrix rows do not match gene_metadata index")
        output = self._correct(matrix, cell_metadata, gene_metadata, params, name or self.kind, verbose)
        if not check_cell_coverage(output.cells, matrix.columns, output.name):
            raise ValueError(f"{self.kind}: result covers {len(output.cells)} of {matrix.shape[1]} cells")
        return CorrectionResult(method=self.kind, params=params,
                                **{output.kind: output})

    def _correct(self, matrix, cell_metadata, gene_metadata, params, name, verbose):
        raise NotImplementedError


class RUVgMethod(CorrectionMethod):
    kind = "ruvg"
    uses_raw_counts = True
    defaults = {'k': 1}

    def _correct(self, matrix, cell_metadata, gene_metadata, params, name, verbose):
        control_idx = np.flatnonzero(gene_metadata['is_control'].astype(bool).values)
        normalized, _ = ruvg(matrix.values, control_idx, k=params['k'])
        if verbose:
            print(f"  RUVg: k={params['k']} using {len(control_idx)} control genes")
        return Layer(name, pd.DataFrame(log_cpm(normalized), index=matrix.index, columns=matrix.columns))


class RUVsMethod(CorrectionMethod):
    kind = "ruvs"
    uses_raw_counts = True
    defaults = {'k': 1, 'group_by': 'individual', 'controls': 'all'}

    def _correct(self, matrix, cell_metadata, gene_metadata, params, name, verbose):
        if params['controls'] == 'all':
            control_idx = np.arange(matrix.shape[0])
        elif params['controls'] == 'spike':
            control_idx = np.flatnonzero(gene_metadata['is_control'].astype(bool).values)
        else:
            raise ValueError(f"controls must be 'all' or 'spike', got {params['controls']!r}")
        sc_idx, groups = build_replicate_index(cell_metadata[params['group_by']], n_cells=matrix.shape[1])
        normalized, _ = ruvs(matrix.values, control_idx, sc_idx, k=params['k'])
        if verbose:
            print(f"  RUVs: k={params['k']}, {len(groups)} replicate groups of up to {sc_idx.shape[1]} cells")
        return Layer(name, pd.DataFrame(log_cpm(normalized), index=matrix.index, columns=matrix.columns))


class ComBatMethod(CorrectionMethod):
    kind = "combat"
    defaults = {'design': 'basic', 'batch_key': 'batch', 'parametric': True, 'mean_only': False}

    def _correct(self, matrix, cell_metadata, gene_metadata, params, name, verbose):
        mod = build_covariate_design(cell_metadata, params['design'])
        adjusted = combat(matrix.values, cell_metadata[params['batch_key']], mod=mod,
                          parametric=params['parametric'], mean_only=params['mean_only'], verbose=verbose)
        return Layer(name, pd.DataFrame(adjusted, index=matrix.index, columns=matrix.columns))


class GLMMethod(CorrectionMethod):
    kind = "glm"
    defaults = {'batch_key': 'batch', 'include_individual': True, 'per_individual': False}

    def _correct(self, matrix, cell_metadata, gene_metadata, params, name, verbose):
        batch = cell_metadata[params['batch_key']]
        if params['per_individual']:
            corrected = glm_correct_per_individual(matrix.values, batch, cell_metadata['individual'])
        else:
            individual = cell_metadata['individual'] if params['include_individual'] else None
            corrected = glm_correct(matrix.values, batch, individual)
        return Layer(name, pd.DataFrame(corrected, index=matrix.index, columns=matrix.columns))


class MNNMethod(CorrectionMethod):
    kind = "mnn"
    defaults = {'k': 20, 'sigma': 15.0, 'dimred': 100, 'alpha': 0.10, 'cos_norm_out': True,
                'approx': False, 'seed': 0, 'batch_key': 'batch', 'replicate_key': 'replicate'}

    def _correct(self, matrix, cell_metadata, gene_metadata, params, name, verbose):
        corrected = mnn_by_design(
            matrix, cell_metadata,
            k=params['k'], sigma=params['sigma'], dimred=params['dimred'], alpha=params['alpha'],
            cos_norm_out=params['cos_norm_out'], approx=params['approx'], seed=params['seed'],
            batch_key=params['batch_key'], replicate_key=params['replicate_key'],
            verbose=verbose,
        )
        return Layer(name, corrected)


class HarmonyMethod(CorrectionMethod):
    """Harmony on the top principal components of the endogenous genes."""

    kind = "harmony"
    defaults = {'theta': 2.0, 'n_pcs': 10, 'sigma': 0.1, 'lamb': 1.0, 'n_clusters': None,
                'max_iter': 10, 'batch_key': 'batch', 'seed': 0}

    def _correct(self, matrix, cell_metadata, gene_metadata, params, name, verbose):
        endogenous = ~gene_metadata['is_control'].astype(bool).values
        pc, _ = run_pca(matrix.values[endogenous], n_components=params['n_pcs'], seed=params['seed'])
        Z = run_harmony(
            pc, cell_metadata[params['batch_key']].values,
            theta=params['theta'], sigma=params['sigma'], lamb=params['lamb'],
            n_clusters=params['n_clusters'], max_iter=params['max_iter'],
            seed=params['seed'], verbose=verbose,
        )
        columns = [f"harmony_{i + 1}" for i in range(Z.shape[1])]
        return Embedding(name, pd.DataFrame(Z, index=matrix.columns, columns=columns))


METHOD_REGISTRY = {m.kind: m for m in (RUVgMethod, RUVsMethod, ComBatMethod, MNNMethod, GLMMethod, HarmonyMethod)}


def get_method(kind):
    if kind not in METHOD_REGISTRY:
        raise ValueError(f"Unknown method kind '{kind}'; available: {sorted(METHOD_REGISTRY)}")
    return METHOD_REGISTRY[kind]()


# Method set of the confounder-removal walkthrough
DEFAULT_METHODS = [
    {'name': 'ruvg1', 'kind': 'ruvg', 'params': {'k': 1}},
    {'name': 'ruvg10', 'kind': 'ruvg', 'params': {'k': 10}},
    {'name': 'ruvs1', 'kind': 'ruvs', 'params': {'k': 1}},
    {'name': 'ruvs10', 'kind': 'ruvs', 'params': {'k': 10}},
    {'name': 'combat', 'kind': 'combat', 'params': {'design': 'basic'}},
    {'name': 'combat_tf', 'kind': 'combat', 'params': {'design': 'total_features'}},
    {'name': 'mnn', 'kind': 'mnn', 'params': {'k': 20, 'sigma': 15.0}},
    {'name': 'glm', 'kind': 'glm', 'params': {}},
    {'name': 'glm_indi', 'kind': 'glm', 'params': {'per_individual': True}},
    {'name': 'harmony', 'kind': 'harmony', 'params': {'theta': 2.0, 'n_pcs': 10}},
]

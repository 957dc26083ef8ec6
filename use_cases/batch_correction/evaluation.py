import json
import os
from datetime import datetime
from itertools import combinations
from math import factorial

import numpy as np
import pandas as pd
from scipy.stats import binomtest, chisquare
from sklearn.neighbors import NearestNeighbors

from batchforge.design import BalancedDesign, plan_design
from batchforge.layers import Embedding, Layer
from batchforge.metrics import group_separation
from batchforge.utils import one_hot, run_pca

EXPLANATORY_VARIABLES = [
    'total_features',
    'total_counts',
    'batch',
    'individual',
    'pct_counts_control',
    'pct_counts_mito',
]


def pca_separation(output,              # Layer or Embedding
                   cell_metadata,
                   genes=None,          # genes to keep (e.g. endogenous only), Layers only
                   n_components=2,
                   keys=('batch', 'individual'),
                   seed=0):
    """
    PCA coordinates of a layer and how strongly each grouping separates on PC1.

    Embeddings are used as they are (their first components are the coordinates).
    """
    if isinstance(output, Embedding):
        values = output.values.reindex(cell_metadata.index)
        pc = values.values[:, :n_components]
        var_ratio = None
        columns = list(values.columns[:n_components])
    else:
        values = output.values if genes is None else output.values.loc[genes]
        values = values[cell_metadata.index]
        pc, var_ratio = run_pca(values.values, n_components=n_components, seed=seed)
        columns = [f"PC{i + 1}" for i in range(pc.shape[1])]

    return {
        'coordinates': pd.DataFrame(pc, index=cell_metadata.index, columns=columns),
        'explained_variance': None if var_ratio is None else [float(v) for v in var_ratio],
        'separation': {key: group_separation(pc, cell_metadata[key].values) for key in keys},
    }


def rle(output):
    """
    Relative log expression: each gene's deviation from its median across cells.

    A well-normalized layer has per-cell distributions centred on zero with
    similar spread. The statistic only detects shifts that move most genes of
    a cell in the same direction; batch noise that is symmetric within a cell
    leaves the medians at zero and goes unnoticed.
    """
    values = output.values
    deviations = values.sub(values.median(axis=1), axis=0)
    q = deviations.quantile([0.0, 0.25, 0.5, 0.75, 1.0]).T
    q.columns = ['min', 'q1', 'median', 'q3', 'max']
    q['iqr'] = q['q3'] - q['q1']
    return {
        'per_cell': q,
        'mean_abs_median': float(q['median'].abs().mean()),
        'mean_iqr': float(q['iqr'].mean()),
    }


def _variable_design(values):
    values = pd.Series(values)
    if pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(values):
        return np.asarray(values, dtype=float)[:, None]
    D, _ = one_hot(values, drop_first=True)
    return D


def _r_squared(Y, blocks):
    """R² per gene (rows of Y, genes x cells) for a model with intercept plus `blocks`."""
    n = Y.shape[1]
    design = np.hstack([np.ones((n, 1))] + list(blocks))
    coef = np.linalg.lstsq(design, Y.T, rcond=None)[0]
    rss = ((Y.T - design @ coef) ** 2).sum(axis=0)
    tss = ((Y - Y.mean(axis=1, keepdims=True)) ** 2).sum(axis=1)
    with np.errstate(divide='ignore', invalid='ignore'):
        r2 = 1 - rss / tss
    return np.clip(r2, 0.0, 1.0)


def variance_explained(output,
                       cell_metadata,
                       variables=None,
                       genes=None,
                       method='lmg'):
    """
    Percentage of each gene's variance attributable to each explanatory variable.

    method:
      'marginal'  - R² of a separate model per variable (shares may overlap
                    and need not sum to 100)
      'lmg'       - Shapley (LMG) split of the joint model's R²: order-independent
                    shares that sum to the joint R², so at most 100 per gene
    A 'joint' column with the R² of all variables together is always included.
    Genes without variance are dropped.
    """
    variables = list(variables or EXPLANATORY_VARIABLES)
    missing = [v for v in variables if v not in cell_metadata.columns]
    if missing:
        raise ValueError(f"Unknown explanatory variables {missing}")
    if method not in ('marginal', 'lmg'):
        raise ValueError(f"method must be 'marginal' or 'lmg', got {method!r}")

    values = output.values if genes is None else output.values.loc[genes]
    values = values[cell_metadata.index]
    values = values.loc[values.var(axis=1) > 0]
    Y = values.values
    blocks = {v: _variable_design(cell_metadata[v].values) for v in variables}
    p = len(variables)

    r2_cache = {(): np.zeros(Y.shape[0])}

    def r2(subset):
        if subset not in r2_cache:
            r2_cache[subset] = _r_squared(Y, [blocks[v] for v in subset])
        return r2_cache[subset]

    shares = {}
    if method == 'marginal':
        for v in variables:
            shares[v] = r2((v,))
    else:
        for v in variables:
            others = [u for u in variables if u != v]
            share = np.zeros(Y.shape[0])
            for size in range(p):
                weight = factorial(size) * factorial(p - size - 1) / factorial(p)
                for subset in combinations(others, size):
                    with_v = tuple(u for u in variables if u in subset or u == v)
                    share += weight * (r2(with_v) - r2(tuple(subset)))
            shares[v] = np.clip(share, 0.0, None)

    result = pd.DataFrame({v: shares[v] * 100 for v in variables}, index=values.index)
    result['joint'] = r2(tuple(variables)) * 100
    return result


def _composition_p_value(observed, k0, freq):
    if len(freq) == 2:
        return binomtest(int(observed[0]), k0, freq[0]).pvalue
    return chisquare(observed, f_exp=freq * k0).pvalue


def _most_extreme_p_value(k0, counts, freq):
    """
    Smallest p-value a neighbourhood of k0 cells can reach: for each batch, the
    neighbourhood holding as many of its cells as exist, filled up with the
    largest other batches.
    """
    best = 1.0
    for j in range(len(counts)):
        observed = np.zeros(len(counts), dtype=int)
        observed[j] = min(k0, counts[j])
        rest = k0 - observed[j]
        for i in np.argsort(-freq):
            if i == j or rest == 0:
                continue
            observed[i] = min(rest, counts[i])
            rest -= observed[i]
        best = min(best, _composition_p_value(observed, k0, freq))
    return best


def kbet(data,                  # cells x features (expression or embedding)
         batch,                 # batch label per cell
         k0=None,               # neighbourhood size, default mean batch size
         test_size=0.1,         # fraction of cells tested per repeat
         n_repeat=100,
         alpha=0.05,
         n_pcs=50,              # PCA before the neighbour search when features exceed this
         seed=0):
    """
    k-nearest neighbour batch effect test.

    Random neighbourhoods (a cell and its k0 - 1 nearest neighbours) are tested
    for batch composition against the global proportions: an exact binomial
    test with two batches, a chi-square test with more. Returns the observed
    rejection rate (mean, median and per repeat) and the expected rate `alpha`.

    A default k0 is raised until some neighbourhood composition can reach
    p < alpha. When no k0 up to n - 1 can (too few cells per batch), the rates
    are nan and `reason` says why, instead of reporting a perfect mix.
    """
    X = np.asarray(data, dtype=float)
    batch = np.asarray(batch).astype(str)
    n = X.shape[0]
    if len(batch) != n:
        raise ValueError(f"batch has {len(batch)} labels for {n} cells")
    levels, codes = np.unique(batch, return_inverse=True)

    def untestable(k, reason):
        return {'mean_rejection': float('nan'), 'median_rejection': float('nan'),
                'rejection_rates': [], 'expected': alpha, 'k0': k, 'n_batches': len(levels),
                'reason': reason}

    if len(levels) < 2:
        return untestable(None, "fewer than two batches")
    if n < 3:
        return untestable(None, f"only {n} cells")

    counts = np.bincount(codes)
    freq = counts / n
    raise_k0 = k0 is None
    if k0 is None:
        k0 = int(np.floor(counts.mean()))
    k0 = int(max(2, min(k0, n - 1)))
    if raise_k0:
        while k0 < n - 1 and _most_extreme_p_value(k0, counts, freq) >= alpha:
            k0 += 1
    if _most_extreme_p_value(k0, counts, freq) >= alpha:
        return untestable(k0, f"no neighbourhood of {k0} cells can reach p < {alpha} "
                              f"with batch sizes {counts.tolist()}")

    if X.shape[1] > n_pcs:
        X, _ = run_pca(X.T, n_components=n_pcs, seed=seed)
    nn = NearestNeighbors(n_neighbors=k0).fit(X)
    neighbourhoods = nn.kneighbors(X, return_distance=False)  # first neighbour is the cell itself

    rng = np.random.default_rng(seed)
    n_test = max(1, int(np.ceil(test_size * n)))
    rates = []
    for _ in range(n_repeat):
        tested = rng.choice(n, size=n_test, replace=False)
        rejected = 0
        for i in tested:
            observed = np.bincount(codes[neighbourhoods[i]], minlength=len(levels))
            rejected += _composition_p_value(observed, k0, freq) < alpha
        rates.append(rejected / n_test)

    rates = np.asarray(rates)
    return {
        'mean_rejection': float(rates.mean()),
        'median_rejection': float(np.median(rates)),
        'rejection_rates': rates.tolist(),
        'expected': alpha,
        'k0': k0,
        'n_batches': len(levels),
        'reason': None,
    }


def kbet_by_individual(collection,
                  cell_metadata,
                  design=None,
                  genes=None,
                  batch_key='batch',
                  **kbet_params):
    """
    kBET rejection rate per layer and per group.

    Confounded designs are tested within each individual (batches are never
    compared across individuals); balanced designs are tested once over all
    cells under the group 'all'.
    """
    design = design or plan_design(cell_metadata, batch_key=batch_key)
    if isinstance(design, BalancedDesign):
        groups = {'all': np.ones(len(cell_metadata), dtype=bool)}
    else:
        individual = cell_metadata['individual'].astype(str).values
        groups = {ind: individual == ind for ind in design.individuals}

    results = {}
    for name, output in collection.layers().items():
        values = output.values if genes is None else output.values.loc[genes]
        values = values[cell_metadata.index]
        results[name] = {}
        for group, mask in groups.items():
            res = kbet(values.values[:, mask].T, cell_metadata[batch_key].values[mask], **kbet_params)
            results[name][group] = res['mean_rejection']
    return results


def evaluate_collection(collection,
                        cell_metadata,
                        gene_metadata,
                        failures=(),
                        kbet_params=None,
                        variables=None,
                        seed=0,
                        verbose=False):
    """
    Run every metric over the results collection.

    Failed methods have no output and are listed under `skipped`; embeddings
    only get PCA coordinates.
    """
    endogenous = gene_metadata.index[~gene_metadata['is_control'].astype(bool).values]
    skipped = sorted({f.method for f in failures})

    if verbose:
        print("=" * 60)
        print("EVALUATION")
        print("=" * 60)
        if failures:
            print(f"Skipping failed methods: {skipped}")

    metrics = {'pca': {}, 'rle': {}, 'variance_explained': {}, 'kbet': {}, 'skipped': skipped}
    design = plan_design(cell_metadata)

    for name in collection.names():
        output = collection[name]
        metrics['pca'][name] = pca_separation(output, cell_metadata, genes=endogenous, seed=seed)
        if isinstance(output, Layer):
            metrics['rle'][name] = rle(output)
            metrics['variance_explained'][name] = variance_explained(output, cell_metadata, variables)
        if verbose:
            sep = metrics['pca'][name]['separation']
            print(f"{name:<12} PC1 eta² batch={sep['batch']['effect_size_eta2']:.2f} "
                  f"individual={sep['individual']['effect_size_eta2']:.2f}")

    kbet_params = dict(kbet_params or {})
    kbet_params.setdefault('seed', seed)
    metrics['kbet'] = kbet_by_individual(collection, cell_metadata, design=design, genes=endogenous,
                                         **kbet_params)
    metrics['design'] = design.kind

    if verbose:
        for name, per_group in metrics['kbet'].items():
            rates = ", ".join(f"{g}={r:.2f}" for g, r in per_group.items())
            print(f"kBET {name:<12} {rates}")
        print("=" * 60)
    return metrics


def summarize_metrics(metrics):
    """JSON-serializable summary: scalars per layer, distributions reduced to medians."""
    summary = {'design': metrics.get('design'), 'skipped': list(metrics.get('skipped', []))}
    summary['pca'] = {
        name: {
            'explained_variance': res['explained_variance'],
            'separation': res['separation'],
        }
        for name, res in metrics['pca'].items()
    }
    summary['rle'] = {
        name: {'mean_abs_median': res['mean_abs_median'], 'mean_iqr': res['mean_iqr']}
        for name, res in metrics['rle'].items()
    }
    summary['variance_explained'] = {
        name: {col: float(np.nanmedian(df[col])) for col in df.columns}
        for name, df in metrics['variance_explained'].items()
    }
    summary['kbet'] = {
        name: {g: (None if np.isnan(r) else float(r)) for g, r in per_group.items()}
        for name, per_group in metrics['kbet'].items()
    }
    return summary


def generate_metrics_report(output_dir, metrics, methods, failures, config=None, seed=None, batch_check=None):
    """
    Write correction_metrics.json with run info, method list, failures and metric summaries.
    `batch_check` (check_batch_effect results on the normalized layer) is stored when given.
    """
    report = {
        "run_info": {
            "seed": seed,
            "analysis_timestamp": datetime.now().isoformat(),
            "output_dir": output_dir,
            "data_path": (config or {}).get('data_path'),
        },
        "methods": [{"name": m.name, "kind": m.kind, "params": m.params} for m in methods],
        "failures": [
            {"method": f.method, "params": f.params, "kind": f.kind, "message": f.message}
            for f in failures
        ],
        "metrics": summarize_metrics(metrics),
    }
    if batch_check is not None:
        report["quickly_check_batch_effect"] = batch_check
    os.makedirs(output_dir, exist_ok=True)
    output_file = os.path.join(output_dir, "correction_metrics.json")
    with open(output_file, 'w') as f:
        json.dump(report, f, indent=2, ensure_ascii=False, default=_json_default)
    return output_file, report


def _json_default(value):
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating,)):
        return float(value)
    if isinstance(value, np.ndarray):
        return value.tolist()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA


def log_cpm(counts, prior=1.0):
    """log2(counts-per-million + prior) per cell. counts: genes x cells."""
    X = np.asarray(counts, dtype=float)
    lib = X.sum(axis=0)
    lib = np.where(lib > 0, lib, 1.0)
    return np.log2(X / lib * 1e6 + prior)


def one_hot(labels, drop_first=False):
    """Treatment-coded indicator matrix (cells x levels) and the level order."""
    cat = pd.Categorical(np.asarray(labels).astype(str))
    D = np.asarray(pd.get_dummies(cat, drop_first=drop_first), dtype=float)
    return D, list(cat.categories)


def run_pca(data, n_components=2, seed=0):
    """
    PCA of a features x cells matrix.
    Returns (cells x components coordinates, explained variance ratios).
    """
    X = np.asarray(data, dtype=float).T
    n_components = max(1, min(n_components, X.shape[0] - 1, X.shape[1]))
    pca = PCA(n_components=n_components, random_state=seed)
    pc = pca.fit_transform(X)
    return pc, pca.explained_variance_ratio_


def top_variable_genes(X, n_top=500):
    """Row indices of the most variable genes of a genes x cells matrix."""
    var = np.var(np.asarray(X, dtype=float), axis=1)
    n_top = min(n_top, len(var))
    return np.sort(np.argsort(var)[::-1][:n_top])

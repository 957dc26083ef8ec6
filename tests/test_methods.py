import numpy as np
import pandas as pd
import pytest

from batchforge import simulate_dataset, normalize
from batchforge.errors import ImbalancedBatchError, InsufficientControlsError, UnidentifiableDesignError
from batchforge.layers import Embedding, Layer
from batchforge.utils import log_cpm, one_hot
from use_cases.batch_correction.methods import (
    DEFAULT_METHODS,
    MethodSpec,
    _aprior,
    _bprior,
    _it_sol,
    build_covariate_design,
    combat,
    get_method,
    glm_correct,
    glm_correct_per_individual,
    ruvg,
    ruvs,
)
from use_cases.batch_correction.mnn import mnn_by_design, mnn_correct
from use_cases.batch_correction.harmony import run_harmony
from batchforge.design import build_replicate_index


def _shifted(n_genes=40, n_per_batch=15, shift=2.0, seed=0):
    rng = np.random.default_rng(seed)
    base = rng.normal(5, 1, size=(n_genes, 1))
    X = base + rng.normal(0, 0.3, size=(n_genes, 2 * n_per_batch))
    batch = np.array(["b1"] * n_per_batch + ["b2"] * n_per_batch)
    X[:, batch == "b2"] += shift
    return X, batch


def _batch_gap(X, batch):
    return np.abs(X[:, batch == "b1"].mean(axis=1) - X[:, batch == "b2"].mean(axis=1)).mean()


# ----- RUVg / RUVs -----

def test_ruvg_k0_is_identity(dataset):
    counts = dataset.counts.values
    control_idx = np.flatnonzero(dataset.gene_metadata['is_control'].values)
    corrected, W = ruvg(counts, control_idx, k=0)
    assert np.array_equal(corrected, counts)
    assert W.shape == (30, 0)


def test_ruvg_method_k0_returns_rescaled_counts(dataset):
    result = get_method("ruvg").correct(dataset.counts, dataset.cell_metadata, dataset.gene_metadata,
                                        {'k': 0}, name="ruvg0")
    assert result.method == "ruvg"
    assert result.layer.name == "ruvg0"
    assert np.allclose(result.layer.values.values, log_cpm(dataset.counts.values))


def test_ruvg_output(dataset):
    control_idx = np.flatnonzero(dataset.gene_metadata['is_control'].values)
    corrected, W = ruvg(dataset.counts.values, control_idx, k=2)
    assert corrected.shape == dataset.shape
    assert W.shape == (30, 2)
    assert (corrected >= 0).all()
    assert np.array_equal(corrected, np.round(corrected))


def test_ruvg_insufficient_controls(dataset):
    counts = dataset.counts.values
    with pytest.raises(InsufficientControlsError):
        ruvg(counts, [], k=1)
    with pytest.raises(InsufficientControlsError):
        ruvg(counts, [90, 91, 92], k=5)
    with pytest.raises(ValueError):
        ruvg(counts, [90, 91], k=-1)


def test_ruvs_k0_is_identity(dataset):
    sc_idx, _ = build_replicate_index(dataset.cell_metadata['individual'])
    counts = dataset.counts.values
    corrected, W = ruvs(counts, np.arange(counts.shape[0]), sc_idx, k=0)
    assert np.array_equal(corrected, counts)
    assert W.shape[1] == 0


def test_ruvs_caps_k_to_rank():
    rng = np.random.default_rng(2)
    counts = rng.poisson(20, size=(50, 6)).astype(float)
    sc_idx, _ = build_replicate_index(["a", "a", "b", "b", "c", "c"])
    # three groups of two cells give at most three independent deviations
    corrected, W = ruvs(counts, np.arange(50), sc_idx, k=5)
    assert corrected.shape == counts.shape
    assert W.shape[1] <= 3


def test_ruvs_insufficient_controls(dataset):
    sc_idx, _ = build_replicate_index(dataset.cell_metadata['individual'])
    with pytest.raises(InsufficientControlsError):
        ruvs(dataset.counts.values, [], sc_idx, k=1)


def test_ruvs_method_spike_controls(dataset):
    result = get_method("ruvs").correct(dataset.counts, dataset.cell_metadata, dataset.gene_metadata,
                                        {'k': 1, 'controls': 'spike'})
    assert result.layer.shape == dataset.shape
    with pytest.raises(ValueError):
        get_method("ruvs").correct(dataset.counts, dataset.cell_metadata, dataset.gene_metadata,
                                   {'controls': 'some'})


# ----- ComBat -----

def test_combat_removes_shift():
    X, batch = _shifted()
    adjusted = combat(X, batch)
    assert adjusted.shape == X.shape
    assert _batch_gap(adjusted, batch) < 0.2 * _batch_gap(X, batch)


def test_combat_mean_only_and_nonparametric():
    X, batch = _shifted(seed=3)
    for kwargs in ({'mean_only': True}, {'parametric': False}):
        adjusted = combat(X, batch, **kwargs)
        assert _batch_gap(adjusted, batch) < 0.2 * _batch_gap(X, batch)


def test_combat_single_batch_is_identity():
    X, _ = _shifted()
    assert np.array_equal(combat(X, ["b1"] * X.shape[1]), X)


def test_combat_passes_constant_genes_through():
    X, batch = _shifted()
    X[0] = 7.0
    adjusted = combat(X, batch)
    assert np.allclose(adjusted[0], 7.0)


def test_it_sol_converges_with_zero_location():
    rng = np.random.default_rng(0)
    s_data = rng.normal(0, rng.uniform(0.5, 2.0, size=(3, 1)), size=(3, 20))
    g_hat = np.array([0.0, 0.4, -0.4])
    s_data += g_hat[:, None]
    d_hat = s_data.var(axis=1, ddof=1)
    # g_hat[0] and g_bar are both zero, so gamma stays exactly zero for gene 0
    gamma, delta, n_iter = _it_sol(s_data, g_hat, d_hat, 0.0, g_hat.var(ddof=1),
                                   _aprior(d_hat), _bprior(d_hat))
    assert np.isfinite(gamma).all() and np.isfinite(delta).all()
    assert gamma[0] == 0.0
    assert n_iter < 1000


def test_combat_collinear_design():
    X, batch = _shifted()
    mod, _ = one_hot(batch, drop_first=True)
    with pytest.raises(UnidentifiableDesignError):
        combat(X, batch, mod=mod)


def test_combat_individual_design_on_nested_batches(dataset, normalization):
    # every batch holds a single individual, so individual is aliased with batch
    with pytest.raises(UnidentifiableDesignError):
        get_method("combat").correct(normalization.layer.values, dataset.cell_metadata,
                                     dataset.gene_metadata, {'design': 'individual'})


def test_build_covariate_design(dataset):
    meta = dataset.cell_metadata
    assert build_covariate_design(meta, "basic") is None
    assert build_covariate_design(meta, "total_features").shape == (30, 1)
    assert build_covariate_design(meta, "individual").shape == (30, 2)
    with pytest.raises(ValueError):
        build_covariate_design(meta, "not_a_column")


# ----- GLM -----

def test_glm_single_batch_is_identity():
    X, _ = _shifted()
    assert np.array_equal(glm_correct(X, ["b1"] * X.shape[1]), X)


def test_glm_removes_shift_anchored_at_reference():
    X, batch = _shifted()
    corrected = glm_correct(X, batch)
    assert np.allclose(corrected[:, batch == "b1"], X[:, batch == "b1"])
    assert np.allclose(corrected[:, batch == "b1"].mean(axis=1), corrected[:, batch == "b2"].mean(axis=1))


def test_glm_with_aliased_individual(dataset, normalization):
    meta = dataset.cell_metadata
    X = normalization.layer.values.values
    with_individual = glm_correct(X, meta['batch'], meta['individual'])
    assert with_individual.shape == X.shape
    assert np.isfinite(with_individual).all()


def test_glm_per_individual(dataset, normalization):
    meta = dataset.cell_metadata
    X = normalization.layer.values.values
    corrected = glm_correct_per_individual(X, meta['batch'], meta['individual'])
    for ind in meta['individual'].unique():
        mask = (meta['individual'] == ind).values
        batches = meta.loc[mask, 'batch'].unique()
        means = [corrected[:, (meta['batch'] == b).values].mean(axis=1) for b in batches]
        assert np.allclose(means[0], means[1])


# ----- MNN -----

def _unit(X):
    return X / np.linalg.norm(X, axis=1, keepdims=True)


def _clustered_batches(n_per_cluster=20, n_genes=20, seed=4):
    rng = np.random.default_rng(seed)
    centers = rng.normal(5, 2, size=(3, n_genes))
    shift = rng.normal(0, 1, size=n_genes)
    ref = np.vstack([c + rng.normal(0, 0.3, size=(n_per_cluster, n_genes)) for c in centers])
    other = np.vstack([c + rng.normal(0, 0.3, size=(n_per_cluster, n_genes)) for c in centers]) + shift
    return ref, other


def test_mnn_correct_reduces_shift():
    ref, other = _clustered_batches()
    out = mnn_correct([ref, other], k=10, dimred=10)
    assert out[0].shape == ref.shape and out[1].shape == other.shape
    before = np.abs(_unit(other).mean(axis=0) - _unit(ref).mean(axis=0)).mean()
    after = np.abs(out[1].mean(axis=0) - out[0].mean(axis=0)).mean()
    assert after < 0.5 * before


def test_mnn_needs_two_batches():
    with pytest.raises(ImbalancedBatchError):
        mnn_correct([np.ones((5, 3))])
    with pytest.raises(ValueError):
        mnn_correct([np.ones((5, 3)), np.ones((5, 3))], sigma=0)


def test_mnn_balanced_design_corrects_all_batches(capsys):
    ref, other = _clustered_batches(n_per_cluster=10)
    cells = [f"c{i}" for i in range(ref.shape[0] + other.shape[0])]
    genes = [f"g{j}" for j in range(ref.shape[1])]
    # both individuals appear in both batches
    meta = pd.DataFrame({
        'batch': ["b1"] * ref.shape[0] + ["b2"] * other.shape[0],
        'individual': (["A", "B"] * ref.shape[0])[:ref.shape[0]] + (["A", "B"] * other.shape[0])[:other.shape[0]],
        'replicate': ["r1"] * ref.shape[0] + ["r2"] * other.shape[0],
    }, index=cells)
    # interleave the batches so column order is not batch order
    order = np.argsort(np.arange(len(cells)) % ref.shape[0], kind='stable')
    matrix = pd.DataFrame(np.vstack([ref, other]).T, index=genes, columns=cells).iloc[:, order]
    meta = meta.loc[matrix.columns]

    corrected = mnn_by_design(matrix, meta, k=5, dimred=10, verbose=True)
    assert "balanced design" in capsys.readouterr().out
    assert list(corrected.columns) == list(matrix.columns)
    assert list(corrected.index) == genes
    assert np.isfinite(corrected.values).all()

    b1 = (meta['batch'] == "b1").values
    before = np.abs(_unit(matrix.values.T[b1]).mean(axis=0) - _unit(matrix.values.T[~b1]).mean(axis=0)).mean()
    after = np.abs(corrected.values.T[b1].mean(axis=0) - corrected.values.T[~b1].mean(axis=0)).mean()
    assert after < 0.5 * before


def test_mnn_fallback_covers_every_cell():
    ds = simulate_dataset(n_replicates=3, drop_replicates={"NA19101": ["r2"]}, seed=5)
    layer = normalize(ds).layer
    corrected = mnn_by_design(layer.values, ds.cell_metadata, k=5)
    assert corrected.shape == layer.shape
    assert list(corrected.columns) == list(layer.cells)
    assert np.isfinite(corrected.values).all()


def test_mnn_single_replicate_individual_fails():
    ds = simulate_dataset(n_replicates=2, drop_replicates={"NA19101": ["r2"]}, seed=5)
    layer = normalize(ds).layer
    with pytest.raises(ImbalancedBatchError):
        mnn_by_design(layer.values, ds.cell_metadata, k=5)


# ----- Harmony -----

def test_run_harmony_shape_and_single_batch():
    rng = np.random.default_rng(6)
    Z = rng.normal(size=(60, 5))
    batch = np.repeat(["a", "b"], 30)
    Z[batch == "b"] += 2.0
    corrected = run_harmony(Z, batch, n_clusters=3, seed=0)
    assert corrected.shape == Z.shape
    assert np.isfinite(corrected).all()
    gap = lambda E: np.linalg.norm(E[batch == "a"].mean(axis=0) - E[batch == "b"].mean(axis=0))
    assert gap(corrected) < gap(Z)
    assert np.array_equal(run_harmony(Z, ["a"] * 60), Z)
    with pytest.raises(ValueError):
        run_harmony(Z, batch, theta=-1)


def test_harmony_method_returns_embedding(dataset, normalization):
    result = get_method("harmony").correct(normalization.layer.values, dataset.cell_metadata,
                                           dataset.gene_metadata, {'n_pcs': 5})
    assert isinstance(result.embedding, Embedding)
    assert result.layer is None
    assert result.embedding.shape == (30, 5)
    assert list(result.cells) == list(dataset.cells)


# ----- Registry -----

def test_registry_errors(dataset):
    with pytest.raises(ValueError):
        get_method("scvi")
    with pytest.raises(ValueError):
        MethodSpec.from_config({'name': 'x', 'kind': 'scvi'})
    with pytest.raises(ValueError):
        MethodSpec.from_config({'kind': 'glm'})
    with pytest.raises(ValueError, match="unknown parameters"):
        get_method("glm").correct(dataset.counts, dataset.cell_metadata, dataset.gene_metadata, {'alpha': 1})


@pytest.mark.parametrize("entry", DEFAULT_METHODS, ids=[m['name'] for m in DEFAULT_METHODS])
def test_default_methods_cover_all_cells(dataset, normalization, entry):
    spec = MethodSpec.from_config(entry)
    method = get_method(spec.kind)
    matrix = dataset.counts if method.uses_raw_counts else normalization.layer.values
    result = method.correct(matrix, dataset.cell_metadata, dataset.gene_metadata, spec.params, name=spec.name)

    assert result.output.name == spec.name
    assert list(result.cells) == list(dataset.cells)
    if isinstance(result.output, Layer):
        assert result.output.shape == (100, 30)
        assert list(result.output.genes) == list(dataset.genes)
    else:
        assert result.output.shape == (30, 10)
    assert np.isfinite(result.output.values.values).all()

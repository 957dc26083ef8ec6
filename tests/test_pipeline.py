import json
import os

import numpy as np
import pytest

from batchforge import save_dataset
from batchforge.layers import Embedding, Layer
from use_cases.batch_correction import run_correction, run_corrections, evaluate_collection
from use_cases.batch_correction.methods import DEFAULT_METHODS


def test_scenario_every_method_completes(dataset, normalization):
    collection, failures = run_corrections(dataset, normalization)

    assert failures == []
    assert collection.names() == ['raw', 'normalized'] + [m['name'] for m in DEFAULT_METHODS]
    for name in collection:
        output = collection[name]
        if isinstance(output, Layer):
            assert output.shape == (100, 30)
            assert list(output.cells) == list(dataset.cells)
        else:
            assert isinstance(output, Embedding)
            assert output.shape == (30, 10)
            assert list(output.cells) == list(dataset.cells)

    metrics = evaluate_collection(collection, dataset.cell_metadata, dataset.gene_metadata,
                                  kbet_params={'n_repeat': 10})
    for name, ve in metrics['variance_explained'].items():
        shares = ve.drop(columns='joint')
        assert (shares.sum(axis=1) <= 100 + 1e-6).all(), name
    assert 'harmony' not in metrics['rle']
    assert 'harmony' in metrics['pca']


def test_raw_layer_is_log_counts(dataset, normalization):
    collection, _ = run_corrections(dataset, normalization, methods=[])
    assert collection.names() == ['raw', 'normalized']
    assert np.allclose(collection['raw'].values.values, np.log2(dataset.counts.values + 1))


def test_failing_methods_are_isolated(dataset, normalization):
    methods = [
        {'name': 'combat_ind', 'kind': 'combat', 'params': {'design': 'individual'}},
        {'name': 'ruvg20', 'kind': 'ruvg', 'params': {'k': 20}},
        {'name': 'glm', 'kind': 'glm', 'params': {}},
    ]
    collection, failures = run_corrections(dataset, normalization, methods)

    assert [f.method for f in failures] == ['combat_ind', 'ruvg20']
    assert [f.kind for f in failures] == ['UnidentifiableDesignError', 'InsufficientControlsError']
    assert failures[1].params == {'k': 20}
    assert 'glm' in collection
    assert 'combat_ind' not in collection


def test_programming_errors_propagate(dataset, normalization):
    methods = [{'name': 'glm', 'kind': 'glm', 'params': {'unknown': 1}}]
    with pytest.raises(ValueError, match="unknown parameters"):
        run_corrections(dataset, normalization, methods)


def test_method_names_must_be_unique(dataset, normalization):
    methods = [{'name': 'glm', 'kind': 'glm'}, {'name': 'glm', 'kind': 'glm'}]
    with pytest.raises(ValueError, match="unique"):
        run_corrections(dataset, normalization, methods)
    with pytest.raises(ValueError, match="reserved"):
        run_corrections(dataset, normalization, [{'name': 'raw', 'kind': 'glm'}])


def test_run_correction_from_file(dataset, tmp_path):
    data_path = str(tmp_path / "tung.h5ad")
    save_dataset(dataset, data_path)
    output_dir = str(tmp_path / "results")
    config = {
        'data_path': data_path,
        'output_dir': output_dir,
        'seed': 0,
        'verbose': False,
        'methods': [
            {'name': 'combat', 'kind': 'combat', 'params': {}},
            {'name': 'glm_indi', 'kind': 'glm', 'params': {'per_individual': True}},
            {'name': 'harmony', 'kind': 'harmony', 'params': {'n_pcs': 5}},
        ],
        'kbet': {'n_repeat': 5},
        'save_csv': True,
        'save_plots': True,
    }
    results = run_correction(config)

    assert results['failures'] == []
    assert results['collection'].names() == ['raw', 'normalized', 'combat', 'glm_indi', 'harmony']
    with open(os.path.join(output_dir, "correction_metrics.json")) as f:
        report = json.load(f)
    assert [m['name'] for m in report['methods']] == ['combat', 'glm_indi', 'harmony']
    assert report['run_info']['data_path'] == data_path
    assert 'severity' in report['quickly_check_batch_effect']
    assert os.path.exists(os.path.join(output_dir, "layers", "combat.csv"))
    assert os.path.exists(os.path.join(output_dir, "plots", "kbet_heatmap.png"))
    assert os.path.exists(os.path.join(output_dir, "plots", "pca_harmony.png"))


def test_run_correction_simulated(tmp_path):
    config = {
        'simulate': {'n_genes': 80, 'n_replicates': 3, 'drop_replicates': {'NA19101': ['r2']}},
        'output_dir': str(tmp_path),
        'seed': 1,
        'verbose': False,
        'methods': [{'name': 'mnn', 'kind': 'mnn', 'params': {'k': 5}}],
        'kbet': {'n_repeat': 5},
    }
    results = run_correction(config)
    assert results['collection']['mnn'].shape == (80, 40)
    assert os.path.exists(os.path.join(str(tmp_path), "correction_metrics.json"))


def test_run_correction_needs_input(tmp_path):
    with pytest.raises(ValueError):
        run_correction({'output_dir': str(tmp_path), 'verbose': False})


import os

import numpy as np
import pandas as pd

from batchforge import load_dataset, normalize, simulate_dataset
from batchforge.errors import METHOD_ERRORS
from batchforge.layers import Layer, MethodFailure, ResultsCollection
from batchforge.metrics import check_batch_effect
from .methods import DEFAULT_METHODS, MethodSpec, get_method
from .evaluation import evaluate_collection, generate_metrics_report
from .visualization import plot_layer_overview

RESERVED_NAMES = ('raw', 'normalized')


def _method_specs(methods):
    specs = [MethodSpec.from_config(m) for m in (DEFAULT_METHODS if methods is None else methods)]
    names = [s.name for s in specs]
    duplicated = sorted({n for n in names if names.count(n) > 1})
    if duplicated:
        raise ValueError(f"Method names must be unique, duplicated: {duplicated}")
    reserved = [n for n in names if n in RESERVED_NAMES]
    if reserved:
        raise ValueError(f"Method names {reserved} are reserved for the input layers")
    return specs


def run_corrections(dataset, normalization, methods=None, verbose=False):
    """
    Apply every configured correction method to one normalized dataset.

    The collection starts with the 'raw' (log2 counts + 1) and 'normalized'
    layers; each method then adds one Layer or Embedding under its name.
    RUV methods receive raw counts, all others the normalized layer.
    A method raising one of the pipeline errors is recorded as a
    MethodFailure and the run continues; other exceptions propagate.

    Returns (ResultsCollection, list of MethodFailure).
    """
    specs = _method_specs(methods)
    cell_metadata = dataset.cell_metadata
    gene_metadata = dataset.gene_metadata

    raw = Layer('raw', pd.DataFrame(np.log2(dataset.counts.values + 1.0),
                                    index=dataset.genes, columns=dataset.cells))
    collection = ResultsCollection(cells=dataset.cells).with_result(raw).with_result(normalization.layer)
    failures = []

    if verbose:
        print("=" * 60)
        print(f"CORRECTION: {len(specs)} methods on {dataset.shape[0]} genes x {dataset.shape[1]} cells")
        print("=" * 60)

    for i, spec in enumerate(specs):
        method = get_method(spec.kind)
        matrix = dataset.counts if method.uses_raw_counts else normalization.layer.values
        if verbose:
            print(f"[{i + 1}/{len(specs)}] {spec.name} ({spec.kind}) {spec.params}")
        try:
            result = method.correct(matrix, cell_metadata, gene_metadata, spec.params,
                                    name=spec.name, verbose=verbose)
        except METHOD_ERRORS as e:
            failure = MethodFailure(method=spec.name, params=dict(spec.params),
                                    kind=type(e).__name__, message=str(e))
            failures.append(failure)
            if verbose:
                print(f"  [FAILED] {failure}")
            continue
        collection = collection.with_result(result.output)

    if verbose:
        print(f"Completed {len(specs) - len(failures)}/{len(specs)} methods")
        print("=" * 60)
    return collection, failures


def save_layers(collection, output_dir, verbose=False):
    """Write every layer and embedding of the collection as CSV."""
    layer_dir = os.path.join(output_dir, "layers")
    os.makedirs(layer_dir, exist_ok=True)
    paths = []
    for name in collection:
        path = os.path.join(layer_dir, f"{name}.csv")
        collection[name].values.to_csv(path, float_format="%.8f")
        paths.append(path)
    if verbose:
        print(f"Saved {len(paths)} layers to: {layer_dir}")
    return paths


def load_input(config):
    """Dataset from `data_path`, or simulated from the `simulate` settings."""
    verbose = config.get('verbose', True)
    seed = config.get('seed', 42)
    if config.get('data_path'):
        dataset = load_dataset(config['data_path'], verbose=verbose)
    elif 'simulate' in config:
        sim_params = dict(config['simulate'])
        sim_params.setdefault('seed', seed)
        dataset = simulate_dataset(verbose=verbose, **sim_params)
    else:
        raise ValueError("config needs either 'data_path' or 'simulate'")
    if config.get('filter_qc', True):
        dataset = dataset.filter_qc()
    return dataset


def run_correction(config):
    """
    Run the confounder-removal pipeline in three phases:

    Phase 1: Load (or simulate) and normalize the dataset
    Phase 2: Apply every configured correction method
    Phase 3: Evaluate the results and write the report

    Results are written to config['output_dir']: correction_metrics.json,
    plots/ when save_plots, layers/ when save_csv.
    """
    verbose = config.get('verbose', True)
    output_dir = config.get('output_dir', 'results/')
    seed = config.get('seed', 42)
    save_csv = config.get('save_csv', False)
    save_plots = config.get('save_plots', False)

    if verbose:
        print(f"[SYSTEM] Output directory: {output_dir}")

    try:
        if verbose:
            print("=" * 60)
            print("PHASE 1: LOAD & NORMALIZE")
            print("=" * 60)
        dataset = load_input(config)
        normalization = normalize(dataset, min_size=config.get('min_cluster_size', 100),
                                  seed=seed, verbose=verbose)
        meta = dataset.cell_metadata
        batch_check, _ = check_batch_effect(normalization.layer.values.loc[dataset.endogenous_genes],
                                            meta['batch'].values, meta['individual'].values,
                                            verbose=verbose)

        specs = _method_specs(config.get('methods'))
        collection, failures = run_corrections(dataset, normalization, specs, verbose=verbose)

        kbet_params = dict(config.get('kbet', {}))
        metrics = evaluate_collection(collection, dataset.cell_metadata, dataset.gene_metadata,
                                      failures=failures, kbet_params=kbet_params, seed=seed, verbose=verbose)
        report_path, report = generate_metrics_report(output_dir, metrics, specs, failures,
                                                      config=config, seed=seed, batch_check=batch_check)

        if save_csv:
            save_layers(collection, output_dir, verbose=verbose)
        if save_plots:
            plot_layer_overview(metrics, dataset.cell_metadata, os.path.join(output_dir, "plots"),
                                kbet_alpha=kbet_params.get('alpha', 0.05), verbose=verbose)

        if verbose:
            print("\n" + "=" * 60)
            print("CONFOUNDER REMOVAL PIPELINE COMPLETED")
            print(f"Results saved to: {report_path}")
            print("=" * 60)

        return {
            'dataset': dataset,
            'normalization': normalization,
            'collection': collection,
            'failures': failures,
            'metrics': metrics,
            'report': report,
        }

    except Exception as e:
        if verbose:
            print(f"\n[ERROR] Pipeline failed: {e}")
        raise e

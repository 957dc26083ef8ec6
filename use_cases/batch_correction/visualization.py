import os

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from batchforge.plot import BATCH_COLORS, INDIVIDUAL_COLORS, plot_pca


def _grid(n_panels, n_cols=3, panel_size=(5, 4)):
    n_cols = max(1, min(n_cols, n_panels))
    n_rows = int(np.ceil(n_panels / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(panel_size[0] * n_cols, panel_size[1] * n_rows),
                             squeeze=False)
    axes = axes.ravel()
    for ax in axes[n_panels:]:
        ax.set_visible(False)
    return fig, axes[:n_panels]


def _finish(fig, save_path, verbose, what):
    fig.tight_layout()
    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches='tight')
        if verbose:
            print(f"{what} plot saved to: {save_path}")
    return fig


def plot_rle(rle_results,         # dict layer name -> rle(...) result
             cell_metadata,
             color_key='batch',
             save_path=None,
             verbose=False):
    """One RLE boxplot panel per layer, a box per cell coloured by `color_key`."""
    fig, axes = _grid(len(rle_results), n_cols=2, panel_size=(8, 3.5))
    labels = cell_metadata[color_key].astype(str)
    groups = list(pd.unique(labels))
    colors = {g: BATCH_COLORS[i % len(BATCH_COLORS)] for i, g in enumerate(groups)}

    for ax, (name, result) in zip(axes, rle_results.items()):
        q = result['per_cell'].reindex(cell_metadata.index)
        stats = [
            {'med': r['median'], 'q1': r['q1'], 'q3': r['q3'], 'whislo': r['min'], 'whishi': r['max'],
             'fliers': [], 'label': ''}
            for _, r in q.iterrows()
        ]
        boxes = ax.bxp(stats, showfliers=False, patch_artist=True, widths=0.7)
        for patch, label in zip(boxes['boxes'], labels):
            patch.set_facecolor(colors[label])
            patch.set_alpha(0.7)
        ax.axhline(y=0, color='black', linestyle='-', alpha=0.5)
        ax.set_xticks([])
        ax.set_title(f"{name}\nmean |median|={result['mean_abs_median']:.3f}, mean IQR={result['mean_iqr']:.3f}",
                     fontsize=10)
        ax.set_ylabel('Relative log expression')
        ax.grid(True, axis='y', alpha=0.3)

    handles = [plt.Rectangle((0, 0), 1, 1, color=colors[g], alpha=0.7) for g in groups]
    fig.legend(handles, groups, loc='upper right', fontsize=8, title=color_key)
    return _finish(fig, save_path, verbose, "RLE")


def plot_variance_explained(variance_results,   # dict layer name -> variance_explained(...) DataFrame
                            save_path=None,
                            verbose=False):
    """Median percentage of variance explained per variable, one bar panel per layer."""
    fig, axes = _grid(len(variance_results))
    for ax, (name, df) in zip(axes, variance_results.items()):
        variables = [c for c in df.columns if c != 'joint']
        med = df[variables].median()
        q1 = df[variables].quantile(0.25)
        q3 = df[variables].quantile(0.75)
        x_pos = np.arange(len(variables))
        ax.bar(x_pos, med.values, yerr=[med.values - q1.values, q3.values - med.values],
               capsize=3, color=[INDIVIDUAL_COLORS[i % len(INDIVIDUAL_COLORS)] for i in range(len(variables))],
               alpha=0.8)
        ax.set_xticks(x_pos)
        ax.set_xticklabels(variables, rotation=45, ha='right', fontsize=9)
        ax.set_ylabel('% variance explained (median over genes)')
        ax.set_title(f"{name}\njoint median {df['joint'].median():.1f}%", fontsize=10)
        ax.set_ylim(0, 100)
        ax.grid(True, axis='y', alpha=0.3)
    return _finish(fig, save_path, verbose, "Variance explained")


def plot_kbet_heatmap(kbet_results,     # dict layer name -> {group: rejection rate}
                      expected=0.05,
                      save_path=None,
                      verbose=False):
    """Heatmap of kBET rejection rates, layers x groups (lower is better mixed)."""
    table = pd.DataFrame(kbet_results).T.astype(float)
    fig, ax = plt.subplots(figsize=(1.5 * table.shape[1] + 3, 0.5 * table.shape[0] + 2))
    im = ax.imshow(table.values, cmap='RdYlGn_r', vmin=0, vmax=1, aspect='auto')
    ax.set_xticks(np.arange(table.shape[1]))
    ax.set_xticklabels(table.columns)
    ax.set_yticks(np.arange(table.shape[0]))
    ax.set_yticklabels(table.index)
    for i in range(table.shape[0]):
        for j in range(table.shape[1]):
            value = table.values[i, j]
            text = 'n/a' if np.isnan(value) else f'{value:.2f}'
            ax.text(j, i, text, ha='center', va='center', fontsize=9)
    fig.colorbar(im, ax=ax, label='kBET rejection rate')
    ax.set_title(f'kBET rejection rate (expected {expected:.2f})', fontweight='bold')
    return _finish(fig, save_path, verbose, "kBET heatmap")


def plot_layer_overview(metrics,        # evaluate_collection(...) output
                        cell_metadata,
                        output_dir,
                        kbet_alpha=0.05,
                        verbose=False):
    """
    Render every comparison plot into `output_dir`:
    pca_<layer>.png, rle.png, variance_explained.png, kbet_heatmap.png.
    Figures are closed after saving; returns the list of written paths.
    """
    os.makedirs(output_dir, exist_ok=True)
    paths = []

    for name, res in metrics['pca'].items():
        path = os.path.join(output_dir, f"pca_{name}.png")
        fig = plot_pca(res['coordinates'], cell_metadata, explained_variance=res['explained_variance'],
                       title=name, save_path=path)
        plt.close(fig)
        paths.append(path)

    if metrics['rle']:
        path = os.path.join(output_dir, "rle.png")
        plt.close(plot_rle(metrics['rle'], cell_metadata, save_path=path, verbose=verbose))
        paths.append(path)

    if metrics['variance_explained']:
        path = os.path.join(output_dir, "variance_explained.png")
        plt.close(plot_variance_explained(metrics['variance_explained'], save_path=path, verbose=verbose))
        paths.append(path)

    if metrics['kbet']:
        path = os.path.join(output_dir, "kbet_heatmap.png")
        plt.close(plot_kbet_heatmap(metrics['kbet'], expected=kbet_alpha, save_path=path, verbose=verbose))
        paths.append(path)

    if verbose:
        print(f"Saved {len(paths)} plots to: {output_dir}")
    return paths

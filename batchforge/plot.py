import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

INDIVIDUAL_COLORS = ['#1f77b4', '#ff7f0e', '#2ca02c', '#d62728']
BATCH_COLORS = ['#2ca02c', '#d62728', '#9467bd', '#8c564b', '#e377c2', '#FF6B35']


# Plot PCA coordinates of one layer, one panel per grouping key
def plot_pca(coordinates,  # DataFrame (cells x components), e.g. pca_separation(...)['coordinates']
             cell_metadata,
             color_keys=('individual', 'batch'),
             annotate_key=None,  # label each point with this column, e.g. 'replicate'
             explained_variance=None,  # list of ratios for the axis labels
             title="PCA",
             save_path=None):

    coordinates = coordinates.reindex(cell_metadata.index)
    xy = coordinates.values[:, :2]
    if xy.shape[1] < 2:
        xy = np.column_stack([xy[:, 0], np.zeros(len(xy))])
    x_label, y_label = (list(coordinates.columns[:2]) + ['', ''])[:2]
    if explained_variance is not None and len(explained_variance) >= 2:
        x_label = f'{x_label} ({explained_variance[0]:.1%})'
        y_label = f'{y_label} ({explained_variance[1]:.1%})'

    n_plots = len(color_keys)
    fig, axes = plt.subplots(1, n_plots, figsize=(6 * n_plots, 5), squeeze=False)
    axes = axes[0]

    for ax, key in zip(axes, color_keys):
        palette = INDIVIDUAL_COLORS if key == 'individual' else BATCH_COLORS
        labels = cell_metadata[key].astype(str)
        for i, group in enumerate(pd.unique(labels)):
            mask = (labels == group).values
            ax.scatter(xy[mask, 0], xy[mask, 1], c=palette[i % len(palette)],
                       label=group, alpha=0.7, s=50)

        # Annotate points with a second label on each panel
        if annotate_key is not None:
            for (x, y), text in zip(xy, cell_metadata[annotate_key].astype(str)):
                ax.annotate(text, (x, y), xytext=(2, 2), textcoords='offset points',
                            fontsize=8, alpha=0.7)

        ax.set_xlabel(x_label)
        ax.set_ylabel(y_label)
        ax.set_title(f'{title}\n(colored by {key})')
        ax.legend(fontsize=8)
        ax.grid(alpha=0.3)

    fig.tight_layout()
    if save_path:
        fig.savefig(save_path, dpi=300, bbox_inches='tight')
    return fig

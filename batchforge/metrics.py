import numpy as np
import pandas as pd
from scipy.stats import f_oneway, kruskal, shapiro

from batchforge.utils import run_pca


def _choose_test(pc1):
    # ANOVA only with enough cells and a roughly normal PC1
    if len(pc1) < 30:
        return "Kruskal-Wallis"
    if len(pc1) <= 5000 and shapiro(pc1)[1] < 0.05:
        return "Kruskal-Wallis"
    return "ANOVA"


def group_separation(pc, labels, test_used=None):
    """
    Separation of labelled groups along PC1.

    Returns centroid spread (std of group means on PC1, higher = more separated),
    the test statistic and p-value, and eta² effect size.
    """
    pc1 = np.asarray(pc)[:, 0]
    cat = pd.Categorical(np.asarray(labels).astype(str))
    groups = [pc1[cat == g] for g in cat.categories]
    groups = [g for g in groups if len(g) > 0]
    n_groups = len(groups)
    n = len(pc1)

    centroids = [g.mean() for g in groups]
    centroid_std = float(np.std(centroids)) if n_groups > 1 else 0.0

    if n_groups < 2 or np.ptp(pc1) == 0:
        return {'centroid_std': centroid_std, 'statistic': 0.0, 'p_value': 1.0,
                'test_used': None, 'effect_size_eta2': 0.0}

    test_used = test_used or _choose_test(pc1)
    if test_used == "ANOVA":
        stat, p_val = f_oneway(*groups)
        ss_total = np.var(pc1) * n
        ss_between = sum(len(g) * (g.mean() - pc1.mean()) ** 2 for g in groups)
        eta = ss_between / ss_total if ss_total > 0 else 0.0
    else:
        stat, p_val = kruskal(*groups)
        eta = (stat - n_groups + 1) / (n - n_groups + 1) if n > n_groups - 1 else 0.0
        eta = max(0.0, min(1.0, eta))

    return {
        'centroid_std': centroid_std,
        'statistic': float(stat),
        'p_value': float(p_val),
        'test_used': test_used,
        'effect_size_eta2': float(eta),
    }


def check_batch_effect(data,              # genes x cells matrix (DataFrame or array)
                       batch_labels,
                       bio_labels=None,   # e.g. individual per cell
                       n_components=5,
                       verbose=True):
    """Quick PCA-based check of batch separation, optionally against a biological grouping."""
    pc, var_ratio = run_pca(data, n_components=n_components)
    var_explained = float(var_ratio[:2].sum())

    batch = group_separation(pc, batch_labels)
    results = {'pca_variance_explained': var_explained, 'batch_effect': batch}

    if verbose:
        print(f"PC1-2 explain {var_explained:.1%} variance")
        print(f"Batch effect on PC1: stat={batch['statistic']:.2f}, p={batch['p_value']:.3e} ({batch['test_used']})")
        print(f"Batch effect size (eta²): {batch['effect_size_eta2']:.1%}")

    if bio_labels is not None:
        bio = group_separation(pc, bio_labels, test_used=batch['test_used'])
        results['bio_effect'] = bio
        batch_eta, bio_eta = batch['effect_size_eta2'], bio['effect_size_eta2']
        if batch['p_value'] < 0.05 and bio['p_value'] < 0.05:
            if batch_eta > bio_eta + 0.1:
                severity = "CRITICAL" if batch_eta > 0.3 else "MODERATE" if batch_eta > 0.2 else "MILD"
                description = f"Batch effect ({batch_eta:.1%}) stronger than biological signal ({bio_eta:.1%})"
            else:
                severity = "GOOD"
                description = f"Biological signal ({bio_eta:.1%}) stronger than batch effect ({batch_eta:.1%})"
        elif batch['p_value'] < 0.05:
            severity = "WARNING"
            description = "Significant batch effect detected, but no significant biological signal"
        elif bio['p_value'] < 0.05:
            severity = "GOOD"
            description = "Biological signal detected without significant batch effect"
        else:
            severity = "NONE"
            description = "Neither batch nor biological effects are statistically significant"
        results['severity'] = severity
        results['severity_description'] = description
        if verbose:
            print(f"Biological effect on PC1: stat={bio['statistic']:.2f}, p={bio['p_value']:.3e}")
            print(f"{severity}: {description}")

    return results, pc

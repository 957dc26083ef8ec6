"""
Experimental design classification.

A design is *balanced* when every individual is observed in every batch; a
batch-level correction can then be fitted across the whole dataset. It is
*confounded* when batches are nested in individuals (each batch holds cells
of a single individual); batch-aware corrections and kBET must then run per
individual, using the replicate label as the within-individual batch.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd

SENTINEL = -1


@dataclass(frozen=True)
class BalancedDesign:
    batches: tuple
    individuals: tuple

    kind = "balanced"


@dataclass(frozen=True)
class ReplicatePlan:
    """Replicates used for one individual; `missing` lists absent ones."""

    individual: str
    replicates: tuple
    missing: tuple

    @property
    def is_fallback(self):
        return len(self.missing) > 0


@dataclass(frozen=True)
class ConfoundedDesign:
    plans: tuple
    replicate_levels: tuple

    kind = "confounded"

    @property
    def individuals(self):
        return tuple(p.individual for p in self.plans)


def plan_design(cell_metadata, batch_key='batch', individual_key='individual', replicate_key='replicate'):
    """Classify the layout as BalancedDesign or ConfoundedDesign."""
    batch = cell_metadata[batch_key].astype(str)
    individual = cell_metadata[individual_key].astype(str)
    table = pd.crosstab(batch, individual)
    individuals = tuple(table.columns)

    # every individual in every batch
    if (table > 0).all(axis=None):
        return BalancedDesign(batches=tuple(table.index), individuals=individuals)

    replicate = cell_metadata[replicate_key].astype(str)
    replicate_levels = tuple(sorted(replicate.unique()))
    plans = []
    for ind in individuals:
        present = set(replicate[individual == ind])
        plans.append(ReplicatePlan(
            individual=ind,
            replicates=tuple(r for r in replicate_levels if r in present),
            missing=tuple(r for r in replicate_levels if r not in present),
        ))
    return ConfoundedDesign(plans=tuple(plans), replicate_levels=replicate_levels)


def build_replicate_index(groups, n_cells=None):
    """
    Build the replicate-sample index matrix used by RUVs.

    groups: sequence of labels (one per cell); cells sharing a label are
    replicates of each other (e.g. the individual).
    Returns (matrix, group_names): row i holds the 0-based column positions of
    group i, padded with SENTINEL to the widest group.
    """
    groups = pd.Series(np.asarray(groups)).astype(str)
    if n_cells is not None and len(groups) != n_cells:
        raise ValueError(f"groups has {len(groups)} labels for {n_cells} cells")
    names = list(pd.unique(groups))
    positions = [np.flatnonzero(groups.values == g) for g in names]
    width = max((len(p) for p in positions), default=0)
    matrix = np.full((len(names), width), SENTINEL, dtype=int)
    for i, pos in enumerate(positions):
        matrix[i, :len(pos)] = pos
    return matrix, names

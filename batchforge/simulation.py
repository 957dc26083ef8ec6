import numpy as np
import pandas as pd

from batchforge.io import Dataset

DEFAULT_INDIVIDUALS = ["NA19098", "NA19101", "NA19239"]


def define_batch_direction(n_genes=100,                  # Total number of genes
                           batches=("b1", "b2"),         # Batch identifiers
                           affected_fraction=(0.1, 0.4), # Fraction range of affected genes per batch
                           positive_prob=0.6,            # Probability of positive effects
                           seed=42):
    """Random +1/-1 direction vectors, one per batch, over a subset of genes."""
    rng = np.random.default_rng(seed)
    u_dict = {}
    for b in batches:
        frac = rng.uniform(affected_fraction[0], affected_fraction[1])
        n_affected = max(1, int(frac * n_genes))
        affected = rng.choice(n_genes, n_affected, replace=False)
        w = np.zeros(n_genes)
        w[affected] = rng.choice([-1, 1], size=n_affected, p=[1 - positive_prob, positive_prob])
        u_dict[b] = w
    return u_dict


def negative_binomial_counts(mu, dispersion, rng):
    """NB draws parameterised by mean and dispersion (var = mu + dispersion * mu^2)."""
    size = 1.0 / dispersion
    p = size / (size + mu)
    return rng.negative_binomial(size, p)


def simulate_dataset(n_genes=100,
                     n_individuals=3,
                     n_replicates=2,
                     cells_per_replicate=5,
                     n_controls=10,
                     n_mito=5,
                     individual_strength=1.0,   # sd of per-individual log2 fold changes
                     batch_strength=1.0,        # log2 shift applied along the batch direction
                     dispersion=0.1,
                     drop_replicates=None,      # dict {individual: [replicate, ...]} removed after simulation
                     seed=42,
                     verbose=False):
    """
    Simulate a UMI-like count matrix with nested batches (individual x replicate).

    Control genes carry the batch (technical) effect but no individual effect;
    endogenous genes carry both. Returns a Dataset with all QC flags set.
    """
    if n_controls + n_mito >= n_genes:
        raise ValueError(f"n_controls + n_mito ({n_controls + n_mito}) must be < n_genes ({n_genes})")
    rng = np.random.default_rng(seed)

    individuals = (DEFAULT_INDIVIDUALS + [f"IND{i}" for i in range(len(DEFAULT_INDIVIDUALS), n_individuals)])[:n_individuals]
    replicates = [f"r{r + 1}" for r in range(n_replicates)]

    n_endo = n_genes - n_controls
    gene_ids = ([f"MT-G{i + 1}" for i in range(n_mito)] +
                [f"ENSG{i + 1:011d}" for i in range(n_endo - n_mito)] +
                [f"ERCC-{i + 1:05d}" for i in range(n_controls)])
    is_control = np.array([g.startswith("ERCC-") for g in gene_ids])

    base_mu = rng.gamma(shape=2.0, scale=15.0, size=n_genes) + 2.0
    ind_lfc = {ind: np.where(is_control, 0.0, rng.normal(0, individual_strength, n_genes)) for ind in individuals}
    batches = [f"{ind}.{rep}" for ind in individuals for rep in replicates]
    u_dict = define_batch_direction(n_genes=n_genes, batches=batches, seed=seed + 1)

    columns, records = [], []
    for ind in individuals:
        for rep in replicates:
            batch = f"{ind}.{rep}"
            for c in range(cells_per_replicate):
                lib_scale = rng.lognormal(0, 0.25)
                log_mu = np.log2(base_mu) + ind_lfc[ind] + batch_strength * u_dict[batch]
                mu = lib_scale * np.power(2.0, log_mu)
                columns.append(negative_binomial_counts(mu, dispersion, rng))
                records.append({"cell": f"{batch}.c{c + 1:03d}", "individual": ind,
                                "replicate": rep, "batch": batch})

    counts = pd.DataFrame(np.column_stack(columns), index=pd.Index(gene_ids, name="gene"),
                          columns=pd.Index([r["cell"] for r in records], name="cell"))
    cell_metadata = pd.DataFrame(records).set_index("cell")

    if drop_replicates:
        keep = np.ones(len(cell_metadata), dtype=bool)
        for ind, reps in drop_replicates.items():
            keep &= ~((cell_metadata["individual"] == ind) & cell_metadata["replicate"].isin(reps)).values
        counts = counts.loc[:, keep]
        cell_metadata = cell_metadata.loc[keep]

    is_mito = np.array([g.startswith("MT-") for g in gene_ids])
    total = counts.sum(axis=0)
    cell_metadata["total_features"] = (counts > 0).sum(axis=0).values
    cell_metadata["total_counts"] = total.values
    cell_metadata["pct_counts_control"] = (counts.loc[is_control].sum(axis=0) / total * 100).values
    cell_metadata["pct_counts_mito"] = (counts.loc[is_mito].sum(axis=0) / total * 100).values
    cell_metadata["qc_pass"] = True

    gene_metadata = pd.DataFrame({"qc_pass": counts.sum(axis=1).values > 0, "is_control": is_control},
                                 index=counts.index)

    if verbose:
        print(f"Simulated {counts.shape[0]} genes x {counts.shape[1]} cells: "
              f"{len(individuals)} individuals x {len(replicates)} replicates")
        for b in pd.unique(cell_metadata["batch"]):
            print(f"  Batch {b}: {(cell_metadata['batch'] == b).sum()} cells, "
                  f"{int(np.count_nonzero(u_dict[b]))} genes shifted")
    return Dataset(counts, cell_metadata, gene_metadata)

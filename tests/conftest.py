import numpy as np
import pandas as pd
import anndata as ad
import pytest


def synthetic_counts_adata(
    n_genes: int = 200,
    n_a: int = 10,
    n_b: int = 10,
    n_de: int = 10,
    fold: float = 6.0,
    seed: int = 0,
) -> ad.AnnData:
    """
    Overdispersed NB counts, cells x genes.

    obs['condition'] = 'ctrl' (n_a) then 'treat' (n_b); the first `n_de`
    genes are `fold` times higher in 'treat'.
    """
    rng = np.random.default_rng(seed)
    n_cells = n_a + n_b

    gene_means = rng.uniform(5.0, 60.0, size=n_genes)
    disp = 0.05 + 1.0 / gene_means
    sf = rng.uniform(0.7, 1.3, size=n_cells)

    mu = sf[:, None] * gene_means[None, :]
    mu[n_a:, :n_de] *= fold

    size = 1.0 / disp
    p = size[None, :] / (size[None, :] + mu)
    X = rng.negative_binomial(np.broadcast_to(size, mu.shape), p).astype(np.float32)

    obs = pd.DataFrame(
        {
            "condition": pd.Categorical(["ctrl"] * n_a + ["treat"] * n_b),
            "batch": [f"b{i % 3}" for i in range(n_cells)],
        },
        index=pd.Index([f"cell{i:03d}" for i in range(n_cells)]),
    )
    var = pd.DataFrame(index=pd.Index([f"gene{i:04d}" for i in range(n_genes)]))

    adata = ad.AnnData(X=X, obs=obs, var=var)
    adata.uns["top_gene_list"] = adata.var_names.tolist()
    return adata


@pytest.fixture
def counts_adata():
    return synthetic_counts_adata()


@pytest.fixture
def small_adata():
    """Tiny dataset with a three-level label column and one unlabelled cell."""
    X = np.array(
        [
            [1, 0, 5, 2],
            [2, 0, 5, 3],
            [3, 0, 5, 8],
            [4, 0, 5, 1],
            [5, 0, 5, 0],
            [6, 0, 5, 9],
            [7, 0, 5, 4],
        ],
        dtype=np.float32,
    )
    obs = pd.DataFrame(
        {"group": ["x", "x", "y", "y", "z", "z", None]},
        index=pd.Index([f"c{i}" for i in range(7)]),
    )
    var = pd.DataFrame(index=pd.Index(["g0", "g1", "g2", "g3"]))
    adata = ad.AnnData(X=X, obs=obs, var=var)
    adata.uns["top_gene_list"] = ["g3", "g2", "g1", "g0"]
    return adata

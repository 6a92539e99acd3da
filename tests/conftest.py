import numpy as np
import pandas as pd
import pytest

from anndata import AnnData
from scipy.sparse import csr_matrix

import ballmap as bm


ALL_CELL_TYPES = ("HSC", "Pro-B", "Pre-B", "Monocyte", "Erythroid")
PSEUDOTIME = {"HSC": 0.0, "Pro-B": 0.3, "Pre-B": 0.5, "Monocyte": 0.6, "Erythroid": 0.8}
N_GENES = 60
N_MARKERS = 8


def simulate_counts(
    cell_types, n_per_type, donors, seed=0, profile_seed=42, prefix="cell"
) -> AnnData:
    """Poisson counts, every cell type with its own block of marker genes
    and every donor with its own gene-wise scaling."""
    profile_rng = np.random.default_rng(profile_seed)
    base = profile_rng.gamma(2.0, 1.0, size=N_GENES)
    profiles = {}
    for i, cell_type in enumerate(ALL_CELL_TYPES):
        profile = base.copy()
        profile[i * N_MARKERS : (i + 1) * N_MARKERS] += 15
        profiles[cell_type] = profile

    rng = np.random.default_rng(seed)
    blocks, records = [], []
    for donor in donors:
        effect = rng.lognormal(0, 0.1, size=N_GENES)
        for cell_type in cell_types:
            depth = rng.lognormal(0, 0.2, size=(n_per_type, 1))
            blocks.append(rng.poisson(profiles[cell_type] * effect * depth))
            for _ in range(n_per_type):
                records.append(
                    {
                        "cell_type": cell_type,
                        "donor": donor,
                        "pseudotime": PSEUDOTIME[cell_type] + rng.uniform(0, 0.05),
                    }
                )

    obs = pd.DataFrame(records)
    obs.index = [f"{prefix}_{i}" for i in range(len(obs))]
    obs["cell_type"] = obs["cell_type"].astype("category")
    obs["donor"] = obs["donor"].astype("category")

    return AnnData(
        X=csr_matrix(np.vstack(blocks).astype(np.float32)),
        obs=obs,
        var=pd.DataFrame(index=[f"gene_{j}" for j in range(N_GENES)]),
    )


def embedded_reference(centers, n_per_center=40, spread=0.5, seed=0) -> AnnData:
    """Reference with a ready embedding: one gaussian blob per label."""
    rng = np.random.default_rng(seed)
    labels = list(centers)
    X = np.vstack(
        [
            rng.normal(loc=centers[label], scale=spread, size=(n_per_center, 2))
            for label in labels
        ]
    )
    obs = pd.DataFrame(
        {
            "cell_type": pd.Categorical(np.repeat(labels, n_per_center), categories=labels),
            "pseudotime": np.repeat(np.arange(len(labels), dtype=float), n_per_center),
        },
        index=[f"ref_{i}" for i in range(X.shape[0])],
    )
    adata = AnnData(X=np.zeros((X.shape[0], 1)), obs=obs)
    adata.obsm["X_pca_harmony"] = X
    return adata


def embedded_query(coords, **obs) -> AnnData:
    coords = np.asarray(coords, dtype=float)
    adata = AnnData(
        X=np.zeros((coords.shape[0], 1)),
        obs=pd.DataFrame(obs, index=[f"q_{i}" for i in range(coords.shape[0])]),
    )
    adata.obsm["X_pca_harmony"] = coords
    return adata


@pytest.fixture(scope="session")
def reference():
    adata, _ = bm.pp.build_reference(
        simulate_counts(ALL_CELL_TYPES, 30, ("R1", "R2"), seed=1, prefix="ref"),
        batch_key="donor",
        n_top_genes=None,
        n_comps=10,
        vis_method=None,
    )
    return adata


@pytest.fixture(scope="session")
def b_reference():
    adata, _ = bm.pp.build_reference(
        simulate_counts(("HSC", "Pro-B", "Pre-B"), 40, ("R1", "R2"), seed=2, prefix="bref"),
        batch_key="donor",
        n_top_genes=None,
        n_comps=10,
        vis_method=None,
    )
    return adata


@pytest.fixture
def query():
    return simulate_counts(("Pro-B", "Pre-B", "Monocyte"), 25, ("P1", "P2"), seed=3, prefix="q")

# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import pickle

from pathlib import Path

import numpy as np
import pandas as pd

from anndata import AnnData
from harmonypy import run_harmony
from scipy.sparse import issparse
from scipy.stats import median_abs_deviation
from sklearn.cluster import KMeans
from sklearn.neighbors import NearestNeighbors

logger = logging.getLogger("ballmap")


def _to_dense(X) -> np.ndarray:
    return X.toarray() if issparse(X) else np.array(X, copy=True)


def _harmony_state(
    R: np.ndarray,
    Z: np.ndarray,
    K: int,
    sigma: np.ndarray,
    ref_basis_loadings: str,
    ref_basis_adjusted: str,
    vars_use: list[str] | str | None,
    converged: bool,
) -> dict:
    # [K, d] = [K, Nref] x [Nref, d]
    C = R @ Z
    return {
        # [K] the number of cells softly belonging to each cluster
        "Nr": R.sum(axis=1),
        # ref cluster centroids, not normalised
        # [K, d]
        "C": C,
        "K": int(K),
        # [K] cluster cross entropy regularization coef
        "sigma": np.asarray(sigma, dtype=np.float64).reshape(-1),
        "ref_basis_loadings": ref_basis_loadings,
        "ref_basis_adjusted": ref_basis_adjusted,
        "vars_use": vars_use,
        "converged": bool(converged),
        # [K, Nref]
        "R": R,
    }


def _harmony_integrate_python(
    adata: AnnData,
    key: list[str] | str,
    ref_basis_source: str = "X_pca",
    ref_basis_adjusted: str = "X_pca_harmony",
    ref_basis_loadings: str = "PCs",
    verbose: bool = False,
    **harmony_kwargs,
) -> None:
    ref_ho = run_harmony(
        adata.obsm[ref_basis_source],
        meta_data=adata.obs,
        vars_use=key,
        verbose=verbose,
        **harmony_kwargs,
    )

    # [N_ref, d]
    Z_corr = np.asarray(ref_ho.Z_corr).T
    adata.obsm[ref_basis_adjusted] = Z_corr

    converged = ref_ho.check_convergence(1)

    adata.uns["harmony"] = _harmony_state(
        R=np.asarray(ref_ho.R),
        Z=Z_corr,
        K=ref_ho.K,
        sigma=ref_ho.sigma,
        ref_basis_loadings=ref_basis_loadings,
        ref_basis_adjusted=ref_basis_adjusted,
        vars_use=key,
        converged=converged,
    )

    if not converged:
        logger.warning(
            "Harmony didn't converge. "
            "Consider increasing max_iter_harmony parameter value"
        )


def _run_soft_kmeans(
    adata_ref: AnnData,
    ref_basis: str = "X_pca",
    K: int | None = None,
    ref_basis_loadings: str = "PCs",
    sigma: float = 0.1,
    random_state: int = 0,
) -> None:
    N = adata_ref.shape[0]

    if K is None:
        K = int(np.min([np.round(N / 30.0), 100]))
    K = max(K, 1)

    Z = np.asarray(adata_ref.obsm[ref_basis], dtype=np.float64)

    model = KMeans(
        n_clusters=K, init="k-means++", n_init=10, max_iter=25, random_state=random_state
    )
    model.fit(Z)
    C = model.cluster_centers_

    # (1) Normalize
    Y = C / np.linalg.norm(C, ord=2, axis=1, keepdims=True)
    # (2) Assign cluster probabilities
    R = _assign_clusters(Z, sigma, Y, K)

    adata_ref.uns["harmony"] = _harmony_state(
        R=R,
        Z=Z,
        K=K,
        sigma=np.repeat(sigma, K) if np.isscalar(sigma) else sigma,
        ref_basis_loadings=ref_basis_loadings,
        ref_basis_adjusted=ref_basis,
        vars_use=[],
        converged=True,
    )


def _assign_clusters(
    X: np.ndarray, sigma: float | np.ndarray, Y: np.ndarray, K: int
) -> np.ndarray:
    if isinstance(sigma, (int, float)):
        sigma = np.array([sigma], dtype=np.float64)
    else:
        sigma = np.array(sigma, dtype=np.float64).reshape(-1)
        assert len(sigma) in (1, K), (
            "sigma paramater must be either a single float "
            "or an array of length equal to number of clusters"
        )

    # scaling by the row maximum as in harmonypy, but by its absolute value
    # so cells with only negative coordinates keep their direction
    X_cos = X / np.abs(X).max(axis=1, keepdims=True)
    # L2 normalization for cosine distance
    X_cos = X_cos / np.linalg.norm(X_cos, ord=2, axis=1, keepdims=True)

    # [K, N] = [K, d] x [Nq, d].T
    R = -2 * (1 - Y @ X_cos.T) / sigma[..., np.newaxis]
    R -= np.max(R, axis=0)
    R = np.exp(R)
    R /= R.sum(axis=0, keepdims=True)

    return R


def _batch_design(obs: pd.DataFrame, key: list[str] | str | None) -> pd.DataFrame:
    if key is None:
        return pd.DataFrame({"batch": ["1"] * len(obs)}, index=obs.index)

    keys = [key] if isinstance(key, str) else list(key)
    missing = [k for k in keys if k not in obs]
    if missing:
        logger.warning(
            "Batch columns %s not found in adata_query.obs, "
            "query cells are treated as a single batch",
            missing,
        )
        return pd.DataFrame({"batch": ["1"] * len(obs)}, index=obs.index)

    return obs[keys].astype(str)


def _ridge_penalty(
    batch_data: pd.DataFrame, lamb: float | np.ndarray | None
) -> np.ndarray:
    phi_n = batch_data.nunique().to_numpy().astype(int)
    # lambda (ridge regularization coef)
    if lamb is None:
        lamb = np.repeat([1] * len(phi_n), phi_n)
    elif isinstance(lamb, (float, int)):
        lamb = np.repeat([lamb] * len(phi_n), phi_n)
    elif len(lamb) == len(phi_n):
        lamb = np.repeat(lamb, phi_n)
    else:
        assert len(lamb) == np.sum(phi_n), "each batch variable must have a lambda"

    # [B + 1, B + 1]
    return np.diag(np.insert(np.asarray(lamb, dtype=np.float64), 0, 0))


def _correct_query(
    X: np.ndarray,
    phi_: np.ndarray,
    R: np.ndarray,
    Nr: np.ndarray,
    C: np.ndarray,
    lamb: np.ndarray,
) -> np.ndarray:
    # [d, N] = [N, d].T
    X_corr = X.copy().T
    lamb = lamb.copy()
    lamb[0, 0] = 0
    K = R.shape[0]

    for i in range(K):
        # [B + 1, N] = [B + 1, N] * [N]
        Phi_Rk = np.multiply(phi_, R[i, :])

        # [B + 1, B + 1] = [B + 1, N] x [N, B + 1]
        x = Phi_Rk @ phi_.T
        x[0, 0] += Nr[i]

        # [B + 1, d] = [B + 1, N] x [N, d]
        y = Phi_Rk @ X
        y[0, :] += C[i]

        # [B + 1, d] = [B + 1, B + 1] x [B + 1, d]
        W = np.linalg.inv(x + lamb) @ y
        W[0, :] = 0  # do not remove the intercept

        # [d, N] -= [B + 1, d].T x [B + 1, N]
        X_corr -= W.T @ Phi_Rk

    return X_corr.T


def _adjust_for_missing_genes(
    adata: AnnData, use_genes_list: pd.Index, use_genes_list_present: np.ndarray
) -> np.ndarray:
    """
    Sets zero expression to missing genes, returns non-sparse matrix.

    :param adata: query AnnData
    :param use_genes_list: which genes expressions to be left
    :param use_genes_list_present: which genes from ``use_genes_list`` are indeed present in adata
    :return: dense array of expressions of all the genes from ``use_genes_list``
        with expressions of missing genes set to zero
    """
    logger.warning(
        "%i out of %i "
        "genes from the reference are missing in the query dataset or have zero std in the reference, "
        "their expressions in the query will be set to zero",
        (~use_genes_list_present).sum(),
        use_genes_list.shape[0],
    )
    t = np.zeros((adata.shape[0], use_genes_list.shape[0]))
    t[:, use_genes_list_present] = _to_dense(
        adata[:, use_genes_list[use_genes_list_present]].X
    )

    return t


def _map_query_to_ref(
    adata_ref: AnnData,
    adata_query: AnnData,
    transferred_primary_basis: str = "X_pca_reference",
    ref_basis_loadings: str = "PCs",
    max_value: float | None = 10.0,
    use_genes_column: str | None = "highly_variable",
) -> None:
    if use_genes_column is None:
        use_genes_mask = np.ones(adata_ref.n_vars, dtype=bool)
    else:
        use_genes_mask = adata_ref.var[use_genes_column].to_numpy().astype(bool)

    use_genes_list = adata_ref.var_names[use_genes_mask]
    # [N_genes]
    stds = adata_ref.var["std"].to_numpy()[use_genes_mask]
    means = adata_ref.var["mean"].to_numpy()[use_genes_mask]

    in_query = use_genes_list.isin(adata_query.var_names)
    if not in_query.any():
        raise ValueError(
            f"None of the {len(use_genes_list)} reference feature genes "
            "are present in adata_query.var_names. "
            "Check that query and reference use the same gene identifiers."
        )

    use_genes_list_present = in_query & (stds != 0)

    if not all(use_genes_list_present):
        t = _adjust_for_missing_genes(
            adata_query, use_genes_list, use_genes_list_present
        )
    else:
        t = _to_dense(adata_query[:, use_genes_list].X).astype(np.float64)

    t[:, use_genes_list_present] -= means[use_genes_list_present][np.newaxis]
    t[:, use_genes_list_present] /= stds[use_genes_list_present][np.newaxis]

    if max_value is not None:
        t = np.clip(t, -max_value, max_value)

    # [cells, n_comps] = [cells, genes] * [genes, n_comps]
    adata_query.obsm[transferred_primary_basis] = np.asarray(
        t @ adata_ref.varm[ref_basis_loadings][use_genes_mask]
    )


def _cluster_maha_dist(
    query_coords: np.ndarray,
    reference_cluster_centroids: np.ndarray,
    reference_cluster_centroids_norm: np.ndarray,
    u: float,
    lamb: float,
) -> float:
    d = reference_cluster_centroids.shape[1]
    cluster_size = query_coords.shape[0]

    if cluster_size < u * d:
        logger.info(
            "Query cluster contains %i cells, too few to estimate confidence (need %i)",
            cluster_size,
            int(np.ceil(u * d)),
        )
        return np.nan

    # query cluster centroid and covariance in PC space
    query_cluster_centroid = query_coords.mean(axis=0)
    query_cluster_centered = query_coords - query_cluster_centroid
    query_cluster_cov = (
        query_cluster_centered.T @ query_cluster_centered / (cluster_size - 1)
    )

    # nearest reference centroid by cosine similarity
    ref_centroid_closest = reference_cluster_centroids[
        np.argmax(reference_cluster_centroids_norm @ query_cluster_centroid)
    ]

    query_cluster_cov += np.diag([lamb] * d)
    inv_cluster_cov = np.linalg.inv(query_cluster_cov)
    dif = ref_centroid_closest - query_cluster_centroid
    return float((dif @ inv_cluster_cov @ dif) ** 0.5)


def _cluster_covs(X_ref: np.ndarray, R: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    # [K, 1, N_ref]
    R_ = R[:, np.newaxis]
    # [d, N_ref]
    X_ref_T = X_ref.T

    # [K, 1]
    v1 = R.sum(axis=1, keepdims=True)
    v2 = (R**2).sum(axis=1, keepdims=True)
    # [K, d, 1] weighted means
    X_weighted_mean = (np.multiply(R_, X_ref_T).sum(axis=2) / v1)[..., np.newaxis]
    # [K, d, N_ref] = [d, N_ref] - [K, d, 1]
    X_centered = X_ref_T[np.newaxis] - X_weighted_mean
    X_centered_weighted = np.multiply(R_, X_centered)

    # [K, d, d] unbiased weighted covariances
    cluster_covs = np.einsum("npq,nrq->npr", X_centered_weighted, X_centered)
    cluster_covs = cluster_covs * (v1 / (v1**2 - v2))[..., np.newaxis]
    inv_cluster_covs = np.linalg.inv(cluster_covs)

    return inv_cluster_covs, X_weighted_mean


def _neighbors(
    X_ref: np.ndarray, X_query: np.ndarray, k: int, metric: str = "euclidean"
) -> tuple[np.ndarray, np.ndarray]:
    """
    k nearest reference cells for every query cell.

    :return: distances and indices, both [Nq, k], sorted from nearest to farthest
    """
    nn = NearestNeighbors(n_neighbors=k, metric=metric)
    nn.fit(X_ref)
    return nn.kneighbors(X_query)


def _plurality_vote(
    codes: np.ndarray, n_labels: int, tie_break: str = "nearest"
) -> tuple[np.ndarray, np.ndarray]:
    """
    Plurality vote over neighbor label codes.

    :param codes: [Nq, k] integer label codes of the neighbors, nearest first
    :param n_labels: number of distinct label codes
    :param tie_break: ``"nearest"`` chooses among tied labels the one met first
        walking from the nearest neighbor; ``"label_order"`` the one with the smallest code
    :return: winning codes [Nq] and fraction of neighbors carrying them [Nq]
    """
    n_cells, k = codes.shape
    rows = np.arange(n_cells)

    # [Nq, n_labels]
    counts = np.zeros((n_cells, n_labels), dtype=np.int64)
    np.add.at(counts, (np.repeat(rows, k), codes.ravel()), 1)
    tied = counts == counts.max(axis=1, keepdims=True)

    if tie_break == "nearest":
        # position of the first neighbor carrying each label
        first_seen = np.full((n_cells, n_labels), k, dtype=np.int64)
        for j in range(k - 1, -1, -1):
            first_seen[rows, codes[:, j]] = j
        winner = np.argmin(np.where(tied, first_seen, k + 1), axis=1)
    elif tie_break == "label_order":
        winner = np.argmax(tied, axis=1)
    else:
        raise ValueError("`tie_break` should be either 'nearest' or 'label_order'")

    confidence = counts[rows, winner] / k
    return winner, confidence


def _mad_threshold(
    scores: np.ndarray, mad_threshold: float, mad_scale: float | str
) -> tuple[float, float]:
    finite = scores[np.isfinite(scores)]
    if finite.size == 0:
        return np.nan, np.nan
    mad = median_abs_deviation(finite, scale=mad_scale)
    return float(np.median(finite) + mad_threshold * mad), float(mad)


def _load_model(model):
    if isinstance(model, (str, Path)):
        with open(model, "rb") as model_file:
            return pickle.load(model_file)
    return model


def _save_model(model, save_path: str | Path) -> None:
    with open(save_path, "wb") as model_file:
        pickle.dump(model, model_file, protocol=pickle.HIGHEST_PROTOCOL)
    logger.info("Model is saved in %s", save_path)

# pylint: disable=C0103, C0116, C0114, C0115, W0511
from __future__ import annotations

import logging
import warnings

from pathlib import Path
from typing import Callable

import numpy as np
import pandas as pd

from anndata import AnnData

from ._utils import (
    _assign_clusters,
    _batch_design,
    _cluster_covs,
    _cluster_maha_dist,
    _correct_query,
    _load_model,
    _mad_threshold,
    _map_query_to_ref,
    _neighbors,
    _plurality_vote,
    _ridge_penalty,
    _save_model,
)
from .composition import composition


logger = logging.getLogger("ballmap")

__all__ = [
    "map_embedding",
    "umap",
    "tsne",
    "per_cell_confidence",
    "per_cluster_confidence",
    "mapping_error",
    "mapping_qc",
    "transfer_labels_kNN",
    "composition",
]


def _check_harmony(adata_ref: AnnData) -> dict:
    assert "harmony" in adata_ref.uns, (
        "Harmony object not found in adata_ref.uns['harmony']. "
        "First, build the reference with ballmap.pp.build_reference, "
        "or run ballmap.pp.harmony_integrate / ballmap.pp.soft_kmeans on it."
    )
    return adata_ref.uns["harmony"]


def map_embedding(
    adata_query: AnnData,
    adata_ref: AnnData,
    key: list[str] | str | None = None,
    lamb: float | np.ndarray | None = None,
    sigma: float | np.ndarray | None = None,
    use_genes_column: str | None = "highly_variable",
    transferred_adjusted_basis: str = "X_pca_harmony",
    transferred_primary_basis: str = "X_pca_reference",
) -> None:
    """Maps ``adata_query`` into the batch-corrected embedding of ``adata_ref``.

    Query cells are scaled with the reference gene means and stds, projected
    with the reference loadings, softly assigned to the reference clusters and
    corrected for the query batches with a mixture of linear experts.

    Adds the uncorrected projection to ``adata_query.obsm[transferred_primary_basis]``,
    the corrected coordinates to ``adata_query.obsm[transferred_adjusted_basis]``
    and the cluster memberships to ``adata_query.obsm[transferred_adjusted_basis + "_symphony_R"]``.
    ``adata_ref`` is not modified.

    :param adata_query: query AnnData object, log-normalized
    :type adata_query: AnnData
    :param adata_ref: reference AnnData object built with ``pp.build_reference``
    :type adata_ref: AnnData
    :param key: which of the columns from ``adata_query.obs`` to consider as batch keys. If None or
        missing from ``adata_query.obs``, all query cells are treated as one batch, defaults to None
    :type key: list[str] | str | None, optional
    :param lamb: ridge regularization parameter for the linear model, defaults to None (1 for every batch)
    :type lamb: float | np.ndarray | None, optional
    :param sigma: entropy regularization parameter for soft k-means, defaults to the reference's one
    :type sigma: float | np.ndarray | None, optional
    :param use_genes_column: ``adata_ref.var[use_genes_column]`` genes will be used to map query embeddings to reference, defaults to "highly_variable"
    :type use_genes_column: str | None, optional
    :param transferred_adjusted_basis: in ``adata_query.obsm[transferred_adjusted_basis]`` corrected coords will be saved, defaults to "X_pca_harmony"
    :type transferred_adjusted_basis: str, optional
    :param transferred_primary_basis: in ``adata_query.obsm[transferred_primary_basis]`` uncorrected coords will be saved, defaults to "X_pca_reference"
    :type transferred_primary_basis: str, optional
    :raises ValueError: if no reference feature gene is present in the query
    """
    assert (
        "mean" in adata_ref.var
    ), "Gene expression means are expected to be saved in adata_ref.var"
    assert (
        "std" in adata_ref.var
    ), "Gene expression stds are expected to be saved in adata_ref.var"
    if use_genes_column is not None:
        assert (
            use_genes_column in adata_ref.var
        ), f"Column `{use_genes_column}` not found in adata_ref.var. Set `use_genes_column` parameter properly"

    harmony_ref = _check_harmony(adata_ref)

    if "log1p" not in adata_query.uns:
        warnings.warn("Gene expressions in adata_query should be log1p-transformed")

    # 1. map query to ref initial embedding
    _map_query_to_ref(
        adata_ref=adata_ref,
        adata_query=adata_query,
        transferred_primary_basis=transferred_primary_basis,
        ref_basis_loadings=harmony_ref["ref_basis_loadings"],
        use_genes_column=use_genes_column,
    )

    # 2. assign clusters
    # [Nq, d]
    X = adata_query.obsm[transferred_primary_basis]
    C = np.asarray(harmony_ref["C"])
    Y = C / np.linalg.norm(C, ord=2, axis=1, keepdims=True)

    if sigma is None:
        sigma = harmony_ref.get("sigma")
    if sigma is None:
        sigma = 0.1

    R = _assign_clusters(X, sigma, Y, int(harmony_ref["K"]))

    # 3. correct query embeddings
    batch_data = _batch_design(adata_query.obs, key)
    # [B, N] = [N, B].T  (B -- batch num)
    phi = pd.get_dummies(batch_data).to_numpy(dtype=np.float64).T
    # [B + 1, N]
    phi_ = np.concatenate([np.ones((1, phi.shape[1])), phi], axis=0)

    adata_query.obsm[transferred_adjusted_basis] = _correct_query(
        X, phi_, R, np.asarray(harmony_ref["Nr"]), C, _ridge_penalty(batch_data, lamb)
    )
    adata_query.obsm[f"{transferred_adjusted_basis}_symphony_R"] = R.T

    logger.info(
        "Mapped %i query cells from %i batch(es) onto %i reference clusters",
        adata_query.n_obs,
        phi.shape[0],
        R.shape[0],
    )


def _embedding(
    adata: AnnData,
    use_rep: str,
    slot: str,
    use_model,
    save_path: str | Path | None,
    return_model: bool,
    fit: Callable[[np.ndarray], tuple[object, np.ndarray]],
):
    X = adata.X if use_rep == "X" else adata.obsm[use_rep]
    X = np.asarray(X)

    if use_model is None:
        model, coords = fit(X)
    else:
        model = _load_model(use_model)
        if not hasattr(model, "transform"):
            raise TypeError(
                "`use_model` should be a path to a pickled model or the model itself."
            )
        coords = model.transform(X)

    adata.obsm[slot] = np.asarray(coords)

    if save_path is not None:
        _save_model(model, save_path)

    if return_model:
        return model
    return None


def umap(
    adata: AnnData,
    use_rep: str = "X_pca_harmony",
    umap_slot: str = "X_umap",
    use_model: "umap.UMAP" | str | Path | None = None,
    save_path: str | Path | None = None,
    return_model: bool = False,
    **kwargs,
):
    """Fit a umap-learn model on ``adata.obsm[use_rep]`` if ``use_model`` is None,
    or project ``adata.obsm[use_rep]`` into the existing embedding of ``use_model``.

    :param adata: AnnData object
    :type adata: AnnData
    :param use_rep: ``adata.obsm[use_rep]`` will be used as features, "X" for ``adata.X``, defaults to "X_pca_harmony"
    :type use_rep: str, optional
    :param umap_slot: to ``adata.obsm[umap_slot]`` embedding will be saved, defaults to "X_umap"
    :type umap_slot: str, optional
    :param use_model: fitted ``umap.UMAP`` object or path to its pickle, defaults to None
    :type use_model: umap.UMAP | str | Path | None, optional
    :param save_path: filepath to pickle the model to, defaults to None
    :type save_path: str | Path | None, optional
    :param return_model: if to return the model, defaults to False
    :type return_model: bool, optional
    :param kwargs: forwarded to ``umap.UMAP`` when fitting
    """

    def fit(X):
        from umap import UMAP

        model = UMAP(**kwargs).fit(X)
        return model, model.embedding_

    return _embedding(adata, use_rep, umap_slot, use_model, save_path, return_model, fit)


def tsne(
    adata: AnnData,
    use_rep: str = "X_pca_harmony",
    t_sne_slot: str = "X_tsne",
    use_model: "openTSNE.TSNEEmbedding" | str | Path | None = None,
    save_path: str | Path | None = None,
    return_model: bool = False,
    **kwargs,
):
    """Run openTSNE on ``adata.obsm[use_rep]`` if ``use_model`` is None,
    or project ``adata.obsm[use_rep]`` into the existing embedding of ``use_model``.

    :param adata: AnnData object
    :type adata: AnnData
    :param use_rep: ``adata.obsm[use_rep]`` will be used as features, "X" for ``adata.X``, defaults to "X_pca_harmony"
    :type use_rep: str, optional
    :param t_sne_slot: to ``adata.obsm[t_sne_slot]`` embedding will be saved, defaults to "X_tsne"
    :type t_sne_slot: str, optional
    :param use_model: ``openTSNE.TSNEEmbedding`` object or path to its pickle, defaults to None
    :type use_model: openTSNE.TSNEEmbedding | str | Path | None, optional
    :param save_path: filepath to pickle the model to, defaults to None
    :type save_path: str | Path | None, optional
    :param return_model: if to return the model, defaults to False
    :type return_model: bool, optional
    :param kwargs: forwarded to ``openTSNE.TSNE`` when fitting
    """
    try:
        from openTSNE import TSNE
    except ImportError as exc:
        raise ImportError(
            "\nPlease install openTSNE:\n\n\tpip install openTSNE"
        ) from exc

    def fit(X):
        model = TSNE(**kwargs).fit(X)
        return model, np.asarray(model)

    return _embedding(adata, use_rep, t_sne_slot, use_model, save_path, return_model, fit)


def per_cell_confidence(
    adata_query: AnnData,
    adata_ref: AnnData,
    ref_basis_adjusted: str = "X_pca_harmony",
    query_basis_adjusted: str = "X_pca_harmony",
    transferred_primary_basis: str = "X_pca_reference",
    obs: str = "symphony_per_cell_dist",
) -> None:
    """
    Calculates the weighted Mahalanobis distance for query cells to reference clusters.
    Higher distance metric indicates less confidence.
    Saves the metric to ``adata_query.obs[obs]``

    :param adata_query: query adata object mapped to ``adata_ref`` with :func:`map_embedding`
    :type adata_query: AnnData
    :param adata_ref: reference adata object (with Harmony object in ``adata_ref.uns``)
    :type adata_ref: AnnData
    :param ref_basis_adjusted: ``adata_ref.obsm[ref_basis_adjusted]`` should contain the batch-corrected reference representation, defaults to "X_pca_harmony"
    :type ref_basis_adjusted: str, optional
    :param query_basis_adjusted: ``adata_query.obsm[query_basis_adjusted + "_symphony_R"]`` should contain query cluster memberships, defaults to "X_pca_harmony"
    :type query_basis_adjusted: str, optional
    :param transferred_primary_basis: ``adata_query.obsm[transferred_primary_basis]`` should contain the uncorrected query projection, defaults to "X_pca_reference"
    :type transferred_primary_basis: str, optional
    :param obs: at ``adata_query.obs[obs]`` confidence metric will be saved, defaults to "symphony_per_cell_dist"
    :type obs: str, optional
    """
    harmony = _check_harmony(adata_ref)

    # [K, Nref]
    R = np.asarray(harmony["R"])
    K = R.shape[0]

    # [K, d, d], [K, d, 1]
    inv_cluster_covs, X_weighted_mean = _cluster_covs(
        np.asarray(adata_ref.obsm[ref_basis_adjusted]), R
    )

    # [Nq, d]
    X_q = np.asarray(adata_query.obsm[transferred_primary_basis])
    # [K, Nq, d] = [1, Nq, d] - [K, 1, d]
    centered = X_q[np.newaxis] - X_weighted_mean.squeeze(2)[:, np.newaxis]
    # [K, Nq]
    maha_dists = (
        np.sum(np.multiply(centered @ inv_cluster_covs, centered), axis=2) ** 0.5
    )

    # [K, Nq]
    Rq = adata_query.obsm[f"{query_basis_adjusted}_symphony_R"].T
    assert Rq.shape[0] == K, "Query cluster memberships don't match adata_ref clusters"

    # average distance weighted by cluster membership
    adata_query.obs[obs] = np.sum(np.multiply(maha_dists, Rq), axis=0)


def per_cluster_confidence(
    adata_query: AnnData,
    adata_ref: AnnData,
    cluster_key: str,
    u: float = 2,
    lamb: float = 0,
    transferred_primary_basis: str = "X_pca_reference",
    obs: str | None = "symphony_per_cluster_dist",
    uns: str | None = "symphony_per_cluster_dist",
) -> None:
    """Calculates the Mahalanobis distance from user-defined query clusters to their nearest
    reference centroid after initial projection into reference PCA space.
    All query cells in a cluster get the same score. Higher distance indicates less confidence.
    Clusters smaller than u * d, where d is the dimensionality of the embedding, get no score (NaN).

    :param adata_query: query adata object mapped to ``adata_ref`` with :func:`map_embedding`
    :type adata_query: AnnData
    :param adata_ref: reference adata object (with Harmony object in ``adata_ref.uns``)
    :type adata_ref: AnnData
    :param cluster_key: column of ``adata_query.obs`` with query cluster labels
    :type cluster_key: str
    :param u: at least u * d cells are to be assigned to a cluster, defaults to 2
    :type u: float, optional
    :param lamb: ridge coef for covariance matrix inversion, defaults to 0
    :type lamb: float, optional
    :param transferred_primary_basis: ``adata_query.obsm[transferred_primary_basis]`` should contain the uncorrected query projection, defaults to "X_pca_reference"
    :type transferred_primary_basis: str, optional
    :param obs: if not None, dists are written to ``adata_query.obs[obs]`` for each cell, defaults to "symphony_per_cluster_dist"
    :type obs: str | None, optional
    :param uns: if not None, dists are written to ``adata_query.uns[uns]`` for each cluster, defaults to "symphony_per_cluster_dist"
    :type uns: str | None, optional
    """
    harmony = _check_harmony(adata_ref)

    # [K, d]
    reference_cluster_centroids = np.asarray(harmony["C"]) / np.asarray(harmony["Nr"])[
        ..., np.newaxis
    ]
    reference_cluster_centroids_norm = reference_cluster_centroids / np.linalg.norm(
        reference_cluster_centroids, ord=2, axis=1, keepdims=True
    )

    X_q = np.asarray(adata_query.obsm[transferred_primary_basis])
    groups = adata_query.obs.groupby(cluster_key, observed=True).indices

    dists = pd.Series(
        {
            cluster: _cluster_maha_dist(
                X_q[idx],
                reference_cluster_centroids,
                reference_cluster_centroids_norm,
                u=u,
                lamb=lamb,
            )
            for cluster, idx in groups.items()
        },
        dtype=np.float64,
    )

    if uns is not None:
        adata_query.uns[uns] = {
            "key": cluster_key,
            "dist": dists.to_numpy(),
            "cluster_labels": dists.index.astype(str).to_numpy(),
        }
    if obs is not None:
        adata_query.obs[obs] = (
            adata_query.obs[cluster_key].astype(object).map(dists).astype(np.float64)
        )


def _clip_k(k: int, n_ref: int) -> int:
    if k > n_ref:
        warnings.warn(
            f"k={k} is larger than the number of reference cells ({n_ref}), using k={n_ref}"
        )
        return n_ref
    return k


def mapping_error(
    adata_query: AnnData,
    adata_ref: AnnData,
    method: str = "knn",
    k: int = 30,
    metric: str = "euclidean",
    ref_basis: str = "X_pca_harmony",
    query_basis: str = "X_pca_harmony",
    obs: str = "mapping_error_score",
    **kwargs,
) -> None:
    """Per-cell mapping error, saved to ``adata_query.obs[obs]``.
    Higher values mean the cell fits the reference neighborhood worse.

    ``method="knn"`` takes the mean distance to the ``k`` nearest reference cells,
    ``method="mahalanobis"`` delegates to :func:`per_cell_confidence` (``kwargs`` are forwarded there).

    :param adata_query: query mapped with :func:`map_embedding`
    :type adata_query: AnnData
    :param adata_ref: reference AnnData
    :type adata_ref: AnnData
    :param method: "knn" or "mahalanobis", defaults to "knn"
    :type method: str, optional
    :param k: number of neighbors, defaults to 30
    :type k: int, optional
    :param metric: "euclidean" or "cosine" (any ``sklearn.neighbors.NearestNeighbors`` metric), defaults to "euclidean"
    :type metric: str, optional
    :param ref_basis: reference embedding, defaults to "X_pca_harmony"
    :type ref_basis: str, optional
    :param query_basis: query embedding, defaults to "X_pca_harmony"
    :type query_basis: str, optional
    :param obs: output column, defaults to "mapping_error_score"
    :type obs: str, optional
    """
    if method == "knn":
        dists, _ = _neighbors(
            np.asarray(adata_ref.obsm[ref_basis]),
            np.asarray(adata_query.obsm[query_basis]),
            _clip_k(k, adata_ref.n_obs),
            metric=metric,
        )
        adata_query.obs[obs] = dists.mean(axis=1)
    elif method == "mahalanobis":
        per_cell_confidence(
            adata_query,
            adata_ref,
            ref_basis_adjusted=ref_basis,
            query_basis_adjusted=query_basis,
            obs=obs,
            **kwargs,
        )
    else:
        raise ValueError("`method` should be either 'knn' or 'mahalanobis'.")


def mapping_qc(
    adata_query: AnnData,
    score_obs: str = "mapping_error_score",
    mad_threshold: float = 2.5,
    batch_key: str | None = None,
    min_cells: int = 30,
    max_error: float | None = None,
    mad_scale: float | str = "normal",
    obs: str = "mapping_error_qc",
) -> None:
    """Flags cells whose mapping error exceeds ``median + mad_threshold * MAD``.

    With ``batch_key`` the median and MAD are estimated within each batch, since
    mapping error depends on sequencing depth and library quality of a sample.
    Batches with fewer than ``min_cells`` cells or zero MAD use the global threshold.

    Writes ``adata_query.obs[obs]`` (True for cells passing QC) and the threshold
    applied to each cell to ``adata_query.obs[obs + "_threshold"]``.

    :param adata_query: query AnnData with ``adata_query.obs[score_obs]``
    :type adata_query: AnnData
    :param score_obs: column with the mapping error, defaults to "mapping_error_score"
    :type score_obs: str, optional
    :param mad_threshold: number of MADs above the median, defaults to 2.5
    :type mad_threshold: float, optional
    :param batch_key: column with donor/batch ids for per-batch thresholds, defaults to None
    :type batch_key: str | None, optional
    :param min_cells: smallest batch to get its own threshold, defaults to 30
    :type min_cells: int, optional
    :param max_error: cells with larger error fail regardless of the MAD threshold, defaults to None
    :type max_error: float | None, optional
    :param mad_scale: ``scale`` of ``scipy.stats.median_abs_deviation``; "normal" matches R's ``mad``, defaults to "normal"
    :type mad_scale: float | str, optional
    :param obs: output column, defaults to "mapping_error_qc"
    :type obs: str, optional
    """
    scores = adata_query.obs[score_obs].to_numpy(dtype=np.float64)
    global_threshold, _ = _mad_threshold(scores, mad_threshold, mad_scale)
    thresholds = np.full(scores.shape[0], global_threshold)

    if batch_key is not None and batch_key not in adata_query.obs:
        warnings.warn(
            f"Batch column `{batch_key}` not found in adata_query.obs, using a global threshold"
        )
    elif batch_key is not None:
        groups = adata_query.obs.groupby(batch_key, observed=True).indices
        for batch, idx in groups.items():
            if len(idx) < min_cells:
                logger.info(
                    "Batch '%s' has %i cells (< %i), using the global threshold",
                    batch,
                    len(idx),
                    min_cells,
                )
                continue
            threshold, mad = _mad_threshold(scores[idx], mad_threshold, mad_scale)
            if not mad > 0:
                logger.info("Batch '%s' has zero MAD, using the global threshold", batch)
                continue
            thresholds[idx] = threshold

    passed = np.isfinite(scores) & (scores <= thresholds)
    if max_error is not None:
        passed &= scores <= max_error

    adata_query.obs[obs] = passed
    adata_query.obs[f"{obs}_threshold"] = thresholds

    logger.info(
        "%i out of %i query cells failed mapping QC", (~passed).sum(), passed.shape[0]
    )


def _qc_mask(adata_query: AnnData, qc_obs: str | None, retain_failed: bool) -> np.ndarray:
    if retain_failed:
        return np.ones(adata_query.n_obs, dtype=bool)
    if qc_obs is None or qc_obs not in adata_query.obs:
        warnings.warn(
            f"Mapping QC column `{qc_obs}` not found in adata_query.obs, "
            "final labels are not filtered by mapping QC. Run ballmap.tl.mapping_qc first."
        )
        return np.ones(adata_query.n_obs, dtype=bool)
    return adata_query.obs[qc_obs].to_numpy(dtype=bool)


def _is_continuous(labels: pd.Series) -> bool:
    return (
        pd.api.types.is_numeric_dtype(labels)
        and not pd.api.types.is_bool_dtype(labels)
        and not isinstance(labels.dtype, pd.CategoricalDtype)
    )


def _weighted_mean(values: np.ndarray, dists: np.ndarray, weights: str) -> np.ndarray:
    if weights == "uniform":
        return values.mean(axis=1)
    if weights != "distance":
        raise ValueError("`weights` should be either 'uniform' or 'distance'.")

    with np.errstate(divide="ignore"):
        w = 1.0 / dists
    # exact matches take all the weight
    exact = np.isinf(w).any(axis=1)
    w[exact] = np.isinf(w[exact]).astype(np.float64)
    return (values * w).sum(axis=1) / w.sum(axis=1)


def transfer_labels_kNN(
    adata_query: AnnData,
    adata_ref: AnnData,
    ref_labels: list[str] | str,
    k: int = 30,
    query_labels: list[str] | str | None = None,
    ref_basis: str = "X_pca_harmony",
    query_basis: str = "X_pca_harmony",
    metric: str = "euclidean",
    weights: str = "uniform",
    tie_break: str = "nearest",
    qc_obs: str | None = "mapping_error_qc",
    retain_failed: bool = False,
) -> None:
    """kNN label transfer from ``adata_ref`` to ``adata_query``.

    Categorical labels get the plurality vote of the ``k`` nearest reference cells
    and a confidence, the fraction of neighbors carrying the predicted label.
    Numeric labels (e.g. pseudotime) get the neighbors' mean value.

    For every label three columns are written to ``adata_query.obs``:

    - ``{query_label}_initial``: prediction for every cell
    - ``{query_label}``: final prediction, missing for cells failing mapping QC
    - ``{query_label}_confidence``: vote fraction (categorical labels only)

    :param adata_query: query mapped with :func:`map_embedding`
    :type adata_query: AnnData
    :param adata_ref: reference AnnData
    :type adata_ref: AnnData
    :param ref_labels: column(s) of ``adata_ref.obs`` to transfer
    :type ref_labels: list[str] | str
    :param k: number of neighbors, defaults to 30
    :type k: int, optional
    :param query_labels: output names in corresponding order, defaults to ``ref_labels``
    :type query_labels: list[str] | str | None, optional
    :param ref_basis: reference embedding, defaults to "X_pca_harmony"
    :type ref_basis: str, optional
    :param query_basis: query embedding, defaults to "X_pca_harmony"
    :type query_basis: str, optional
    :param metric: neighbor search metric, "euclidean" or "cosine", defaults to "euclidean"
    :type metric: str, optional
    :param weights: "uniform" or "distance" weighting of numeric labels, defaults to "uniform"
    :type weights: str, optional
    :param tie_break: "nearest" resolves vote ties by the tied label met first among neighbors
        ordered by distance, "label_order" by the reference category order, defaults to "nearest"
    :type tie_break: str, optional
    :param qc_obs: boolean column of ``adata_query.obs`` with the mapping QC result, defaults to "mapping_error_qc"
    :type qc_obs: str | None, optional
    :param retain_failed: keep final labels of cells failing mapping QC, defaults to False
    :type retain_failed: bool, optional
    """
    ref_labels = [ref_labels] if isinstance(ref_labels, str) else list(ref_labels)
    if query_labels is None:
        query_labels = ref_labels
    query_labels = [query_labels] if isinstance(query_labels, str) else list(query_labels)
    assert len(query_labels) == len(
        ref_labels
    ), "`query_labels` should correspond to `ref_labels`"

    missing = [label for label in ref_labels if label not in adata_ref.obs]
    if missing:
        raise ValueError(f"Labels {missing} not found in adata_ref.obs")

    X_ref = np.asarray(adata_ref.obsm[ref_basis])
    X_query = np.asarray(adata_query.obsm[query_basis])
    qc_pass = _qc_mask(adata_query, qc_obs, retain_failed)

    for ref_label, query_label in zip(ref_labels, query_labels):
        labels = adata_ref.obs[ref_label]
        labeled = labels.notna().to_numpy()
        dists, idx = _neighbors(
            X_ref[labeled], X_query, _clip_k(k, int(labeled.sum())), metric=metric
        )

        if _is_continuous(labels):
            values = labels.to_numpy(dtype=np.float64, na_value=np.nan)[labeled][idx]
            initial = _weighted_mean(values, dists, weights)
            final = np.where(qc_pass, initial, np.nan)
        else:
            labels = labels.astype("category")
            categories = labels.cat.categories
            codes = labels.cat.codes.to_numpy()[labeled][idx]
            winner, confidence = _plurality_vote(codes, len(categories), tie_break)

            initial = pd.Categorical.from_codes(winner, categories=categories)
            final = pd.Categorical.from_codes(
                np.where(qc_pass, winner, -1), categories=categories
            )
            adata_query.obs[f"{query_label}_confidence"] = confidence

        adata_query.obs[f"{query_label}_initial"] = initial
        adata_query.obs[query_label] = final

        logger.info(
            "Transferred '%s' to '%s' with k=%i, %i cells without final label",
            ref_label,
            query_label,
            idx.shape[1],
            (~qc_pass).sum(),
        )

# pylint: disable=C0103, W0511, C0114
from __future__ import annotations

import logging
import warnings

from pathlib import Path

import numpy as np
import scanpy as sc

from anndata import AnnData

from ._utils import (
    _harmony_integrate_python,
    _run_soft_kmeans,
    _to_dense,
)


logger = logging.getLogger("ballmap")


def log_normalize(
    adata: AnnData,
    target_sum: float = 1e4,
    counts_layer: str | None = "counts",
) -> None:
    """Library size normalization to ``target_sum`` followed by ``log1p``, in place.
    Raw counts are kept in ``adata.layers[counts_layer]``.

    :param adata: AnnData object with raw (or ambient-corrected) counts in ``adata.X``
    :type adata: AnnData
    :param target_sum: total counts per cell after normalization, defaults to 1e4
    :type target_sum: float, optional
    :param counts_layer: layer to keep the raw counts in, None to not keep them, defaults to "counts"
    :type counts_layer: str | None, optional
    """
    if "log1p" in adata.uns:
        logger.warning("adata is already log1p-transformed, skipping normalization")
        return

    if counts_layer is not None:
        adata.layers[counts_layer] = adata.X.copy()

    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)


def harmony_integrate(
    adata: AnnData,
    key: list[str] | str,
    ref_basis_source: str = "X_pca",
    ref_basis_adjusted: str = "X_pca_harmony",
    ref_basis_loadings: str = "PCs",
    verbose: bool = False,
    random_seed: int = 1,
    **harmony_kwargs,
) -> None:
    """
    Run Harmony batch correction on adata, save corrected output to ``adata.obsm``,
    save all the parameters necessary for query mapping to ``adata.uns["harmony"]``

    :param adata: adata object with batch
    :type adata: AnnData
    :param key: which columns from ``adata.obs`` to use as batch keys (``vars_use`` parameter of Harmony)
    :type key: list[str] | str
    :param ref_basis_source: ``adata.obsm[ref_basis_source]`` will be used as input embedding to Harmony, defaults to "X_pca"
    :type ref_basis_source: str, optional
    :param ref_basis_adjusted: slot where to put corrected coordinates, defaults to "X_pca_harmony"
    :type ref_basis_adjusted: str, optional
    :param ref_basis_loadings: slot with feature loadings to the original embedding, defaults to "PCs"
    :type ref_basis_loadings: str, optional
    :param verbose: if to print logs of steps of integration, defaults to False
    :type verbose: bool, optional
    :param random_seed: random seed, defaults to 1
    :type random_seed: int, optional
    """
    logger.info("Harmony integration on '%s' by %s", ref_basis_source, key)
    _harmony_integrate_python(
        adata=adata,
        key=key,
        ref_basis_source=ref_basis_source,
        ref_basis_adjusted=ref_basis_adjusted,
        ref_basis_loadings=ref_basis_loadings,
        verbose=verbose,
        random_state=random_seed,
        **harmony_kwargs,
    )


def soft_kmeans(
    adata: AnnData,
    ref_basis: str = "X_pca",
    ref_basis_adjusted: str = "X_pca_harmony",
    ref_basis_loadings: str = "PCs",
    K: int | None = None,
    sigma: float = 0.1,
    random_seed: int = 1,
) -> None:
    """Clustering step of Harmony without batch correction, for references
    that have no batches. The embedding is copied to ``adata.obsm[ref_basis_adjusted]``
    unchanged, so the reference exposes the same slots as after :func:`harmony_integrate`.

    :param adata: reference AnnData object
    :type adata: AnnData
    :param ref_basis: embedding to cluster, defaults to "X_pca"
    :type ref_basis: str, optional
    :param ref_basis_adjusted: where to copy the embedding, defaults to "X_pca_harmony"
    :type ref_basis_adjusted: str, optional
    :param ref_basis_loadings: slot with feature loadings, defaults to "PCs"
    :type ref_basis_loadings: str, optional
    :param K: number of clusters, defaults to ``min(round(N / 30), 100)``
    :type K: int | None, optional
    :param sigma: entropy regularization of soft k-means, defaults to 0.1
    :type sigma: float, optional
    :param random_seed: random seed for k-means, defaults to 1
    :type random_seed: int, optional
    """
    adata.obsm[ref_basis_adjusted] = np.array(adata.obsm[ref_basis], copy=True)
    _run_soft_kmeans(
        adata,
        ref_basis=ref_basis_adjusted,
        K=K,
        ref_basis_loadings=ref_basis_loadings,
        sigma=sigma,
        random_state=random_seed,
    )


def build_reference(
    adata: AnnData,
    batch_key: list[str] | str | None = None,
    n_top_genes: int | None = 2000,
    n_comps: int = 20,
    target_sum: float = 1e4,
    max_value: float = 10.0,
    vis_method: str | None = "umap",
    vis_model_path: str | Path | None = None,
    random_seed: int = 1,
    harmony_kwargs: dict | None = None,
    vis_kwargs: dict | None = None,
) -> tuple[AnnData, object]:
    """Build a reference atlas from raw counts.

    1. log(CP10K + 1) library size normalization
    2. top ``n_top_genes`` highly variable genes (batch-aware if ``batch_key`` given)
    3. scaling of the genes, saving their means and stds to ``.var``
    4. PCA with ``n_comps`` components, loadings in ``.varm["PCs"]``
    5. Harmony (if ``batch_key`` given) or soft k-means, state in ``.uns["harmony"]``
    6. visualization model fit on the corrected embedding

    The input object is not modified.

    :param adata: reference cells with raw counts in ``adata.X`` and labels in ``adata.obs``
    :type adata: AnnData
    :param batch_key: batch columns of ``adata.obs`` to correct for, defaults to None
    :type batch_key: list[str] | str | None, optional
    :param n_top_genes: number of highly variable genes, None to use all genes, defaults to 2000
    :type n_top_genes: int | None, optional
    :param n_comps: number of principal components, defaults to 20
    :type n_comps: int, optional
    :param target_sum: normalization target, defaults to 1e4
    :type target_sum: float, optional
    :param max_value: clip scaled values to ``[-max_value, max_value]``, defaults to 10
    :type max_value: float, optional
    :param vis_method: "umap", "tsne" or None to skip the visualization model, defaults to "umap"
    :type vis_method: str | None, optional
    :param vis_model_path: where to pickle the visualization model, defaults to None
    :type vis_model_path: str | Path | None, optional
    :param random_seed: random seed, defaults to 1
    :type random_seed: int, optional
    :param harmony_kwargs: forwarded to ``harmonypy.run_harmony``
    :type harmony_kwargs: dict | None, optional
    :param vis_kwargs: forwarded to the visualization model constructor
    :type vis_kwargs: dict | None, optional
    :return: the reference AnnData and the visualization model (None if ``vis_method`` is None)
    """
    from .tools import tsne, umap

    adata_ref = adata.copy()
    log_normalize(adata_ref, target_sum=target_sum)

    keys = [batch_key] if isinstance(batch_key, str) else batch_key

    if n_top_genes is None or n_top_genes >= adata_ref.n_vars:
        adata_ref.var["highly_variable"] = True
    else:
        batch_hvg = None
        if keys is not None:
            adata_ref.obs["batch_ballmap"] = (
                adata_ref.obs[keys].astype(str).agg("_".join, axis=1)
            )
            batch_hvg = "batch_ballmap"
        sc.pp.highly_variable_genes(
            adata_ref, n_top_genes=n_top_genes, batch_key=batch_hvg
        )
        if batch_hvg is not None:
            del adata_ref.obs[batch_hvg]

    # scale saves per-gene mean and std to .var
    adata_ref.X = _to_dense(adata_ref.X)
    sc.pp.scale(adata_ref, zero_center=True, max_value=max_value)
    adata_ref.X = np.clip(adata_ref.X, -max_value, max_value)

    sc.tl.pca(
        adata_ref,
        n_comps=n_comps,
        zero_center=False,
        mask_var="highly_variable",
        random_state=random_seed,
    )

    if keys is not None:
        harmony_integrate(
            adata_ref,
            key=keys,
            random_seed=random_seed,
            **(harmony_kwargs or {}),
        )
    else:
        warnings.warn(
            "No batch_key given, reference is assumed to have no batches. "
            "Running soft k-means clustering without correction."
        )
        soft_kmeans(adata_ref, random_seed=random_seed)

    model = None
    if vis_method == "umap":
        model = umap(
            adata_ref,
            use_rep="X_pca_harmony",
            save_path=vis_model_path,
            return_model=True,
            random_state=random_seed,
            **(vis_kwargs or {}),
        )
    elif vis_method == "tsne":
        model = tsne(
            adata_ref,
            use_rep="X_pca_harmony",
            save_path=vis_model_path,
            return_model=True,
            random_state=random_seed,
            **(vis_kwargs or {}),
        )
    elif vis_method is not None:
        raise ValueError("`vis_method` should be 'umap', 'tsne' or None.")

    logger.info(
        "Reference built: %i cells, %i feature genes, %i clusters",
        adata_ref.n_obs,
        int(adata_ref.var["highly_variable"].sum()),
        adata_ref.uns["harmony"]["K"],
    )

    if vis_model_path is not None and model is None:
        logger.warning("No visualization model was fit, nothing saved to %s", vis_model_path)

    return adata_ref, model

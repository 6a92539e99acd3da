"""
Two-stage mapping of leukemic query cells.

Stage 1 maps every query cell to the broad hematopoiesis reference.
Cells whose stage-1 cell type is in a B-development allow-list are then
mapped again, from their original counts, to the focused B-development
reference. The focused reference has no decision boundary for other
lineages, so contaminating cells are removed before the second stage.
"""
# pylint: disable=C0103
from __future__ import annotations

import logging
import warnings

from dataclasses import dataclass, field, fields

from anndata import AnnData

from . import tools as tl
from .preprocessing import log_normalize


logger = logging.getLogger("ballmap")

B_DEVELOPMENT_CELL_TYPES = (
    "HSC",
    "MPP",
    "LMPP",
    "CLP",
    "Pre-pro-B",
    "Pro-B",
    "Pre-B",
    "Immature B",
    "Mature B",
)


@dataclass
class StageParams:
    """Parameters of one mapping stage."""

    cell_type_key: str = "cell_type"
    pseudotime_key: str | None = "pseudotime"
    extra_labels: list[str] = field(default_factory=list)
    predicted_prefix: str = "predicted_"
    k: int = 30
    metric: str = "euclidean"
    weights: str = "uniform"
    tie_break: str = "nearest"
    mapping_error_method: str = "knn"
    mad_threshold: float = 2.5
    threshold_by_batch: bool = True
    min_cells: int = 30
    max_error: float | None = None
    retain_failed: bool = False
    lamb: float | None = None
    use_genes_column: str | None = "highly_variable"
    target_sum: float = 1e4
    vis_method: str = "umap"

    @classmethod
    def from_dict(cls, params: dict) -> "StageParams":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(params) - known)
        if unknown:
            raise ValueError(f"Unknown stage parameters: {unknown}")
        return cls(**params)

    @property
    def ref_labels(self) -> list[str]:
        labels = [self.cell_type_key, *self.extra_labels]
        if self.pseudotime_key is not None:
            labels.append(self.pseudotime_key)
        return labels

    @property
    def cell_type_obs(self) -> str:
        return f"{self.predicted_prefix}{self.cell_type_key}"


@dataclass
class TwoStageResult:
    stage1: AnnData
    stage2: AnnData
    allow_list: tuple[str, ...]


def map_query(
    adata_query: AnnData,
    adata_ref: AnnData,
    batch_key: str | None = None,
    vis_model=None,
    params: StageParams | None = None,
) -> AnnData:
    """Run one mapping stage on a copy of ``adata_query``: projection,
    visualization (if ``vis_model`` is given), mapping error, mapping QC
    and kNN transfer of cell type, extra labels and pseudotime.

    Neither ``adata_query`` nor ``adata_ref`` is modified.

    :param adata_query: query with raw counts in ``.X`` (or already log-normalized)
    :type adata_query: AnnData
    :param adata_ref: reference built with ``pp.build_reference``
    :type adata_ref: AnnData
    :param batch_key: donor/batch column of ``adata_query.obs``, defaults to None
    :type batch_key: str | None, optional
    :param vis_model: visualization model (or path to its pickle) of the reference, defaults to None
    :param params: stage parameters, defaults to ``StageParams()``
    :type params: StageParams | None, optional
    :return: mapped copy of the query
    :rtype: AnnData
    """
    params = params or StageParams()

    missing = [label for label in params.ref_labels if label not in adata_ref.obs]
    if missing:
        raise ValueError(f"Labels {missing} not found in adata_ref.obs")

    adata = adata_query.copy()
    if adata.n_obs == 0:
        warnings.warn("adata_query has no cells, nothing to map")
        return adata

    log_normalize(adata, target_sum=params.target_sum)

    tl.map_embedding(
        adata,
        adata_ref,
        key=batch_key,
        lamb=params.lamb,
        use_genes_column=params.use_genes_column,
    )

    if vis_model is not None:
        if params.vis_method == "tsne":
            tl.tsne(adata, use_rep="X_pca_harmony", use_model=vis_model)
        else:
            tl.umap(adata, use_rep="X_pca_harmony", use_model=vis_model)

    tl.mapping_error(
        adata,
        adata_ref,
        method=params.mapping_error_method,
        k=params.k,
        metric=params.metric,
    )
    tl.mapping_qc(
        adata,
        mad_threshold=params.mad_threshold,
        batch_key=batch_key if params.threshold_by_batch else None,
        min_cells=params.min_cells,
        max_error=params.max_error,
    )
    tl.transfer_labels_kNN(
        adata,
        adata_ref,
        params.ref_labels,
        k=params.k,
        query_labels=[f"{params.predicted_prefix}{label}" for label in params.ref_labels],
        metric=params.metric,
        weights=params.weights,
        tie_break=params.tie_break,
        retain_failed=params.retain_failed,
    )

    return adata


def select_cells(
    adata: AnnData,
    label_obs: str,
    allow_list: tuple[str, ...] | list[str],
    use_initial: bool = False,
) -> AnnData:
    """Copy of the cells of ``adata`` whose label is in ``allow_list``.

    :param adata: mapped query
    :type adata: AnnData
    :param label_obs: column with the final predicted label
    :type label_obs: str
    :param allow_list: labels to keep
    :type allow_list: tuple[str, ...] | list[str]
    :param use_initial: select by ``label_obs + "_initial"`` instead, so cells failing
        mapping QC are kept too, defaults to False
    :type use_initial: bool, optional
    """
    key = f"{label_obs}_initial" if use_initial else label_obs
    mask = adata.obs[key].isin(list(allow_list)).to_numpy()
    return adata[mask].copy()


def run_two_stage(
    adata_query: AnnData,
    stage1_ref: AnnData,
    stage2_ref: AnnData,
    batch_key: str | None = None,
    allow_list: tuple[str, ...] | list[str] = B_DEVELOPMENT_CELL_TYPES,
    stage1_params: StageParams | None = None,
    stage2_params: StageParams | None = None,
    stage1_vis_model=None,
    stage2_vis_model=None,
    use_initial: bool = False,
) -> TwoStageResult:
    """Map ``adata_query`` to ``stage1_ref``, then map the allow-listed cells to ``stage2_ref``.

    The stage-2 input is taken from ``adata_query`` itself, so both stages start
    from the same counts. The stage-1 cell type is kept in the stage-2 result as
    ``"stage1_" + stage1_params.cell_type_obs``.

    :return: both mapped queries and the allow-list used
    :rtype: TwoStageResult
    """
    stage1_params = stage1_params or StageParams()
    stage2_params = stage2_params or StageParams()
    allow_list = tuple(allow_list)

    stage1 = map_query(
        adata_query, stage1_ref, batch_key, stage1_vis_model, stage1_params
    )

    label_obs = stage1_params.cell_type_obs
    if stage1.n_obs > 0:
        selected = select_cells(stage1, label_obs, allow_list, use_initial=use_initial)
        selected_names = selected.obs_names
        stage1_labels = selected.obs[label_obs].to_numpy()
    else:
        selected_names = stage1.obs_names
        stage1_labels = []

    logger.info(
        "%i out of %i cells selected for stage 2", len(selected_names), stage1.n_obs
    )
    if len(selected_names) == 0:
        warnings.warn("No cells passed the stage-1 allow-list, stage 2 is empty")

    stage2_input = adata_query[selected_names].copy()
    stage2_input.obs[f"stage1_{label_obs}"] = stage1_labels

    stage2 = map_query(
        stage2_input, stage2_ref, batch_key, stage2_vis_model, stage2_params
    )

    return TwoStageResult(stage1=stage1, stage2=stage2, allow_list=allow_list)

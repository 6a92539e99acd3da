# pylint: disable=C0103, C0114
from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from anndata import AnnData


logger = logging.getLogger("ballmap")

RETURN_TYPES = ("long", "count", "proportion")


def _passing_cells(
    obs: pd.DataFrame,
    donor_key: str,
    label_key: str,
    qc_obs: str | None,
    confidence_obs: str | None,
    min_confidence: float | None,
) -> pd.DataFrame:
    keep = obs[label_key].notna().to_numpy()

    if qc_obs is not None:
        if qc_obs in obs:
            keep &= obs[qc_obs].to_numpy(dtype=bool)
        else:
            logger.warning(
                "Mapping QC column `%s` not found, composition is not filtered by mapping QC",
                qc_obs,
            )

    if min_confidence is not None:
        if confidence_obs is None:
            confidence_obs = f"{label_key}_confidence"
        # missing confidence never passes
        keep &= obs[confidence_obs].to_numpy(dtype=np.float64) >= min_confidence

    cells = obs.loc[keep, [donor_key, label_key]].astype(str)

    dropped = sorted(set(obs[donor_key].astype(str)) - set(cells[donor_key]))
    if dropped:
        logger.info("Donors without cells passing the filters: %s", dropped)

    return cells


def composition(
    adata_query: AnnData,
    donor_key: str,
    label_key: str = "predicted_cell_type",
    qc_obs: str | None = "mapping_error_qc",
    confidence_obs: str | None = None,
    min_confidence: float | None = None,
    return_type: str = "long",
) -> pd.DataFrame:
    """Per-donor composition of predicted labels.

    Only cells with a label that pass mapping QC and, if ``min_confidence``
    is given, have a confidence of at least ``min_confidence`` are counted.
    Proportions are relative to the number of such cells per donor.
    Donors without any such cell are left out.

    :param adata_query: query AnnData with predicted labels
    :type adata_query: AnnData
    :param donor_key: column of ``adata_query.obs`` with donor ids
    :type donor_key: str
    :param label_key: column with the predicted labels, defaults to "predicted_cell_type"
    :type label_key: str, optional
    :param qc_obs: boolean mapping QC column, None to not filter by it, defaults to "mapping_error_qc"
    :type qc_obs: str | None, optional
    :param confidence_obs: column with label confidence, defaults to ``label_key + "_confidence"``
    :type confidence_obs: str | None, optional
    :param min_confidence: confidence cutoff, None to not filter by confidence, defaults to None
    :type min_confidence: float | None, optional
    :param return_type: "long" (one row per donor and label with ``n_cells`` and ``proportion``),
        "count" (donors x labels counts) or "proportion" (donors x labels, rows sum to 1), defaults to "long"
    :type return_type: str, optional
    :return: composition table
    :rtype: pd.DataFrame
    """
    if return_type not in RETURN_TYPES:
        raise ValueError(f"`return_type` should be one of {RETURN_TYPES}, got '{return_type}'")

    cells = _passing_cells(
        adata_query.obs, donor_key, label_key, qc_obs, confidence_obs, min_confidence
    )

    if cells.empty:
        counts = pd.DataFrame(
            index=pd.Index([], name=donor_key, dtype=object),
            columns=pd.Index([], name=label_key, dtype=object),
            dtype=np.int64,
        )
    else:
        counts = pd.crosstab(cells[donor_key], cells[label_key])

    if return_type == "count":
        return counts

    proportions = counts.div(counts.sum(axis=1), axis=0)
    if return_type == "proportion":
        return proportions

    long = counts.reset_index().melt(
        id_vars=donor_key, var_name=label_key, value_name="n_cells"
    )
    long = long[long["n_cells"] > 0].copy()
    long["proportion"] = long["n_cells"] / long[donor_key].map(counts.sum(axis=1))

    return long.sort_values([donor_key, label_key]).reset_index(drop=True)

from __future__ import annotations

import logging
import os

from pathlib import Path
from urllib.request import urlretrieve

from scanpy import read, AnnData

from ._utils import _load_model


logger = logging.getLogger("ballmap")

REFERENCE_URL_ENV = "BALLMAP_REFERENCE_URL"

HEMATOPOIESIS_REFERENCE = "hematopoiesis_reference.h5ad"
B_DEVELOPMENT_REFERENCE = "b_development_reference.h5ad"
HEMATOPOIESIS_UMAP_MODEL = "hematopoiesis_umap_model.pkl"
B_DEVELOPMENT_UMAP_MODEL = "b_development_umap_model.pkl"

_REQUIRED_SLOTS = {
    "var": ("mean", "std", "highly_variable"),
    "varm": ("PCs",),
    "obsm": ("X_pca_harmony",),
}
_REQUIRED_HARMONY = ("Nr", "C", "K", "sigma", "R", "ref_basis_loadings")


def _remote_url(file_name: str, base_url: str | None) -> str | None:
    base_url = base_url or os.environ.get(REFERENCE_URL_ENV)
    if not base_url:
        return None
    return f"{base_url.rstrip('/')}/{file_name}"


def _local_or_url(file_path: str | Path, file_name: str, base_url: str | None) -> str | None:
    url = _remote_url(file_name, base_url)
    if not Path(file_path).exists() and url is None:
        raise FileNotFoundError(
            f"{file_path} not found and no remote location is configured. "
            f"Pass `base_url` or set the {REFERENCE_URL_ENV} environment variable."
        )
    return url


def check_reference(adata_ref: AnnData, labels: tuple[str, ...] | list[str] = ()) -> None:
    """Raises ``ValueError`` naming every slot a reference bundle lacks."""
    missing = [
        f"{attr}['{key}']"
        for attr, keys in _REQUIRED_SLOTS.items()
        for key in keys
        if key not in getattr(adata_ref, attr)
    ]
    missing += [f"obs['{label}']" for label in labels if label not in adata_ref.obs]

    if "harmony" not in adata_ref.uns:
        missing.append("uns['harmony']")
    else:
        missing += [
            f"uns['harmony']['{key}']"
            for key in _REQUIRED_HARMONY
            if key not in adata_ref.uns["harmony"]
        ]

    if missing:
        raise ValueError(f"Reference is missing {', '.join(missing)}")


def _reference(file_path: str | Path, file_name: str, base_url: str | None) -> AnnData:
    url = _local_or_url(file_path, file_name, base_url)
    adata = read(file_path, backup_url=url)
    check_reference(adata)
    return adata


def hematopoiesis_reference(
    file_path: str | Path = f"data/ballmap_ref/{HEMATOPOIESIS_REFERENCE}",
    base_url: str | None = None,
) -> AnnData:
    return _reference(file_path, HEMATOPOIESIS_REFERENCE, base_url)


def b_development_reference(
    file_path: str | Path = f"data/ballmap_ref/{B_DEVELOPMENT_REFERENCE}",
    base_url: str | None = None,
) -> AnnData:
    return _reference(file_path, B_DEVELOPMENT_REFERENCE, base_url)


def _download(url: str, file_path: Path) -> None:
    file_path.parent.mkdir(parents=True, exist_ok=True)
    partial = file_path.with_name(f"{file_path.name}.part")
    logger.info("Downloading %s to %s", url, file_path)
    try:
        urlretrieve(url, partial)
    except Exception:
        if partial.is_file():
            partial.unlink()
        raise
    partial.replace(file_path)


def visualization_model(
    file_path: str | Path = f"data/ballmap_ref/{HEMATOPOIESIS_UMAP_MODEL}",
    file_name: str | None = None,
    base_url: str | None = None,
):
    """Pickled visualization model of a reference, downloaded if not present locally.
    An interrupted download leaves nothing at ``file_path``."""
    file_path = Path(file_path)
    url = _local_or_url(file_path, file_name or file_path.name, base_url)

    if not file_path.exists():
        _download(url, file_path)

    return _load_model(file_path)


def hematopoiesis_visualization_model(
    file_path: str | Path = f"data/ballmap_ref/{HEMATOPOIESIS_UMAP_MODEL}",
    base_url: str | None = None,
):
    return visualization_model(file_path, HEMATOPOIESIS_UMAP_MODEL, base_url)


def b_development_visualization_model(
    file_path: str | Path = f"data/ballmap_ref/{B_DEVELOPMENT_UMAP_MODEL}",
    base_url: str | None = None,
):
    return visualization_model(file_path, B_DEVELOPMENT_UMAP_MODEL, base_url)

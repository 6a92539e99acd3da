# pylint: disable=C0116
"""Command line entry point: two-stage mapping of a query h5ad file."""

from __future__ import annotations

import argparse
import logging

from pathlib import Path

import scanpy as sc

from .config import read_config
from .composition import RETURN_TYPES, composition
from .pipeline import run_two_stage


logger = logging.getLogger("ballmap")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Map leukemic single cells to a hematopoiesis reference, "
        "then map B-lineage cells to a B-development reference."
    )
    parser.add_argument("--query", required=True, help="query h5ad with raw counts")
    parser.add_argument("--stage1-ref", required=True, help="hematopoiesis reference h5ad")
    parser.add_argument("--stage2-ref", required=True, help="B-development reference h5ad")
    parser.add_argument("--stage1-vis-model", default=None, help="pickled UMAP model of stage 1 reference")
    parser.add_argument("--stage2-vis-model", default=None, help="pickled UMAP model of stage 2 reference")
    parser.add_argument("--donor-key", default=None, help="donor/batch column of the query obs")
    parser.add_argument("--out-dir", default="ballmap_out")
    parser.add_argument("--config", default=None, help="JSON config with stage1/stage2 parameters")
    parser.add_argument("--min-confidence", type=float, default=None)
    parser.add_argument("--verbose", action="store_true")
    return parser.parse_args(argv)


def write_outputs(
    adata,
    name: str,
    out_dir: Path,
    donor_key: str | None,
    label_obs: str,
    min_confidence: float | None,
) -> None:
    adata.write_h5ad(out_dir / f"{name}.h5ad")

    if donor_key is None or adata.n_obs == 0:
        logger.info("Skipping %s composition tables", name)
        return

    for return_type in RETURN_TYPES:
        composition(
            adata,
            donor_key=donor_key,
            label_key=label_obs,
            min_confidence=min_confidence,
            return_type=return_type,
        ).to_csv(
            out_dir / f"{name}_composition_{return_type}.csv",
            index=return_type != "long",
        )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    config = read_config(args.config)
    donor_key = args.donor_key or config.batch_key

    out_dir = Path(args.out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    logger.info("Reading query %s", args.query)
    adata_query = sc.read_h5ad(args.query)
    stage1_ref = sc.read_h5ad(args.stage1_ref)
    stage2_ref = sc.read_h5ad(args.stage2_ref)

    result = run_two_stage(
        adata_query,
        stage1_ref,
        stage2_ref,
        batch_key=donor_key,
        allow_list=config.allow_list,
        stage1_params=config.stage1,
        stage2_params=config.stage2,
        stage1_vis_model=args.stage1_vis_model,
        stage2_vis_model=args.stage2_vis_model,
    )

    stages = (
        ("stage1", result.stage1, config.stage1),
        ("stage2", result.stage2, config.stage2),
    )
    for name, adata, stage in stages:
        write_outputs(
            adata, name, out_dir, donor_key, stage.cell_type_obs, args.min_confidence
        )

    logger.info("Results written to %s", out_dir)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

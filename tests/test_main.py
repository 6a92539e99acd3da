import json

import pandas as pd
import pytest
import scanpy as sc

from ballmap.main import main, parse_args


class TestMain:
    @pytest.fixture
    def inputs(self, reference, b_reference, query, tmp_path):
        paths = {
            "query": tmp_path / "query.h5ad",
            "stage1": tmp_path / "stage1_ref.h5ad",
            "stage2": tmp_path / "stage2_ref.h5ad",
        }
        query.write_h5ad(paths["query"])
        reference.write_h5ad(paths["stage1"])
        b_reference.write_h5ad(paths["stage2"])
        return paths

    @staticmethod
    def argv(inputs, out_dir, *extra):
        return [
            "--query",
            str(inputs["query"]),
            "--stage1-ref",
            str(inputs["stage1"]),
            "--stage2-ref",
            str(inputs["stage2"]),
            "--out-dir",
            str(out_dir),
            *extra,
        ]

    def test_parse_args_defaults(self):
        args = parse_args(["--query", "q.h5ad", "--stage1-ref", "a.h5ad", "--stage2-ref", "b.h5ad"])

        assert args.out_dir == "ballmap_out"
        assert args.donor_key is None
        assert args.config is None
        assert args.min_confidence is None

    def test_parse_args_requires_references(self):
        with pytest.raises(SystemExit):
            parse_args(["--query", "q.h5ad"])

    def test_main_writes_outputs(self, inputs, tmp_path):
        out_dir = tmp_path / "out"
        assert main(self.argv(inputs, out_dir, "--donor-key", "donor")) == 0

        for name in ("stage1", "stage2"):
            assert (out_dir / f"{name}.h5ad").exists()
            for return_type in ("long", "count", "proportion"):
                assert (out_dir / f"{name}_composition_{return_type}.csv").exists()

        stage1 = sc.read_h5ad(out_dir / "stage1.h5ad")
        stage2 = sc.read_h5ad(out_dir / "stage2.h5ad")
        assert "predicted_cell_type" in stage1.obs
        assert "stage1_predicted_cell_type" in stage2.obs
        assert set(stage2.obs_names) <= set(stage1.obs_names)

        long = pd.read_csv(out_dir / "stage1_composition_long.csv")
        assert list(long.columns) == ["donor", "predicted_cell_type", "n_cells", "proportion"]
        assert set(long["donor"]) <= {"P1", "P2"}

        proportion = pd.read_csv(out_dir / "stage1_composition_proportion.csv", index_col=0)
        assert ((proportion.sum(axis=1) - 1).abs() < 1e-9).all()

    def test_main_without_donor_key(self, inputs, tmp_path):
        out_dir = tmp_path / "out"
        assert main(self.argv(inputs, out_dir)) == 0

        assert (out_dir / "stage1.h5ad").exists()
        assert not list(out_dir.glob("*.csv"))

    def test_main_with_config(self, inputs, tmp_path):
        config = tmp_path / "config.json"
        config.write_text(
            json.dumps(
                {
                    "batch_key": "donor",
                    "allow_list": ["Pro-B"],
                    "stage2": {"k": 10, "pseudotime_key": None},
                }
            ),
            encoding="utf-8",
        )
        out_dir = tmp_path / "out"
        assert main(self.argv(inputs, out_dir, "--config", str(config))) == 0

        stage2 = sc.read_h5ad(out_dir / "stage2.h5ad")
        assert set(stage2.obs["stage1_predicted_cell_type"]) <= {"Pro-B"}
        assert "predicted_pseudotime" not in stage2.obs
        assert (out_dir / "stage2_composition_count.csv").exists()

import numpy as np
import pytest

import ballmap as bm

from conftest import ALL_CELL_TYPES, simulate_counts


class TestPreprocessing:
    batch_key = "donor"

    @staticmethod
    def assert_harmony_object(adata):
        assert "X_pca_harmony" in adata.obsm
        assert "harmony" in adata.uns
        for key in (
            "Nr",
            "C",
            "K",
            "sigma",
            "ref_basis_loadings",
            "ref_basis_adjusted",
            "vars_use",
            "converged",
            "R",
        ):
            assert key in adata.uns["harmony"], key

        harmony = adata.uns["harmony"]
        K = harmony["K"]
        assert harmony["R"].shape == (K, adata.n_obs)
        assert harmony["C"].shape == (K, adata.obsm["X_pca_harmony"].shape[1])
        assert np.allclose(harmony["R"].sum(axis=0), 1)
        assert np.allclose(harmony["Nr"], harmony["R"].sum(axis=1))

    def test_log_normalize_keeps_counts(self):
        adata = simulate_counts(("HSC",), 10, ("R1",))
        counts = adata.X.copy()
        bm.pp.log_normalize(adata)

        assert "log1p" in adata.uns
        assert (adata.layers["counts"] != counts).nnz == 0
        assert np.allclose(np.expm1(adata.X.toarray()).sum(axis=1), 1e4, rtol=1e-3)

    def test_log_normalize_is_idempotent(self):
        adata = simulate_counts(("HSC",), 10, ("R1",))
        bm.pp.log_normalize(adata)
        X = adata.X.copy()
        bm.pp.log_normalize(adata)

        assert np.allclose(adata.X.toarray(), X.toarray())

    def test_build_reference_with_batches(self, reference):
        self.assert_harmony_object(reference)
        assert reference.uns["harmony"]["vars_use"] == [self.batch_key]
        assert {"mean", "std", "highly_variable"} <= set(reference.var.columns)
        assert reference.varm["PCs"].shape == (reference.n_vars, 10)
        assert reference.obsm["X_pca"].shape == (reference.n_obs, 10)

    def test_build_reference_does_not_modify_input(self):
        adata = simulate_counts(ALL_CELL_TYPES[:2], 20, ("R1",))
        X = adata.X.copy()
        bm.pp.build_reference(adata, n_top_genes=None, n_comps=5, vis_method=None)

        assert (adata.X != X).nnz == 0
        assert "log1p" not in adata.uns
        assert "harmony" not in adata.uns

    def test_build_reference_without_batches(self):
        adata = simulate_counts(ALL_CELL_TYPES, 12, ("R1",))
        with pytest.warns(UserWarning, match="no batches"):
            ref, model = bm.pp.build_reference(
                adata, n_top_genes=None, n_comps=5, vis_method=None
            )

        self.assert_harmony_object(ref)
        assert model is None
        assert np.allclose(ref.obsm["X_pca_harmony"], ref.obsm["X_pca"])
        # min(round(60 / 30), 100)
        assert ref.uns["harmony"]["K"] == 2

    def test_build_reference_highly_variable_genes(self):
        adata = simulate_counts(ALL_CELL_TYPES, 20, ("R1", "R2"))
        ref, _ = bm.pp.build_reference(
            adata, batch_key="donor", n_top_genes=30, n_comps=5, vis_method=None
        )

        assert ref.var["highly_variable"].sum() == 30
        assert "batch_ballmap" not in ref.obs
        # loadings of genes outside the feature set are not used
        assert np.allclose(ref.varm["PCs"][~ref.var["highly_variable"].to_numpy()], 0)

    def test_build_reference_unknown_vis_method(self):
        adata = simulate_counts(ALL_CELL_TYPES[:2], 20, ("R1",))
        with pytest.raises(ValueError, match="vis_method"):
            bm.pp.build_reference(adata, n_top_genes=None, n_comps=5, vis_method="pca")

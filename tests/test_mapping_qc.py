import numpy as np
import pandas as pd
import pytest

from anndata import AnnData
from scipy.stats import median_abs_deviation

import ballmap as bm


def scored(scores, donors=None) -> AnnData:
    obs = pd.DataFrame(
        {"mapping_error_score": np.asarray(scores, dtype=np.float64)},
        index=[f"q_{i}" for i in range(len(scores))],
    )
    if donors is not None:
        obs["donor"] = pd.Categorical(donors)
    return AnnData(X=np.zeros((len(scores), 1)), obs=obs)


class TestMappingQC:
    @staticmethod
    def cutoff(scores, t=2.5):
        return np.median(scores) + t * median_abs_deviation(scores, scale="normal")

    def test_global_threshold(self):
        rng = np.random.default_rng(0)
        scores = np.concatenate([rng.normal(1, 0.1, 95), [5, 6, 7, 8, 9]])
        adata = scored(scores)
        bm.tl.mapping_qc(adata)

        passed = adata.obs["mapping_error_qc"].to_numpy()
        assert adata.obs["mapping_error_qc"].dtype == bool
        assert not passed[-5:].any()
        assert np.array_equal(passed, scores <= self.cutoff(scores))
        assert np.allclose(adata.obs["mapping_error_qc_threshold"], self.cutoff(scores))

    def test_per_batch_thresholds(self):
        rng = np.random.default_rng(1)
        base = rng.gamma(2.0, 1.0, 100)
        # donor Y is a deeper-sequenced copy of donor X with larger errors
        scores = np.concatenate([base, 3 * base + 5])
        adata = scored(scores, donors=["X"] * 100 + ["Y"] * 100)
        bm.tl.mapping_qc(adata, batch_key="donor")

        passed = adata.obs["mapping_error_qc"].to_numpy()
        thresholds = adata.obs["mapping_error_qc_threshold"].to_numpy()

        assert np.allclose(thresholds[:100], self.cutoff(base))
        assert np.allclose(thresholds[100:], self.cutoff(3 * base + 5))
        assert thresholds[0] != thresholds[100]
        # same cells are flagged in both donors
        assert np.array_equal(passed[:100], passed[100:])
        assert (~passed[:100]).any()

    def test_small_batch_uses_global_threshold(self):
        rng = np.random.default_rng(2)
        scores = rng.normal(1, 0.2, 110)
        adata = scored(scores, donors=["X"] * 100 + ["tiny"] * 10)
        bm.tl.mapping_qc(adata, batch_key="donor", min_cells=30)

        thresholds = adata.obs["mapping_error_qc_threshold"].to_numpy()
        assert np.allclose(thresholds[100:], self.cutoff(scores))
        assert np.allclose(thresholds[:100], self.cutoff(scores[:100]))

    def test_zero_mad_batch_uses_global_threshold(self):
        rng = np.random.default_rng(3)
        scores = np.concatenate([rng.normal(1, 0.2, 50), np.full(40, 1.5)])
        adata = scored(scores, donors=["X"] * 50 + ["flat"] * 40)
        bm.tl.mapping_qc(adata, batch_key="donor")

        thresholds = adata.obs["mapping_error_qc_threshold"].to_numpy()
        assert np.allclose(thresholds[50:], self.cutoff(scores))

    def test_missing_batch_column(self):
        adata = scored(np.linspace(0, 1, 50))
        with pytest.warns(UserWarning, match="not found"):
            bm.tl.mapping_qc(adata, batch_key="donor")

        assert adata.obs["mapping_error_qc"].all()

    def test_max_error(self):
        scores = np.linspace(0, 1, 100)
        adata = scored(scores)
        bm.tl.mapping_qc(adata, max_error=0.5)

        assert np.array_equal(adata.obs["mapping_error_qc"].to_numpy(), scores <= 0.5)

    def test_non_finite_scores_fail(self):
        scores = np.concatenate([np.linspace(0, 1, 50), [np.nan, np.inf]])
        adata = scored(scores)
        bm.tl.mapping_qc(adata)

        passed = adata.obs["mapping_error_qc"].to_numpy()
        assert passed[:50].all()
        assert not passed[50:].any()
        assert np.allclose(
            adata.obs["mapping_error_qc_threshold"], self.cutoff(scores[:50])
        )

    def test_custom_columns(self):
        adata = scored(np.linspace(0, 1, 50))
        adata.obs["maha"] = adata.obs.pop("mapping_error_score")
        bm.tl.mapping_qc(adata, score_obs="maha", mad_threshold=1.0, obs="maha_qc")

        assert "maha_qc" in adata.obs
        assert "maha_qc_threshold" in adata.obs
        assert np.allclose(adata.obs["maha_qc_threshold"], self.cutoff(np.linspace(0, 1, 50), t=1.0))

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from luad_pipeline.differential_expression import (
    annotate_significance,
    cohens_d,
    run_differential_expression,
    save_de_results,
    summarize_de,
    top_genes,
    welch_ttest,
)


def _de_config(**overrides):
    de = {
        "group_key": "condition",
        "group1": "tumor",
        "group2": "normal",
        "min_samples": 3,
        "lfc_threshold": 1.0,
        "fdr_threshold": 0.05,
    }
    de.update(overrides)
    return {"differential_expression": de, "pseudobulk": {"log_base": 2}}


def test_cohens_d_known_value():
    assert cohens_d(np.array([1.0, 2.0, 3.0]), np.array([4.0, 5.0, 6.0]))[0] == pytest.approx(-3.0)


def test_cohens_d_unequal_sizes():
    a = np.array([2.0, 4.0, 6.0, 8.0])
    b = np.array([1.0, 3.0])
    pooled = np.sqrt((3 * np.var(a, ddof=1) + 1 * np.var(b, ddof=1)) / 4)
    assert cohens_d(a, b)[0] == pytest.approx((a.mean() - b.mean()) / pooled)


def test_cohens_d_zero_variance():
    same = cohens_d(np.array([[1.0], [1.0]]), np.array([[1.0], [1.0]]))
    shifted = cohens_d(np.array([[2.0], [2.0]]), np.array([[1.0], [1.0]]))
    assert same[0] == 0.0
    assert np.isposinf(shifted[0])


def test_welch_ttest_matches_scipy(log_expression, sample_metadata):
    results = welch_ttest(log_expression, sample_metadata, "condition", "tumor", "normal")

    tumor = log_expression.loc[sample_metadata["condition"] == "tumor", "GENE_NS0"]
    normal = log_expression.loc[sample_metadata["condition"] == "normal", "GENE_NS0"]
    expected = stats.ttest_ind(tumor, normal, equal_var=False)

    row = results.loc["GENE_NS0"]
    assert row["t_stat"] == pytest.approx(expected.statistic)
    assert row["pvalue"] == pytest.approx(expected.pvalue)
    assert row["log2FoldChange"] == pytest.approx(tumor.mean() - normal.mean())
    assert row["mean_tumor"] == pytest.approx(tumor.mean())
    assert results.index.name == "gene"


def test_welch_ttest_detects_up_genes(log_expression, sample_metadata):
    results = welch_ttest(log_expression, sample_metadata, "condition", "tumor", "normal")

    up = results.loc[[f"GENE_UP{i}" for i in range(5)]]
    assert (up["log2FoldChange"] > 3).all()
    assert (up["cohens_d"] > 5).all()
    assert (up["padj"] < 0.05).all()


def test_welch_ttest_padj(log_expression, sample_metadata):
    results = welch_ttest(log_expression, sample_metadata, "condition", "tumor", "normal")
    tested = results.dropna(subset=["pvalue"])

    assert (tested["padj"] >= tested["pvalue"] - 1e-12).all()
    assert (tested["padj"] <= 1).all()
    ordered = tested.sort_values("pvalue")["padj"].to_numpy()
    assert np.all(np.diff(ordered) >= -1e-12)


def test_welch_ttest_constant_gene_untested(log_expression, sample_metadata):
    results = welch_ttest(log_expression, sample_metadata, "condition", "tumor", "normal")
    row = results.loc["GENE_CONST"]
    assert np.isnan(row["pvalue"])
    assert np.isnan(row["padj"])
    assert row["cohens_d"] == 0.0
    assert row["log2FoldChange"] == 0.0


def test_welch_ttest_log_base_and_linear_scale(log_expression, sample_metadata):
    log2_results = welch_ttest(log_expression, sample_metadata, "condition", "tumor", "normal")
    natural = welch_ttest(
        log_expression * np.log(2), sample_metadata, "condition", "tumor", "normal", log_base="e"
    )
    np.testing.assert_allclose(
        natural["log2FoldChange"].to_numpy(), log2_results["log2FoldChange"].to_numpy(), atol=1e-9
    )

    linear = pd.DataFrame({"G": [1.0, 1.0, 1.0, 7.0, 7.0, 7.0]}, index=log_expression.index)
    results = welch_ttest(linear, sample_metadata, "condition", "tumor", "normal", is_log=False)
    assert results.loc["G", "log2FoldChange"] == pytest.approx(np.log2(8.0 / 2.0))


def test_welch_ttest_errors(log_expression, sample_metadata):
    with pytest.raises(KeyError):
        welch_ttest(log_expression, sample_metadata, "stage", "tumor", "normal")
    with pytest.raises(ValueError):
        welch_ttest(log_expression, sample_metadata, "condition", "tumor", "metastasis")
    with pytest.raises(ValueError):
        welch_ttest(log_expression, sample_metadata, "condition", "tumor", "normal", min_samples=4)


def test_annotate_significance():
    results = pd.DataFrame(
        {
            "log2FoldChange": [2.0, -2.0, 0.5, 3.0],
            "padj": [0.01, 0.01, 0.01, 0.2],
        },
        index=["A", "B", "C", "D"],
    )
    annotated = annotate_significance(results, lfc_threshold=1.0, fdr_threshold=0.05)
    assert annotated["direction"].tolist() == ["up", "down", "ns", "ns"]
    assert annotated["significant"].tolist() == [True, True, False, False]
    assert "direction" not in results.columns


def test_top_genes():
    results = pd.DataFrame(
        {
            "pvalue": [0.5, 0.001, np.nan, 0.01],
            "log2FoldChange": [-4.0, 1.0, 0.0, 2.0],
        },
        index=["A", "B", "C", "D"],
    )
    assert list(top_genes(results, n=2)) == ["B", "D"]
    assert list(top_genes(results, n=2, by="log2FoldChange")) == ["A", "D"]
    assert "C" not in top_genes(results, n=10)

    with pytest.raises(KeyError):
        top_genes(results, by="score")


def test_run_differential_expression(log_expression, sample_metadata):
    results = run_differential_expression(log_expression, sample_metadata, _de_config())

    assert results.index[-1] == "GENE_CONST"
    assert set(results.index[:5]) == {f"GENE_UP{i}" for i in range(5)}
    assert (results.loc[[f"GENE_UP{i}" for i in range(5)], "direction"] == "up").all()

    summary = summarize_de(results)
    assert summary["n_genes"] == 21
    assert summary["n_tested"] == 20
    assert summary["n_up"] == 5
    assert summary["n_significant"] == summary["n_up"] + summary["n_down"]


def test_reversed_comparison_flips_direction(log_expression, sample_metadata):
    results = run_differential_expression(
        log_expression, sample_metadata, _de_config(group1="normal", group2="tumor")
    )
    assert (results.loc[[f"GENE_UP{i}" for i in range(5)], "direction"] == "down").all()


def test_save_de_results(tmp_path, log_expression, sample_metadata):
    results = run_differential_expression(log_expression, sample_metadata, _de_config())
    path = save_de_results(results, tmp_path / "tables" / "de.csv")

    loaded = pd.read_csv(path)
    assert loaded.columns[0] == "gene"
    assert len(loaded) == len(results)


def test_welch_ttest_step_gene_untested(log_expression, sample_metadata):
    is_tumor = (sample_metadata["condition"] == "tumor").to_numpy()
    expression = log_expression.assign(GENE_STEP=np.where(is_tumor, 6.0, 2.0))

    results = welch_ttest(expression, sample_metadata, "condition", "tumor", "normal")
    step = results.loc["GENE_STEP"]

    assert step["log2FoldChange"] == pytest.approx(4.0)
    assert np.isposinf(step["cohens_d"])
    assert np.isnan(step["t_stat"])
    assert np.isnan(step["pvalue"])
    assert np.isnan(step["padj"])
    assert "GENE_STEP" not in top_genes(results, n=10)
    assert annotate_significance(results).loc["GENE_STEP", "direction"] == "ns"


def test_welch_ttest_rejects_single_pair(log_expression, sample_metadata):
    pair = ["LUNG_N01", "LUNG_T01"]
    with pytest.raises(ValueError, match="Insufficient samples"):
        welch_ttest(
            log_expression.loc[pair],
            sample_metadata.loc[pair],
            "condition",
            "tumor",
            "normal",
            min_samples=1,
        )

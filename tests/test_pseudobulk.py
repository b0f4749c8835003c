import numpy as np
import pandas as pd
import pytest

from luad_pipeline.pseudobulk import (
    aggregate_pseudobulk,
    attach_metadata,
    build_pseudobulk,
    filter_expressed_genes,
    log_transform_pseudobulk,
    normalize_cpm,
    read_pseudobulk_csv,
    split_expression_metadata,
    write_pseudobulk_csv,
)


def _manual_mean(adata, sample, matrix=None):
    matrix = adata.X if matrix is None else matrix
    mask = (adata.obs["sample_id"] == sample).to_numpy()
    return np.asarray(matrix[mask].mean(axis=0)).ravel()


def test_aggregate_mean_matches_manual(counts_adata):
    pseudobulk, n_cells = aggregate_pseudobulk(counts_adata, "sample_id", method="mean")

    assert pseudobulk.shape == (6, counts_adata.n_vars)
    assert list(pseudobulk.columns) == list(counts_adata.var_names)
    assert n_cells.to_dict() == {s: 30 for s in pseudobulk.index}
    for sample in ["LUNG_N01", "LUNG_T03"]:
        np.testing.assert_allclose(
            pseudobulk.loc[sample].to_numpy(),
            _manual_mean(counts_adata, sample),
            rtol=1e-5,
        )


def test_aggregate_sum(counts_adata):
    pseudobulk, _ = aggregate_pseudobulk(counts_adata, "sample_id", method="sum")
    np.testing.assert_allclose(
        pseudobulk.loc["LUNG_N02"].to_numpy(),
        _manual_mean(counts_adata, "LUNG_N02") * 30,
        rtol=1e-5,
    )


def test_aggregate_prefers_counts_layer(counts_adata):
    counts_adata.layers["counts"] = counts_adata.X.copy()
    counts_adata.X = counts_adata.X * 0

    pseudobulk, _ = aggregate_pseudobulk(counts_adata, "sample_id")
    assert (pseudobulk.to_numpy() > 0).any()

    del counts_adata.layers["counts"]
    from_x, _ = aggregate_pseudobulk(counts_adata, "sample_id")
    assert (from_x.to_numpy() == 0).all()


def test_aggregate_dense_matrix(counts_adata):
    counts_adata.X = counts_adata.X.toarray()
    pseudobulk, _ = aggregate_pseudobulk(counts_adata, "sample_id")
    np.testing.assert_allclose(
        pseudobulk.loc["LUNG_T01"].to_numpy(),
        _manual_mean(counts_adata, "LUNG_T01"),
        rtol=1e-5,
    )


def test_aggregate_drops_small_samples(counts_adata):
    keep = ~(
        (counts_adata.obs["sample_id"] == "LUNG_N03").to_numpy()
        & (np.arange(counts_adata.n_obs) % 30 >= 5)
    )
    adata = counts_adata[keep].copy()

    pseudobulk, n_cells = aggregate_pseudobulk(adata, "sample_id", min_cells=10)

    assert "LUNG_N03" not in pseudobulk.index
    assert len(pseudobulk) == 5
    assert list(pseudobulk.index) == list(n_cells.index)


def test_aggregate_errors(counts_adata):
    with pytest.raises(ValueError):
        aggregate_pseudobulk(counts_adata, "sample_id", method="median")
    with pytest.raises(KeyError):
        aggregate_pseudobulk(counts_adata, "donor")
    with pytest.raises(KeyError):
        aggregate_pseudobulk(counts_adata, "sample_id", layer="spliced")
    with pytest.raises(ValueError):
        aggregate_pseudobulk(counts_adata, "sample_id", min_cells=1000)


def test_normalize_cpm():
    counts = pd.DataFrame({"A": [1.0, 0.0], "B": [3.0, 0.0]}, index=["s1", "s2"])
    cpm = normalize_cpm(counts)
    assert cpm.loc["s1", "A"] == pytest.approx(250_000)
    assert cpm.loc["s1"].sum() == pytest.approx(1e6)
    assert (cpm.loc["s2"] == 0).all()


def test_log_transform_pseudobulk():
    values = pd.DataFrame({"A": [0.0, 1.0, 3.0]})
    np.testing.assert_allclose(log_transform_pseudobulk(values)["A"], [0.0, 1.0, 2.0])
    np.testing.assert_allclose(
        log_transform_pseudobulk(values, base="e")["A"], np.log1p([0.0, 1.0, 3.0])
    )
    np.testing.assert_allclose(
        log_transform_pseudobulk(values, base=10, pseudocount=1)["A"],
        np.log10([1.0, 2.0, 4.0]),
    )

    with pytest.raises(ValueError):
        log_transform_pseudobulk(pd.DataFrame({"A": [-1.0]}))
    with pytest.raises(ValueError):
        log_transform_pseudobulk(values, pseudocount=0)


def test_filter_expressed_genes():
    expression = pd.DataFrame(
        {"A": [0.0, 0.0, 0.0], "B": [0.0, 2.0, 0.0], "C": [1.0, 2.0, 3.0]}
    )
    assert list(filter_expressed_genes(expression).columns) == ["B", "C"]
    assert list(filter_expressed_genes(expression, min_samples=2).columns) == ["C"]


def test_attach_and_split_metadata(log_expression, sample_metadata):
    table = attach_metadata(log_expression, sample_metadata)

    assert list(table.columns[:2]) == ["patient_id", "condition"]
    assert list(table.index) == list(log_expression.index)

    expression, metadata = split_expression_metadata(table)
    pd.testing.assert_frame_equal(expression, log_expression)
    assert list(metadata.columns) == ["patient_id", "condition"]


def test_attach_metadata_errors(log_expression, sample_metadata):
    with pytest.raises(ValueError):
        attach_metadata(log_expression, sample_metadata.drop(index="LUNG_T01"))
    with pytest.raises(KeyError):
        attach_metadata(log_expression, sample_metadata, columns=["stage"])

    clashing = sample_metadata.assign(GENE_CONST="x")
    with pytest.raises(ValueError):
        attach_metadata(log_expression, clashing)


def test_csv_roundtrip(tmp_path, log_expression, sample_metadata):
    table = attach_metadata(log_expression, sample_metadata.assign(n_cells=30))
    path = write_pseudobulk_csv(table, tmp_path / "processed" / "pseudobulk.csv")

    expression, metadata = read_pseudobulk_csv(
        path, metadata_columns=["patient_id", "condition", "n_cells"]
    )

    assert list(metadata.columns) == ["patient_id", "condition", "n_cells"]
    assert expression.index.name == "sample_id"
    np.testing.assert_allclose(expression.to_numpy(), log_expression.to_numpy())


def test_read_pseudobulk_csv_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_pseudobulk_csv(tmp_path / "missing.csv")


def test_build_pseudobulk(counts_adata, sample_metadata):
    metadata = sample_metadata.iloc[::-1]
    config = {"pseudobulk": {"method": "mean", "log_base": 2, "pseudocount": 1.0}}

    table = build_pseudobulk(counts_adata, metadata, config)

    assert list(table.index) == list(metadata.index)
    assert list(table.columns[:3]) == ["patient_id", "condition", "n_cells"]
    assert (table["n_cells"] == 30).all()

    expected = np.log2(_manual_mean(counts_adata, "LUNG_T01") + 1)
    np.testing.assert_allclose(
        table.loc["LUNG_T01", counts_adata.var_names].to_numpy(dtype=float),
        expected,
        rtol=1e-5,
    )

    tumor = table.loc[table["condition"] == "tumor", "GENE0"].mean()
    normal = table.loc[table["condition"] == "normal", "GENE0"].mean()
    assert tumor - normal > 2

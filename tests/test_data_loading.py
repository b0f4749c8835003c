import numpy as np
import pandas as pd
import pytest

from luad_pipeline.data_loading import (
    assign_samples_from_barcodes,
    filter_samples,
    load_count_matrix,
    load_sample_matrices,
    load_sample_metadata,
)


def _genes_by_cells_table(adata):
    return pd.DataFrame(
        adata.X.toarray().T,
        index=adata.var_names,
        columns=adata.obs_names,
    )


def test_load_text_matrix_is_transposed(tmp_path, counts_adata):
    path = tmp_path / "umi.csv"
    _genes_by_cells_table(counts_adata).to_csv(path)

    adata = load_count_matrix(path)

    assert adata.shape == counts_adata.shape
    assert list(adata.var_names) == list(counts_adata.var_names)
    np.testing.assert_allclose(adata.X.toarray(), counts_adata.X.toarray())


def test_load_gzipped_tsv(tmp_path, counts_adata):
    path = tmp_path / "umi.txt.gz"
    _genes_by_cells_table(counts_adata).to_csv(path, sep="\t")

    adata = load_count_matrix(path)
    assert adata.n_obs == counts_adata.n_obs


def test_load_text_without_transpose(tmp_path, counts_adata):
    path = tmp_path / "cells_by_genes.tsv"
    pd.DataFrame(
        counts_adata.X.toarray(),
        index=counts_adata.obs_names,
        columns=counts_adata.var_names,
    ).to_csv(path, sep="\t")

    adata = load_count_matrix(path, transpose=False)
    assert adata.shape == counts_adata.shape


def test_load_h5ad(tmp_path, counts_adata):
    path = tmp_path / "cells.h5ad"
    counts_adata.write_h5ad(path)
    assert load_count_matrix(path).shape == counts_adata.shape


def test_load_count_matrix_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_count_matrix(tmp_path / "missing.csv")

    unknown = tmp_path / "matrix.xlsx"
    unknown.write_text("x")
    with pytest.raises(ValueError):
        load_count_matrix(unknown)


def test_load_sample_matrices_tags_cells(tmp_path, counts_adata):
    paths = {}
    for sample in ["LUNG_N01", "LUNG_T01"]:
        part = counts_adata[counts_adata.obs["sample_id"] == sample].copy()
        del part.obs["sample_id"]
        part.obs_names = [name.split("_", 1)[0] for name in part.obs_names]
        paths[sample] = tmp_path / f"{sample}.h5ad"
        part.write_h5ad(paths[sample])

    combined = load_sample_matrices(paths, sample_key="sample_id")

    assert combined.n_obs == 60
    assert combined.obs_names.is_unique
    assert combined.obs["sample_id"].value_counts().to_dict() == {"LUNG_N01": 30, "LUNG_T01": 30}
    assert combined.obs_names[0].endswith("_LUNG_N01")


def test_load_sample_matrices_requires_paths():
    with pytest.raises(ValueError):
        load_sample_matrices({})


def test_assign_samples_from_barcodes(counts_adata):
    expected = counts_adata.obs["sample_id"].astype(str).to_numpy()
    del counts_adata.obs["sample_id"]

    adata = assign_samples_from_barcodes(counts_adata, sample_key="sample_id")

    np.testing.assert_array_equal(adata.obs["sample_id"].astype(str).to_numpy(), expected)


def test_assign_samples_rejects_plain_barcodes(counts_adata):
    counts_adata.obs_names = [f"CELL{i}" for i in range(counts_adata.n_obs)]
    with pytest.raises(ValueError):
        assign_samples_from_barcodes(counts_adata)


def test_filter_samples_keeps_requested_order(counts_adata):
    subset = filter_samples(counts_adata, ["LUNG_T02", "LUNG_N01", "LUNG_X99"])

    assert subset.n_obs == 60
    assert list(subset.obs["sample_id"].cat.categories) == ["LUNG_T02", "LUNG_N01"]


def test_filter_samples_errors(counts_adata):
    with pytest.raises(KeyError):
        filter_samples(counts_adata, ["LUNG_N01"], sample_key="patient")
    with pytest.raises(ValueError):
        filter_samples(counts_adata, ["LUNG_X99"])


def test_load_sample_metadata_from_config(sample_records):
    metadata = load_sample_metadata({"samples": sample_records})
    assert metadata.index.name == "sample_id"
    assert list(metadata.columns) == ["patient_id", "condition"]
    assert metadata.loc["LUNG_T01", "condition"] == "tumor"


def test_load_sample_metadata_from_files(tmp_path, sample_records):
    csv_path = tmp_path / "samples.csv"
    pd.DataFrame(sample_records).to_csv(csv_path, index=False)
    assert len(load_sample_metadata(csv_path)) == 6

    yaml_path = tmp_path / "samples.yaml"
    yaml_path.write_text(
        "samples:\n"
        "  - {sample_id: LUNG_N06, patient_id: P0006, condition: normal}\n"
        "  - {sample_id: LUNG_T06, patient_id: P0006, condition: tumor}\n"
    )
    metadata = load_sample_metadata(yaml_path)
    assert list(metadata.index) == ["LUNG_N06", "LUNG_T06"]


def test_load_sample_metadata_errors(sample_records):
    with pytest.raises(ValueError):
        load_sample_metadata({"samples": sample_records + sample_records[:1]})
    with pytest.raises(ValueError):
        load_sample_metadata({"samples": []})
    with pytest.raises(KeyError):
        load_sample_metadata({"samples": [{"name": "LUNG_N01"}]})

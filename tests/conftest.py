import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest
import anndata as ad
from scipy import sparse


NORMAL_SAMPLES = ["LUNG_N01", "LUNG_N02", "LUNG_N03"]
TUMOR_SAMPLES = ["LUNG_T01", "LUNG_T02", "LUNG_T03"]
SPECIAL_GENES = ["MT-CO1", "MT-ND1", "RPL3", "RPS6", "HBB"]
N_UP_GENES = 5


def make_counts_adata(cells_per_sample=30, n_plain_genes=40, seed=0):
    """Poisson counts; the first N_UP_GENES plain genes are raised in tumours."""
    rng = np.random.default_rng(seed)
    genes = SPECIAL_GENES + [f"GENE{i}" for i in range(n_plain_genes)]
    samples = NORMAL_SAMPLES + TUMOR_SAMPLES

    blocks, barcodes, sample_ids = [], [], []
    for sample in samples:
        lam = np.full(len(genes), 4.0)
        if sample in TUMOR_SAMPLES:
            up = len(SPECIAL_GENES) + np.arange(N_UP_GENES)
            lam[up] = 40.0
        blocks.append(rng.poisson(lam, size=(cells_per_sample, len(genes))))
        barcodes += [f"CELL{i:04d}_{sample}" for i in range(cells_per_sample)]
        sample_ids += [sample] * cells_per_sample

    adata = ad.AnnData(
        X=sparse.csr_matrix(np.vstack(blocks).astype(np.float32)),
        obs=pd.DataFrame({"sample_id": pd.Categorical(sample_ids)}, index=barcodes),
        var=pd.DataFrame(index=genes),
    )
    return adata


def make_sample_metadata():
    records = []
    for i, sample in enumerate(NORMAL_SAMPLES):
        records.append({"sample_id": sample, "patient_id": f"P{i + 1:02d}", "condition": "normal"})
    for i, sample in enumerate(TUMOR_SAMPLES):
        records.append({"sample_id": sample, "patient_id": f"P{i + 1:02d}", "condition": "tumor"})
    return records


@pytest.fixture
def counts_adata():
    return make_counts_adata()


@pytest.fixture
def large_counts_adata():
    return make_counts_adata(cells_per_sample=100, n_plain_genes=200)


@pytest.fixture
def sample_records():
    return make_sample_metadata()


@pytest.fixture
def sample_metadata(sample_records):
    return pd.DataFrame(sample_records).set_index("sample_id")


@pytest.fixture
def log_expression(sample_metadata):
    """Samples x genes log2 table: GENE_UP0..4 higher in tumours, one constant gene."""
    rng = np.random.default_rng(1)
    samples = list(sample_metadata.index)
    is_tumor = (sample_metadata["condition"] == "tumor").to_numpy()

    data = {}
    for i in range(5):
        data[f"GENE_UP{i}"] = np.where(is_tumor, 8.0, 4.0) + rng.normal(0, 0.2, len(samples))
    for i in range(15):
        data[f"GENE_NS{i}"] = 5.0 + rng.normal(0, 0.5, len(samples))
    data["GENE_CONST"] = np.full(len(samples), 3.0)

    return pd.DataFrame(data, index=pd.Index(samples, name="sample_id"))
